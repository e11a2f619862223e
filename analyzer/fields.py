from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple


@dataclass(frozen=True)
class FieldSet:
    names: Tuple[str, ...]
    labels: Mapping[str, str] = field(default_factory=dict)

    def label_for(self, name: str) -> str:
        return self.labels.get(name) or name


def parse_field_list(raw: str) -> List[str]:
    names: List[str] = []
    for part in raw.split(","):
        name = part.strip()
        if name and name not in names:
            names.append(name)
    return names


def build_field_set(names: List[str], store: Any, object_type: str) -> FieldSet:
    """Resolve display labels once per run; names the store does not describe keep their raw name."""
    labels: Dict[str, str] = dict(store.describe_fields(object_type, names))
    return FieldSet(names=tuple(names), labels=labels)


def combine_fields(values: Mapping[str, Optional[str]], fields: FieldSet) -> str:
    parts: List[str] = []
    for name in fields.names:
        value = values.get(name)
        if value is None:
            continue
        cleaned = value.strip()
        if not cleaned:
            continue
        parts.append(f"{fields.label_for(name)}: {cleaned}")
    return "\n\n".join(parts)

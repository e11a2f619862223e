from __future__ import annotations

import csv
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Tuple

from .constants import ORIGINAL_TEXT_COLUMN, RECORD_ID_COLUMN, RESPONSE_COLUMN

RESERVED_COLUMNS = (RECORD_ID_COLUMN, ORIGINAL_TEXT_COLUMN, RESPONSE_COLUMN)


class MalformedInputError(RuntimeError):
    """Raised when the identifier CSV cannot be used as a filter source."""


@dataclass(frozen=True)
class FilterSpec:
    field_name: str
    values: Tuple[str, ...]


def clean_cell(value: str) -> str:
    return value.strip().lstrip("\ufeff").strip()


def parse_filter_rows(rows: Iterable[List[str]], *, source: str = "input") -> FilterSpec:
    """Build a FilterSpec from raw CSV rows: header names the field, first column holds values."""
    iterator = iter(rows)
    try:
        header = next(iterator)
    except StopIteration:
        raise MalformedInputError(f"{source} has no header row.") from None
    field_name = clean_cell(header[0]) if header else ""
    if not field_name:
        raise MalformedInputError(f"{source} header has an empty first column.")
    if field_name.casefold() in {name.casefold() for name in RESERVED_COLUMNS}:
        raise MalformedInputError(
            f"{source} filter field '{field_name}' clashes with an output column; rename the header."
        )

    values: List[str] = []
    for row in iterator:
        if not row:
            continue
        value = clean_cell(row[0])
        if value:
            values.append(value)
    return FilterSpec(field_name=field_name, values=tuple(values))


def read_filter_csv(path: Path) -> FilterSpec:
    if not path.exists():
        raise MalformedInputError(f"Input CSV not found: {path}")
    try:
        with path.open(newline="", encoding="utf-8-sig") as handle:
            return parse_filter_rows(csv.reader(handle), source=str(path))
    except (csv.Error, UnicodeDecodeError) as exc:
        raise MalformedInputError(f"Could not parse {path}: {exc}") from exc

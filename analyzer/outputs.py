from __future__ import annotations

import csv
import os
import sys
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Set

from .constants import (
    ORIGINAL_TEXT_COLUMN,
    RECORD_ID_COLUMN,
    RESPONSE_COLUMN,
    RESUME_FALLBACK_COLUMN,
)

try:
    csv.field_size_limit(sys.maxsize)
except OverflowError:
    csv.field_size_limit(2**31 - 1)


class ResumeReadError(RuntimeError):
    """Raised when a prior output file exists but cannot be read back."""


@dataclass(frozen=True)
class ProcessingOutcome:
    record_id: str
    filter_value: str
    original_text: str
    response: str


def output_fieldnames(filter_field: str) -> List[str]:
    return [RECORD_ID_COLUMN, filter_field, ORIGINAL_TEXT_COLUMN, RESPONSE_COLUMN]


def append_outcome(outcome: ProcessingOutcome, output_path: Path, filter_field: str) -> None:
    """Append one outcome row, writing the header first if the file is new or empty."""
    output_path.parent.mkdir(parents=True, exist_ok=True)
    needs_header = not output_path.exists() or output_path.stat().st_size == 0
    with output_path.open("a", newline="", encoding="utf-8") as handle:
        writer = csv.writer(handle)
        if needs_header:
            writer.writerow(output_fieldnames(filter_field))
        writer.writerow(
            [outcome.record_id, outcome.filter_value, outcome.original_text, outcome.response]
        )
        handle.flush()
        os.fsync(handle.fileno())


class OutcomeWriter:
    """Serializes appends to one output file so concurrent workers never interleave rows."""

    def __init__(self, output_path: Path, filter_field: str) -> None:
        self.output_path = output_path
        self.filter_field = filter_field
        self.lock = threading.Lock()
        self.written = 0

    def append(self, outcome: ProcessingOutcome) -> None:
        with self.lock:
            append_outcome(outcome, self.output_path, self.filter_field)
            self.written += 1


def _pick_resume_column(fieldnames: List[str], filter_field: str) -> str:
    for candidate in (filter_field, RESUME_FALLBACK_COLUMN):
        if candidate and candidate in fieldnames:
            return candidate
    return fieldnames[0]


def read_processed(output_path: Path, filter_field: str) -> Set[str]:
    processed: Set[str] = set()
    try:
        with output_path.open(newline="", encoding="utf-8-sig") as handle:
            reader = csv.DictReader(handle)
            fieldnames = [name.strip() for name in reader.fieldnames or []]
            if not fieldnames:
                return processed
            reader.fieldnames = fieldnames
            column = _pick_resume_column(fieldnames, filter_field)
            if column != filter_field:
                print(
                    f"  ! Output has no '{filter_field}' column; resuming on '{column}'.",
                    file=sys.stderr,
                )
            for row in reader:
                value = (row.get(column) or "").strip()
                if value:
                    processed.add(value)
    except (OSError, UnicodeDecodeError, csv.Error) as exc:
        raise ResumeReadError(f"Could not read prior output {output_path}: {exc}") from exc
    return processed


def load_processed(output_path: Optional[Path], filter_field: str) -> Set[str]:
    if not output_path or not output_path.exists():
        return set()
    try:
        return read_processed(output_path, filter_field)
    except ResumeReadError as exc:
        print(f"Warning: {exc}. Treating no records as processed.", file=sys.stderr)
        return set()


def remaining_values(values: Iterable[str], processed: Set[str]) -> List[str]:
    return [value for value in values if value not in processed]

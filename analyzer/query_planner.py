from __future__ import annotations

import sys
import time
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional, Sequence, Set

from .constants import (
    INTER_CHUNK_DELAY_SECONDS,
    MAX_PAGES_PER_CHUNK,
    QUERY_CHUNK_SIZE,
    QUERY_PAGE_SIZE,
)
from .fields import FieldSet
from .inputs import FilterSpec
from .record_store import NetworkError, Record, StoreRequestError


class ChunkQueryError(RuntimeError):
    """A chunk's query or continuation request failed; the whole fetch is aborted."""

    def __init__(self, chunk_index: int, total_chunks: int, cause: Exception) -> None:
        super().__init__(f"Query failed for chunk {chunk_index}/{total_chunks}: {cause}")
        self.chunk_index = chunk_index
        self.total_chunks = total_chunks
        self.cause = cause


def chunk_values(values: Sequence[str], chunk_size: int) -> List[List[str]]:
    if chunk_size < 1:
        raise ValueError("chunk_size must be >= 1")
    return [list(values[start : start + chunk_size]) for start in range(0, len(values), chunk_size)]


def fetch_chunk(
    store: Any,
    *,
    object_type: str,
    field_names: Sequence[str],
    filter_field: str,
    values: Sequence[str],
    page_size: int,
    max_pages: int,
) -> List[Record]:
    """Run one chunk's query and follow continuation tokens until the store reports no more."""
    page = store.query(object_type, field_names, filter_field, values, page_size)
    records: List[Record] = list(page.records)
    pages = 1
    print(f"  page {pages}: {len(page.records)} records", flush=True)
    while page.next_token:
        if pages >= max_pages:
            print(
                f"  ! Stopped after {pages} pages; the store kept returning continuation tokens.",
                file=sys.stderr,
            )
            break
        page = store.query_continuation(page.next_token)
        pages += 1
        records.extend(page.records)
        print(f"  page {pages}: {len(page.records)} records", flush=True)
    return records


SALESFORCE_SHORT_ID_LENGTH = 15
SALESFORCE_LONG_ID_LENGTH = 18


class ChunkValueIndex:
    def __init__(self, chunk: Sequence[str]) -> None:
        self.exact: Set[str] = set(chunk)
        self.folded: Dict[str, str] = {}
        for value in chunk:
            self.folded.setdefault(value.casefold(), value)


def match_input_value(returned: str, index: ChunkValueIndex) -> Optional[str]:
    """Find the chunk value a returned filter value was selected by.

    The store matches text case-insensitively and answers 15-character Ids with
    their 18-character form, so an exact comparison is not enough.
    """
    candidates = [returned]
    if len(returned) == SALESFORCE_LONG_ID_LENGTH:
        candidates.append(returned[:SALESFORCE_SHORT_ID_LENGTH])
    for candidate in candidates:
        if candidate in index.exact:
            return candidate
    for candidate in candidates:
        match = index.folded.get(candidate.casefold())
        if match is not None:
            return match
    return None


def align_filter_values(records: Sequence[Record], chunk: Sequence[str]) -> List[Record]:
    """Rewrite each record's filter value to the input value its chunk query used."""
    index = ChunkValueIndex(chunk)
    aligned: List[Record] = []
    unmatched = 0
    for record in records:
        matched = match_input_value(record.filter_value, index)
        if matched is None:
            unmatched += 1
            aligned.append(record)
        elif matched != record.filter_value:
            aligned.append(replace(record, filter_value=matched))
        else:
            aligned.append(record)
    if unmatched:
        print(
            f"  ! {unmatched} record(s) returned a filter value not in this chunk; "
            "they will not be skipped on resume.",
            file=sys.stderr,
        )
    return aligned


def dedupe_records(records: Sequence[Record]) -> List[Record]:
    unique: List[Record] = []
    seen: Set[str] = set()
    for record in records:
        if record.id in seen:
            continue
        unique.append(record)
        seen.add(record.id)
    return unique


def fetch_records(
    spec: FilterSpec,
    fields: FieldSet,
    store: Any,
    *,
    object_type: str,
    chunk_size: int = QUERY_CHUNK_SIZE,
    page_size: int = QUERY_PAGE_SIZE,
    max_pages: int = MAX_PAGES_PER_CHUNK,
    chunk_delay: float = INTER_CHUNK_DELAY_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
) -> List[Record]:
    chunks = chunk_values(spec.values, chunk_size)
    total = len(chunks)
    records: List[Record] = []
    for index, chunk in enumerate(chunks, start=1):
        if index > 1 and chunk_delay > 0:
            sleep(chunk_delay)
        print(f"Querying chunk {index}/{total} ({len(chunk)} values)...", flush=True)
        try:
            chunk_records = fetch_chunk(
                store,
                object_type=object_type,
                field_names=fields.names,
                filter_field=spec.field_name,
                values=chunk,
                page_size=page_size,
                max_pages=max_pages,
            )
        except (StoreRequestError, NetworkError) as exc:
            raise ChunkQueryError(index, total, exc) from exc
        records.extend(align_filter_values(chunk_records, chunk))

    unique = dedupe_records(records)
    dropped = len(records) - len(unique)
    if dropped:
        print(f"Dropped {dropped} duplicate record(s) returned across chunks.", flush=True)
    return unique

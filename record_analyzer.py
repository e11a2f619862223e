#!/usr/bin/env python3
"""Analyze Salesforce records listed in a CSV with a language model, resumably."""

from __future__ import annotations

import os
import sys
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from analyzer.auth import AuthenticationError, JwtAuthenticator
from analyzer.cli import parse_args
from analyzer.completion_client import CompletionError, build_completion_service, complete
from analyzer.constants import (
    ERROR_PREFIX,
    INTER_CHUNK_DELAY_SECONDS,
    MAX_PAGES_PER_CHUNK,
    QUERY_CHUNK_SIZE,
    QUERY_PAGE_SIZE,
)
from analyzer.fields import FieldSet, build_field_set, combine_fields
from analyzer.inputs import FilterSpec, MalformedInputError, read_filter_csv
from analyzer.outputs import OutcomeWriter, ProcessingOutcome, load_processed, remaining_values
from analyzer.query_planner import ChunkQueryError, fetch_records
from analyzer.record_store import MetadataError, NetworkError, Record, SalesforceRecordStore

FATAL_ERRORS = (
    AuthenticationError,
    MalformedInputError,
    MetadataError,
    NetworkError,
    ChunkQueryError,
)


class RunStatus(str, Enum):
    DONE = "done"
    NOTHING_TO_DO = "nothing_to_do"


@dataclass
class RunSummary:
    status: RunStatus
    fetched: int = 0
    written: int = 0
    failed: int = 0
    skipped: int = 0


def format_duration(seconds: float) -> str:
    seconds = max(0, int(round(seconds)))
    hours, remainder = divmod(seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


def format_eta(start_time: float, processed: int, total: int) -> str:
    if total <= 0:
        return ""
    if processed == 0:
        return "(ETA estimating...)"
    elapsed = time.monotonic() - start_time
    if elapsed <= 0:
        return "(ETA --:--:--)"
    rate = processed / elapsed
    if rate <= 0:
        return "(ETA --:--:--)"
    remaining = max(total - processed, 0)
    return f"(ETA {format_duration(remaining / rate)})"


def analyze_record(
    record: Record,
    *,
    fields: FieldSet,
    prompt: str,
    service: Any,
) -> Optional[ProcessingOutcome]:
    """Return the record's outcome, or None when every requested field is empty."""
    text = combine_fields(record.fields, fields)
    if not text:
        return None
    try:
        response = complete(prompt, text, service)
    except CompletionError as exc:
        print(f"  ! Failed to analyze {record.id}: {exc}", file=sys.stderr, flush=True)
        response = f"{ERROR_PREFIX}{exc}"
    return ProcessingOutcome(
        record_id=record.id,
        filter_value=record.filter_value,
        original_text=text,
        response=response,
    )


def _tally(summary: RunSummary, outcome: Optional[ProcessingOutcome], writer: OutcomeWriter) -> None:
    if outcome is None:
        summary.skipped += 1
        return
    writer.append(outcome)
    summary.written += 1
    if outcome.response.startswith(ERROR_PREFIX):
        summary.failed += 1


def process_records(
    records: Sequence[Record],
    *,
    fields: FieldSet,
    prompt: str,
    service: Any,
    writer: OutcomeWriter,
    summary: RunSummary,
    max_parallel_requests: int = 1,
) -> RunSummary:
    total = len(records)
    start_time = time.monotonic()
    if max_parallel_requests <= 1:
        for idx, record in enumerate(records, start=1):
            eta_text = format_eta(start_time, idx - 1, total)
            print(f"[{idx}/{total}] Processing {record.id}... {eta_text}", flush=True)
            outcome = analyze_record(record, fields=fields, prompt=prompt, service=service)
            if outcome is None:
                print(f"[skip] {record.id}: requested fields are empty.", flush=True)
            _tally(summary, outcome, writer)
        return summary

    executor = ThreadPoolExecutor(max_workers=max_parallel_requests)
    try:
        pending: Dict[Future, Record] = {}
        queue = iter(records)
        done_count = 0

        def submit_next() -> None:
            record = next(queue, None)
            if record is not None:
                future = executor.submit(
                    analyze_record, record, fields=fields, prompt=prompt, service=service
                )
                pending[future] = record

        for _ in range(max_parallel_requests):
            submit_next()
        while pending:
            finished, _ = wait(list(pending), return_when=FIRST_COMPLETED)
            for future in finished:
                record = pending.pop(future)
                outcome = future.result()
                done_count += 1
                eta_text = format_eta(start_time, done_count, total)
                if outcome is None:
                    print(f"[skip] {record.id}: requested fields are empty.", flush=True)
                else:
                    print(f"[{done_count}/{total}] Completed {record.id}. {eta_text}", flush=True)
                _tally(summary, outcome, writer)
                submit_next()
    finally:
        executor.shutdown(wait=True, cancel_futures=True)
    return summary


def run_pipeline(
    spec: FilterSpec,
    *,
    object_type: str,
    field_names: List[str],
    prompt: str,
    open_store: Callable[[], Any],
    service: Any,
    output_path: Path,
    chunk_size: int = QUERY_CHUNK_SIZE,
    page_size: int = QUERY_PAGE_SIZE,
    max_pages: int = MAX_PAGES_PER_CHUNK,
    chunk_delay: float = INTER_CHUNK_DELAY_SECONDS,
    max_parallel_requests: int = 1,
    sleep: Callable[[float], None] = time.sleep,
) -> RunSummary:
    completed = load_processed(output_path, spec.field_name)
    pending_values = remaining_values(spec.values, completed)
    if completed:
        print(f"Skipping {len(spec.values) - len(pending_values)} values already in {output_path}.")
    if not pending_values:
        print("No new records to process. Exiting.")
        return RunSummary(status=RunStatus.NOTHING_TO_DO)
    print(f"Found {len(pending_values)} values to filter by.")

    store = open_store()
    fields = build_field_set(field_names, store, object_type)
    pending_spec = FilterSpec(field_name=spec.field_name, values=tuple(pending_values))
    records = fetch_records(
        pending_spec,
        fields,
        store,
        object_type=object_type,
        chunk_size=chunk_size,
        page_size=page_size,
        max_pages=max_pages,
        chunk_delay=chunk_delay,
        sleep=sleep,
    )
    print(f"Found {len(records)} records.")

    summary = RunSummary(status=RunStatus.DONE, fetched=len(records))
    writer = OutcomeWriter(output_path, spec.field_name)
    return process_records(
        records,
        fields=fields,
        prompt=prompt,
        service=service,
        writer=writer,
        summary=summary,
        max_parallel_requests=max_parallel_requests,
    )


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    print(f"Scanning Salesforce object: {args.object_type}")
    print(f"Reading field(s): {', '.join(args.field_names)}")
    print(f'Using prompt: "{args.prompt}"')
    print(f"Using CSV file: {args.input_csv}")
    print(f"AI service: {'Copilot' if args.copilot else 'LM Studio'}")

    service = build_completion_service(
        use_copilot=args.copilot,
        env=os.environ,
        timeout=args.timeout,
        model=args.model,
        temperature=args.temperature,
        max_output_tokens=args.max_output_tokens,
        max_retries=args.max_retries,
        retry_backoff=args.retry_backoff,
    )

    def open_store() -> SalesforceRecordStore:
        print("Authenticating to Salesforce...", flush=True)
        session = JwtAuthenticator().authenticate()
        return SalesforceRecordStore(session)

    start_time = time.monotonic()
    try:
        spec = read_filter_csv(args.input_csv)
        print(f"Filter field: {spec.field_name} ({len(spec.values)} values in CSV)")
        summary = run_pipeline(
            spec,
            object_type=args.object_type,
            field_names=args.field_names,
            prompt=args.prompt,
            open_store=open_store,
            service=service,
            output_path=args.output,
            chunk_size=args.chunk_size,
            page_size=args.page_size,
            max_pages=args.max_pages,
            chunk_delay=args.chunk_delay,
            max_parallel_requests=args.max_parallel_requests,
        )
    except FATAL_ERRORS as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print(f"\nInterrupted. Rerun the same command to resume from {args.output}.", file=sys.stderr)
        return 130

    if summary.status is RunStatus.DONE:
        print(
            f"Completed {summary.written} records ({summary.failed} errors, "
            f"{summary.skipped} skipped as empty) in {format_duration(time.monotonic() - start_time)}. "
            f"Results appended to {args.output}"
        )
    return 0


if __name__ == "__main__":
    sys.exit(main())

#!/usr/bin/env python3
"""Summarize the model responses in a results CSV, a batch of responses at a time."""

from __future__ import annotations

import argparse
import csv
import os
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Sequence

from analyzer.completion_client import CompletionError, build_completion_service, complete
from analyzer.constants import (
    ERROR_PREFIX,
    SUMMARY_LOCAL_TIMEOUT_SECONDS,
    SUMMARY_MAX_OUTPUT_TOKENS,
    SUMMARY_RESPONSE_COLUMNS,
    SUMMARY_SEPARATOR,
)

RULE = "=" * 80
THIN_RULE = "-" * 80


@dataclass
class BatchSummary:
    batch_number: int
    batch_size: int
    summary: str


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Summarize model responses from a results CSV in batches.",
        epilog=(
            'Example: summarize-results results.csv -b 5 -p "Summarize the key themes '
            'across these responses" -c'
        ),
    )
    parser.add_argument("filename", type=Path, help="Results CSV produced by record-analyzer.")
    parser.add_argument("-b", "--batch-size", type=int, required=True, help="Responses per batch.")
    parser.add_argument(
        "-p",
        "--prompt",
        nargs="+",
        required=True,
        help="Instruction sent with each batch (remaining words are joined).",
    )
    parser.add_argument(
        "-c",
        "--copilot",
        action="store_true",
        help="Use the Azure OpenAI (Copilot) deployment instead of LM Studio.",
    )
    parser.add_argument(
        "--output",
        type=Path,
        default=None,
        help="Report path (default: <name>_summary_batch<N>_<timestamp>.txt beside the input).",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Request timeout in seconds (default: 60 for LM Studio, 120 for Copilot).",
    )
    args = parser.parse_args(argv)
    args.prompt = " ".join(args.prompt)
    return args


def pick_response_column(fieldnames: Sequence[str]) -> Optional[str]:
    for candidate in SUMMARY_RESPONSE_COLUMNS:
        if candidate in fieldnames:
            return candidate
    return fieldnames[-1] if fieldnames else None


def read_responses(path: Path) -> List[str]:
    responses: List[str] = []
    with path.open(newline="", encoding="utf-8-sig") as handle:
        reader = csv.DictReader(handle)
        column = pick_response_column(reader.fieldnames or [])
        if column is None:
            return responses
        for row in reader:
            value = (row.get(column) or "").strip()
            if value and not value.startswith(ERROR_PREFIX.strip()):
                responses.append(value)
    return responses


def chunk_list(items: Sequence[str], size: int) -> List[List[str]]:
    return [list(items[start : start + size]) for start in range(0, len(items), size)]


def combine_batch(batch: Sequence[str]) -> str:
    return "\n\n---\n\n".join(f"Response {idx}:\n{text}" for idx, text in enumerate(batch, start=1))


def summarize_batches(batches: Sequence[Sequence[str]], prompt: str, service) -> List[BatchSummary]:
    summaries: List[BatchSummary] = []
    total = len(batches)
    for number, batch in enumerate(batches, start=1):
        print(f"Processing batch {number}/{total} ({len(batch)} responses)...", flush=True)
        try:
            summary = complete(prompt, combine_batch(batch), service, separator=SUMMARY_SEPARATOR)
            print(f"  Batch {number} processed successfully", flush=True)
        except CompletionError as exc:
            print(f"  ! Error processing batch {number}: {exc}", file=sys.stderr, flush=True)
            summary = f"{ERROR_PREFIX}{exc}"
        summaries.append(BatchSummary(number, len(batch), summary))
    return summaries


def default_report_path(input_path: Path, batch_size: int, now: Optional[datetime] = None) -> Path:
    stamp = (now or datetime.now(timezone.utc)).strftime("%Y-%m-%dT%H-%M-%S")
    return input_path.with_name(f"{input_path.stem}_summary_batch{batch_size}_{stamp}.txt")


def render_report(summaries: Sequence[BatchSummary], prompt: str, generated: datetime) -> str:
    lines = [
        "Summary Report",
        f"Generated: {generated.isoformat()}",
        f"Prompt: {prompt}",
        f"Total Batches: {len(summaries)}",
        "",
        RULE,
        "",
    ]
    for item in summaries:
        lines.extend(
            [
                f"BATCH {item.batch_number} ({item.batch_size} responses)",
                THIN_RULE,
                item.summary,
                "",
                RULE,
                "",
            ]
        )
    return "\n".join(lines) + "\n"


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    if args.batch_size < 1:
        print("Error: Batch size must be a positive integer", file=sys.stderr)
        return 1
    if not args.filename.exists():
        print(f"Error: File '{args.filename}' not found", file=sys.stderr)
        return 1

    print(f"Reading file: {args.filename}")
    print(f"Batch size: {args.batch_size}")
    print(f'Prompt: "{args.prompt}"')
    print(f"AI service: {'Copilot' if args.copilot else 'LM Studio'}")

    try:
        responses = read_responses(args.filename)
    except (OSError, UnicodeDecodeError, csv.Error) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    print(f"Found {len(responses)} responses in file")
    if not responses:
        print("No responses to process")
        return 0

    batches = chunk_list(responses, args.batch_size)
    print(f"Split into {len(batches)} batches of up to {args.batch_size} responses each")
    service = build_completion_service(
        use_copilot=args.copilot,
        env=os.environ,
        timeout=args.timeout,
        local_timeout=SUMMARY_LOCAL_TIMEOUT_SECONDS,
        max_output_tokens=SUMMARY_MAX_OUTPUT_TOKENS,
    )
    summaries = summarize_batches(batches, args.prompt, service)

    generated = datetime.now(timezone.utc)
    output = args.output or default_report_path(args.filename, args.batch_size, generated)
    output.write_text(render_report(summaries, args.prompt, generated), encoding="utf-8")
    print(f"Summaries saved to: {output}")
    print(f"Processed {len(batches)} batches")
    return 0


if __name__ == "__main__":
    sys.exit(main())

from __future__ import annotations

import argparse
import re
import sys
from pathlib import Path
from typing import List, Optional, Sequence, Set

try:
    import tomllib  # Python 3.11+
except ModuleNotFoundError:  # pragma: no cover
    import tomli as tomllib  # type: ignore

from .constants import (
    INTER_CHUNK_DELAY_SECONDS,
    MAX_PAGES_PER_CHUNK,
    QUERY_CHUNK_SIZE,
    QUERY_PAGE_SIZE,
    DEFAULT_MAX_OUTPUT_TOKENS,
    DEFAULT_TEMPERATURE,
)
from .fields import parse_field_list

DEFAULT_CONFIG_FILE = Path("analyzer_config.toml")


def explicit_cli_destinations(argv: List[str]) -> Set[str]:
    explicit: Set[str] = set()
    for token in argv:
        if token == "--":
            break
        if not token.startswith("--"):
            continue
        flag = token[2:]
        if "=" in flag:
            flag = flag.split("=", 1)[0]
        if flag.startswith("no-"):
            flag = flag[3:]
        explicit.add(flag.replace("-", "_"))
    return explicit


def apply_config_defaults(
    parser: argparse.ArgumentParser,
    args: argparse.Namespace,
    cli_explicit: Optional[Set[str]] = None,
) -> None:
    explicit = cli_explicit or set()
    config_path: Path = args.config  # type: ignore[assignment]
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")
    with config_path.open("rb") as handle:
        data = tomllib.load(handle)
    for key, value in data.items():
        if not hasattr(args, key):
            continue
        if key in explicit:
            continue
        current = getattr(args, key)
        default = parser.get_default(key)
        if current == default:
            if isinstance(default, Path):
                setattr(args, key, Path(value))
            else:
                setattr(args, key, value)


def sanitize_name_part(value: str) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "_", value.strip())
    return cleaned.strip("._-") or "field"


def default_output_path(object_type: str, field_names: Sequence[str]) -> Path:
    fields_part = "_".join(sanitize_name_part(name) for name in field_names)
    return Path(f"{sanitize_name_part(object_type)}_{fields_part}_results.csv")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description=(
            "Fetch Salesforce records matching the IDs in a CSV, send selected fields "
            "to a language model with a prompt, and append each response to a results CSV."
        ),
        epilog=(
            'Example: record-analyzer Employee_Survey_Response__c Q6 '
            '"Extract meta-themes from this survey response" survey-ids.csv'
        ),
    )
    parser.add_argument("object_type", help="Salesforce object API name to query.")
    parser.add_argument("fields", help="Field name, or comma-separated field names, to analyze.")
    parser.add_argument("prompt", help="Instruction sent to the model ahead of each record's text.")
    parser.add_argument(
        "input_csv",
        type=Path,
        help="CSV whose header names the filter field and whose first column lists filter values.",
    )
    parser.add_argument(
        "-c",
        "--copilot",
        action="store_true",
        help="Use the Azure OpenAI (Copilot) deployment instead of LM Studio.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        help=f"Optional TOML config file to supply defaults (default: {DEFAULT_CONFIG_FILE} if present).",
    )
    parser.add_argument(
        "--output",
        type=Path,
        default=None,
        help="Results CSV path (default: <object>_<fields>_results.csv). Appended to and resumed from.",
    )
    parser.add_argument(
        "--chunk-size",
        type=int,
        default=QUERY_CHUNK_SIZE,
        help="Maximum filter values per IN (...) query.",
    )
    parser.add_argument(
        "--page-size",
        type=int,
        default=QUERY_PAGE_SIZE,
        help="Records requested per query page.",
    )
    parser.add_argument(
        "--max-pages",
        type=int,
        default=MAX_PAGES_PER_CHUNK,
        help="Safety ceiling on pages followed per chunk.",
    )
    parser.add_argument(
        "--chunk-delay",
        type=float,
        default=INTER_CHUNK_DELAY_SECONDS,
        help="Seconds to wait between chunk queries.",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Completion request timeout in seconds (default: 30 for LM Studio, 120 for Copilot).",
    )
    parser.add_argument(
        "--model",
        default=None,
        help="Model name for LM Studio, or deployment name for Copilot.",
    )
    parser.add_argument(
        "--temperature",
        type=float,
        default=DEFAULT_TEMPERATURE,
        help="Sampling temperature for completions.",
    )
    parser.add_argument(
        "--max-output-tokens",
        type=int,
        default=DEFAULT_MAX_OUTPUT_TOKENS,
        help="Upper bound for completion tokens per record.",
    )
    parser.add_argument(
        "--max-retries",
        type=int,
        default=1,
        help="Maximum completion attempts for transient failures (1 = no retry).",
    )
    parser.add_argument(
        "--retry-backoff",
        type=float,
        default=1.5,
        help="Base seconds for exponential retry backoff (attempt_n = backoff * 2^(n-1)).",
    )
    parser.add_argument(
        "--max-parallel-requests",
        type=int,
        default=1,
        help="Concurrent completion requests (1 = strictly sequential).",
    )
    return parser


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = build_parser()
    args = parser.parse_args(argv)
    cli_explicit = explicit_cli_destinations(list(argv) if argv is not None else sys.argv[1:])
    config_path = None
    if args.config:
        config_path = Path(args.config)
    elif DEFAULT_CONFIG_FILE.exists():
        config_path = DEFAULT_CONFIG_FILE
    if config_path:
        args.config = config_path
        apply_config_defaults(parser, args, cli_explicit=cli_explicit)
    if args.output is not None and not isinstance(args.output, Path):
        args.output = Path(args.output)

    args.field_names = parse_field_list(args.fields)
    if not args.field_names:
        parser.error("at least one field name is required")
    if args.chunk_size < 1:
        parser.error("--chunk-size must be >= 1")
    if args.page_size < 1:
        parser.error("--page-size must be >= 1")
    if args.max_pages < 1:
        parser.error("--max-pages must be >= 1")
    if args.max_parallel_requests < 1:
        parser.error("--max-parallel-requests must be >= 1")
    if args.output is None:
        args.output = default_output_path(args.object_type, args.field_names)
    return args

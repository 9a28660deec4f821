"""Run one tier lifecycle sweep from the command line and print the summary as JSON."""

from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import sys
from datetime import datetime
from typing import Optional, Sequence

from scripts._path import bootstrap

bootstrap()

from core.tier_config import TierEngineConfig  # noqa: E402
from core.timeutils import parse_iso_datetime  # noqa: E402
from services.tier_scheduler import build_default_runner  # noqa: E402

logger = logging.getLogger(__name__)


def _parse_reference_time(value: str) -> datetime:
    try:
        return parse_iso_datetime(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid ISO-8601 timestamp '{value}'.") from exc


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run one subscription tier lifecycle sweep.")
    parser.add_argument(
        "--at",
        dest="reference_time",
        type=_parse_reference_time,
        default=None,
        help="Reference time (ISO-8601, default: now in UTC).",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Classify and dedup only; send nothing and write nothing.",
    )
    parser.add_argument("--max-workers", type=int, default=None, help="Override TIER_SCHEDULER_MAX_WORKERS.")
    parser.add_argument("--log-level", default="INFO", help="Logging level (default: INFO).")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(message)s",
    )

    config = TierEngineConfig.from_env()
    if args.max_workers is not None:
        config = dataclasses.replace(config, max_workers=max(args.max_workers, 1))

    runner = build_default_runner(config=config)
    summary = runner.run_once(args.reference_time, dry_run=args.dry_run)
    print(json.dumps(summary.to_dict(), ensure_ascii=False, indent=2))
    return 1 if summary.errors else 0


if __name__ == "__main__":
    sys.exit(main())

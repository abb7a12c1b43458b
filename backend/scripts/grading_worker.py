"""Cron entry point for the grading queue.

``process`` claims and grades one batch of eligible submissions; ``cleanup``
applies the data retention window. Each invocation does a single pass.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Optional

from autograder.config import get_settings
from autograder.logging_config import configure_logging
from autograder.maintenance import cleanup_old_data
from autograder.orchestrator import GradingOrchestrator


logger = logging.getLogger("autograder.worker")


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run one grading queue or retention pass.")
    subcommands = parser.add_subparsers(dest="command", required=True)

    process = subcommands.add_parser("process", help="Grade eligible queued submissions.")
    process.add_argument(
        "--limit",
        type=int,
        default=None,
        help="Maximum items to claim (default: AUTOGRADER_QUEUE_BATCH_SIZE).",
    )

    subcommands.add_parser("cleanup", help="Purge data older than the retention window.")
    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> int:
    configure_logging()
    args = parse_args(argv)
    try:
        settings = get_settings()
        if args.command == "process":
            summary = GradingOrchestrator(settings=settings).run_pass(limit=args.limit)
            print(json.dumps(summary.model_dump()))
        else:
            report = cleanup_old_data(settings)
            print(report.model_dump_json())
    except Exception as exc:  # noqa: BLE001
        logger.exception("Grading worker %s failed: %s", args.command, exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())

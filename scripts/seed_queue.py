"""
Seed the scrape queue with ZIP/state tasks.
"""

from __future__ import annotations

import argparse
import json
from pathlib import Path

from app.consumer.logging_utils import configure_logging
from app.consumer.seeder import DEFAULT_PROFESSION, SAMPLE_ZIP_CODES, build_seed_tasks
from app.services.consumer_service import get_consumer_service


def _load_zip_file(path: Path) -> dict[str, list[str]]:
    """
    Read a JSON object mapping state codes to ZIP code lists.
    """

    payload = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(payload, dict):
        raise ValueError(f"{path} must contain a JSON object of state -> ZIP codes.")
    return {
        str(state).strip().upper(): [str(code).strip() for code in codes if str(code).strip()]
        for state, codes in payload.items()
    }


def main() -> int:
    parser = argparse.ArgumentParser(description="Enqueue scrape tasks for ZIP codes.")
    parser.add_argument(
        "--states",
        nargs="*",
        default=None,
        help="State codes to seed (default: every state in the ZIP set).",
    )
    parser.add_argument(
        "--zip-file",
        type=Path,
        default=None,
        help="JSON file mapping state codes to ZIP codes (default: built-in sample set).",
    )
    parser.add_argument("--profession", default=DEFAULT_PROFESSION)
    parser.add_argument("--priority", type=int, default=5)
    parser.add_argument(
        "--force",
        action="store_true",
        help="Enqueue even recently processed or in-flight keys.",
    )
    args = parser.parse_args()

    configure_logging()
    zip_codes = _load_zip_file(args.zip_file) if args.zip_file else SAMPLE_ZIP_CODES
    tasks = build_seed_tasks(
        zip_codes=zip_codes,
        states=args.states,
        profession=args.profession,
        priority=args.priority,
    )
    summary = get_consumer_service().seed(tasks, force=args.force)
    print(
        json.dumps(
            {
                "queued": summary.queued,
                "skipped": summary.skipped,
                "errors": summary.errors,
                "error_messages": summary.error_messages,
            },
            indent=2,
        )
    )
    return 0 if summary.errors == 0 else 1


if __name__ == "__main__":
    raise SystemExit(main())

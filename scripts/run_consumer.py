"""
Run the scrape queue consumer from CLI.
"""

from __future__ import annotations

import argparse
import json
import signal
import threading

from app.consumer.logging_utils import configure_logging
from app.services.consumer_service import get_consumer_service


def main() -> int:
    parser = argparse.ArgumentParser(description="Consume scrape tasks from the queue.")
    parser.add_argument(
        "--loop",
        action="store_true",
        help="Keep polling until interrupted instead of processing one batch.",
    )
    args = parser.parse_args()

    configure_logging()
    service = get_consumer_service()

    if not args.loop:
        summary = service.run_batch()
        print(
            json.dumps(
                {
                    "received": summary.received,
                    "acked": summary.acked,
                    "retried": summary.retried,
                    "queue_errors": summary.queue_errors,
                },
                indent=2,
            )
        )
        return 0 if summary.queue_errors == 0 else 1

    stop_event = threading.Event()

    def _stop(signum: int, _frame: object) -> None:
        stop_event.set()

    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)
    service.worker.run_forever(stop_event)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

"""
Force scrape tasks stuck in processing back into the retry cycle.
"""

from __future__ import annotations

import json

from app.consumer.logging_utils import configure_logging
from app.services.consumer_service import get_consumer_service


def main() -> int:
    configure_logging()
    reconciled = get_consumer_service().reconcile_stale_tasks()
    payload = [
        {
            "region_key": snapshot.region_key,
            "source_type": snapshot.source_type,
            "profession": snapshot.profession,
            "consecutive_failures": snapshot.consecutive_failures,
            "next_retry_at": snapshot.next_retry_at.isoformat() if snapshot.next_retry_at else None,
        }
        for snapshot in reconciled
    ]
    print(json.dumps(payload, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

"""
Container health check for the consumer API.
"""

from __future__ import annotations

import os

import requests


def main() -> int:
    port = os.getenv("PORT", "8000")
    path = os.getenv("HEALTHCHECK_PATH", "/health")
    url = f"http://127.0.0.1:{port}{path}"

    try:
        response = requests.get(url, timeout=2)
        payload = response.json()
    except (requests.RequestException, ValueError):
        return 1
    return 0 if response.ok and payload.get("status") == "healthy" else 1


if __name__ == "__main__":
    raise SystemExit(main())

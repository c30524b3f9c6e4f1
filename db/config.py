"""
Environment-driven database configuration shared by the consumer, the API,
the CLI scripts and Alembic.
"""

from __future__ import annotations

import os
from pathlib import Path

from sqlalchemy.engine import make_url

DATABASE_URL_VARIABLES = ("DATABASE_URL", "CLOUD_DATABASE_URL", "LOCAL_DATABASE_URL")
CLOUD_ENVIRONMENTS = frozenset({"prod", "production", "staging", "cloud"})

_POSTGRES_PREFIXES = ("postgres://", "postgresql://", "postgresql+psycopg2://")


def _parse_env_line(raw_line: str) -> tuple[str, str] | None:
    line = raw_line.strip()
    if not line or line.startswith("#") or "=" not in line:
        return None
    if line.startswith("export "):
        line = line[len("export ") :]
    key, value = line.split("=", 1)
    key = key.strip()
    if not key:
        return None
    return key, value.strip().strip('"').strip("'")


def load_env_files() -> None:
    """
    Load KEY=VALUE pairs from `.env` then `.env.local` in the project root.

    Variables already present in the process environment always win.
    """

    project_root = Path(__file__).resolve().parents[1]
    for filename in (".env", ".env.local"):
        env_path = project_root / filename
        if not env_path.is_file():
            continue
        for raw_line in env_path.read_text(encoding="utf-8").splitlines():
            parsed = _parse_env_line(raw_line)
            if parsed is not None and parsed[0] not in os.environ:
                os.environ[parsed[0]] = parsed[1]


def normalize_postgres_url(url: str) -> str:
    """
    Rewrite any PostgreSQL URL to the psycopg (v3) driver form.
    """

    url = url.strip()
    for prefix in _POSTGRES_PREFIXES:
        if url.startswith(prefix):
            return "postgresql+psycopg://" + url[len(prefix) :]
    return url


def is_cloud_environment() -> bool:
    return os.getenv("ENVIRONMENT", "local").strip().lower() in CLOUD_ENVIRONMENTS


def has_database_url() -> bool:
    load_env_files()
    return any(os.getenv(name, "").strip() for name in DATABASE_URL_VARIABLES)


def resolve_database_url() -> str:
    """
    Pick the database URL for this process.

    Priority:
    1) DATABASE_URL
    2) CLOUD_DATABASE_URL when ENVIRONMENT is cloud-like
    3) LOCAL_DATABASE_URL
    """

    load_env_files()

    direct_url = os.getenv("DATABASE_URL", "").strip()
    if direct_url:
        return normalize_postgres_url(direct_url)

    cloud_url = os.getenv("CLOUD_DATABASE_URL", "").strip()
    if cloud_url and is_cloud_environment():
        return normalize_postgres_url(cloud_url)

    local_url = os.getenv("LOCAL_DATABASE_URL", "").strip()
    if local_url:
        return normalize_postgres_url(local_url)

    raise RuntimeError(
        "No database URL configured. Set DATABASE_URL, or configure "
        "LOCAL_DATABASE_URL / CLOUD_DATABASE_URL."
    )


def masked_database_url(url: str) -> str:
    """
    URL safe for log lines: the password is replaced with ``***``.
    """

    return make_url(url).render_as_string(hide_password=True)

"""
Alembic environment for the scrape consumer schema.

Target URL priority:
1) `-x db_url=...` for one-off migration targets
2) ALEMBIC_DATABASE_URL
3) whatever db.config.resolve_database_url() picks for the consumer
"""

from __future__ import annotations

import logging
import os
from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

from db.base import Base
from db.config import masked_database_url, normalize_postgres_url, resolve_database_url
from db.models import (  # noqa: F401  (imports trigger Base.metadata registration)
    DeadLetterEntry,
    QueueMessageLog,
    RateLimit,
    RawBusinessRecord,
    ScrapeQueueMessage,
    ScrapeTaskState,
)

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

logger = logging.getLogger("alembic.env")

target_metadata = Base.metadata

CONSUMER_TABLES = frozenset(target_metadata.tables)


def _migration_url() -> str:
    x_args = context.get_x_argument(as_dictionary=True)
    candidate = (x_args.get("db_url") or os.getenv("ALEMBIC_DATABASE_URL") or "").strip()
    url = normalize_postgres_url(candidate) if candidate else resolve_database_url()

    if not url.startswith("postgresql"):
        raise RuntimeError("Consumer migrations only target PostgreSQL.")

    logger.info("Migrating %s", masked_database_url(url))
    return url


def _include_object(obj, name, type_, reflected, compare_to) -> bool:
    # Autogenerate must not propose drops for tables owned by other services
    # that share the database.
    if type_ == "table" and reflected and compare_to is None:
        return name in CONSUMER_TABLES
    return True


def _configure_kwargs() -> dict:
    return {
        "target_metadata": target_metadata,
        "compare_type": True,
        "compare_server_default": True,
        "include_object": _include_object,
    }


def run_migrations_offline() -> None:
    context.configure(
        url=_migration_url(),
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **_configure_kwargs(),
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    configuration = config.get_section(config.config_ini_section, {})
    configuration["sqlalchemy.url"] = _migration_url()

    connectable = engine_from_config(
        configuration,
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        context.configure(connection=connection, **_configure_kwargs())

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()

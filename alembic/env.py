"""Alembic environment for the calendar feed schema.

Revisions are raw ``op.execute()`` SQL; there is no SQLAlchemy metadata.
The URL comes from the Alembic config when invoked through
``curaknot.migrations.run_migrations`` and from the same environment
variables as the service (``DATABASE_URL`` / ``POSTGRES_*``) otherwise.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any

from sqlalchemy import create_engine, pool

from alembic import context
from curaknot.db import DEFAULT_DB_NAME, build_database_url, db_params_from_env

VERSIONS_DIR = Path(__file__).parent / "versions"
CHAINS = ("core",)

_SCHEMA_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def get_url() -> str:
    url = context.config.get_main_option("sqlalchemy.url")
    if url:
        return url
    params = db_params_from_env()
    return build_database_url(
        str(params["database"] or DEFAULT_DB_NAME),
        host=str(params["host"]),
        port=int(params["port"] or 5432),
        user=str(params["user"]),
        password=str(params["password"]),
        ssl=params["ssl"],  # type: ignore[arg-type]
    )


def _schema_option(name: str) -> str | None:
    """Read *name* from the Alembic config; blank means unset."""
    raw = (context.config.get_main_option(name) or "").strip()
    if not raw:
        return None
    if not _SCHEMA_RE.fullmatch(raw):
        raise ValueError(f"Invalid schema option {name}: {raw!r}")
    return raw


def _configure_kwargs(**extra: Any) -> dict[str, Any]:
    kwargs: dict[str, Any] = {
        "target_metadata": None,
        "version_locations": [
            str(VERSIONS_DIR / chain) for chain in CHAINS if (VERSIONS_DIR / chain).is_dir()
        ],
        **extra,
    }
    version_table_schema = _schema_option("version_table_schema")
    if version_table_schema:
        kwargs["version_table_schema"] = version_table_schema
    return kwargs


def run_migrations_offline() -> None:
    """Emit SQL without a live connection."""
    context.configure(
        **_configure_kwargs(
            url=get_url(),
            literal_binds=True,
            dialect_opts={"paramstyle": "named"},
        )
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    engine = create_engine(get_url(), poolclass=pool.NullPool)
    target_schema = _schema_option("curaknot.target_schema")

    with engine.connect() as connection:
        if target_schema:
            quoted = '"' + target_schema.replace('"', '""') + '"'
            # Must exist before Alembic creates its version table.
            connection.exec_driver_sql(f"CREATE SCHEMA IF NOT EXISTS {quoted}")
            connection.exec_driver_sql(f"SET search_path TO {quoted}, public")
            connection.commit()

        context.configure(**_configure_kwargs(connection=connection))
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()

"""CLI for the CuraKnot calendar feed service."""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

import click

from curaknot.config import ConfigError, ServiceConfig, load_config

logger = logging.getLogger(__name__)

# Default directory containing curaknot.toml
DEFAULT_CONFIG_DIR = Path(".")

_config_dir_option = click.option(
    "--config-dir",
    "config_dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=DEFAULT_CONFIG_DIR,
    help="Directory containing curaknot.toml",
)


@click.group()
@click.version_option(version="0.1.0")
def cli() -> None:
    """CuraKnot iCalendar subscription feeds for care circles."""


def _load_or_exit(config_dir: Path) -> ServiceConfig:
    try:
        return load_config(config_dir)
    except ConfigError as exc:
        click.echo(f"Invalid configuration: {exc}", err=True)
        sys.exit(1)


@cli.command()
@_config_dir_option
@click.option("--host", default=None, help="Override service.host")
@click.option("--port", type=int, default=None, help="Override service.port")
def serve(config_dir: Path, host: str | None, port: int | None) -> None:
    """Run the feed HTTP service."""
    import uvicorn

    from curaknot.api.app import create_app
    from curaknot.core.logging import configure_logging

    config = _load_or_exit(config_dir)
    log_root = Path(config.logging.log_root) if config.logging.log_root else None
    configure_logging(config.logging.level, config.logging.format, log_root)

    app = create_app(config)
    uvicorn.run(
        app,
        host=host or config.host,
        port=port or config.port,
        log_config=None,
    )


@cli.command()
@_config_dir_option
@click.option(
    "--chain",
    default="all",
    show_default=True,
    help="Migration chain to upgrade ('all' for every chain)",
)
def migrate(config_dir: Path, chain: str) -> None:
    """Upgrade the feed database schema to head."""
    from curaknot.db import DEFAULT_DB_NAME, build_database_url, db_params_from_env
    from curaknot.migrations import run_migrations

    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(name)s: %(message)s")
    config = _load_or_exit(config_dir)
    params = db_params_from_env()
    db_name = config.db_name or params.get("database") or DEFAULT_DB_NAME
    url = build_database_url(
        str(db_name),
        host=str(params["host"]),
        port=int(params["port"]),
        user=str(params["user"]),
        password=str(params["password"]),
        ssl=params.get("ssl"),
    )
    try:
        asyncio.run(run_migrations(url, chain=chain, schema=config.db_schema))
    except ValueError as exc:
        raise click.BadParameter(str(exc), param_hint="--chain") from exc
    click.echo(f"Migrations applied to {db_name}")


@cli.command("check-config")
@_config_dir_option
def check_config(config_dir: Path) -> None:
    """Validate curaknot.toml and print the effective settings."""
    try:
        config = load_config(config_dir)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(f"{'product_name':<24} {config.product_name}")
    click.echo(f"{'uid_domain':<24} {config.uid_domain}")
    click.echo(f"{'base_path':<24} {config.base_path}")
    click.echo(f"{'source_timeout_seconds':<24} {config.source_timeout_seconds}")
    click.echo(f"{'cors_origins':<24} {', '.join(config.cors_origins)}")
    click.echo(f"{'listen':<24} {config.host}:{config.port}")
    click.echo(f"{'db':<24} {config.db_name or '(from environment)'}")
    click.echo(f"{'logging':<24} {config.logging.level} / {config.logging.format}")


def main() -> None:
    cli()

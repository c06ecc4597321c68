from __future__ import annotations

from pathlib import Path

import click
from alembic import command
from alembic.config import Config as AlembicConfig
from flask import Flask


def _project_root() -> Path:
    return Path(__file__).resolve().parents[1]


def to_sqlalchemy_url(raw_db_path: str) -> str:
    raw = (raw_db_path or "").strip()
    if not raw:
        raise RuntimeError("DB_PATH is not set for migrations.")

    if raw.startswith("postgres://"):
        return "postgresql://" + raw[len("postgres://") :]
    if raw.startswith(("postgresql://", "postgresql+", "sqlite://", "sqlite+pysqlite://")):
        return raw

    sqlite_path = Path(raw).expanduser().resolve()
    return f"sqlite:///{sqlite_path.as_posix()}"


def build_alembic_config(app: Flask) -> AlembicConfig:
    root = _project_root()
    alembic_ini = root / "alembic.ini"
    if not alembic_ini.exists():
        raise RuntimeError("alembic.ini not found at the project root.")

    alembic_cfg = AlembicConfig(str(alembic_ini))
    alembic_cfg.set_main_option("script_location", str((root / "migrations").as_posix()))
    alembic_cfg.set_main_option("sqlalchemy.url", to_sqlalchemy_url(app.config["DB_PATH"]))
    alembic_cfg.attributes["configure_logger"] = False
    return alembic_cfg


def register_db_cli(app: Flask) -> None:
    @app.cli.group("db")
    def db_group() -> None:
        """Schema migrations (Alembic)."""

    @db_group.command("upgrade")
    @click.argument("revision", required=False, default="head")
    def db_upgrade(revision: str) -> None:
        command.upgrade(build_alembic_config(app), revision)
        click.echo(f"Upgraded to {revision}.")

    @db_group.command("downgrade")
    @click.argument("revision", required=False, default="-1")
    def db_downgrade(revision: str) -> None:
        command.downgrade(build_alembic_config(app), revision)
        click.echo(f"Downgraded to {revision}.")

    @db_group.command("current")
    def db_current() -> None:
        command.current(build_alembic_config(app), verbose=True)

    @app.cli.group("sync")
    def sync_group() -> None:
        """Operator shortcuts for the sync engine."""

    @sync_group.command("sweep")
    def sync_sweep() -> None:
        from netsuite_sync.contexts.sync.application.debounce import promote_due_changes
        from netsuite_sync.db import get_db

        summary = promote_due_changes(get_db())
        click.echo(f"Promoted {summary['promoted']} change(s), deferred {summary['deferred']}.")

    @sync_group.command("set")
    @click.argument("key")
    @click.argument("value")
    @click.option("--updated-by", default="cli", show_default=True)
    def sync_set(key: str, value: str, updated_by: str) -> None:
        from netsuite_sync.contexts.sync.infrastructure.config_store import set_sync_config
        from netsuite_sync.db import get_db

        db = get_db()
        entry = set_sync_config(db, key, value, updated_by=updated_by)
        db.commit()
        click.echo(f"{entry['config_key']} = {entry['config_value']}")

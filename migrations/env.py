from __future__ import annotations

from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

from netsuite_sync.config import Config
from netsuite_sync.db_migrations import to_sqlalchemy_url


config = context.config

# `flask db ...` keeps the app's JSON logging; only the bare alembic CLI installs the ini loggers.
if config.config_file_name is not None and config.attributes.get("configure_logger", True):
    fileConfig(config.config_file_name, disable_existing_loggers=False)

# Revisions apply raw SQL through netsuite_sync.db.apply_schema; there is no ORM metadata.
target_metadata = None


def _sync_database_url() -> str:
    configured = (config.get_main_option("sqlalchemy.url") or "").strip()
    return to_sqlalchemy_url(configured or Config.DB_PATH)


def run_migrations_offline() -> None:
    raise RuntimeError(
        "Offline (--sql) migrations are not supported: the sync schema is applied "
        "through a live connection so sync_config can be seeded."
    )


def run_migrations_online() -> None:
    engine_options = dict(config.get_section(config.config_ini_section) or {})
    engine_options["sqlalchemy.url"] = _sync_database_url()

    engine = engine_from_config(engine_options, prefix="sqlalchemy.", poolclass=pool.NullPool, future=True)
    with engine.connect() as connection:
        context.configure(connection=connection, target_metadata=target_metadata, compare_type=False)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()

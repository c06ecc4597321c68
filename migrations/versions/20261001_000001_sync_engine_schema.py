"""Sync engine schema: queue, pending changes, runs, dry-run logs, config and catalog mirror.

Revision ID: 20261001_000001
Revises:
Create Date: 2026-10-01 00:00:01
"""

from __future__ import annotations

from typing import Iterable, Sequence, Union

from alembic import op
from sqlalchemy.engine import Connection

from netsuite_sync.db import _convert_qmark_to_pg, apply_schema


# revision identifiers, used by Alembic.
revision: str = "20261001_000001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


class _ResultAdapter:
    def __init__(self, result):
        self._result = result

    @staticmethod
    def _map_row(row):
        if row is None:
            return None
        mapping = getattr(row, "_mapping", None)
        if mapping is not None:
            return dict(mapping)
        return row

    def fetchone(self):
        return self._map_row(self._result.fetchone())

    def fetchall(self):
        return [self._map_row(row) for row in self._result.fetchall()]


class _AlembicDbAdapter:
    def __init__(self, connection: Connection, backend: str):
        self._connection = connection
        self.backend = backend

    def execute(self, sql: str, params: Iterable | None = None):
        if params is None:
            return _ResultAdapter(self._connection.exec_driver_sql(sql))
        statement = _convert_qmark_to_pg(sql) if self.backend == "postgres" else sql
        return _ResultAdapter(self._connection.exec_driver_sql(statement, tuple(params)))


def _resolve_backend(connection: Connection) -> str:
    dialect = (connection.dialect.name or "").lower()
    if dialect.startswith("postgres"):
        return "postgres"
    return "sqlite"


_TABLES_IN_DROP_ORDER = (
    "sync_dry_run_logs",
    "item_sync_status",
    "sync_run_items",
    "sync_jobs",
    "sync_runs",
    "sync_pending_changes",
    "sync_config",
    "catalog_product_pricing",
    "catalog_product_content",
    "catalog_product_attributes",
    "catalog_product_vendors",
    "catalog_item_colors",
    "catalog_items",
    "catalog_products",
    "catalog_vendors",
)


def upgrade() -> None:
    connection = op.get_bind()
    apply_schema(_AlembicDbAdapter(connection, _resolve_backend(connection)))


def downgrade() -> None:
    for table in _TABLES_IN_DROP_ORDER:
        op.execute(f"DROP TABLE IF EXISTS {table}")

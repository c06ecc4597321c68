import sqlite3
from typing import Iterable, List

try:
    import psycopg2
    import psycopg2.extras
except ImportError:  # pragma: no cover - optional dependency for postgres
    psycopg2 = None

from flask import current_app, g


ACTIVE_JOB_STATUSES_SQL = "('PENDING', 'PROCESSING', 'FAILED_RETRYABLE')"


class Database:
    def __init__(self, backend: str, connection):
        self.backend = backend
        self._conn = connection
        errors: List[type] = [sqlite3.IntegrityError]
        if psycopg2 is not None:
            errors.append(psycopg2.IntegrityError)
        self.integrity_errors = tuple(errors)

    def execute(self, sql: str, params: Iterable | None = None):
        if self.backend == "postgres":
            cursor = self._conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            if params:
                sql = _convert_qmark_to_pg(sql)
                cursor.execute(sql, list(params))
            else:
                cursor.execute(sql)
            return cursor
        return self._conn.execute(sql, params or ())

    def commit(self):
        self._conn.commit()

    def rollback(self):
        self._conn.rollback()

    def close(self):
        self._conn.close()


def _convert_qmark_to_pg(sql: str) -> str:
    return sql.replace("?", "%s")


def connect_database(db_path: str) -> Database:
    if db_path.lower().startswith("postgres"):
        if psycopg2 is None:
            raise RuntimeError("psycopg2 is not installed.")
        conn = psycopg2.connect(db_path)
        conn.autocommit = True
        return Database("postgres", conn)

    conn = sqlite3.connect(db_path, timeout=30.0)
    conn.row_factory = sqlite3.Row
    return Database("sqlite", conn)


def get_db():
    if "db" not in g:
        g.db = connect_database(current_app.config["DB_PATH"])
    return g.db


def close_db(_error=None):
    db = g.pop("db", None)
    if db is not None:
        db.close()


def returned_id(cursor) -> int:
    row = cursor.fetchone()
    return int(row["id"] if isinstance(row, dict) else row[0])


def row_to_dict(row) -> dict:
    if row is None:
        return {}
    if isinstance(row, dict):
        return dict(row)
    keys = getattr(row, "keys", None)
    if callable(keys):
        return {key: row[key] for key in row.keys()}
    return dict(row)


def init_db():
    db = get_db()
    apply_schema(db)
    db.commit()


def apply_schema(db) -> None:
    types = _column_types(db)
    for statement in _SCHEMA_STATEMENTS:
        db.execute(statement.format(**types))
    _seed_sync_config(db)


def _column_types(db: Database) -> dict:
    if db.backend == "postgres":
        return {"pk": "BIGSERIAL PRIMARY KEY", "real": "DOUBLE PRECISION"}
    return {"pk": "INTEGER PRIMARY KEY AUTOINCREMENT", "real": "REAL"}


def _seed_sync_config(db: Database) -> None:
    from netsuite_sync.contexts.sync.infrastructure.config_store import DEFAULT_SYNC_CONFIG

    for key, value, description in DEFAULT_SYNC_CONFIG:
        db.execute(
            """
            INSERT INTO sync_config (config_key, config_value, description, updated_by)
            VALUES (?, ?, ?, 'schema')
            ON CONFLICT (config_key) DO NOTHING
            """,
            (key, value, description),
        )


def table_exists(db: Database, table: str) -> bool:
    if db.backend == "postgres":
        row = db.execute(
            """
            SELECT 1 FROM information_schema.tables
            WHERE table_schema = 'public' AND table_name = ?
            """,
            (table,),
        ).fetchone()
        return row is not None
    row = db.execute(
        "SELECT name FROM sqlite_master WHERE type = 'table' AND name = ?",
        (table,),
    ).fetchone()
    return row is not None


_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS sync_config (
        id {pk},
        config_key TEXT NOT NULL UNIQUE,
        config_value TEXT NOT NULL,
        description TEXT,
        updated_by TEXT,
        updated_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sync_pending_changes (
        id {pk},
        direction TEXT NOT NULL,
        entity_id TEXT NOT NULL,
        container_id TEXT,
        changed_fields TEXT NOT NULL DEFAULT '[]',
        snapshot TEXT,
        change_count INTEGER NOT NULL DEFAULT 1,
        first_change_at TEXT NOT NULL,
        last_change_at TEXT NOT NULL,
        UNIQUE (direction, entity_id)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS ix_sync_pending_changes_due
    ON sync_pending_changes (last_change_at)
    """,
    """
    CREATE TABLE IF NOT EXISTS sync_runs (
        id {pk},
        run_type TEXT NOT NULL,
        direction TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending'
            CHECK (status IN ('pending', 'running', 'completed', 'completed_with_errors', 'failed', 'cancelled')),
        total_items INTEGER NOT NULL DEFAULT 0,
        processed_items INTEGER NOT NULL DEFAULT 0,
        succeeded_items INTEGER NOT NULL DEFAULT 0,
        failed_items INTEGER NOT NULL DEFAULT 0,
        skipped_items INTEGER NOT NULL DEFAULT 0,
        triggered_by TEXT NOT NULL DEFAULT 'system',
        error_message TEXT,
        created_at TEXT NOT NULL,
        started_at TEXT,
        completed_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sync_jobs (
        id {pk},
        direction TEXT NOT NULL CHECK (direction IN ('outbound', 'inbound')),
        entity_id TEXT NOT NULL,
        container_id TEXT,
        event_type TEXT NOT NULL CHECK (event_type IN ('create', 'update', 'delete')),
        priority INTEGER NOT NULL DEFAULT 5,
        status TEXT NOT NULL DEFAULT 'PENDING'
            CHECK (status IN ('PENDING', 'PROCESSING', 'SUCCESS', 'SKIPPED', 'FAILED_RETRYABLE', 'FAILED_PERMANENT', 'CANCELLED')),
        attempt_count INTEGER NOT NULL DEFAULT 0,
        max_attempts INTEGER NOT NULL DEFAULT 3,
        event_kind TEXT NOT NULL,
        event_payload TEXT NOT NULL DEFAULT '{{}}',
        triggered_by TEXT NOT NULL DEFAULT 'system',
        run_id INTEGER REFERENCES sync_runs(id),
        next_attempt_at TEXT,
        created_at TEXT NOT NULL,
        started_at TEXT,
        completed_at TEXT,
        last_error_class TEXT,
        last_error_message TEXT,
        external_id TEXT
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS ux_sync_jobs_active_entity
    ON sync_jobs (direction, entity_id)
    WHERE status IN """
    + ACTIVE_JOB_STATUSES_SQL,
    """
    CREATE INDEX IF NOT EXISTS ix_sync_jobs_due
    ON sync_jobs (direction, status, priority, created_at)
    """,
    """
    CREATE TABLE IF NOT EXISTS sync_run_items (
        id {pk},
        run_id INTEGER NOT NULL REFERENCES sync_runs(id),
        job_id INTEGER REFERENCES sync_jobs(id),
        netsuite_item_id TEXT,
        opms_item_id TEXT,
        status TEXT NOT NULL DEFAULT 'pending'
            CHECK (status IN ('pending', 'processing', 'success', 'failed', 'skipped', 'cancelled')),
        sync_fields TEXT,
        pricing_before TEXT,
        pricing_after TEXT,
        error_message TEXT,
        retry_count INTEGER NOT NULL DEFAULT 0,
        max_retries INTEGER NOT NULL DEFAULT 3,
        processed_at TEXT
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS ix_sync_run_items_run ON sync_run_items (run_id, status)
    """,
    """
    CREATE INDEX IF NOT EXISTS ix_sync_run_items_job ON sync_run_items (job_id)
    """,
    """
    CREATE TABLE IF NOT EXISTS item_sync_status (
        id {pk},
        opms_item_id TEXT NOT NULL UNIQUE,
        item_code TEXT,
        netsuite_item_id TEXT,
        last_status TEXT NOT NULL,
        last_job_id INTEGER,
        last_error TEXT,
        last_synced_at TEXT,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sync_dry_run_logs (
        id {pk},
        opms_item_id TEXT NOT NULL,
        opms_item_code TEXT,
        opms_product_id TEXT,
        sync_type TEXT NOT NULL,
        sync_trigger TEXT,
        payload TEXT NOT NULL,
        payload_size_bytes INTEGER NOT NULL DEFAULT 0,
        field_count INTEGER NOT NULL DEFAULT 0,
        validation_status TEXT NOT NULL CHECK (validation_status IN ('passed', 'failed', 'partial')),
        validation_errors TEXT NOT NULL DEFAULT '[]',
        validation_warnings TEXT NOT NULL DEFAULT '[]',
        would_succeed INTEGER NOT NULL DEFAULT 0,
        simulated_errors TEXT NOT NULL DEFAULT '[]',
        simulated_response TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS ix_sync_dry_run_logs_item ON sync_dry_run_logs (opms_item_id, created_at)
    """,
    """
    CREATE TABLE IF NOT EXISTS catalog_vendors (
        id {pk},
        name TEXT NOT NULL,
        netsuite_vendor_id INTEGER,
        active INTEGER NOT NULL DEFAULT 1
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS catalog_products (
        id {pk},
        name TEXT NOT NULL,
        product_type TEXT NOT NULL DEFAULT 'R',
        vendor_product_name TEXT,
        width {real},
        vertical_repeat {real},
        horizontal_repeat {real},
        prop_65 TEXT,
        ab_2998_compliant TEXT,
        tariff_code TEXT,
        sales_description TEXT,
        purchase_description TEXT,
        archived INTEGER NOT NULL DEFAULT 0,
        updated_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS catalog_items (
        id {pk},
        product_id INTEGER NOT NULL REFERENCES catalog_products(id),
        code TEXT,
        vendor_color TEXT,
        archived INTEGER NOT NULL DEFAULT 0,
        updated_at TEXT
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS ux_catalog_items_code ON catalog_items (code)
    """,
    """
    CREATE TABLE IF NOT EXISTS catalog_item_colors (
        item_id INTEGER NOT NULL REFERENCES catalog_items(id),
        color_name TEXT NOT NULL,
        sort_order INTEGER NOT NULL DEFAULT 0,
        PRIMARY KEY (item_id, color_name)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS catalog_product_vendors (
        product_id INTEGER NOT NULL REFERENCES catalog_products(id),
        vendor_id INTEGER NOT NULL REFERENCES catalog_vendors(id),
        vendor_code TEXT,
        PRIMARY KEY (product_id, vendor_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS catalog_product_attributes (
        product_id INTEGER NOT NULL REFERENCES catalog_products(id),
        attribute_kind TEXT NOT NULL
            CHECK (attribute_kind IN ('finish', 'cleaning', 'origin', 'use', 'certification')),
        name TEXT NOT NULL,
        PRIMARY KEY (product_id, attribute_kind, name)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS catalog_product_content (
        product_id INTEGER PRIMARY KEY REFERENCES catalog_products(id),
        front_content TEXT,
        back_content TEXT,
        abrasion TEXT,
        firecodes TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS catalog_product_pricing (
        product_id INTEGER PRIMARY KEY REFERENCES catalog_products(id),
        p_res_cut {real},
        p_hosp_roll {real},
        cost_cut {real},
        cost_roll {real},
        updated_at TEXT
    )
    """,
)

from __future__ import annotations

import shutil
import sqlite3
import tempfile
import time
import uuid
from pathlib import Path
from typing import Any, Dict


_REPO_ROOT = Path(__file__).resolve().parents[2]
_TEMP_ROOT = Path(tempfile.gettempdir()).resolve()

# Overrides every sandboxed app gets: no background scheduler thread, plain-text logs.
SANDBOX_CONFIG: Dict[str, Any] = {
    "SYNC_SCHEDULER_ENABLED": False,
    "LOG_JSON": False,
    "NETSUITE_MODE": "simulator",
}


def assert_safe_temp_db_path(db_path: str) -> Path:
    """Refuse any sqlite file outside the temp dir or inside the checkout."""
    resolved = Path(db_path).resolve()
    if not resolved.is_relative_to(_TEMP_ROOT):
        raise ValueError(f"Temporary DB must live under the system temp dir: {resolved}")
    if resolved.is_relative_to(_REPO_ROOT):
        raise ValueError(f"Temporary DB cannot live inside the repository: {resolved}")
    return resolved


def open_sqlite_temp_connection(db_path: str) -> sqlite3.Connection:
    resolved = assert_safe_temp_db_path(db_path)
    resolved.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(resolved), timeout=30.0, isolation_level=None)
    conn.row_factory = sqlite3.Row
    return conn


class TempDbSandbox:
    """One throwaway sqlite database per test case, removed by ``cleanup``."""

    db_name = "netsuite_sync_test.db"

    def __init__(self, prefix: str = "netsuite_sync_tests") -> None:
        folder = _TEMP_ROOT / f"{prefix}_{uuid.uuid4().hex}"
        folder.mkdir(parents=True, exist_ok=False)
        self.temp_dir = str(folder)
        self.db_path = str(folder / self.db_name)
        open_sqlite_temp_connection(self.db_path).close()

    def __enter__(self) -> "TempDbSandbox":
        return self

    def __exit__(self, *exc_info) -> None:
        self.cleanup()

    def make_config(self, base_config, **overrides):
        attrs = {"DATABASE_DIR": self.temp_dir, "DB_PATH": self.db_path, **SANDBOX_CONFIG, **overrides}
        return type("TempConfig", (base_config,), attrs)

    def table_names(self) -> set:
        conn = open_sqlite_temp_connection(self.db_path)
        try:
            rows = conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'").fetchall()
            return {row["name"] for row in rows}
        finally:
            conn.close()

    def cleanup(self, attempts: int = 6) -> None:
        # Windows may hold the file briefly after close.
        folder = Path(self.temp_dir)
        for attempt in range(attempts):
            if not folder.exists():
                return
            try:
                shutil.rmtree(folder)
                return
            except OSError:
                time.sleep(0.05 * (2**attempt))

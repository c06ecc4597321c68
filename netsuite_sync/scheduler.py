from __future__ import annotations

import os
import threading
import time

from flask import Flask

from netsuite_sync.contexts.sync.application.debounce import promote_due_changes
from netsuite_sync.contexts.sync.application.delivery import process_sync_queue, summarize
from netsuite_sync.contexts.sync.domain.states import Direction
from netsuite_sync.db import close_db, get_db
from netsuite_sync.observability import bind_request_id


class SyncScheduler:
    """Background loop that promotes settled changes, optionally draining the queue too."""

    def __init__(self, app: Flask) -> None:
        self.app = app
        self.interval_seconds = _int_config(app, "SYNC_SCHEDULER_INTERVAL_SECONDS", 10, 1, 3600)
        self.min_backoff_seconds = _int_config(app, "SYNC_SCHEDULER_MIN_BACKOFF_SECONDS", 30, 5, 3600)
        self.max_backoff_seconds = _int_config(
            app,
            "SYNC_SCHEDULER_MAX_BACKOFF_SECONDS",
            600,
            self.min_backoff_seconds,
            86_400,
        )
        self.process_queue = bool(app.config.get("SYNC_SCHEDULER_PROCESS_QUEUE", False))

        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._failure_count = 0
        self._next_run_at: float | None = None

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._run_loop, name="sync-scheduler", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            if self._is_due():
                self.run_once()
            self._stop_event.wait(self.interval_seconds)

    def run_once(self) -> dict:
        with self.app.app_context(), bind_request_id("sync-scheduler"):
            db = get_db()
            try:
                result = {"debounce": promote_due_changes(db)}
                if self.process_queue:
                    result["worker"] = summarize(
                        [
                            (direction.value, process_sync_queue(db, direction=direction.value))
                            for direction in (Direction.INBOUND, Direction.OUTBOUND)
                        ]
                    )
                self._clear_backoff()
                return result
            except Exception:  # noqa: BLE001
                db.rollback()
                self._register_failure()
                self.app.logger.exception(
                    "sync_scheduler_tick_failed",
                    extra={"failure_count": self._failure_count},
                )
                return {"error": True}
            finally:
                close_db()

    def _is_due(self) -> bool:
        if self._next_run_at is None:
            return True
        return time.monotonic() >= self._next_run_at

    def _clear_backoff(self) -> None:
        self._failure_count = 0
        self._next_run_at = None

    def _register_failure(self) -> None:
        self._failure_count += 1
        backoff_seconds = min(
            self.max_backoff_seconds,
            self.min_backoff_seconds * (2 ** (self._failure_count - 1)),
        )
        self._next_run_at = time.monotonic() + backoff_seconds


def start_sync_scheduler(app: Flask) -> SyncScheduler | None:
    if not _should_start_scheduler(app):
        return None
    scheduler = SyncScheduler(app)
    scheduler.start()
    app.extensions["sync_scheduler"] = scheduler
    app.logger.info(
        "sync_scheduler_started",
        extra={"interval_seconds": scheduler.interval_seconds, "process_queue": scheduler.process_queue},
    )
    return scheduler


def _should_start_scheduler(app: Flask) -> bool:
    if not app.config.get("SYNC_SCHEDULER_ENABLED", False):
        return False
    if app.config.get("TESTING"):
        return False
    if app.debug:
        run_main = os.environ.get("WERKZEUG_RUN_MAIN")
        if run_main and run_main.lower() != "true":
            return False
    return True


def _int_config(app: Flask, key: str, default: int, min_value: int, max_value: int) -> int:
    try:
        value = int(app.config.get(key, default))
    except (TypeError, ValueError):
        value = default
    return max(min_value, min(value, max_value))

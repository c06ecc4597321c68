from __future__ import annotations

import argparse
import os
import time
import uuid

from netsuite_sync import create_app
from netsuite_sync.contexts.netsuite.interfaces.runtime import build_netsuite_gateway
from netsuite_sync.contexts.sync.application.debounce import promote_due_changes
from netsuite_sync.contexts.sync.application.delivery import process_sync_queue, summarize
from netsuite_sync.contexts.sync.domain.states import Direction
from netsuite_sync.db import close_db, get_db
from netsuite_sync.observability import bind_request_id


_DIRECTION_CHOICES = ("both", Direction.OUTBOUND.value, Direction.INBOUND.value)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Drain the OPMS / NetSuite sync queue.")
    parser.add_argument("--once", action="store_true", help="Process a single batch and exit.")
    parser.add_argument("--direction", choices=_DIRECTION_CHOICES, default="both", help="Queue direction to drain.")
    parser.add_argument("--limit", type=int, default=0, help="Maximum jobs per batch (defaults to batch_size).")
    parser.add_argument("--interval", type=int, default=0, help="Seconds to sleep between batches.")
    parser.add_argument("--skip-debounce", action="store_true", help="Do not promote pending changes first.")
    return parser


def _directions(value: str) -> list[str]:
    if value == "both":
        return [Direction.INBOUND.value, Direction.OUTBOUND.value]
    return [value]


def _run_once(app, directions: list[str], limit: int | None, gateway, *, debounce: bool = True) -> dict:
    with app.app_context():
        db = get_db()
        try:
            promoted = promote_due_changes(db)["promoted"] if debounce else 0
            results = [
                (
                    direction,
                    process_sync_queue(db, direction=direction, gateway=gateway, limit=limit),
                )
                for direction in directions
            ]
            summary = summarize(results)
            summary["promoted"] = promoted
            summary["paused"] = any(result.get("paused") for _direction, result in results)
            return summary
        finally:
            close_db()


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()

    os.environ.setdefault("SYNC_SCHEDULER_ENABLED", "false")
    os.environ.setdefault("DB_AUTO_INIT", "false")
    app = create_app()

    configured_interval = int(app.config.get("SYNC_WORKER_INTERVAL_SECONDS", 5) or 5)
    interval_seconds = max(1, int(args.interval or configured_interval))
    limit = max(1, int(args.limit)) if args.limit else None
    directions = _directions(args.direction)
    with app.app_context():
        gateway = build_netsuite_gateway()

    while True:
        run_request_id = f"worker-{uuid.uuid4().hex[:12]}"
        with bind_request_id(run_request_id):
            summary = _run_once(app, directions, limit, gateway, debounce=not args.skip_debounce)
            app.logger.info(
                "sync_worker_batch_completed",
                extra={
                    "request_id": run_request_id,
                    "directions": directions,
                    "promoted": summary.get("promoted", 0),
                    "processed": summary.get("processed", 0),
                    "succeeded": summary.get("succeeded", 0),
                    "skipped": summary.get("skipped", 0),
                    "requeued": summary.get("requeued", 0),
                    "failed": summary.get("failed", 0),
                    "reclaimed": summary.get("reclaimed", 0),
                    "paused": summary.get("paused", False),
                },
            )
        if args.once:
            break
        time.sleep(interval_seconds)

    return 0


if __name__ == "__main__":
    raise SystemExit(main())

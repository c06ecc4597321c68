import unittest
from unittest import mock

from netsuite_sync.contexts.sync.application.debounce import promote_due_changes
from netsuite_sync.contexts.sync.domain.events import ItemChangedEvent, ManualTriggerEvent
from netsuite_sync.contexts.sync.domain.states import JobStatus, Priority
from netsuite_sync.contexts.sync.infrastructure import sync_queue
from netsuite_sync.contexts.sync.infrastructure.change_log import get_change
from netsuite_sync.db import close_db, get_db
from netsuite_sync.errors import InvalidTransitionError, UserActionError, ValidationError
from tests.sync_utils import SyncAppTestCase, at


class SyncQueueTest(SyncAppTestCase):
    sandbox_prefix = "sync_queue"

    def _enqueue(self, entity_id: str, *, seconds: float = 0, **kwargs) -> sync_queue.EnqueueResult:
        kwargs.setdefault("event", ItemChangedEvent(changed_fields=("width",)))
        with self.app.app_context():
            db = get_db()
            result = sync_queue.enqueue(db, direction="outbound", entity_id=entity_id, now=at(seconds), **kwargs)
            db.commit()
            close_db()
        return result

    def _active_jobs(self, entity_id: str) -> list:
        return self.query_all(
            """
            SELECT id, status FROM sync_jobs
            WHERE entity_id = ? AND status IN ('PENDING', 'PROCESSING', 'FAILED_RETRYABLE')
            """,
            (entity_id,),
        )

    def test_second_request_reuses_active_job(self) -> None:
        first = self._enqueue("601")
        second = self._enqueue("601", seconds=5)

        self.assertEqual(first.outcome, sync_queue.OUTCOME_CREATED)
        self.assertEqual(second.outcome, sync_queue.OUTCOME_REUSED)
        self.assertEqual(second.job_id, first.job_id)
        self.assertEqual(len(self._active_jobs("601")), 1)

    def test_supersede_cancels_pending_job(self) -> None:
        first = self._enqueue("602")
        second = self._enqueue(
            "602",
            seconds=5,
            event=ManualTriggerEvent(requested_by="ops"),
            priority=Priority.HIGH,
            mode=sync_queue.MODE_SUPERSEDE,
        )

        self.assertEqual(second.outcome, sync_queue.OUTCOME_SUPERSEDED)
        self.assertNotEqual(second.job_id, first.job_id)
        old = self.query_one("SELECT status, last_error_class FROM sync_jobs WHERE id = ?", (first.job_id,))
        self.assertEqual(old["status"], "CANCELLED")
        self.assertEqual(old["last_error_class"], "superseded")
        self.assertEqual([job["id"] for job in self._active_jobs("602")], [second.job_id])

    def test_supersede_behind_processing_job_is_replayed_later(self) -> None:
        first = self._enqueue("603")
        with self.app.app_context():
            db = get_db()
            self.assertTrue(sync_queue.claim_job(db, first.job_id, now=at(1)))
            db.commit()
            close_db()

        deferred = self._enqueue(
            "603",
            seconds=2,
            event=ManualTriggerEvent(requested_by="ops", reason="fix width"),
            priority=Priority.HIGH,
            triggered_by="manual:ops",
            mode=sync_queue.MODE_SUPERSEDE,
        )
        self.assertEqual(deferred.outcome, sync_queue.OUTCOME_DEFERRED)
        self.assertEqual(deferred.job_id, first.job_id)
        self.assertEqual(self.query_one("SELECT status FROM sync_jobs WHERE id = ?", (first.job_id,))["status"], "PROCESSING")

        with self.app.app_context():
            db = get_db()
            change = get_change(db, "outbound", "603")
            self.assertEqual(change["snapshot"]["event_kind"], "manual_trigger")
            self.assertEqual(change["snapshot"]["priority"], int(Priority.HIGH))

            sync_queue.transition_job(
                db,
                first.job_id,
                from_status=JobStatus.PROCESSING,
                to_status=JobStatus.SUCCESS,
                completed_at="2026-03-02T12:00:03Z",
            )
            db.commit()
            summary = promote_due_changes(db, now=at(60))
            replayed = sync_queue.find_active_job(db, "outbound", "603")
            close_db()

        self.assertEqual(summary["promoted"], 1)
        self.assertEqual(replayed["event_kind"], "manual_trigger")
        self.assertEqual(replayed["priority"], int(Priority.HIGH))
        self.assertEqual(replayed["triggered_by"], "manual:ops")
        self.assertEqual(replayed["event_payload"]["reason"], "fix width")

    def test_racing_insert_resolves_to_surviving_job(self) -> None:
        survivor_result = self._enqueue("604")
        with self.app.app_context():
            db = get_db()
            survivor = sync_queue.get_job(db, survivor_result.job_id)
            with mock.patch(
                "netsuite_sync.contexts.sync.infrastructure.sync_queue.find_active_job",
                side_effect=[None, survivor],
            ):
                result = sync_queue.enqueue(
                    db,
                    direction="outbound",
                    entity_id="604",
                    event=ItemChangedEvent(changed_fields=("colors",)),
                    now=at(3),
                )
            db.commit()
            close_db()

        self.assertEqual(result.outcome, sync_queue.OUTCOME_REUSED)
        self.assertEqual(result.job_id, survivor_result.job_id)
        self.assertEqual(len(self._active_jobs("604")), 1)

    def test_due_jobs_are_ordered_by_priority_then_age(self) -> None:
        low = self._enqueue("611", seconds=0, priority=Priority.LOW)
        high = self._enqueue("612", seconds=1, priority="high")
        normal = self._enqueue("613", seconds=2)

        with self.app.app_context():
            db = get_db()
            jobs = sync_queue.select_due_jobs(db, direction="outbound", limit=10, now=at(10))
            close_db()
        self.assertEqual([job["id"] for job in jobs], [high.job_id, normal.job_id, low.job_id])

    def test_delayed_job_waits_for_next_attempt_at(self) -> None:
        result = self._enqueue("614")
        with self.app.app_context():
            db = get_db()
            db.execute("UPDATE sync_jobs SET next_attempt_at = ? WHERE id = ?", ("2026-03-02T12:01:40Z", result.job_id))
            db.commit()
            early = sync_queue.select_due_jobs(db, direction="outbound", limit=10, now=at(50))
            later = sync_queue.select_due_jobs(db, direction="outbound", limit=10, now=at(150))
            close_db()
        self.assertEqual(early, [])
        self.assertEqual([job["id"] for job in later], [result.job_id])

    def test_manual_only_selection_excludes_automatic_jobs(self) -> None:
        self._enqueue("615")
        manual = self._enqueue("616", event=ManualTriggerEvent(requested_by="ops"))
        with self.app.app_context():
            db = get_db()
            jobs = sync_queue.select_due_jobs(db, direction="outbound", limit=10, now=at(10), manual_only=True)
            close_db()
        self.assertEqual([job["id"] for job in jobs], [manual.job_id])

    def test_claim_is_exclusive(self) -> None:
        result = self._enqueue("617")
        with self.app.app_context():
            db = get_db()
            self.assertTrue(sync_queue.claim_job(db, result.job_id, now=at(1)))
            self.assertFalse(sync_queue.claim_job(db, result.job_id, now=at(1)))
            job = sync_queue.get_job(db, result.job_id)
            close_db()
        self.assertEqual(job["status"], "PROCESSING")
        self.assertEqual(job["attempt_count"], 1)
        self.assertEqual(job["started_at"], "2026-03-02T12:00:01Z")

    def test_cancel_only_applies_to_pending_jobs(self) -> None:
        pending = self._enqueue("621")
        response = self.client.post(f"/api/sync/jobs/{pending.job_id}/cancel")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()["status"], "CANCELLED")
        self.assertEqual(response.get_json()["failure"]["class"], "cancelled")

        processing = self._enqueue("622")
        with self.app.app_context():
            db = get_db()
            sync_queue.claim_job(db, processing.job_id)
            db.commit()
            with self.assertRaises(UserActionError) as raised:
                sync_queue.cancel_job(db, processing.job_id)
            close_db()
        self.assertEqual(raised.exception.http_status, 409)

        conflict = self.client.post(f"/api/sync/jobs/{processing.job_id}/cancel")
        self.assertEqual(conflict.status_code, 409)
        self.assertEqual(conflict.get_json()["error"], "job_not_cancellable")
        self.assertEqual(conflict.get_json()["status"], "PROCESSING")

    def test_transition_rejects_disallowed_moves(self) -> None:
        result = self._enqueue("623")
        with self.app.app_context():
            db = get_db()
            with self.assertRaises(InvalidTransitionError):
                sync_queue.transition_job(db, result.job_id, from_status="PENDING", to_status="SUCCESS")
            with self.assertRaises(ValueError):
                sync_queue.transition_job(
                    db,
                    result.job_id,
                    from_status="PENDING",
                    to_status="CANCELLED",
                    attempt_count=9,
                )
            self.assertFalse(
                sync_queue.transition_job(db, result.job_id, from_status="PROCESSING", to_status="SUCCESS")
            )
            close_db()

    def test_invalid_requests_are_rejected(self) -> None:
        with self.app.app_context():
            db = get_db()
            with self.assertRaises(ValidationError):
                sync_queue.enqueue(db, direction="outbound", entity_id="624", event=ItemChangedEvent(), event_type="upsert")
            with self.assertRaises(ValidationError):
                sync_queue.enqueue(db, direction="outbound", entity_id=" ", event=ItemChangedEvent())
            with self.assertRaises(ValidationError):
                sync_queue.enqueue(db, direction="outbound", entity_id="624", event=ItemChangedEvent(), mode="replace")
            with self.assertRaises(ValueError):
                sync_queue.enqueue(db, direction="sideways", entity_id="624", event=ItemChangedEvent())
            close_db()

    def test_directions_are_independent(self) -> None:
        outbound = self._enqueue("625")
        with self.app.app_context():
            db = get_db()
            inbound = sync_queue.enqueue(db, direction="inbound", entity_id="625", event=ItemChangedEvent())
            db.commit()
            close_db()
        self.assertEqual(inbound.outcome, sync_queue.OUTCOME_CREATED)
        self.assertNotEqual(inbound.job_id, outbound.job_id)


if __name__ == "__main__":
    unittest.main()

import random
import unittest

from netsuite_sync.contexts.netsuite.domain.gateway import NetSuiteGatewayError
from netsuite_sync.contexts.sync.application.retry import compute_backoff_seconds
from netsuite_sync.contexts.sync.domain.events import ItemChangedEvent
from netsuite_sync.contexts.sync.infrastructure.sync_queue import claim_job, enqueue
from netsuite_sync.db import close_db, get_db
from netsuite_sync.errors import ExternalRejectionError, TransientSyncError, classify_failure
from tests.sync_utils import RecordingGateway, SyncAppTestCase, at, run_worker


class BackoffScheduleTest(unittest.TestCase):
    def test_delay_doubles_per_attempt(self) -> None:
        delays = [compute_backoff_seconds(attempt, base=30, max_delay=3600) for attempt in (1, 2, 3, 4)]
        self.assertEqual(delays, [30.0, 60.0, 120.0, 240.0])

    def test_delay_is_capped(self) -> None:
        self.assertEqual(compute_backoff_seconds(12, base=30, max_delay=3600), 3600.0)
        self.assertEqual(compute_backoff_seconds(3, base=30, max_delay=100), 100.0)

    def test_jitter_stays_within_ratio(self) -> None:
        rng = random.Random(7)
        for attempt in range(1, 8):
            base_delay = compute_backoff_seconds(attempt, base=30, max_delay=3600)
            jittered = compute_backoff_seconds(attempt, base=30, max_delay=3600, jitter_ratio=0.2, rng=rng)
            self.assertGreaterEqual(jittered, base_delay)
            self.assertLessEqual(jittered, base_delay * 1.2)


class FailureClassificationTest(unittest.TestCase):
    def test_gateway_errors_map_to_failure_classes(self) -> None:
        self.assertIsInstance(classify_failure(NetSuiteGatewayError("slow", timeout=True)), TransientSyncError)
        self.assertIsInstance(classify_failure(NetSuiteGatewayError("busy", status=503)), TransientSyncError)
        self.assertIsInstance(classify_failure(NetSuiteGatewayError("throttled", status=429)), TransientSyncError)
        self.assertIsInstance(classify_failure(NetSuiteGatewayError("bad field", status=400)), ExternalRejectionError)
        self.assertEqual(classify_failure(NetSuiteGatewayError("gone", status=404)).failure_class, "not_found")
        self.assertIsInstance(classify_failure(ConnectionResetError("reset")), TransientSyncError)

    def test_status_code_in_message_is_honoured(self) -> None:
        failure = classify_failure(RuntimeError("NetSuite HTTP 422: invalid reference"))
        self.assertEqual(failure.failure_class, "external_rejection")
        self.assertFalse(failure.retryable)


class RetryWorkerTest(SyncAppTestCase):
    sandbox_prefix = "retry_backoff"

    def setUp(self) -> None:
        super().setUp()
        self.set_config(backoff_jitter_ratio=0)
        _product_id, item_id = self.seed_item()
        self.item_id = str(item_id)

    def _enqueue(self) -> int:
        with self.app.app_context():
            db = get_db()
            result = enqueue(db, direction="outbound", entity_id=self.item_id, event=ItemChangedEvent(), now=at(0))
            db.commit()
            close_db()
        return result.job_id

    def _job(self, job_id: int) -> dict:
        return self.query_one("SELECT * FROM sync_jobs WHERE id = ?", (job_id,))

    def test_transient_failures_retry_then_fail_permanently(self) -> None:
        job_id = self._enqueue()
        gateway = RecordingGateway(always_fail=NetSuiteGatewayError("timed out", timeout=True))

        first = run_worker(self.app, gateway=gateway, now=at(1))
        self.assertEqual(first["requeued"], 1)
        job = self._job(job_id)
        self.assertEqual(job["status"], "PENDING")
        self.assertEqual(job["attempt_count"], 1)
        self.assertEqual(job["next_attempt_at"], "2026-03-02T12:00:31Z")
        self.assertEqual(job["last_error_class"], "transient")

        self.assertEqual(run_worker(self.app, gateway=gateway, now=at(20))["processed"], 0)

        second = run_worker(self.app, gateway=gateway, now=at(40))
        self.assertEqual(second["requeued"], 1)
        self.assertEqual(self._job(job_id)["next_attempt_at"], "2026-03-02T12:01:40Z")

        third = run_worker(self.app, gateway=gateway, now=at(200))
        self.assertEqual(third["failed"], 1)
        job = self._job(job_id)
        self.assertEqual(job["status"], "FAILED_PERMANENT")
        self.assertEqual(job["attempt_count"], 3)

        run_worker(self.app, gateway=gateway, now=at(5000))
        self.assertEqual(gateway.call_count, 3)

        status = self.client.get(f"/api/sync/items/{self.item_id}/status").get_json()
        self.assertEqual(status["last_status"], "FAILED_PERMANENT")
        self.assertTrue(status["last_error"].startswith("transient:"))

    def test_lower_config_ceiling_wins_over_job_max_attempts(self) -> None:
        self.set_config(max_retries=1)
        job_id = self._enqueue()
        gateway = RecordingGateway(always_fail=NetSuiteGatewayError("timed out", timeout=True))

        summary = run_worker(self.app, gateway=gateway, now=at(1))
        self.assertEqual(summary["failed"], 1)
        self.assertEqual(self._job(job_id)["status"], "FAILED_PERMANENT")
        self.assertEqual(gateway.call_count, 1)

    def test_exhausted_job_is_not_delivered_again(self) -> None:
        job_id = self._enqueue()
        with self.app.app_context():
            db = get_db()
            db.execute("UPDATE sync_jobs SET attempt_count = 3 WHERE id = ?", (job_id,))
            db.commit()
            close_db()
        gateway = RecordingGateway()

        summary = run_worker(self.app, gateway=gateway, now=at(1))
        self.assertEqual(summary["failed"], 1)
        self.assertEqual(gateway.call_count, 0)
        job = self._job(job_id)
        self.assertEqual(job["status"], "FAILED_PERMANENT")
        self.assertIn("retry ceiling", job["last_error_message"])

    def test_rejection_is_not_retried(self) -> None:
        job_id = self._enqueue()
        gateway = RecordingGateway(
            failures=[NetSuiteGatewayError("NetSuite HTTP 400: INVALID_FLD_VALUE", status=400, definitive=True)]
        )

        summary = run_worker(self.app, gateway=gateway, now=at(1))
        self.assertEqual(summary["failed"], 1)
        job = self._job(job_id)
        self.assertEqual(job["status"], "FAILED_PERMANENT")
        self.assertEqual(job["last_error_class"], "external_rejection")
        self.assertEqual(job["attempt_count"], 1)
        self.assertEqual(gateway.call_count, 1)

    def test_recovers_after_transient_failure(self) -> None:
        job_id = self._enqueue()
        gateway = RecordingGateway(failures=[NetSuiteGatewayError("NetSuite HTTP 503", status=503)])

        run_worker(self.app, gateway=gateway, now=at(1))
        summary = run_worker(self.app, gateway=gateway, now=at(60))
        self.assertEqual(summary["succeeded"], 1)
        job = self._job(job_id)
        self.assertEqual(job["status"], "SUCCESS")
        self.assertEqual(job["attempt_count"], 2)
        self.assertIsNone(job["last_error_class"])

    def test_stale_processing_job_is_reclaimed(self) -> None:
        job_id = self._enqueue()
        with self.app.app_context():
            db = get_db()
            claim_job(db, job_id, now=at(0))
            db.commit()
            close_db()
        gateway = RecordingGateway()

        early = run_worker(self.app, gateway=gateway, now=at(300))
        self.assertEqual(early["reclaimed"], 0)
        self.assertEqual(self._job(job_id)["status"], "PROCESSING")

        summary = run_worker(self.app, gateway=gateway, now=at(700))
        self.assertEqual(summary["reclaimed"], 1)
        self.assertEqual(summary["succeeded"], 1)
        job = self._job(job_id)
        self.assertEqual(job["status"], "SUCCESS")
        self.assertEqual(job["attempt_count"], 2)

    def test_stale_job_on_its_last_attempt_fails_permanently(self) -> None:
        job_id = self._enqueue()
        with self.app.app_context():
            db = get_db()
            db.execute("UPDATE sync_jobs SET attempt_count = 2 WHERE id = ?", (job_id,))
            claim_job(db, job_id, now=at(0))
            db.commit()
            close_db()

        summary = run_worker(self.app, gateway=RecordingGateway(), now=at(700))
        self.assertEqual(summary["reclaimed"], 1)
        job = self._job(job_id)
        self.assertEqual(job["status"], "FAILED_PERMANENT")
        self.assertEqual(job["last_error_class"], "stale_processing")


if __name__ == "__main__":
    unittest.main()

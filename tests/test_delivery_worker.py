import unittest
from unittest import mock

from netsuite_sync.contexts.netsuite.domain.gateway import DeliveryResult
from netsuite_sync.contexts.netsuite.infrastructure.circuit_breaker import get_netsuite_circuit_breaker
from netsuite_sync.contexts.sync.application.admin_service import SyncAdminService
from netsuite_sync.contexts.sync.application.debounce import promote_due_changes
from netsuite_sync.contexts.sync.domain.contracts import ManualTriggerInput
from netsuite_sync.contexts.sync.domain.events import ItemChangedEvent
from netsuite_sync.contexts.sync.domain.states import JobStatus
from netsuite_sync.contexts.sync.infrastructure import sync_queue
from netsuite_sync.contexts.sync.infrastructure.sync_queue import enqueue
from netsuite_sync.db import close_db, get_db
from tests.sync_utils import RecordingGateway, SyncAppTestCase, at, run_worker, seed_item, seed_product


class DeliveryWorkerTest(SyncAppTestCase):
    sandbox_prefix = "delivery_worker"

    def _enqueue_change(self, entity_id, *, seconds: float = 0) -> int:
        with self.app.app_context():
            db = get_db()
            result = enqueue(
                db,
                direction="outbound",
                entity_id=str(entity_id),
                event=ItemChangedEvent(changed_fields=("width",)),
                now=at(seconds),
            )
            db.commit()
            close_db()
        return result.job_id

    def _trigger(self, item_id, **body) -> dict:
        response = self.client.post(f"/api/sync/items/{item_id}/trigger", json={"requested_by": "ops", **body})
        self.assertEqual(response.status_code, 202, msg=response.get_data(as_text=True))
        return response.get_json()

    def _job(self, job_id: int) -> dict:
        return self.query_one("SELECT * FROM sync_jobs WHERE id = ?", (job_id,))

    def test_first_sync_creates_then_later_syncs_update(self) -> None:
        _product_id, item_id = self.seed_item(colors=("Navy", "amber", "Blue"))
        first_job = self._enqueue_change(item_id)
        gateway = RecordingGateway()

        summary = run_worker(self.app, gateway=gateway, now=at(1))
        self.assertEqual(summary["succeeded"], 1)
        self.assertEqual(summary["circuit_state"], "closed")
        operation, payload = gateway.calls[0]
        self.assertEqual(operation, "create")
        self.assertEqual(payload["itemId"], "1234-5678")
        self.assertEqual(payload["displayname"], "Tahoe: amber, Blue, Navy")
        job = self._job(first_job)
        self.assertEqual(job["status"], "SUCCESS")
        self.assertEqual(job["external_id"], "NS-1234-5678")

        status = self.client.get(f"/api/sync/items/{item_id}/status").get_json()
        self.assertEqual(status["netsuite_item_id"], "NS-1234-5678")
        self.assertEqual(status["item_code"], "1234-5678")
        self.assertEqual(status["last_status"], "SUCCESS")

        self._enqueue_change(item_id, seconds=10)
        run_worker(self.app, gateway=gateway, now=at(11))
        self.assertEqual([call[0] for call in gateway.calls], ["create", "update"])

    def test_item_already_in_netsuite_is_updated_not_created(self) -> None:
        _product_id, item_id = self.seed_item()
        self._enqueue_change(item_id)

        class ExistingItemGateway(RecordingGateway):
            def search_item(self, item_code):
                return DeliveryResult(external_id=f"NS-{item_code}")

        gateway = ExistingItemGateway()
        summary = run_worker(self.app, gateway=gateway, now=at(1))

        self.assertEqual(summary["succeeded"], 1)
        self.assertEqual([operation for operation, _payload in gateway.calls], ["update"])

    def test_each_netsuite_call_takes_its_own_rate_limit_slot(self) -> None:
        _product_id, item_id = self.seed_item()
        self._enqueue_change(item_id)
        log = []

        class LoggingLimiter:
            def acquire(self) -> float:
                log.append("acquire")
                return 0.0

        class LoggingGateway(RecordingGateway):
            def search_item(self, item_code):
                log.append("search")
                return super().search_item(item_code)

            def upsert_item(self, payload, *, operation):
                log.append(operation)
                return super().upsert_item(payload, operation=operation)

        gateway = LoggingGateway()
        with mock.patch(
            "netsuite_sync.contexts.sync.application.delivery.dispatch_rate_limiter",
            return_value=LoggingLimiter(),
        ):
            summary = run_worker(self.app, gateway=gateway, now=at(1))

        self.assertEqual(summary["succeeded"], 1)
        self.assertEqual(gateway.searches, ["1234-5678"])
        self.assertEqual(gateway.network_call_count, 2)
        self.assertEqual(log, ["acquire", "search", "acquire", "create"])

    def test_digital_item_is_skipped_without_a_call(self) -> None:
        _product_id, item_id = self.seed_item(code="DIGITAL-0042", product={"product_type": "D"})
        job_id = self._enqueue_change(item_id)
        gateway = RecordingGateway()

        summary = run_worker(self.app, gateway=gateway, now=at(1))
        self.assertEqual(summary["skipped"], 1)
        self.assertEqual(gateway.call_count, 0)
        job = self._job(job_id)
        self.assertEqual(job["status"], "SKIPPED")
        self.assertEqual(job["last_error_class"], "skipped")
        self.assertEqual(job["last_error_message"], "digital_item")
        self.assertEqual(
            self.query_one("SELECT last_status FROM item_sync_status WHERE opms_item_id = ?", (str(item_id),))["last_status"],
            "SKIPPED",
        )

    def test_archived_and_malformed_codes_are_skipped_for_automatic_jobs(self) -> None:
        _p1, archived_id = self.seed_item(code="1111-2222", archived=True)
        _p2, odd_code_id = self.seed_item(code="TAHOE-BLUE")
        archived_job = self._enqueue_change(archived_id)
        odd_job = self._enqueue_change(odd_code_id)
        gateway = RecordingGateway()

        run_worker(self.app, gateway=gateway, now=at(1))
        self.assertEqual(gateway.call_count, 0)
        self.assertEqual(self._job(archived_job)["last_error_message"], "archived_item")
        self.assertEqual(self._job(odd_job)["last_error_message"], "invalid_item_code")

    def test_manual_trigger_may_push_non_standard_code(self) -> None:
        _product_id, item_id = self.seed_item(code="TAHOE-BLUE")
        queued = self._trigger(item_id)
        gateway = RecordingGateway()

        run_worker(self.app, gateway=gateway, now=at(1))
        self.assertEqual(self._job(queued["job_id"])["status"], "SUCCESS")
        self.assertEqual(gateway.calls[0][1]["itemId"], "TAHOE-BLUE")

    def test_manual_trigger_without_live_sync_is_skipped(self) -> None:
        _product_id, item_id = self.seed_item()
        queued = self._trigger(item_id, live_sync=False)
        self.assertEqual(queued["outcome"], "created")
        gateway = RecordingGateway()

        run_worker(self.app, gateway=gateway, now=at(1))
        job = self._job(queued["job_id"])
        self.assertEqual(job["status"], "SKIPPED")
        self.assertEqual(job["last_error_message"], "live_sync_disabled")
        self.assertEqual(job["priority"], 1)
        self.assertEqual(job["triggered_by"], "manual:ops")
        self.assertEqual(gateway.call_count, 0)

    def test_missing_item_fails_permanently(self) -> None:
        job_id = self._enqueue_change("987654")
        gateway = RecordingGateway()

        summary = run_worker(self.app, gateway=gateway, now=at(1))
        self.assertEqual(summary["failed"], 1)
        job = self._job(job_id)
        self.assertEqual(job["status"], "FAILED_PERMANENT")
        self.assertEqual(job["last_error_class"], "not_found")
        self.assertEqual(job["attempt_count"], 1)
        self.assertEqual(gateway.call_count, 0)

    def test_disabled_sync_only_runs_manual_jobs(self) -> None:
        _p1, automatic_item = self.seed_item(code="1000-0001")
        _p2, manual_item = self.seed_item(code="1000-0002")
        automatic_job = self._enqueue_change(automatic_item)
        manual_job = self._trigger(manual_item)["job_id"]
        self.client.post("/api/sync/disable", json={"requested_by": "ops"})
        gateway = RecordingGateway()

        summary = run_worker(self.app, gateway=gateway, now=at(1))
        self.assertEqual(summary["processed"], 1)
        self.assertEqual(self._job(manual_job)["status"], "SUCCESS")
        self.assertEqual(self._job(automatic_job)["status"], "PENDING")
        self.assertEqual(self._job(automatic_job)["attempt_count"], 0)

    def test_paused_worker_claims_nothing(self) -> None:
        _product_id, item_id = self.seed_item()
        job_id = self._enqueue_change(item_id)
        self.client.post("/api/sync/pause")
        gateway = RecordingGateway()

        summary = run_worker(self.app, gateway=gateway, now=at(1))
        self.assertTrue(summary["paused"])
        self.assertEqual(summary["processed"], 0)
        self.assertEqual(self._job(job_id)["status"], "PENDING")

        self.client.post("/api/sync/resume")
        self.assertEqual(run_worker(self.app, gateway=gateway, now=at(2))["succeeded"], 1)

    def test_open_circuit_leaves_jobs_queued(self) -> None:
        _product_id, item_id = self.seed_item()
        job_id = self._enqueue_change(item_id)
        breaker = get_netsuite_circuit_breaker()
        for _ in range(5):
            breaker.record_failure()
        gateway = RecordingGateway()

        summary = run_worker(self.app, gateway=gateway, now=at(1))
        self.assertEqual(summary["circuit_state"], "open")
        self.assertEqual(summary["processed"], 0)
        self.assertEqual(gateway.call_count, 0)
        job = self._job(job_id)
        self.assertEqual(job["status"], "PENDING")
        self.assertEqual(job["attempt_count"], 0)

    def test_delete_uses_item_code(self) -> None:
        _product_id, item_id = self.seed_item()
        queued = self._trigger(item_id, event_type="delete")
        gateway = RecordingGateway()

        run_worker(self.app, gateway=gateway, now=at(1))
        self.assertEqual(gateway.calls, [("delete", {"itemId": "1234-5678"})])
        self.assertEqual(self._job(queued["job_id"])["status"], "SUCCESS")

    def test_batch_respects_limit_and_inflight_setting(self) -> None:
        self.set_config(max_inflight=2)
        with self.app.app_context():
            db = get_db()
            product_id = seed_product(db)
            item_ids = [seed_item(db, product_id, code=f"2000-000{index}") for index in range(4)]
            db.commit()
            close_db()
        for item_id in item_ids:
            self._enqueue_change(item_id)
        gateway = RecordingGateway()

        first = run_worker(self.app, gateway=gateway, now=at(1), limit=3)
        self.assertEqual(first["succeeded"], 3)
        second = run_worker(self.app, gateway=gateway, now=at(2), limit=3)
        self.assertEqual(second["succeeded"], 1)
        self.assertEqual(sorted(call[1]["itemId"] for call in gateway.calls), [f"2000-000{i}" for i in range(4)])

    def test_product_trigger_tracks_run_to_completion(self) -> None:
        with self.app.app_context():
            db = get_db()
            product_id = seed_product(db, name="Solano")
            seed_item(db, product_id, code="3000-0001", colors=("Sand",))
            seed_item(db, product_id, code="3000-0002", colors=("Slate",))
            seed_item(db, product_id, code="3000-0003", archived=True)
            db.commit()
            close_db()

        response = self.client.post(f"/api/sync/products/{product_id}/trigger", json={"requested_by": "ops"})
        self.assertEqual(response.status_code, 202)
        run_id = response.get_json()["run_id"]
        self.assertEqual(len(response.get_json()["jobs"]), 2)

        gateway = RecordingGateway()
        run_worker(self.app, gateway=gateway, now=at(1))
        self.assertEqual(gateway.call_count, 2)
        self.assertEqual(len(gateway.searches), 2)

        run = self.client.get(f"/api/sync/runs/{run_id}").get_json()
        self.assertEqual(run["run_type"], "manual_product")
        self.assertEqual(run["status"], "completed")
        self.assertEqual(run["succeeded_items"], 2)
        self.assertEqual({item["status"] for item in run["items"]}, {"success"})
        self.assertEqual(run["items"][0]["sync_fields"]["custitem_opms_parent_product_name"], "Solano")

    def test_product_trigger_behind_running_job_tracks_the_replayed_job(self) -> None:
        product_id, item_id = self.seed_item()
        service = SyncAdminService()
        with self.app.app_context():
            db = get_db()
            first = service.trigger_product(db, str(product_id), ManualTriggerInput(requested_by="ops"), now=at(0)).payload
            first_job = first["jobs"][0]["job_id"]
            self.assertTrue(sync_queue.claim_job(db, first_job, now=at(1)))
            db.commit()
            second = service.trigger_product(db, str(product_id), ManualTriggerInput(requested_by="ops"), now=at(2)).payload
            close_db()

        self.assertEqual(second["jobs"][0]["outcome"], "deferred")
        waiting = self.query_one("SELECT job_id, status FROM sync_run_items WHERE run_id = ?", (second["run_id"],))
        self.assertIsNone(waiting["job_id"])
        self.assertEqual(waiting["status"], "pending")

        with self.app.app_context():
            db = get_db()
            sync_queue.transition_job(
                db,
                first_job,
                from_status=JobStatus.PROCESSING,
                to_status=JobStatus.SUCCESS,
                completed_at="2026-03-02T12:00:03Z",
            )
            db.commit()
            self.assertEqual(promote_due_changes(db, now=at(60))["promoted"], 1)
            close_db()

        replayed = self.query_one(
            "SELECT id, run_id FROM sync_jobs WHERE entity_id = ? AND status = 'PENDING'",
            (str(item_id),),
        )
        self.assertNotEqual(replayed["id"], first_job)
        self.assertEqual(replayed["run_id"], second["run_id"])
        self.assertEqual(
            self.query_one("SELECT job_id FROM sync_run_items WHERE run_id = ?", (second["run_id"],))["job_id"],
            replayed["id"],
        )
        self.assertEqual(
            self.query_one("SELECT job_id FROM sync_run_items WHERE run_id = ?", (first["run_id"],))["job_id"],
            first_job,
        )

        run_worker(self.app, gateway=RecordingGateway(), now=at(61))
        run = self.client.get(f"/api/sync/runs/{second['run_id']}").get_json()
        self.assertEqual(run["status"], "completed")
        self.assertEqual(run["items"][0]["status"], "success")

    def test_superseded_run_item_is_not_counted_as_failure(self) -> None:
        with self.app.app_context():
            db = get_db()
            product_id = seed_product(db, name="Solano")
            first_item = seed_item(db, product_id, code="3100-0001")
            seed_item(db, product_id, code="3100-0002")
            db.commit()
            close_db()

        run_id = self.client.post(f"/api/sync/products/{product_id}/trigger", json={}).get_json()["run_id"]
        self.assertEqual(self._trigger(first_item)["outcome"], "superseded")
        run_worker(self.app, gateway=RecordingGateway(), now=at(1))

        run = self.client.get(f"/api/sync/runs/{run_id}").get_json()
        self.assertEqual([item["status"] for item in run["items"]], ["cancelled", "success"])
        self.assertEqual(run["status"], "completed")
        self.assertEqual(run["processed_items"], 2)
        self.assertEqual(run["failed_items"], 0)

    def test_trigger_for_unknown_item_is_404(self) -> None:
        response = self.client.post("/api/sync/items/424242/trigger", json={})
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.get_json()["error"], "not_found")


if __name__ == "__main__":
    unittest.main()

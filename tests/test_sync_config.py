import unittest

from netsuite_sync.contexts.sync.infrastructure.config_store import (
    load_sync_settings,
    set_sync_config,
)
from netsuite_sync.db import close_db, get_db
from netsuite_sync.errors import SyncConfigurationError, ValidationError
from tests.sync_utils import SyncAppTestCase


class SyncConfigTest(SyncAppTestCase):
    sandbox_prefix = "sync_config"

    def _settings(self):
        with self.app.app_context():
            db = get_db()
            try:
                return load_sync_settings(db)
            finally:
                close_db()

    def test_schema_seeds_defaults(self) -> None:
        settings = self._settings()
        self.assertTrue(settings.sync_enabled)
        self.assertFalse(settings.sync_paused)
        self.assertEqual(settings.batch_size, 25)
        self.assertEqual(settings.max_retries, 3)
        self.assertEqual(settings.backoff_base_seconds, 30.0)
        self.assertEqual(settings.backoff_max_seconds, 3600.0)
        self.assertEqual(settings.debounce_seconds, 30.0)
        self.assertEqual(settings.stale_processing_seconds, 600.0)
        # setUp raises the dispatch rate for fast tests.
        self.assertEqual(settings.rate_limit_per_second, 200.0)

    def test_missing_key_is_an_error_not_a_default(self) -> None:
        with self.app.app_context():
            db = get_db()
            db.execute("DELETE FROM sync_config WHERE config_key = 'max_retries'")
            db.commit()
            with self.assertRaises(SyncConfigurationError) as raised:
                load_sync_settings(db)
            close_db()
        self.assertIn("max_retries", raised.exception.details)

        response = self.client.get("/api/sync/status")
        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.get_json()["error"], "sync_config_missing")

    def test_unparsable_stored_value_is_an_error(self) -> None:
        with self.app.app_context():
            db = get_db()
            db.execute("UPDATE sync_config SET config_value = 'lots' WHERE config_key = 'batch_size'")
            db.commit()
            with self.assertRaises(SyncConfigurationError) as raised:
                load_sync_settings(db)
            close_db()
        self.assertEqual(raised.exception.code, "sync_config_invalid")

    def test_writes_are_validated(self) -> None:
        with self.app.app_context():
            db = get_db()
            with self.assertRaises(ValidationError):
                set_sync_config(db, "batch_size", 0)
            with self.assertRaises(ValidationError):
                set_sync_config(db, "backoff_jitter_ratio", "1.5")
            with self.assertRaises(ValidationError):
                set_sync_config(db, "sync_enabled", "maybe")
            with self.assertRaises(ValidationError):
                set_sync_config(db, "workers", 3)
            close_db()

    def test_backoff_bounds_must_be_consistent(self) -> None:
        response = self.client.put("/api/sync/config", json={"values": {"backoff_max_seconds": 10}})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json()["error"], "sync_config_invalid")
        self.assertEqual(self._settings().backoff_max_seconds, 3600.0)

    def test_rejected_combination_writes_nothing(self) -> None:
        response = self.client.put(
            "/api/sync/config",
            json={"values": {"batch_size": 10, "backoff_max_seconds": 10}},
        )
        self.assertEqual(response.status_code, 400)
        settings = self._settings()
        self.assertEqual(settings.batch_size, 25)
        self.assertEqual(settings.backoff_max_seconds, 3600.0)
        row = self.query_one("SELECT updated_by FROM sync_config WHERE config_key = 'batch_size'")
        self.assertNotEqual(row["updated_by"], "operator")

    def test_keys_are_validated_together_not_one_by_one(self) -> None:
        response = self.client.put(
            "/api/sync/config",
            json={"values": {"backoff_base_seconds": 5000, "backoff_max_seconds": 7200}},
        )
        self.assertEqual(response.status_code, 200, msg=response.get_data(as_text=True))
        settings = self._settings()
        self.assertEqual(settings.backoff_base_seconds, 5000.0)
        self.assertEqual(settings.backoff_max_seconds, 7200.0)

    def test_missing_key_can_be_restored(self) -> None:
        with self.app.app_context():
            db = get_db()
            db.execute("DELETE FROM sync_config WHERE config_key = 'max_retries'")
            set_sync_config(db, "max_retries", 4)
            db.commit()
            close_db()
        self.assertEqual(self._settings().max_retries, 4)

    def test_config_endpoints(self) -> None:
        listing = self.client.get("/api/sync/config").get_json()
        keys = [entry["config_key"] for entry in listing["items"]]
        self.assertIn("debounce_seconds", keys)
        self.assertEqual(keys, sorted(keys))

        response = self.client.patch(
            "/api/sync/config",
            json={"values": {"batch_size": 10, "debounce_seconds": "5"}, "requested_by": "ops"},
        )
        self.assertEqual(response.status_code, 200)
        settings = self._settings()
        self.assertEqual(settings.batch_size, 10)
        self.assertEqual(settings.debounce_seconds, 5.0)
        row = self.query_one("SELECT updated_by FROM sync_config WHERE config_key = 'batch_size'")
        self.assertEqual(row["updated_by"], "ops")

        self.assertEqual(self.client.put("/api/sync/config", json={"values": {"batch_size": "x"}}).status_code, 400)
        self.assertEqual(self.client.put("/api/sync/config", json={"values": []}).status_code, 400)
        self.assertEqual(self.client.put("/api/sync/config", json={"values": {}}).status_code, 400)

    def test_switches_are_read_fresh(self) -> None:
        self.assertEqual(self.client.post("/api/sync/disable").get_json(), {"sync_enabled": False})
        self.assertFalse(self._settings().sync_enabled)
        self.client.post("/api/sync/pause", headers={"X-Requested-By": "night-shift"})
        self.assertTrue(self._settings().sync_paused)
        row = self.query_one("SELECT updated_by FROM sync_config WHERE config_key = 'sync_paused'")
        self.assertEqual(row["updated_by"], "night-shift")

        self.client.post("/api/sync/enable")
        self.client.post("/api/sync/resume")
        status = self.client.get("/api/sync/status").get_json()
        self.assertTrue(status["settings"]["sync_enabled"])
        self.assertFalse(status["settings"]["sync_paused"])

    def test_cli_set_validates_and_persists(self) -> None:
        runner = self.app.test_cli_runner()
        result = runner.invoke(args=["sync", "set", "max_inflight", "8", "--updated-by", "cli-test"])
        self.assertEqual(result.exit_code, 0, msg=result.output)
        self.assertIn("max_inflight = 8", result.output)
        self.assertEqual(self._settings().max_inflight, 8)

        bad = runner.invoke(args=["sync", "set", "max_inflight", "0"])
        self.assertNotEqual(bad.exit_code, 0)


if __name__ == "__main__":
    unittest.main()

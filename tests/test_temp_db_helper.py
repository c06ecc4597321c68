import os
import unittest

from netsuite_sync.config import Config
from tests.helpers.temp_db import TempDbSandbox, assert_safe_temp_db_path, open_sqlite_temp_connection


class TempDbSandboxTest(unittest.TestCase):
    def test_sandbox_lifecycle(self) -> None:
        with TempDbSandbox(prefix="temp_db_sanity") as sandbox:
            self.assertTrue(os.path.isdir(sandbox.temp_dir))
            self.assertTrue(sandbox.db_path.endswith("netsuite_sync_test.db"))

            conn = open_sqlite_temp_connection(sandbox.db_path)
            try:
                conn.execute("CREATE TABLE scratch (id INTEGER PRIMARY KEY)")
            finally:
                conn.close()
            self.assertEqual(sandbox.table_names(), {"scratch"})

        self.assertFalse(os.path.exists(sandbox.temp_dir))

    def test_config_points_at_the_sandbox(self) -> None:
        with TempDbSandbox(prefix="temp_db_config") as sandbox:
            TempConfig = sandbox.make_config(Config, TESTING=True, LOG_JSON=True)
            self.assertEqual(TempConfig.DB_PATH, sandbox.db_path)
            self.assertFalse(TempConfig.SYNC_SCHEDULER_ENABLED)
            self.assertTrue(TempConfig.LOG_JSON)
            self.assertTrue(issubclass(TempConfig, Config))

    def test_workspace_paths_are_refused(self) -> None:
        with self.assertRaises(ValueError):
            assert_safe_temp_db_path(os.path.join(os.getcwd(), "netsuite_sync_test.db"))


if __name__ == "__main__":
    unittest.main()

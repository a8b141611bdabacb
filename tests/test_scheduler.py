import tempfile
import unittest
from pathlib import Path
from unittest import mock

from yogacal.config_manager import ConfigManager
from yogacal.scheduler import SyncScheduler
from yogacal.sync_engine import SweepSummary


class SyncSchedulerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.config_manager = ConfigManager(Path(self.temp_dir.name) / "config.yaml")
        self.engine = mock.Mock()
        self.engine.sync_due_feeds.return_value = SweepSummary(synced=0, failed=0, results=[], errors=[])
        self.scheduler = SyncScheduler(self.engine, self.config_manager)

    def tearDown(self) -> None:
        self.scheduler.stop()
        self.temp_dir.cleanup()

    def test_sweep_runs_due_feeds(self) -> None:
        self.scheduler.run_sweep("scheduled")
        self.engine.sync_due_feeds.assert_called_once_with(trigger="scheduled")

    def test_disabled_sync_skips_sweep(self) -> None:
        self.config_manager.update({"sync": {"enabled": False}})
        self.scheduler.run_sweep("scheduled")
        self.engine.sync_due_feeds.assert_not_called()

    def test_sweep_failure_is_logged(self) -> None:
        self.engine.sync_due_feeds.side_effect = RuntimeError("database is locked")
        with self.assertLogs("yogacal.scheduler", level="ERROR"):
            self.scheduler.run_sweep("manual")

    def test_start_runs_startup_sweep_and_stops(self) -> None:
        self.scheduler.start()
        self.assertTrue(self.scheduler.running)
        self.scheduler.stop()
        self.assertFalse(self.scheduler.running)
        self.engine.sync_due_feeds.assert_any_call(trigger="startup")


if __name__ == "__main__":
    unittest.main()

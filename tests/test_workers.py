from __future__ import annotations

import tempfile
import threading
import unittest
from datetime import datetime, timedelta
from pathlib import Path
from unittest import mock

from leadflow.config import AbandonmentPolicy, AppConfig, BatchSourceConfig, IncidentPolicy
from leadflow.db import SqliteDatabase
from leadflow.engine import OutreachEngine
from leadflow.errors import BatchSourceError, StoreUnavailableError
from leadflow.incident import IncidentEngine
from leadflow.logging_utils import JsonlLogger
from leadflow.time_utils import UTC
from leadflow.transport import SimulatedTransport
from leadflow.workers import PeriodicWorker

SECRET = "test-secret-that-is-long-enough-for-fernet"
T0 = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


class IncidentTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = Path(self._tmp.name)
        self.now = T0
        self.logger = JsonlLogger(self.tmp / "events.jsonl")
        self.engine = IncidentEngine(
            SqliteDatabase(self.tmp / "state.db"),
            IncidentPolicy(window_min=15, l1=2, l2=3, l3=4),
            self.tmp / "incidents",
            clock=lambda: self.now,
        )

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_fingerprint_ignores_volatile_numbers(self) -> None:
        a = IncidentEngine.fingerprint("BatchSourceError", "timeout after 20s on file 17", "worker:batch-poller")
        b = IncidentEngine.fingerprint("BatchSourceError", "timeout after 25s on file 3", "worker:batch-poller")
        c = IncidentEngine.fingerprint("BatchSourceError", "timeout after 20s on file 17", "worker:dispatcher")
        self.assertEqual(a, b)
        self.assertNotEqual(a, c)

    def test_levels_escalate_and_report_is_written(self) -> None:
        exc = BatchSourceError("sftp connect to ops@example.com failed")
        levels = [self.engine.record_failure("worker:batch-poller", exc, self.logger).level for _ in range(4)]
        self.assertEqual(levels, ["L0", "L1", "L2", "L3"])

        reports = sorted((self.tmp / "incidents").glob("incident-*.md"))
        self.assertEqual(len(reports), 1)
        text = reports[0].read_text(encoding="utf-8")
        self.assertIn("- level: L3", text)
        self.assertNotIn("ops@example.com", text)
        self.assertEqual(len(self.logger.read_events("incident_report_generated")), 2)

    def test_window_expires_old_occurrences(self) -> None:
        exc = StoreUnavailableError("database is locked")
        self.engine.record_failure("worker:dispatcher", exc, self.logger)
        self.engine.record_failure("worker:dispatcher", exc, self.logger)
        self.now = T0 + timedelta(minutes=30)
        state = self.engine.record_failure("worker:dispatcher", exc, self.logger)
        self.assertEqual((state.count_window, state.level), (1, "L0"))


class PeriodicWorkerTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = Path(self._tmp.name)
        self.logger = JsonlLogger(self.tmp / "events.jsonl")
        self.incidents = IncidentEngine(SqliteDatabase(self.tmp / "state.db"), IncidentPolicy(), self.tmp / "incidents")

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_failed_tick_is_logged_and_registered(self) -> None:
        def boom() -> None:
            raise BatchSourceError("listing /inbound timed out")

        worker = PeriodicWorker("batch-poller", 60, boom, self.logger, self.incidents)
        self.assertFalse(worker.run_once())
        self.assertEqual((worker.ticks, worker.failures), (1, 1))

        failed = self.logger.read_events("worker_tick_failed")[0]["payload"]
        self.assertEqual(failed["error_type"], "BatchSourceError")
        self.assertTrue(failed["retryable"])
        self.assertEqual(self.logger.read_events("incident_registered")[0]["payload"]["stage"], "worker:batch-poller")

    def test_incident_store_failure_does_not_escape(self) -> None:
        worker = PeriodicWorker("dispatcher", 60, mock.Mock(side_effect=RuntimeError("bad")), self.logger, self.incidents)
        with mock.patch.object(self.incidents, "record_failure", side_effect=StoreUnavailableError("disk full")):
            self.assertFalse(worker.run_once())
        self.assertEqual(len(self.logger.read_events("incident_register_failed")), 1)

    def test_worker_keeps_running_after_failures_and_stops(self) -> None:
        calls = []
        ticked = threading.Event()

        def flaky() -> None:
            calls.append(1)
            if len(calls) >= 3:
                ticked.set()
            if len(calls) == 1:
                raise StoreUnavailableError("database is locked")

        worker = PeriodicWorker("dispatcher", 0.01, flaky, self.logger)
        worker.start()
        self.assertTrue(worker.running)
        self.assertTrue(ticked.wait(5))
        worker.stop()
        self.assertFalse(worker.running)
        self.assertGreaterEqual(worker.ticks, 3)
        self.assertEqual(worker.failures, 1)


class EngineWiringTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = Path(self._tmp.name)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def config(self, **overrides) -> AppConfig:
        base = {
            "log_dir": self.tmp / "logs",
            "state_db": self.tmp / "state.db",
            "encryption_key": SECRET,
            "templates_file": "",
            "batch_source": BatchSourceConfig(host="", user="", password="", local_dir=""),
            "abandonment": AbandonmentPolicy(threshold_minutes=30, sequence_name=""),
        }
        base.update(overrides)
        return AppConfig(**base)

    def test_poller_only_exists_when_a_source_is_configured(self) -> None:
        bare = OutreachEngine(self.config(), transport=SimulatedTransport())
        self.assertIsNone(bare.poller)
        self.assertEqual([w.name for w in bare.workers], ["dispatcher"])

        drop = self.tmp / "drop"
        drop.mkdir()
        local = OutreachEngine(
            self.config(batch_source=BatchSourceConfig(host="", user="", password="", local_dir=str(drop))),
            transport=SimulatedTransport(),
        )
        self.assertIsNotNone(local.poller)
        self.assertEqual([w.name for w in local.workers], ["dispatcher", "batch-poller"])

    def test_missing_provider_falls_back_to_simulation(self) -> None:
        with mock.patch.dict("os.environ", {"RESEND_API_KEY": "", "RESEND_FROM_EMAIL": ""}):
            engine = OutreachEngine(self.config())
        self.assertIsInstance(engine.transport, SimulatedTransport)
        self.assertEqual(len(engine.logger.read_events("transport_not_configured")), 1)

    def test_ingestion_triggers_abandonment_enrollment(self) -> None:
        now = [T0]
        engine = OutreachEngine(
            self.config(abandonment=AbandonmentPolicy(threshold_minutes=30, sequence_name="abandoned-application")),
            transport=SimulatedTransport(),
            clock=lambda: now[0],
        )
        sequence = engine.scheduler.create_sequence("abandoned-application", "", [{"templateId": "initial-followup"}])
        engine.ingestion.ingest("first.csv", [{"email": "ana@example.com"}])
        now[0] = T0 + timedelta(hours=1)
        engine.ingestion.ingest("second.csv", [{"email": "bo@example.com"}])

        executions = engine.sequence_store.list_executions(sequence.id)
        self.assertEqual(len(executions), 1)
        self.assertEqual(engine.leads.get_lead(executions[0].lead_id).email, "ana@example.com")
        self.assertEqual(engine.dispatcher.tick().sent, 1)

    def test_start_and_stop(self) -> None:
        engine = OutreachEngine(self.config(), transport=SimulatedTransport())
        engine.start()
        try:
            self.assertTrue(all(w.running for w in engine.workers))
        finally:
            engine.stop()
        self.assertFalse(any(w.running for w in engine.workers))
        self.assertEqual(len(engine.logger.read_events("engine_stopped")), 1)


if __name__ == "__main__":
    unittest.main()

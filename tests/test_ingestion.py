from __future__ import annotations

import tempfile
import threading
import unittest
from datetime import datetime, timedelta
from pathlib import Path
from unittest import mock

from leadflow.batch_source import DirectoryBatchSource, parse_delimited
from leadflow.config import IngestionPolicy
from leadflow.contact_cipher import ContactCipher
from leadflow.db import SqliteDatabase
from leadflow.errors import ArtifactAbortedError, PayloadValidationError, StoreUnavailableError
from leadflow.ingestion import ABANDONMENT_EVALUATION_REQUESTED, IngestionService, RowError, payload_artifact_id
from leadflow.lead_store import LeadStore
from leadflow.ledger import STATUS_PROCESSED, STATUS_PROCESSED_WITH_ERRORS, IdempotencyLedger
from leadflow.logging_utils import JsonlLogger
from leadflow.poller import BatchIngestionPoller
from leadflow.time_utils import UTC

SECRET = "test-secret-that-is-long-enough-for-fernet"


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


def good(i: int) -> dict:
    return {"Email": f"lead{i}@example.com", "First Name": f"Lead{i}", "Phone": "555-010-%04d" % i}


class IngestionTestCase(unittest.TestCase):
    max_row_errors = 100

    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = Path(self._tmp.name)
        self.clock = FakeClock(datetime(2026, 3, 2, 9, 0, tzinfo=UTC))
        self.db = SqliteDatabase(self.tmp / "state.db")
        self.logger = JsonlLogger(self.tmp / "events.jsonl")
        self.ledger = IdempotencyLedger(self.db)
        self.leads = LeadStore(self.db, ContactCipher(SECRET), clock=self.clock)
        self.policy = IngestionPolicy(max_row_errors=self.max_row_errors, hash_emails=True, default_country_code="1")
        self.service = IngestionService(self.ledger, self.leads, self.policy, self.logger, clock=self.clock)

    def tearDown(self) -> None:
        self._tmp.cleanup()


class IngestTests(IngestionTestCase):
    def test_second_ingest_of_same_artifact_is_a_noop(self) -> None:
        rows = [good(1), good(2)]
        first = self.service.ingest("drop_0302.csv", rows, source="sftp")
        second = self.service.ingest("drop_0302.csv", rows, source="sftp")

        self.assertEqual(first.accepted, 2)
        self.assertFalse(first.duplicate)
        self.assertTrue(second.duplicate)
        self.assertEqual(second.accepted, 0)
        self.assertEqual(self.leads.count_leads(), 2)
        self.assertEqual(len(self.ledger.list_recent()), 1)
        self.assertEqual(len(self.logger.read_events("artifact_skipped")), 1)

    def test_bad_row_is_isolated(self) -> None:
        rows = [good(1), good(2), {"Email": "broken"}, good(3), good(4)]
        result = self.service.ingest("mixed.csv", rows)

        self.assertEqual(result.accepted, 4)
        self.assertEqual(result.rejected, 1)
        self.assertEqual(result.row_errors, [RowError(index=2, reason="invalid email format")])
        self.assertFalse(result.aborted)
        artifact = self.ledger.get("mixed.csv")
        self.assertEqual(artifact.status, STATUS_PROCESSED_WITH_ERRORS)
        self.assertEqual((artifact.row_count, artifact.error_count), (5, 1))

    def test_clean_artifact_is_recorded_as_processed(self) -> None:
        self.service.ingest("clean.csv", [good(1)], size=120)
        artifact = self.ledger.get("clean.csv")
        self.assertEqual(artifact.status, STATUS_PROCESSED)
        self.assertEqual(artifact.size, 120)
        self.assertFalse(artifact.aborted)

    def test_repeat_sighting_merges_into_one_lead(self) -> None:
        self.service.ingest("a.csv", [{"email": "ana@example.com", "first_name": "Ana"}])
        self.clock.advance(minutes=5)
        self.service.ingest("b.csv", [{"email": "ANA@example.com", "phone": "5550101234", "campaign": "spring"}])

        self.assertEqual(self.leads.count_leads(), 1)
        lead = self.leads.list_leads()[0]
        self.assertEqual(lead.first_name, "Ana")
        self.assertEqual(lead.phone, "+15550101234")
        self.assertEqual(lead.attributes, {"campaign": "spring"})
        self.assertEqual(lead.last_activity_at, self.clock.now)

    def test_subscribers_receive_evaluation_request(self) -> None:
        seen = []
        self.service.subscribe(lambda event, payload: seen.append((event, payload["artifact_id"])))
        self.service.ingest("x.csv", [good(1)])
        self.assertEqual(seen, [(ABANDONMENT_EVALUATION_REQUESTED, "x.csv")])

    def test_store_failure_propagates_without_ledger_row(self) -> None:
        with mock.patch.object(self.leads, "upsert_visitor", side_effect=StoreUnavailableError("database is locked")):
            with self.assertRaises(StoreUnavailableError) as ctx:
                self.service.ingest("retry-me.csv", [good(1)])
        self.assertTrue(ctx.exception.retryable)
        self.assertFalse(self.ledger.is_processed("retry-me.csv"))

        result = self.service.ingest("retry-me.csv", [good(1)])
        self.assertEqual(result.accepted, 1)

    def test_concurrent_submissions_of_one_artifact_ingest_once(self) -> None:
        rows = [good(i) for i in range(20)]
        results = []

        def run() -> None:
            results.append(self.service.ingest("race.csv", rows))

        threads = [threading.Thread(target=run) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(30)

        self.assertEqual(sum(1 for r in results if not r.duplicate), 1)
        self.assertEqual(sum(1 for r in results if r.duplicate), 3)
        self.assertEqual(self.leads.count_leads(), 20)


class AbortCeilingTests(IngestionTestCase):
    max_row_errors = 2

    def test_artifact_aborts_once_errors_exceed_ceiling(self) -> None:
        rows = [good(1), {"email": "x"}, {"email": "y"}, {"email": "z"}, good(2), good(3)]
        result = self.service.ingest("noisy.csv", rows)

        self.assertTrue(result.aborted)
        self.assertEqual(result.error, "too many row errors")
        self.assertEqual(result.accepted, 1)
        self.assertEqual(result.rejected, 3)
        self.assertEqual(self.leads.count_leads(), 1)
        artifact = self.ledger.get("noisy.csv")
        self.assertTrue(artifact.aborted)
        self.assertEqual(artifact.status, STATUS_PROCESSED_WITH_ERRORS)
        with self.assertRaises(ArtifactAbortedError):
            result.raise_for_abort()

    def test_strict_file_ingest_raises_after_recording_the_abort(self) -> None:
        path = self.tmp / "noisy-export.csv"
        path.write_text("email,firstName\nana@example.com,Ana\nx,X\ny,Y\nz,Z\n", encoding="utf-8")

        with self.assertRaises(ArtifactAbortedError) as ctx:
            self.service.ingest_file(path, strict=True)

        self.assertEqual((ctx.exception.artifact_id, ctx.exception.error_count), ("noisy-export.csv", 3))
        self.assertTrue(self.ledger.get("noisy-export.csv").aborted)
        self.assertEqual(self.leads.count_leads(), 1)

    def test_lenient_file_ingest_returns_the_aborted_result(self) -> None:
        path = self.tmp / "noisy-export.csv"
        path.write_text("email\nx\ny\nz\n", encoding="utf-8")
        result = self.service.ingest_file(path)
        self.assertTrue(result.aborted)
        self.assertEqual(result.rejected, 3)

    def test_errors_at_ceiling_do_not_abort(self) -> None:
        result = self.service.ingest("edge.csv", [{"email": "x"}, {"email": "y"}, good(1)])
        self.assertFalse(result.aborted)
        self.assertEqual(result.accepted, 1)


class PayloadTests(IngestionTestCase):
    def test_payload_reports_per_lead_outcomes(self) -> None:
        payload = {
            "source": "website",
            "leads": [
                {"email": "ana@example.com", "firstName": "Ana", "vehicleInterest": "SUV"},
                {"email": "nope", "firstName": "Bo"},
            ],
        }
        result = self.service.submit_payload(payload)

        self.assertEqual((result.total_processed, result.success_count, result.failure_count), (2, 1, 1))
        self.assertTrue(result.results[0]["success"])
        self.assertEqual(result.results[1], {"index": 1, "email": "nope", "success": False, "error": "invalid email format"})
        self.assertEqual(result.artifact_id, payload_artifact_id(payload))
        self.assertEqual(self.leads.list_leads()[0].vehicle_interest, "SUV")

    def test_identical_payload_is_deduplicated(self) -> None:
        payload = {"leads": [{"email": "ana@example.com"}]}
        self.service.submit_payload(payload)
        again = self.service.submit_payload({"leads": [{"email": "ana@example.com"}]})
        self.assertTrue(again.duplicate)
        self.assertEqual(again.to_dict()["totalProcessed"], 0)

    def test_structurally_invalid_payload_is_rejected(self) -> None:
        for bad in ([], {"leads": "ana@example.com"}, {"source": 3, "leads": []}):
            with self.assertRaises(PayloadValidationError):
                self.service.submit_payload(bad)


class FileAndPollerTests(IngestionTestCase):
    def test_parse_delimited_sniffs_delimiter_and_keeps_strings(self) -> None:
        rows = parse_delimited(b"email;zip;phone\nana@example.com;02134;5550101234\n\nbo@example.com;00501;\n")
        self.assertEqual(
            rows,
            [
                {"email": "ana@example.com", "zip": "02134", "phone": "5550101234"},
                {"email": "bo@example.com", "zip": "00501", "phone": ""},
            ],
        )

    def test_single_column_file_parses(self) -> None:
        self.assertEqual(parse_delimited(b"email\nana@example.com\n"), [{"email": "ana@example.com"}])

    def test_ingest_file_uses_file_name_as_artifact(self) -> None:
        path = self.tmp / "manual_import.csv"
        path.write_text("Email,First Name\nana@example.com,Ana\nbo@example.com,Bo\n", encoding="utf-8")
        result = self.service.ingest_file(path)
        self.assertEqual(result.accepted, 2)
        self.assertTrue(self.ledger.is_processed("manual_import.csv"))

    def test_poll_skips_known_and_unparseable_files(self) -> None:
        drop = self.tmp / "drop"
        drop.mkdir()
        (drop / "a.csv").write_text("email\nana@example.com\n", encoding="utf-8")
        (drop / "b.csv").write_bytes(b"\xff\xfe\xfa not utf8")
        (drop / "empty.csv").write_bytes(b"")
        (drop / "ignored.txt").write_text("email\nx@example.com\n", encoding="utf-8")
        poller = BatchIngestionPoller(
            lambda: DirectoryBatchSource(drop, "*.csv"), self.service, self.ledger, self.logger, "batch_dir"
        )

        first = poller.poll_once()
        self.assertEqual(first.listed, 3)
        self.assertEqual(first.ingested, 1)
        self.assertEqual(first.parse_failures, 1)
        self.assertEqual(first.skipped_empty, 1)
        self.assertFalse(self.ledger.is_processed("b.csv"))

        second = poller.poll_once()
        self.assertEqual(second.ingested, 0)
        self.assertEqual(second.skipped_known, 1)
        self.assertEqual(len(self.logger.read_events("file_parse_failed")), 2)

    def test_poll_is_not_reentrant(self) -> None:
        drop = self.tmp / "drop"
        drop.mkdir()
        poller = BatchIngestionPoller(lambda: DirectoryBatchSource(drop), self.service, self.ledger, self.logger)
        poller._running.acquire()
        try:
            self.assertTrue(poller.poll_once().skipped_busy)
        finally:
            poller._running.release()
        self.assertFalse(poller.poll_once().skipped_busy)

    def test_health_check_reports_missing_directory(self) -> None:
        poller = BatchIngestionPoller(
            lambda: DirectoryBatchSource(self.tmp / "missing"), self.service, self.ledger, self.logger
        )
        status = poller.health_check()
        self.assertFalse(status["ok"])
        self.assertTrue(status["retryable"])


if __name__ == "__main__":
    unittest.main()

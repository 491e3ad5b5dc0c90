import signal
import unittest
from datetime import date
from unittest.mock import Mock

from rpa_app.adapters.source import SourceExtraction
from rpa_app.extensions import db
from rpa_app.models.models import ExtractionRun, Visit
from rpa_app.pipeline.engine import BatchOrchestrator, extraction_fields, listing_dates
from rpa_app.pipeline.run_tracker import INTERRUPTED_MESSAGE, RunTracker
from rpa_app.store.records import BacklogSelector, SqlRecordStore, UnscopedSelectorError
from rpa_app.utils.error_handler import AuthenticationError, NavigationError, NotFoundError
from tests.helpers import add_visit, make_app, make_config


def good_extraction(item) -> SourceExtraction:
    return SourceExtraction(
        nric="S1234567D",
        diagnosis="Acute upper respiratory infection, MC 2 days",
        line_items=["Panadol 500mg"],
        treatment="Panadol 500mg",
        mc_days=2,
        sources={"diagnosis": "note_attribute", "nric": "patient_biodata"},
    )


class OrchestratorTestCase(unittest.TestCase):
    def setUp(self):
        self.app = make_app()
        self.ctx = self.app.app_context()
        self.ctx.push()
        self.store = SqlRecordStore(db.session)
        self.tracker = RunTracker(self.store, install_handlers=False)
        self.source = Mock()
        self.source.extract.side_effect = good_extraction
        self.orchestrator = BatchOrchestrator(self.store, self.source, self.tracker, make_config(),
                                              sleep=lambda _: None)

    def tearDown(self):
        self.tracker.reset()
        db.session.remove()
        db.drop_all()
        self.ctx.pop()


class TestRunBatch(OrchestratorTestCase):
    def test_completes_pending_items(self):
        visits = [add_visit() for _ in range(3)]
        summary = self.orchestrator.run_batch(BacklogSelector(date_from=date(2025, 1, 1), date_to=date(2025, 1, 31)))

        self.assertEqual(summary.status, "completed")
        self.assertEqual((summary.total, summary.succeeded, summary.failed), (3, 3, 0))
        for visit in visits:
            saved = self.store.get_by_id(visit.id)
            self.assertEqual(saved.extraction_status, "completed")
            self.assertEqual(saved.extraction_attempts, 1)
            self.assertEqual(saved.nric, "S1234567D")
            self.assertEqual(saved.mc_days, 2)
            self.assertEqual(saved.mc_start_date, saved.visit_date)
        run = self.store.get_run(summary.run_id)
        self.assertEqual((run.status, run.completed_count), ("completed", 3))

    def test_rerun_is_idempotent(self):
        add_visit()
        selector = BacklogSelector(all_pending=True)
        self.orchestrator.run_batch(selector)
        self.source.extract.reset_mock()

        summary = self.orchestrator.run_batch(selector)
        self.assertEqual(summary.status, "completed")
        self.assertEqual(summary.total, 0)
        self.source.extract.assert_not_called()

    def test_item_error_does_not_stop_run(self):
        first, second = add_visit(), add_visit()
        self.source.extract.side_effect = [NotFoundError("patient not found"), good_extraction(second)]

        summary = self.orchestrator.run_batch(BacklogSelector(all_pending=True))

        self.assertEqual(summary.status, "completed")
        self.assertEqual((summary.succeeded, summary.failed), (1, 1))
        failed = self.store.get_by_id(first.id)
        self.assertEqual(failed.extraction_status, "failed")
        self.assertEqual(failed.extraction_attempts, 1)
        self.assertEqual(failed.extraction_error, "patient not found")
        self.assertEqual(failed.extraction_metadata["last_error"]["error_type"], "NotFoundError")

    def test_source_missing_is_completed(self):
        visit = add_visit()
        self.source.extract.side_effect = None
        self.source.extract.return_value = SourceExtraction(
            nric="S1234567D", source_missing=["diagnosis", "line_items"],
            rejections={"diagnosis": [{"tier": "note_scored", "reason": "too_short", "sample": "ok"}]},
        )
        self.orchestrator.run_batch(BacklogSelector(all_pending=True))

        saved = self.store.get_by_id(visit.id)
        self.assertEqual(saved.extraction_status, "completed")
        self.assertIsNone(saved.diagnosis_description)
        self.assertEqual(saved.source_missing, ["diagnosis", "line_items"])

    def test_login_failure_is_run_fatal(self):
        visit = add_visit()
        add_visit()
        self.source.ensure_logged_in.side_effect = AuthenticationError("bad password")

        summary = self.orchestrator.run_batch(BacklogSelector(all_pending=True))

        self.assertEqual(summary.status, "failed")
        self.assertEqual(summary.error_message, "bad password")
        self.source.extract.assert_not_called()
        saved = self.store.get_by_id(visit.id)
        self.assertEqual((saved.extraction_status, saved.extraction_attempts), ("pending", 0))
        self.assertEqual(self.store.get_run(summary.run_id).status, "failed")

    def test_repeated_login_failures_keep_retry_budget(self):
        visit = add_visit()
        self.source.extract.side_effect = AuthenticationError("session expired")
        selector = BacklogSelector(all_pending=True, retry_failed=True, max_attempts=3)

        for _ in range(3):
            self.assertEqual(self.orchestrator.run_batch(selector).status, "failed")
        saved = self.store.get_by_id(visit.id)
        self.assertEqual((saved.extraction_status, saved.extraction_attempts), ("pending", 0))

        self.source.extract.side_effect = good_extraction
        summary = self.orchestrator.run_batch(selector)
        self.assertEqual((summary.status, summary.succeeded), ("completed", 1))
        self.assertEqual(self.store.get_by_id(visit.id).extraction_attempts, 1)

    def test_interrupt_inside_item_leaves_it_pending(self):
        first, second = add_visit(), add_visit()

        def extract(item):
            self.tracker.handle_signal(signal.SIGTERM)
            self.tracker.check_interrupted()

        self.source.extract.side_effect = extract
        summary = self.orchestrator.run_batch(BacklogSelector(all_pending=True))

        self.assertEqual(summary.status, "failed")
        self.assertEqual(self.source.extract.call_count, 1)
        self.assertEqual(self.store.get_run(summary.run_id).error_message, INTERRUPTED_MESSAGE)
        for visit in (first, second):
            saved = self.store.get_by_id(visit.id)
            self.assertEqual((saved.extraction_status, saved.extraction_attempts), ("pending", 0))

    def test_after_item_hook_runs_per_visit(self):
        add_visit()
        add_visit()
        tidy = Mock()
        orchestrator = BatchOrchestrator(self.store, self.source, self.tracker, make_config(),
                                         sleep=lambda _: None, after_item=tidy)
        orchestrator.run_batch(BacklogSelector(all_pending=True))
        self.assertEqual(tidy.call_count, 2)

    def test_run_logs_pending_count(self):
        add_visit()
        with self.assertLogs(self.app.logger, level="INFO") as logs:
            summary = self.orchestrator.run_batch(BacklogSelector(all_pending=True))
        self.assertTrue(any(f"Extraction run {summary.run_id}: 1 pending visits" in line for line in logs.output))

    def test_unscoped_selector_refused_before_run(self):
        with self.assertRaises(UnscopedSelectorError):
            self.orchestrator.run_batch(BacklogSelector())
        self.assertEqual(ExtractionRun.query.count(), 0)

    def test_signal_mid_run(self):
        visits = [add_visit() for _ in range(5)]
        calls = []

        def extract(item):
            calls.append(item.id)
            if len(calls) == 2:
                self.tracker.handle_signal(signal.SIGTERM)
            return good_extraction(item)

        self.source.extract.side_effect = extract
        summary = self.orchestrator.run_batch(BacklogSelector(all_pending=True))

        self.assertEqual(summary.status, "failed")
        self.assertEqual(summary.succeeded, 2)
        run = self.store.get_run(summary.run_id)
        self.assertEqual((run.status, run.completed_count, run.error_message), ("failed", 2, INTERRUPTED_MESSAGE))
        statuses = [self.store.get_by_id(v.id).extraction_status for v in visits]
        self.assertEqual(statuses, ["completed", "completed", "pending", "pending", "pending"])


class TestBasicBacklog(OrchestratorTestCase):
    def test_listing_ingested_per_date(self):
        def list_visits(day):
            return [{"visit_record_no": "1", "visit_date": day, "patient_name": "LIM BEE", "pay_type": "AIA"}]

        self.source.list_visits.side_effect = list_visits
        summary = self.orchestrator.run_batch(
            BacklogSelector(backlog="basic", date_from=date(2025, 1, 1), date_to=date(2025, 1, 3))
        )

        self.assertEqual(self.source.list_visits.call_count, 3)
        self.assertEqual(Visit.query.count(), 3)
        self.assertEqual(summary.metadata["listing"], {"created": 3, "updated": 0, "unchanged": 0})
        self.assertEqual(summary.succeeded, 3)

    def test_listing_failure_is_run_fatal(self):
        self.source.list_visits.side_effect = NavigationError("queue unreachable", run_fatal=True)
        summary = self.orchestrator.run_batch(BacklogSelector(backlog="basic", date_from=date(2025, 1, 1)))
        self.assertEqual(summary.status, "failed")
        self.source.extract.assert_not_called()


class TestHelpers(unittest.TestCase):
    def test_listing_dates(self):
        self.assertEqual(listing_dates(BacklogSelector(date_from=date(2025, 1, 30), date_to=date(2025, 2, 1))),
                         [date(2025, 1, 30), date(2025, 1, 31), date(2025, 2, 1)])
        self.assertEqual(listing_dates(BacklogSelector(date_to=date(2025, 1, 5))), [date(2025, 1, 5)])
        self.assertEqual(listing_dates(BacklogSelector(all_pending=True)), [])

    def test_extraction_fields_keep_existing_values(self):
        item = Mock(extraction_metadata={"last_error": {"x": 1}, "charge_type": "first"},
                    mc_start_date=None, visit_date=date(2025, 1, 1))
        fields = extraction_fields(item, SourceExtraction(source_missing=["nric"]), 2)
        self.assertNotIn("nric", fields)
        self.assertEqual(fields["extraction_attempts"], 2)
        self.assertEqual(fields["extraction_metadata"]["charge_type"], "first")
        self.assertNotIn("last_error", fields["extraction_metadata"])

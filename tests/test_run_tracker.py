import signal
import unittest

from rpa_app.extensions import db
from rpa_app.pipeline.run_tracker import (
    INTERRUPTED_MESSAGE,
    RunState,
    RunTracker,
    decide_exit_status,
    exit_code_for,
)
from rpa_app.store.records import SqlRecordStore
from rpa_app.utils.error_handler import ProcessInterrupted
from tests.helpers import make_app


class TestDecideExitStatus(unittest.TestCase):
    def test_pure_decision(self):
        self.assertIsNone(decide_exit_status(RunState()))
        self.assertEqual(decide_exit_status(RunState(run_id=3)), ("failed", INTERRUPTED_MESSAGE))
        self.assertIsNone(decide_exit_status(RunState(run_id=3, finalized=True)))

    def test_exit_codes(self):
        self.assertEqual(exit_code_for("completed"), 0)
        self.assertEqual(exit_code_for("failed"), 1)
        self.assertEqual(exit_code_for(None), 1)


class TestRunTracker(unittest.TestCase):
    def setUp(self):
        self.app = make_app()
        self.ctx = self.app.app_context()
        self.ctx.push()
        self.store = SqlRecordStore(db.session)
        self.tracker = RunTracker(self.store, install_handlers=False)

    def tearDown(self):
        self.tracker.reset()
        db.session.remove()
        db.drop_all()
        self.ctx.pop()

    def test_counts_and_single_finalize(self):
        run = self.tracker.start("source_extraction", {"selector": {"backlog": "details"}})
        self.tracker.set_total(3)
        self.tracker.record_item(True)
        self.tracker.record_item(False)
        self.tracker.add_metadata(listing={"created": 1})

        self.assertTrue(self.tracker.finalize("completed"))
        self.assertFalse(self.tracker.finalize("failed", "late"))

        saved = self.store.get_run(run.id)
        self.assertEqual(saved.status, "completed")
        self.assertEqual((saved.total_records, saved.completed_count, saved.failed_count), (3, 1, 1))
        self.assertIsNone(saved.error_message)
        self.assertEqual(saved.run_metadata["listing"], {"created": 1})
        self.assertIsNotNone(saved.finished_at)

    def test_start_refuses_while_active(self):
        self.tracker.start("source_extraction")
        with self.assertRaises(RuntimeError):
            self.tracker.start("claim_submission")

    def test_first_signal_flags_second_finalizes(self):
        run = self.tracker.start("claim_submission")
        self.tracker.handle_signal(signal.SIGTERM)
        self.assertEqual(self.store.get_run(run.id).status, "running")
        with self.assertRaises(ProcessInterrupted):
            self.tracker.check_interrupted()

        with self.assertRaises(ProcessInterrupted):
            self.tracker.handle_signal(signal.SIGTERM)
        saved = self.store.get_run(run.id)
        self.assertEqual((saved.status, saved.error_message), ("failed", INTERRUPTED_MESSAGE))

    def test_exit_hook_fails_unfinished_run(self):
        run = self.tracker.start("source_extraction")
        self.tracker.on_exit()
        self.assertEqual(self.store.get_run(run.id).status, "failed")
        self.tracker.on_exit()
        self.assertTrue(self.tracker.state.finalized)

    def test_injected_state_reset(self):
        state = RunState(run_id=None)
        tracker = RunTracker(self.store, state=state, install_handlers=False)
        tracker.start("source_extraction")
        tracker.finalize("completed")
        tracker.reset()
        self.assertIsNone(state.run_id)
        self.assertFalse(state.finalized)


class TestSignalHandlers(unittest.TestCase):
    def test_handlers_installed_and_restored(self):
        app = make_app()
        with app.app_context():
            tracker = RunTracker(SqlRecordStore(db.session))
            before = signal.getsignal(signal.SIGTERM)
            tracker.start("source_extraction")
            self.assertEqual(signal.getsignal(signal.SIGTERM), tracker.handle_signal)
            tracker.finalize("completed")
            self.assertEqual(signal.getsignal(signal.SIGTERM), before)
            db.session.remove()
            db.drop_all()

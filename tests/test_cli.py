import unittest
from unittest.mock import Mock, patch

from rpa_app.adapters.source import SourceExtraction
from rpa_app.cli import build_parser, main
from rpa_app.extensions import db
from rpa_app.models.models import ExtractionRun
from rpa_app.settings import PortalCredentials
from tests.helpers import add_visit, make_app


class CliTestCase(unittest.TestCase):
    overrides = {}

    def setUp(self):
        self.app = make_app(**self.overrides)
        self.ctx = self.app.app_context()
        self.ctx.push()
        self.sessions = Mock()

    def tearDown(self):
        db.session.remove()
        db.drop_all()
        self.ctx.pop()

    def run_cli(self, *argv):
        return main(list(argv), app=self.app, session_manager=self.sessions)


class TestRefusals(CliTestCase):
    def test_bad_arguments(self):
        with patch("sys.stderr"):
            self.assertEqual(self.run_cli("extract", "--from", "15/01/2025"), 2)
            self.assertEqual(self.run_cli("publish"), 2)

    def test_unscoped_selector(self):
        self.assertEqual(self.run_cli("extract"), 2)
        self.assertEqual(self.run_cli("submit"), 2)
        self.sessions.open.assert_not_called()
        self.assertEqual(ExtractionRun.query.count(), 0)

    def test_reversed_range(self):
        self.assertEqual(self.run_cli("reconcile", "--from", "2025-01-02", "--to", "2025-01-01"), 2)

    def test_final_submit_without_flag_is_refused(self):
        with patch("rpa_app.cli.choose_mode", return_value="submit"):
            self.assertEqual(self.run_cli("submit", "--all-pending"), 2)


class TestMissingSourceCredentials(CliTestCase):
    overrides = {"source": PortalCredentials("", "", "")}

    def test_extract_refused(self):
        self.assertEqual(self.run_cli("extract", "--all-pending"), 2)
        self.sessions.open.assert_not_called()


class TestCommands(CliTestCase):
    def test_extract_completes(self):
        visit = add_visit()
        source = Mock()
        source.extract.return_value = SourceExtraction(nric="S1234567D", diagnosis="Acute gastritis with vomiting")
        with patch("rpa_app.cli.ClinicSourceAdapter", return_value=source), patch("builtins.print"):
            code = self.run_cli("extract", "--from", "2025-01-15", "--to", "2025-01-15")

        session = self.sessions.open.return_value
        self.assertEqual(code, 0)
        self.sessions.close.assert_called_once_with(session)
        self.sessions.close_stray_windows.assert_called_once_with(session)
        self.assertEqual(session.step_hook.__name__, "check_interrupted")
        db.session.expire_all()
        self.assertEqual(db.session.get(type(visit), visit.id).extraction_status, "completed")

    def test_submit_with_empty_backlog(self):
        with patch("builtins.print"):
            self.assertEqual(self.run_cli("submit", "--all-pending", "--save-as-draft"), 0)
        run = ExtractionRun.query.one()
        self.assertEqual((run.run_type, run.status), ("claim_submission", "completed"))
        self.assertEqual(run.run_metadata["mode"], "draft")

    def test_reconcile_writes_report(self):
        report = Mock(summary={"total": 0, "verdict": "Aligned"})
        with patch("rpa_app.cli.ReconciliationEngine") as engine, patch("builtins.print"):
            engine.return_value.reconcile.return_value = report
            code = self.run_cli("reconcile", "--from", "2025-01-01", "--to", "2025-01-31", "--report", "out.csv")

        self.assertEqual(code, 0)
        report.write_csv.assert_called_once_with("out.csv")


class TestParser(unittest.TestCase):
    def test_defaults(self):
        args = build_parser().parse_args(["extract", "--all-pending", "--pay-type", "aia"])
        self.assertEqual((args.backlog, args.retry_failed, args.limit), ("details", False, None))
        self.assertEqual(args.pay_type, "aia")

import unittest
from datetime import date
from types import SimpleNamespace
from unittest.mock import Mock, patch

from rpa_app.adapters.source import (
    ITEM_ROWS_SCRIPT,
    QUEUE_ROWS_SCRIPT,
    TEXT_BLOCKS_SCRIPT,
    TIER_ATTRIBUTE,
    TIER_CLASS_HINT,
    TIER_SCORED,
    ClinicSourceAdapter,
    listing_row,
    pick_clinical_note,
)
from rpa_app.utils import validators
from rpa_app.settings import PortalCredentials
from rpa_app.utils.error_handler import NavigationError, NotFoundError, PortalTimeoutError

NOTE = "Fever and cough for 3 days, URTI. MC 2 days given"


class TestPickClinicalNote(unittest.TestCase):
    def test_attribute_tier_rejected_then_class_hint(self):
        note, tier, rejections = pick_clinical_note([
            (TIER_SCORED, NOTE),
            (TIER_ATTRIBUTE, "Update User Info"),
            (TIER_CLASS_HINT, "Acute gastritis with vomiting"),
        ])
        self.assertEqual(note, "Acute gastritis with vomiting")
        self.assertEqual(tier, TIER_CLASS_HINT)
        self.assertEqual(rejections, [{"tier": TIER_ATTRIBUTE, "reason": "contains_excluded_pattern",
                                       "sample": "Update User Info"}])

    def test_scored_best_first(self):
        note, tier, _ = pick_clinical_note([(TIER_SCORED, "Dashboard Home Settings Profile"), (TIER_SCORED, NOTE)])
        self.assertEqual((note, tier), (NOTE, TIER_SCORED))

    def test_nothing_valid(self):
        note, tier, rejections = pick_clinical_note([(TIER_ATTRIBUTE, "ok")])
        self.assertIsNone(note)
        self.assertIsNone(tier)
        self.assertEqual(rejections[0]["reason"], "too_short")


class TestListingRow(unittest.TestCase):
    def test_fields(self):
        row = listing_row({
            "qno": "12", "patient_name": " TAN AH KOW ", "nric": "s1234567d", "pay_type": "aia client",
            "fee": "$45.00", "pcno": "PC-78025", "in": "09:10", "out": None, "visit_type": "New Visit",
        }, date(2025, 1, 15))
        self.assertEqual(row["visit_record_no"], "12")
        self.assertEqual(row["patient_name"], "TAN AH KOW")
        self.assertEqual(row["nric"], "S1234567D")
        self.assertEqual(row["pay_type"], "AIACLIENT")
        self.assertEqual(row["total_amount"], 45.0)
        self.assertEqual(row["patient_number"], "78025")

    def test_invalid_values_left_empty(self):
        row = listing_row({"qno": "3", "patient_name": "LIM", "nric": "X123", "fee": "n/a"}, date(2025, 1, 15))
        self.assertIsNone(row["nric"])
        self.assertIsNone(row["total_amount"])

    def test_skipped_rows(self):
        self.assertIsNone(listing_row({"qno": None, "patient_name": "LIM"}, date(2025, 1, 15)))
        self.assertIsNone(listing_row({"qno": "4"}, date(2025, 1, 15)))


class TestClinicSourceAdapter(unittest.TestCase):
    def setUp(self):
        self.page = Mock()
        self.field = Mock()
        self.field.get_attribute.return_value = "S1234567D"
        self.page.first_visible.return_value = self.field
        self.page.query_all.return_value = []
        hit = Mock()
        hit.find_elements.return_value = [Mock()]
        self.page.xpath.return_value = [hit]
        self.page.click_text.return_value = True
        self.scripts = {TEXT_BLOCKS_SCRIPT: [NOTE], ITEM_ROWS_SCRIPT: ["Item", "Panadol 500mg", "panadol 500mg"]}
        self.page.evaluate.side_effect = lambda script, *args: self.scripts.get(script)
        self.adapter = ClinicSourceAdapter(self.page, PortalCredentials("https://clinic.test/", "u", "p"))
        self.adapter.logged_in = True
        self.item = SimpleNamespace(id=1, patient_number="78025", patient_name="TAN AH KOW", visit_date=date(2025, 1, 15))

    def test_extract(self):
        result = self.adapter.extract(self.item)

        self.assertEqual(result.nric, "S1234567D")
        self.assertEqual(result.diagnosis, NOTE)
        self.assertEqual(result.sources["diagnosis"], TIER_SCORED)
        self.assertEqual(result.sources["patient"], "patient_number")
        self.assertEqual(result.mc_days, 2)
        self.assertEqual(result.line_items, ["Panadol 500mg"])
        self.assertEqual(result.source_missing, [])
        self.page.goto.assert_called_with("https://clinic.test/Patient/Index")

    def test_missing_note_is_annotated(self):
        self.scripts[TEXT_BLOCKS_SCRIPT] = []
        self.scripts[ITEM_ROWS_SCRIPT] = []
        result = self.adapter.extract(self.item)
        self.assertIsNone(result.diagnosis)
        self.assertEqual(result.source_missing, ["diagnosis", "line_items"])

    def test_patient_not_found(self):
        self.page.xpath.return_value = []
        with self.assertRaises(NotFoundError):
            self.adapter.extract(self.item)

    def test_listing(self):
        self.scripts[QUEUE_ROWS_SCRIPT] = [
            {"qno": "1", "patient_name": "TAN AH KOW", "nric": "S1234567D", "pay_type": "MHC"},
            {"qno": None, "patient_name": "HEADER"},
        ]
        rows = self.adapter.list_visits(date(2025, 1, 15))
        self.assertEqual([r["visit_record_no"] for r in rows], ["1"])
        self.page.goto.assert_called_with("https://clinic.test/QueueLog/Index")

    def test_listing_unreachable_is_run_fatal(self):
        self.page.wait_for.side_effect = PortalTimeoutError("timed out waiting for #queueLogGrid")
        with self.assertRaises(NavigationError) as ctx:
            self.adapter.list_visits(date(2025, 1, 15))
        self.assertTrue(ctx.exception.run_fatal)

    def test_invalid_nric_is_rejected_not_raised(self):
        self.field.get_attribute.return_value = "12345"
        self.page.text.return_value = "no identity number on this page"
        result = self.adapter.extract(self.item)
        self.assertIsNone(result.nric)
        self.assertEqual(result.rejections["nric"], "invalid_format")
        self.assertIn("nric", result.source_missing)
        self.assertEqual(result.diagnosis, NOTE)

    def test_name_with_apostrophe_is_quoted(self):
        item = SimpleNamespace(id=2, patient_number=None, patient_name="D'SOUZA MARIA", visit_date=None)
        result = self.adapter.extract(item)

        self.assertEqual(result.sources["patient"], "patient_name")
        expression = self.page.xpath.call_args_list[0].args[0]
        self.assertIn('contains(normalize-space(.), "D\'SOUZA MARIA")', expression)
        self.assertNotIn("'D'SOUZA", expression)

    def test_scraped_values_go_through_combined_validation(self):
        with patch("rpa_app.adapters.source.validate", wraps=validators.validate) as checked:
            result = self.adapter.extract(self.item)

        candidate = checked.call_args.args[0]
        self.assertEqual(candidate["nric"], "S1234567D")
        self.assertEqual(candidate["diagnosis"], NOTE)
        self.assertEqual(candidate["items"], ["Item", "Panadol 500mg", "panadol 500mg"])
        self.assertEqual(result.line_items, ["Panadol 500mg"])

    def test_filtered_items_rejected(self):
        self.scripts[ITEM_ROWS_SCRIPT] = ["Item", "12.50"]
        result = self.adapter.extract(self.item)
        self.assertEqual(result.rejections["line_items"], "all_items_filtered_out")
        self.assertIn("line_items", result.source_missing)

import unittest

from rpa_app.adapters.diagnosis import (
    extract_keywords,
    match_diagnosis,
    parse_diagnosis_candidate,
    split_line_items,
)

VOCABULARY = [
    "-- Please Select --",
    "J06.9 Acute upper respiratory infection",
    "R51 Headache",
    "M54.5 Low back pain",
    "K30 Dyspepsia",
]


class TestCandidate(unittest.TestCase):
    def test_prefixed_phrase(self):
        self.assertEqual(parse_diagnosis_candidate("c/o cough x3d. Dx: Upper respiratory infection; plan rest"),
                         "Upper respiratory infection")

    def test_falls_back_to_first_sentence(self):
        self.assertEqual(parse_diagnosis_candidate("Low back pain after lifting. Review 1 week"), "Low back pain after lifting")
        self.assertIsNone(parse_diagnosis_candidate("   "))

    def test_keywords_skip_stopwords(self):
        self.assertEqual(extract_keywords("Mild headache since today with nausea"), ["headache", "nausea"])


class TestMatch(unittest.TestCase):
    def test_best_label(self):
        match = match_diagnosis("Impression: acute upper respiratory infection", VOCABULARY)
        self.assertEqual(match.label, "J06.9 Acute upper respiratory infection")
        self.assertEqual(match.confidence, 1.0)

    def test_code_prefix_wins(self):
        match = match_diagnosis("anything", VOCABULARY, code="m54.5")
        self.assertEqual(match.label, "M54.5 Low back pain")

    def test_below_threshold_is_blank(self):
        self.assertIsNone(match_diagnosis("Dx: headache with photophobia and nausea", VOCABULARY, min_confidence=0.5))
        self.assertIsNotNone(match_diagnosis("Dx: headache with photophobia and nausea", VOCABULARY, min_confidence=0.3))

    def test_placeholder_never_matches(self):
        self.assertIsNone(match_diagnosis("Dx: please select", ["-- Please Select --"]))


class TestLineItems(unittest.TestCase):
    def test_split(self):
        drugs, procedures = split_line_items(["Panadol 500mg", "X-Ray chest", "  ", "Wound dressing"])
        self.assertEqual(drugs, ["Panadol 500mg"])
        self.assertEqual(procedures, ["X-Ray chest", "Wound dressing"])

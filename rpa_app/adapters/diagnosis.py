from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Optional


CANDIDATE_PATTERN = re.compile(r"\b(?:dx|diagnosis|impression|assessment)\s*[:\-]\s*([^\n;]{3,80})", re.I)
WORD_PATTERN = re.compile(r"[a-z][a-z0-9]+")
PLACEHOLDER_PATTERN = re.compile(r"^[-\s]*(select|please select|choose|none)\b", re.I)
STOPWORDS = {
    "with", "without", "from", "that", "this", "have", "has", "patient", "left", "right", "since",
    "days", "week", "weeks", "noted", "seen", "today", "also", "some", "mild", "review", "plan",
}
MAX_KEYWORDS = 5


@dataclass
class DiagnosisMatch:
    label: str
    confidence: float
    keywords: list[str]


def parse_diagnosis_candidate(text: Optional[str]) -> Optional[str]:
    """Pull the diagnosis phrase out of a free-text clinical note."""
    if not text or not str(text).strip():
        return None
    match = CANDIDATE_PATTERN.search(str(text))
    if match:
        return match.group(1).strip(" .,")
    first = re.split(r"[\n.;]", str(text).strip())[0]
    return first.strip()[:80] or None


def extract_keywords(candidate: str) -> list[str]:
    keywords: list[str] = []
    for word in WORD_PATTERN.findall(candidate.lower()):
        if len(word) < 4 or word in STOPWORDS or word in keywords:
            continue
        keywords.append(word)
    return keywords[:MAX_KEYWORDS]


def match_diagnosis(text: Optional[str], vocabulary: Iterable[str], min_confidence: float = 0.5,
                    code: Optional[str] = None) -> Optional[DiagnosisMatch]:
    """Best vocabulary label for the clinical text, or None when nothing
    clears the confidence threshold."""
    labels = [v.strip() for v in vocabulary if v and v.strip() and not PLACEHOLDER_PATTERN.match(v.strip())]
    if not labels:
        return None

    if code:
        code_upper = code.strip().upper()
        for label in labels:
            if label.upper().startswith(code_upper):
                return DiagnosisMatch(label=label, confidence=1.0, keywords=[code_upper])

    candidate = parse_diagnosis_candidate(text)
    if not candidate:
        return None
    keywords = extract_keywords(candidate)
    if not keywords:
        return None

    best: Optional[DiagnosisMatch] = None
    for label in labels:
        lowered = label.lower()
        hits = [k for k in keywords if k in lowered]
        if not hits:
            continue
        confidence = len(hits) / len(keywords)
        if (
            best is None
            or confidence > best.confidence
            or (confidence == best.confidence and len(label) < len(best.label))
        ):
            best = DiagnosisMatch(label=label, confidence=round(confidence, 3), keywords=hits)

    if best is None or best.confidence < min_confidence:
        return None
    return best


PROCEDURE_PATTERN = re.compile(
    r"(xray|x-ray|scan|ultrasound|procedure|physio|ecg|injection|dressing|suturing|vaccine)", re.I
)


def split_line_items(items: Iterable[str]) -> tuple[list[str], list[str]]:
    """Partition line items into (drugs, procedures)."""
    drugs: list[str] = []
    procedures: list[str] = []
    for item in items or []:
        text = re.sub(r"\s+", " ", str(item)).strip()
        if not text:
            continue
        (procedures if PROCEDURE_PATTERN.search(text) else drugs).append(text)
    return drugs, procedures

"""
Field validators for values scraped from the clinic system.

Every validator is pure: it takes the raw scraped value and returns a
ValidationResult with either the cleaned value or a rejection reason. Invalid
fields are recorded as absent, never guessed.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any

from .error_handler import ValidationRejection


NRIC_PATTERN = re.compile(r"^[STFGM]\d{7}[A-Z]$")

# UI chrome and modal text that naive "longest text" scraping tends to pick up
EXCLUDED_PATTERNS = [
    re.compile(r"update user info", re.I),
    re.compile(r"please enter your login", re.I),
    re.compile(r"user id", re.I),
    re.compile(r"full name", re.I),
    re.compile(r"new password", re.I),
    re.compile(r"retype password", re.I),
    re.compile(r"^email\b", re.I),
    re.compile(r"^mobile\b", re.I),
    re.compile(r"\b(confirm|cancel|submit|save|close)\b\s*$", re.I),
    re.compile(r"please (fill|select|choose)", re.I),
    re.compile(r"^(click|select|choose|enter)\b", re.I),
    re.compile(r"^[\s\W]+$"),
    re.compile(r"^(ok|yes|no|cancel|close|back|next|previous)$", re.I),
    re.compile(r"^(loading|please wait|processing)", re.I),
]

MEDICAL_KEYWORDS = [
    re.compile(
        r"\b(fever|headache|migraine|pain|ache|sore|infection|flu|cough|cold|rash|swelling|injury|wound|"
        r"fracture|sprain|strain|bruise|cut|burn|nausea|vomit\w*|diarrh\w*|constipation|dizziness|fatigue|"
        r"weakness|malaise|chills|sweating|itch\w*|bleeding|discharge|inflammation|ulcer|lesion|abscess|"
        r"bacteria|virus|fungus|allerg\w*|reaction|asthma|hypertension|diabetes|cholesterol|gastr\w*|urti|uti|"
        r"conjunctivitis)\b",
        re.I,
    ),
    re.compile(
        r"\b(heart|lung|liver|kidney|stomach|intestine|muscle|bone|joint|skin|eye|ear|nose|throat|chest|"
        r"abdomen|abdominal|back|neck|shoulder|knee|ankle|wrist|elbow|hip|hand|foot|toe|finger|lumbar|cervical)\b",
        re.I,
    ),
    re.compile(
        r"\b(consult\w*|review|follow[- ]?up|check|examine|assess\w*|evaluate|diagnos\w*|impression|treat\w*|"
        r"prescribe|advise|recommend|refer\w*|admit)\b",
        re.I,
    ),
    re.compile(
        r"\b(cm|kg|mg|ml|mcg|days?|weeks?|months?|years?|times|doses?|tabs?|tablets?|caps?|capsules?|syrup|"
        r"cream|ointment|injection|vaccine)\b",
        re.I,
    ),
]

ITEM_HEADER_PATTERN = re.compile(
    r"^(item|drug|medicine|description|qty|quantity|price|amount|total|unit|dosage)s?$", re.I
)
DIGITS_ONLY_PATTERN = re.compile(r"^[\d\s.,]+$")
CURRENCY_ONLY_PATTERN = re.compile(r"^(\$|S\$|SGD|USD)?\s*[\d.,]*$", re.I)

MIN_DIAGNOSIS_LENGTH = 10
MAX_DIAGNOSIS_LENGTH = 5000
SHORT_TEXT_KEYWORD_THRESHOLD = 50


@dataclass
class ValidationResult:
    valid: bool
    cleaned_value: Any = None
    rejection_reason: str | None = None


@dataclass
class ValidationOutcome:
    is_valid: bool
    validated: dict[str, Any] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)

    def require(self, name: str) -> Any:
        """Validated value of a field, or ValidationRejection when it failed
        or was never scraped."""
        if name in self.validated:
            return self.validated[name]
        raise ValidationRejection(name, self.errors.get(name, "missing"))


def _reject(reason: str) -> ValidationResult:
    return ValidationResult(valid=False, rejection_reason=reason)


def normalize_whitespace(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()


def matches_excluded(text: str) -> bool:
    return any(p.search(text) for p in EXCLUDED_PATTERNS)


def has_medical_keyword(text: str) -> bool:
    return any(p.search(text) for p in MEDICAL_KEYWORDS)


def validate_nric(value: Any) -> ValidationResult:
    if value is None or not isinstance(value, str) or not value.strip():
        return _reject("empty")
    cleaned = re.sub(r"\s+", "", value).upper()
    if not NRIC_PATTERN.match(cleaned):
        return _reject("invalid_format")
    return ValidationResult(valid=True, cleaned_value=cleaned)


def validate_diagnosis(text: Any) -> ValidationResult:
    if not isinstance(text, str) or not text.strip():
        return _reject("empty_or_not_string")
    cleaned = normalize_whitespace(text)
    if len(cleaned) < MIN_DIAGNOSIS_LENGTH:
        return _reject("too_short")
    if len(cleaned) > MAX_DIAGNOSIS_LENGTH:
        return _reject("too_long")
    if matches_excluded(cleaned):
        return _reject("contains_excluded_pattern")
    if not has_medical_keyword(cleaned) and len(cleaned) < SHORT_TEXT_KEYWORD_THRESHOLD:
        return _reject("no_medical_keywords_short")
    return ValidationResult(valid=True, cleaned_value=cleaned)


def validate_amount(value: Any, minimum: float = 0, maximum: float = 100000) -> ValidationResult:
    if value is None or (isinstance(value, str) and not value.strip()):
        return _reject("null_value")
    if isinstance(value, bool):
        return _reject("not_a_number")
    raw = value
    if isinstance(raw, str):
        raw = re.sub(r"(S\$|SGD|\$|,|\s)", "", raw, flags=re.I)
    try:
        amount = Decimal(str(raw))
    except (InvalidOperation, ValueError):
        return _reject("not_a_number")
    if not amount.is_finite():
        return _reject("not_a_number")
    if amount < Decimal(str(minimum)):
        return _reject("below_minimum")
    if amount > Decimal(str(maximum)):
        return _reject("above_maximum")
    rounded = amount.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    return ValidationResult(valid=True, cleaned_value=float(rounded))


def validate_line_items(items: Any) -> ValidationResult:
    if not isinstance(items, (list, tuple)):
        return _reject("not_a_list")
    if not items:
        return ValidationResult(valid=True, cleaned_value=[])

    kept: list[str] = []
    seen: set[str] = set()
    for raw in items:
        if raw is None:
            continue
        entry = normalize_whitespace(str(raw))
        if len(entry) < 2:
            continue
        if ITEM_HEADER_PATTERN.match(entry):
            continue
        if DIGITS_ONLY_PATTERN.match(entry) or CURRENCY_ONLY_PATTERN.match(entry):
            continue
        key = entry.lower()
        if key in seen:
            continue
        seen.add(key)
        kept.append(entry)

    if not kept:
        return _reject("all_items_filtered_out")
    return ValidationResult(valid=True, cleaned_value=kept)


def validate_referral_clinic(text: Any) -> ValidationResult:
    if not isinstance(text, str) or not text.strip():
        return _reject("empty_or_not_string")
    cleaned = normalize_whitespace(text)
    if matches_excluded(cleaned):
        return _reject("contains_excluded_pattern")
    if len(cleaned) < 2:
        return _reject("too_short")
    if len(cleaned) > 200:
        return _reject("too_long")
    return ValidationResult(valid=True, cleaned_value=cleaned)


def score_note_candidate(text: str) -> float:
    """Rank a visible text block as a clinical note.

    Keyword hits and a plausible length score up; denylist hits sink the
    candidate below anything clinical.
    """
    if not text:
        return float("-inf")
    cleaned = normalize_whitespace(text)
    length = len(cleaned)
    score = 0.0
    for pattern in MEDICAL_KEYWORDS:
        score += 10.0 * min(len(pattern.findall(cleaned)), 3)
    if MIN_DIAGNOSIS_LENGTH <= length <= 600:
        score += 5.0 + min(length, 200) / 40.0
    elif length > 600:
        score -= (length - 600) / 100.0
    else:
        score -= 5.0
    if matches_excluded(cleaned):
        score -= 100.0
    return score


def validate(candidate: dict[str, Any], amount_min: float = 0, amount_max: float = 100000) -> ValidationOutcome:
    """Validate every known field present in a scraped candidate."""
    outcome = ValidationOutcome(is_valid=False)
    checks = {
        "nric": validate_nric,
        "diagnosis": validate_diagnosis,
        "referral_clinic": validate_referral_clinic,
        "items": validate_line_items,
    }
    for name, check in checks.items():
        if name not in candidate or candidate[name] is None:
            continue
        result = check(candidate[name])
        if result.valid:
            outcome.validated[name] = result.cleaned_value
        else:
            outcome.errors[name] = result.rejection_reason

    if candidate.get("amount") is not None:
        result = validate_amount(candidate["amount"], amount_min, amount_max)
        if result.valid:
            outcome.validated["amount"] = result.cleaned_value
        else:
            outcome.errors["amount"] = result.rejection_reason

    outcome.is_valid = bool(outcome.validated.get("diagnosis") or outcome.validated.get("items"))
    return outcome

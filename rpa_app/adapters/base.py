"""
Target adapter contract for insurer portals.

Each portal family implements the same small set of page operations; the
shared ``submit_claim`` drives them in a fixed order so the submitter never
needs to know which portal it is talking to.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, asdict
from datetime import date
from typing import Any, Optional

from ..models.models import MISSING_DIAGNOSIS
from ..utils.error_handler import NotFoundError, RPAError
from ..utils.validators import validate_amount
from .diagnosis import match_diagnosis, parse_diagnosis_candidate

logger = logging.getLogger(__name__)

MODE_FILL_ONLY = "fill_only"
MODE_DRAFT = "draft"
MODE_SUBMIT = "submit"
SUBMISSION_MODES = (MODE_FILL_ONLY, MODE_DRAFT, MODE_SUBMIT)

FIELD_VISIT_TYPE = "visit_type"
FIELD_MC_DAYS = "mc_days"
FIELD_DIAGNOSIS = "diagnosis"
FIELD_CONSULTATION_FEE = "consultation_fee"
FIELD_LINE_ITEMS = "line_items"


@dataclass
class VisitFormContext:
    item_id: Optional[int]
    visit_date: Optional[date]
    nric: str
    patient_name: Optional[str]
    pay_type: str
    charge_type: str = "follow"  # first | follow
    mc_start_date: Optional[date] = None


@dataclass
class PortalVisitRow:
    visit_date: Optional[date]
    patient_name: str
    portal_reference: Optional[str]
    status_label: Optional[str]
    total_fee: Optional[str] = None
    total_claim: Optional[str] = None
    mc_days: Optional[str] = None


@dataclass
class SubmissionOutcome:
    success: bool
    portal: Optional[str]
    reason: Optional[str] = None
    mode: Optional[str] = None
    saved_as_draft: bool = False
    submitted: bool = False
    fields: dict[str, Any] = field(default_factory=dict)
    message: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


class DraftSaveError(RPAError):
    """Portal refused to save the draft"""


def charge_type_for(visit_type: Optional[str]) -> str:
    text = (visit_type or "").lower()
    return "first" if ("new" in text or "first" in text) else "follow"


class TargetAdapter(ABC):
    """Base class every insurer portal adapter derives from."""

    family: str = ""
    portal_name: str = ""
    # Portals without a diagnosis picklist take the parsed phrase as text
    free_text_diagnosis: bool = False

    def __init__(self, page, credentials, portal_code: str, min_confidence: float = 0.5) -> None:
        self.page = page
        self.credentials = credentials
        self.portal_code = portal_code
        self.min_confidence = min_confidence
        self.logged_in = False

    @abstractmethod
    def login(self) -> None:
        """Authenticate; raises AuthenticationError."""

    @abstractmethod
    def locate_patient(self, nric: str) -> bool:
        """Search the patient by identity number; False when not registered."""

    @abstractmethod
    def start_visit_form(self, context: VisitFormContext) -> None:
        """Open a new visit/claim form for the located patient."""

    @abstractmethod
    def fill_field(self, name: str, value: Any) -> bool:
        """Fill one logical field; returns False if the portal had no slot for it."""

    @abstractmethod
    def diagnosis_vocabulary(self) -> list[str]:
        """Option labels of the portal's diagnosis control on the open form."""

    @abstractmethod
    def save_draft(self) -> dict[str, Any]:
        """Save the open form as a recoverable draft."""

    @abstractmethod
    def submit(self) -> dict[str, Any]:
        """Irreversible final submission of the open form."""

    @abstractmethod
    def list_submitted_visits(self, date_from: date, date_to: date, patient_key: str) -> list[PortalVisitRow]:
        """Rows of the portal's own claim-history view for one patient."""

    def ensure_logged_in(self) -> None:
        if not self.logged_in:
            self.login()
            self.logged_in = True

    def consultation_fee(self, item) -> Optional[float]:
        result = validate_amount(item.total_amount)
        return result.cleaned_value if result.valid else None

    def build_context(self, item) -> VisitFormContext:
        metadata = item.extraction_metadata or {}
        return VisitFormContext(
            item_id=item.id,
            visit_date=item.visit_date,
            nric=item.nric,
            patient_name=item.patient_name,
            pay_type=item.pay_type,
            charge_type=metadata.get("charge_type") or charge_type_for(item.visit_type),
            mc_start_date=item.mc_start_date,
        )

    def submit_claim(self, item, mode: str = MODE_DRAFT) -> SubmissionOutcome:
        if mode not in SUBMISSION_MODES:
            raise ValueError(f"unknown submission mode: {mode}")
        if not item.nric:
            raise NotFoundError(f"visit {item.id} has no NRIC; run the detail extraction first")

        self.ensure_logged_in()
        context = self.build_context(item)
        if not self.locate_patient(context.nric):
            raise NotFoundError(f"patient {context.nric} not found in {self.portal_name}")
        self.start_visit_form(context)

        filled: dict[str, Any] = {}
        filled[FIELD_VISIT_TYPE] = self.fill_field(FIELD_VISIT_TYPE, context.charge_type)
        if item.mc_days:
            filled[FIELD_MC_DAYS] = self.fill_field(FIELD_MC_DAYS, item.mc_days)

        diagnosis = item.diagnosis_description
        if diagnosis and diagnosis != MISSING_DIAGNOSIS:
            vocabulary = self.diagnosis_vocabulary()
            match = match_diagnosis(diagnosis, vocabulary, self.min_confidence, code=item.diagnosis_code)
            if not vocabulary and self.free_text_diagnosis:
                phrase = parse_diagnosis_candidate(diagnosis)
                filled[FIELD_DIAGNOSIS] = bool(phrase) and self.fill_field(FIELD_DIAGNOSIS, phrase)
            elif match is not None:
                filled[FIELD_DIAGNOSIS] = self.fill_field(FIELD_DIAGNOSIS, match.label)
                filled["diagnosis_label"] = match.label
                filled["diagnosis_confidence"] = match.confidence
            else:
                logger.info("no diagnosis option cleared %.2f for visit %s; left blank", self.min_confidence, item.id)
                filled[FIELD_DIAGNOSIS] = False

        fee = self.consultation_fee(item)
        if fee is not None:
            filled[FIELD_CONSULTATION_FEE] = self.fill_field(FIELD_CONSULTATION_FEE, fee)
        if item.line_items:
            filled[FIELD_LINE_ITEMS] = self.fill_field(FIELD_LINE_ITEMS, list(item.line_items))

        outcome = SubmissionOutcome(success=True, portal=self.portal_code, mode=mode, fields=filled)
        if mode == MODE_DRAFT:
            outcome.fields["draft"] = self.save_draft()
            outcome.saved_as_draft = True
        elif mode == MODE_SUBMIT:
            outcome.fields["submission"] = self.submit()
            outcome.submitted = True
        logger.info("visit %s filled in %s (mode=%s)", item.id, self.portal_name, mode)
        return outcome

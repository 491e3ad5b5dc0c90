"""
Clinic Assist source adapter.

Reads the daily queue listing and, per visit, the patient's identity number,
clinical note and dispensed items. Every scraped value passes through the
validators before it is returned; a value that fails validation is left empty
and its rejection reason is reported instead.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Optional

from selenium.webdriver.common.keys import Keys

from ..browser.session import xpath_literal
from ..utils.error_handler import (
    AuthenticationError,
    NavigationError,
    NotFoundError,
    PortalTimeoutError,
    ValidationRejection,
)
from ..utils.normalize import (
    format_portal_date,
    normalize_patient_name_for_search,
    normalize_pay_type,
    normalize_pcno,
)
from ..utils.validators import score_note_candidate, validate, validate_diagnosis

logger = logging.getLogger(__name__)

TIER_ATTRIBUTE = "note_attribute"
TIER_CLASS_HINT = "note_class_hint"
TIER_SCORED = "note_scored"
TIER_ORDER = (TIER_ATTRIBUTE, TIER_CLASS_HINT)

USERNAME_SELECTORS = ['input[name*="user" i]', 'input[id*="user" i]', 'input[type="text"]']
PASSWORD_SELECTORS = ['input[type="password"]', 'input[name*="pass" i]']
QUEUE_GRID = "#queueLogGrid"
QUEUE_COLUMNS = {
    "qno": "_QNo", "status": "_Status", "patient_name": "_PatientName", "nric": "_NRIC",
    "pay_type": "_PayType", "visit_type": "_VisitType", "fee": "_Fee", "in": "_In", "out": "_Out",
    "pcno": "_PCNo",
}
NOTE_ATTRIBUTE_SELECTORS = [
    'textarea[name*="diagnosis" i]', 'textarea[id*="diagnosis" i]', 'textarea[name*="note" i]',
    'textarea[id*="note" i]', 'textarea[name*="remark" i]', '[id*="ClinicalNote" i]',
]
NOTE_CLASS_SELECTORS = ['.diagnosis', '.clinical-note', '.case-note', '.notes', '[class*="diagnos" i]']
NRIC_SELECTORS = ['input[name*="nric" i]', 'input[id*="nric" i]', 'input[name*="ic" i][name*="no" i]']
MC_PATTERN = re.compile(r"\bMC\b[^0-9]{0,20}(\d{1,2})\s*day", re.I)
NRIC_TEXT_PATTERN = re.compile(r"\b[STFGM]\d{7}[A-Z]\b")

QUEUE_ROWS_SCRIPT = r"""
const cols = arguments[0];
return Array.from(document.querySelectorAll('#queueLogGrid tr.jqgrow')).map((row) => {
  const out = {};
  for (const [key, suffix] of Object.entries(cols)) {
    const cell = row.querySelector(`td[aria-describedby$="${suffix}"]`);
    out[key] = cell ? (cell.textContent || '').trim() || null : null;
  }
  return out;
});
"""

TEXT_BLOCKS_SCRIPT = r"""
const seen = new Set();
return Array.from(document.querySelectorAll('td, div, p, pre, textarea'))
  .filter((el) => el.offsetParent !== null)
  .map((el) => (el.value || el.innerText || '').trim())
  .filter((t) => t.length >= 10 && t.length <= 5000 && !seen.has(t) && seen.add(t));
"""

ITEM_ROWS_SCRIPT = r"""
const header = Array.from(document.querySelectorAll('th'))
  .find((th) => /item|drug|medicine|service/i.test(th.innerText || ''));
const table = header && header.closest('table');
if (!table) return [];
const index = Array.from(header.parentElement.children).indexOf(header);
return Array.from(table.querySelectorAll('tbody tr'))
  .map((r) => r.children[index] ? r.children[index].innerText.trim() : '')
  .filter(Boolean);
"""


@dataclass
class SourceExtraction:
    nric: Optional[str] = None
    diagnosis: Optional[str] = None
    diagnosis_code: Optional[str] = None
    treatment: Optional[str] = None
    line_items: list[str] = field(default_factory=list)
    mc_days: Optional[int] = None
    sources: dict[str, str] = field(default_factory=dict)
    rejections: dict[str, Any] = field(default_factory=dict)
    source_missing: list[str] = field(default_factory=list)


def pick_clinical_note(candidates: list[tuple[str, str]]) -> tuple[Optional[str], Optional[str], list[dict[str, str]]]:
    """Choose the clinical note among scraped (tier, text) candidates.

    Attribute and class-hint candidates are tried in page order; the scored
    fallback is tried best first. The first candidate that validates wins.
    Returns (note, tier, rejections).
    """
    rejections: list[dict[str, str]] = []
    ordered = [c for tier in TIER_ORDER for c in candidates if c[0] == tier]
    scored = [c for c in candidates if c[0] == TIER_SCORED]
    ordered += sorted(scored, key=lambda c: score_note_candidate(c[1]), reverse=True)
    for tier, text in ordered:
        result = validate_diagnosis(text)
        if result.valid:
            return result.cleaned_value, tier, rejections
        rejections.append({"tier": tier, "reason": result.rejection_reason, "sample": (text or "")[:60]})
    return None, None, rejections


def listing_row(cells: dict[str, Optional[str]], visit_date: date) -> Optional[dict[str, Any]]:
    """Map one queue grid row to visit listing fields; rows without a queue
    number or patient are skipped."""
    record_no = (cells.get("qno") or "").strip()
    if not record_no or not (cells.get("patient_name") or cells.get("nric")):
        return None
    checked = validate({"nric": cells.get("nric"), "amount": cells.get("fee")}).validated
    return {
        "visit_record_no": record_no,
        "visit_date": visit_date,
        "patient_name": (cells.get("patient_name") or "").strip() or None,
        "patient_number": normalize_pcno(cells.get("pcno")),
        "nric": checked.get("nric"),
        "pay_type": normalize_pay_type(cells.get("pay_type")),
        "visit_type": (cells.get("visit_type") or "").strip() or None,
        "total_amount": checked.get("amount"),
        "time_arrived": cells.get("in"),
        "time_left": cells.get("out"),
    }


class ClinicSourceAdapter:
    """Clinic Assist automation; one instance per browser page."""

    name = "Clinic Assist"

    def __init__(self, page, credentials, amount_max: float = 100000.0) -> None:
        self.page = page
        self.credentials = credentials
        self.amount_max = amount_max
        self.logged_in = False

    @property
    def base_url(self) -> str:
        return self.credentials.url.rstrip("/")

    def login(self) -> None:
        page = self.page
        logger.info("logging into %s", self.name)
        page.goto(self.credentials.url)
        try:
            page.wait_for_any(PASSWORD_SELECTORS, timeout=15)
        except PortalTimeoutError as exc:
            raise AuthenticationError(f"{self.name} login form not found") from exc
        username = page.first_visible(USERNAME_SELECTORS)
        password = page.first_visible(PASSWORD_SELECTORS)
        if username is None or password is None:
            raise AuthenticationError(f"{self.name} login fields not found")
        page.fill_element(username, self.credentials.username)
        page.fill_element(password, self.credentials.password)
        password.send_keys(Keys.ENTER)
        page.settle(2)
        if page.first_visible(PASSWORD_SELECTORS) is not None:
            raise AuthenticationError(f"{self.name} rejected the credentials")
        self.logged_in = True
        logger.info("logged into %s", self.name)

    def ensure_logged_in(self) -> None:
        if not self.logged_in:
            self.login()

    # -- listing --------------------------------------------------------------

    def list_visits(self, visit_date: date) -> list[dict[str, Any]]:
        """Queue listing for one date as visit upsert rows."""
        self.ensure_logged_in()
        page = self.page
        try:
            page.goto(f"{self.base_url}/QueueLog/Index")
            date_input = page.first_visible(['input[name*="date" i]', 'input[id*="date" i]'])
            if date_input is not None:
                page.fill_element(date_input, format_portal_date(visit_date))
                date_input.send_keys(Keys.ENTER)
                page.settle()
            page.wait_for(QUEUE_GRID, visible=False)
        except NavigationError as exc:
            raise NavigationError(f"queue listing for {visit_date} unreachable: {exc}", run_fatal=True) from exc
        raw = page.evaluate(QUEUE_ROWS_SCRIPT, QUEUE_COLUMNS) or []
        rows = [r for r in (listing_row(cells, visit_date) for cells in raw) if r is not None]
        logger.info("queue listing %s: %d rows", visit_date, len(rows))
        return rows

    # -- per visit ------------------------------------------------------------

    def _open_patient(self, item) -> str:
        page = self.page
        page.goto(f"{self.base_url}/Patient/Index")
        search = page.first_visible(['input[name*="search" i]', 'input[id*="search" i]', 'input[type="search"]'])
        if search is None:
            raise NavigationError("patient search field not found")

        pcno = normalize_pcno(item.patient_number)
        attempts = [("patient_number", pcno)] if pcno else []
        name = normalize_patient_name_for_search(item.patient_name)
        if name:
            attempts.append(("patient_name", name))
        if not attempts:
            raise NotFoundError(f"visit {item.id} has neither patient number nor name")

        for key, term in attempts:
            page.fill_element(search, term)
            search.send_keys(Keys.ENTER)
            page.settle()
            hits = page.xpath(f"//table//tr[td[contains(normalize-space(.), {xpath_literal(term.upper())})] or "
                              f"td[contains(normalize-space(.), {xpath_literal(term)})]]")
            if hits:
                links = hits[0].find_elements("tag name", "a")
                (links[0] if links else hits[0]).click()
                page.settle()
                return key
        raise NotFoundError(f"patient for visit {item.id} not found in {self.name}")

    def _open_visit(self, visit_date: Optional[date]) -> None:
        page = self.page
        if not page.click_text("TX History", tags="a|button|li|span"):
            raise NavigationError("TX History tab not found")
        page.settle()
        if visit_date is not None:
            label = format_portal_date(visit_date)
            rows = page.xpath(f"//tr[td[contains(normalize-space(.), {xpath_literal(label)})]]")
            if not rows:
                raise NotFoundError(f"no visit on {label} in TX History")
            rows[0].click()
            page.settle()
        page.click_text("Diagnosis", tags="a|li|span|button")
        page.settle()

    def _read_nric(self) -> Optional[str]:
        el = self.page.first_visible(NRIC_SELECTORS)
        raw = el.get_attribute("value") if el is not None else None
        if not raw:
            found = NRIC_TEXT_PATTERN.search(self.page.text())
            raw = found.group(0) if found else None
        return raw

    def _note_candidates(self) -> list[tuple[str, str]]:
        candidates: list[tuple[str, str]] = []
        for tier, selectors in ((TIER_ATTRIBUTE, NOTE_ATTRIBUTE_SELECTORS), (TIER_CLASS_HINT, NOTE_CLASS_SELECTORS)):
            for selector in selectors:
                for el in self.page.query_all(selector):
                    text = el.get_attribute("value") or el.text
                    if text and text.strip():
                        candidates.append((tier, text))
        for text in self.page.evaluate(TEXT_BLOCKS_SCRIPT) or []:
            candidates.append((TIER_SCORED, text))
        return candidates

    def extract(self, item) -> SourceExtraction:
        """Scrape one visit. Missing values are annotated, not raised; only
        an unreachable patient or visit raises."""
        self.ensure_logged_in()
        result = SourceExtraction()

        result.sources["patient"] = self._open_patient(item)
        raw_nric = self._read_nric()
        self._open_visit(item.visit_date)
        note, tier, note_rejections = pick_clinical_note(self._note_candidates())
        raw_items = self.page.evaluate(ITEM_ROWS_SCRIPT) or []

        outcome = validate({"nric": raw_nric or "", "diagnosis": note, "items": raw_items}, amount_max=self.amount_max)

        try:
            result.nric = outcome.require("nric")
            result.sources["nric"] = "patient_biodata"
        except ValidationRejection as exc:
            result.rejections[exc.field] = exc.reason
            result.source_missing.append(exc.field)

        if note_rejections:
            result.rejections["diagnosis"] = note_rejections
        try:
            result.diagnosis = outcome.require("diagnosis")
        except ValidationRejection:
            result.source_missing.append("diagnosis")
        else:
            result.sources["diagnosis"] = tier
            code = re.match(r"^\s*([A-Z]\d{2}(?:\.\d+)?)\b", result.diagnosis)
            result.diagnosis_code = code.group(1) if code else None
            mc = MC_PATTERN.search(result.diagnosis)
            if mc:
                result.mc_days = int(mc.group(1))

        try:
            result.line_items = outcome.require("items")
        except ValidationRejection as exc:
            result.rejections["line_items"] = exc.reason
        if result.line_items:
            result.sources["line_items"] = "tx_items_table"
            result.treatment = "; ".join(result.line_items)
        else:
            result.source_missing.append("line_items")

        logger.info("visit %s extracted (missing=%s)", item.id, ",".join(result.source_missing) or "none")
        return result

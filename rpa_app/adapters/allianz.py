"""
Allianz Medinet portal (Allianz, Alliance Medinet).
"""

from __future__ import annotations

import logging
import re
from datetime import date
from typing import Any, Optional

from selenium.webdriver.common.keys import Keys

from ..utils.error_handler import AuthenticationError, NavigationError, PortalTimeoutError
from ..utils.normalize import format_portal_date, normalize_nric, parse_portal_date
from .base import (
    DraftSaveError,
    FIELD_CONSULTATION_FEE,
    FIELD_DIAGNOSIS,
    FIELD_LINE_ITEMS,
    FIELD_MC_DAYS,
    FIELD_VISIT_TYPE,
    PortalVisitRow,
    TargetAdapter,
    VisitFormContext,
)

logger = logging.getLogger(__name__)

USERNAME_SELECTORS = [
    'input[name*="user" i]', 'input[id*="user" i]', 'input[placeholder*="user" i]', 'input[type="text"]',
]
PASSWORD_SELECTORS = [
    'input[name*="pass" i]', 'input[id*="pass" i]', 'input[placeholder*="pass" i]', 'input[type="password"]',
]
MEMBER_SELECTORS = [
    'input[name*="member" i]', 'input[id*="member" i]', 'input[placeholder*="Membership" i]',
    'input[placeholder*="Member UIN" i]', 'input[aria-label*="Member UIN" i]',
]
VISIT_DATE_SELECTORS = [
    'input[name*="visit" i]', 'input[id*="visit" i]', 'input[placeholder*="Date of Visit" i]',
    'input[aria-label*="Date of Visit" i]',
]
DOCTOR_SELECTORS = ['select[name*="doctor" i]', 'select[id*="doctor" i]', 'select[aria-label*="doctor" i]']
DIAGNOSIS_SELECTORS = [
    'select[name*="diagnosis" i]', 'select[id*="diagnosis" i]',
]
DIAGNOSIS_TEXT_SELECTORS = ['textarea[name*="diagnosis" i]', 'input[name*="diagnosis" i]', 'input[id*="diagnosis" i]']
REMARK_SELECTORS = ['textarea[name*="remark" i]', 'textarea[name*="treatment" i]', 'textarea[id*="remark" i]']
AMOUNT_SELECTORS = [
    'input[name*="amount" i]', 'input[id*="amount" i]', 'input[aria-label*="amount" i]',
    'input[placeholder*="amount" i]', 'input[name*="consult" i]',
]
MC_SELECTORS = ['input[name*="mc" i][name*="day" i]', 'input[id*="mcday" i]', 'select[name*="mc" i]']
NOT_FOUND_PATTERN = re.compile(r"no\s+records|0\s+records|member\s+not\s+found", re.I)
PLACEHOLDER_OPTION = re.compile(r"^[-\s]*(select|please select|choose)\b", re.I)
CLAIM_REF_PATTERN = re.compile(r"^[A-Z]{1,4}\d{5,}$")


def format_search_date(value: Optional[date]) -> str:
    """Medinet's member search takes D/M/YYYY without zero padding."""
    if value is None:
        return ""
    return format_portal_date(value, zero_pad=False)


def parse_claim_history(rows: list[list[str]]) -> list[PortalVisitRow]:
    """Claim-history rows are (claim no, visit date, member name, status,
    amount); anything else on the page is skipped."""
    parsed: list[PortalVisitRow] = []
    for cells in rows:
        cells = [re.sub(r"\s+", " ", c or "").strip() for c in cells]
        if len(cells) < 4 or not CLAIM_REF_PATTERN.match(cells[0]):
            continue
        visit_date = parse_portal_date(cells[1])
        if visit_date is None:
            continue
        parsed.append(PortalVisitRow(
            visit_date=visit_date,
            portal_reference=cells[0],
            patient_name=cells[2],
            status_label=cells[3] or None,
            total_claim=cells[4] if len(cells) > 4 else None,
        ))
    return parsed


class AllianzAdapter(TargetAdapter):
    family = "allianz"
    portal_name = "Allianz Medinet"
    free_text_diagnosis = True

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._search_date: Optional[date] = None

    def login(self) -> None:
        page = self.page
        logger.info("logging into %s", self.portal_name)
        page.goto(self.credentials.url)
        try:
            page.wait_for_any(PASSWORD_SELECTORS, timeout=15)
        except PortalTimeoutError as exc:
            raise AuthenticationError(f"{self.portal_name} login form not found") from exc
        username = page.first_visible(USERNAME_SELECTORS)
        password = page.first_visible(PASSWORD_SELECTORS)
        if username is None or password is None:
            raise AuthenticationError(f"{self.portal_name} login fields not found")
        page.fill_element(username, self.credentials.username)
        page.fill_element(password, self.credentials.password)
        if not page.click_text("Login", tags="button|input"):
            password.send_keys(Keys.ENTER)
        page.settle(2)
        if re.search(r"/login", page.url, re.I) and not page.has_text("Panel Service"):
            raise AuthenticationError(f"{self.portal_name} login did not complete")
        logger.info("logged into %s", self.portal_name)

    def _open_menu(self, *labels: str) -> None:
        for label in labels:
            if not self.page.click_text(label, tags="a|button|li"):
                raise NavigationError(f"{label} menu not found")
            self.page.settle(0.6)

    def build_context(self, item) -> VisitFormContext:
        context = super().build_context(item)
        # Medinet searches member and visit date together
        self._search_date = context.visit_date
        return context

    def locate_patient(self, nric: str) -> bool:
        member_id = normalize_nric(nric)
        if not member_id:
            raise NavigationError(f"invalid member id for {self.portal_name}: {nric!r}")
        page = self.page
        self._open_menu("Panel Service", "Create Panel Claim", "Medical Treatment")
        page.settle(1.5)

        member = page.first_visible(MEMBER_SELECTORS)
        if member is None:
            raise NavigationError("Member UIN field not found")
        page.fill_element(member, member_id)
        visit_input = page.first_visible(VISIT_DATE_SELECTORS)
        if visit_input is not None and not (visit_input.get_attribute("value") or "").strip():
            page.fill_element(visit_input, format_search_date(self._search_date))
        if not page.click_text("Search Others", tags="button|input|a"):
            raise NavigationError("Search Others button not found")
        page.settle(2.5)

        rows = page.query_all('tbody tr, [role="rowgroup"] [role="row"]')
        if not rows or NOT_FOUND_PATTERN.search(page.text()):
            logger.info("member %s not found in %s", member_id, self.portal_name)
            return False
        return True

    def start_visit_form(self, context: VisitFormContext) -> None:
        page = self.page
        checkbox = page.query('tbody tr td input[type="checkbox"], [role="row"] input[type="checkbox"]')
        if checkbox is None:
            raise NavigationError("member result checkbox not found")
        if not checkbox.is_selected():
            checkbox.click()
        if not page.click_text("Add", tags="button|input|a", exact=True):
            raise NavigationError("Add button not found after selecting member")
        page.settle(2)
        self._select_doctor()
        logger.info("opened %s claim form for visit %s", self.portal_name, context.item_id)

    def _select_doctor(self) -> bool:
        select = self.page.first_visible(DOCTOR_SELECTORS)
        if select is None:
            return False
        labels = [label for label in self.page.option_labels(select) if not PLACEHOLDER_OPTION.match(label)]
        if not labels:
            return False
        # Clinic accounts list their own practitioners; the first is the default
        self.page.select_by_label(select, labels[0])
        return True

    def fill_field(self, name: str, value: Any) -> bool:
        page = self.page
        if name == FIELD_VISIT_TYPE:
            # Medinet derives the charge type from the member's history
            return False
        if name == FIELD_MC_DAYS:
            el = page.first_visible(MC_SELECTORS)
            if el is None:
                return False
            page.fill_element(el, str(value))
            return True
        if name == FIELD_DIAGNOSIS:
            select = page.first_visible(DIAGNOSIS_SELECTORS)
            if select is not None:
                page.select_by_label(select, value)
                return True
            el = page.first_visible(DIAGNOSIS_TEXT_SELECTORS)
            if el is None:
                return False
            page.fill_element(el, value)
            return True
        if name == FIELD_CONSULTATION_FEE:
            el = page.first_visible(AMOUNT_SELECTORS)
            if el is None:
                return False
            page.fill_element(el, f"{float(value):.2f}")
            return True
        if name == FIELD_LINE_ITEMS:
            el = page.first_visible(REMARK_SELECTORS)
            if el is None:
                return False
            page.fill_element(el, "; ".join(value))
            return True
        raise ValueError(f"{self.portal_name} has no field {name}")

    def diagnosis_vocabulary(self) -> list[str]:
        select = self.page.first_visible(DIAGNOSIS_SELECTORS)
        return self.page.option_labels(select) if select is not None else []

    def unresolved_required_fields(self) -> list[str]:
        missing = []
        for el in self.page.query_all("input[required], textarea[required], select[required]"):
            if not el.is_displayed() or (el.get_attribute("value") or "").strip():
                continue
            missing.append(
                el.get_attribute("aria-label") or el.get_attribute("placeholder")
                or el.get_attribute("name") or el.get_attribute("id") or "required-field"
            )
        return missing

    def save_draft(self) -> dict[str, Any]:
        missing = self.unresolved_required_fields()
        if missing:
            raise DraftSaveError(f"required fields unresolved: {', '.join(missing)}")
        if not (self.page.click_text("Save as Draft", tags="button|input") or
                self.page.click_text("Save Draft", tags="button|input")):
            raise DraftSaveError("Save as Draft control not found")
        self.page.settle(2)
        return {"saved": True, "dialog": self.page.accept_dialog()}

    def submit(self) -> dict[str, Any]:
        missing = self.unresolved_required_fields()
        if missing:
            raise NavigationError(f"required fields unresolved: {', '.join(missing)}")
        for el in self.page.query_all("button, input[type=submit], input[type=button]"):
            label = f"{el.text} {el.get_attribute('value') or ''}".strip().lower()
            if label.startswith("submit") and "draft" not in label and el.is_displayed():
                el.click()
                self.page.settle(2)
                return {"submitted": True, "dialog": self.page.accept_dialog()}
        raise NavigationError("Submit control not found")

    def list_submitted_visits(self, date_from: date, date_to: date, patient_key: str) -> list[PortalVisitRow]:
        page = self.page
        self.ensure_logged_in()
        self._open_menu("Panel Service", "Claim History")
        page.settle()
        member = page.first_visible(MEMBER_SELECTORS)
        if member is not None:
            page.fill_element(member, normalize_nric(patient_key) or patient_key)
        for name, value in (("from", date_from), ("to", date_to)):
            el = page.first_visible([f'input[name*="{name}" i][name*="date" i]', f'input[id*="{name}Date" i]'])
            if el is not None:
                page.fill_element(el, format_search_date(value))
        if not page.click_text("Search", tags="button|input"):
            raise NavigationError("claim history search not found")
        page.settle(2)
        raw = page.evaluate(
            "return Array.from(document.querySelectorAll('tbody tr')).map("
            "r => Array.from(r.querySelectorAll('td')).map(c => c.innerText));"
        ) or []
        return parse_claim_history(raw)

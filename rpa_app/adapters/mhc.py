"""
MHC Asia portal family (MHC, AIA, AIA Clinic).
"""

from __future__ import annotations

import logging
import re
from datetime import date
from typing import Any, Optional

from selenium.webdriver.common.keys import Keys
from selenium.webdriver.support.ui import Select

from ..utils.error_handler import AuthenticationError, NavigationError, PortalTimeoutError
from ..utils.normalize import format_portal_date, parse_portal_date
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
from .diagnosis import split_line_items

logger = logging.getLogger(__name__)

USERNAME_SELECTORS = [
    'input[name="username"]', 'input[name="user"]', 'input[id*="username"]', 'input[id*="user"]',
    'input[name="txtUserName"]', 'input[type="text"]',
]
PASSWORD_SELECTORS = ['input[name="txtPassword"]', 'input[type="password"]', 'input[name*="password"]']
LOGIN_BUTTON_SELECTORS = ['button[type="submit"]', 'input[type="submit"]', 'form button']
SEARCH_SELECTORS = [
    'input[name*="nric" i]', 'input[id*="nric" i]', 'input[placeholder*="NRIC" i]',
    'input[name*="search" i]', 'input[type="text"]',
]
DIAGNOSIS_ROWS = ("Diagnosis Pri", "Diagnosis Primary", "Diagnosis")
SUBMITTED_REF = re.compile(r"^EV", re.I)
DATE_CELL = re.compile(r"^\d{2}/\d{2}/\d{4}$")

# Typing an over-limit fee makes the portal cap it at the contract maximum
FEE_AT_CONTRACT_MAX = 99999

FILL_SECTION_SCRIPT = r"""
const headerRe = new RegExp(arguments[0], 'i');
const stopRe = arguments[1] ? new RegExp(arguments[1], 'i') : null;
const values = arguments[2];
const norm = (s) => (s || '').replace(/\s+/g, ' ').trim();
const nodes = Array.from(document.querySelectorAll('th, td, b, strong, span'));
const header = nodes.find((el) => headerRe.test(norm(el.textContent)));
const table = header && header.closest('table');
if (!table) return 0;
const rows = Array.from(table.querySelectorAll('tr'));
const start = rows.findIndex((r) => headerRe.test(norm(r.innerText)));
if (start < 0) return 0;
const inputs = [];
for (let i = start + 1; i < rows.length; i++) {
  if (stopRe && stopRe.test(norm(rows[i].innerText))) break;
  rows[i].querySelectorAll('input[type="text"], input:not([type])').forEach((input) => {
    if (input.disabled || input.readOnly || input.getBoundingClientRect().width <= 120) return;
    inputs.push(input);
  });
}
let filled = 0;
for (let i = 0; i < Math.min(values.length, inputs.length); i++) {
  inputs[i].value = norm(values[i]);
  inputs[i].dispatchEvent(new Event('input', {bubbles: true}));
  inputs[i].dispatchEvent(new Event('change', {bubbles: true}));
  filled++;
}
return filled;
"""


def parse_submitted_rows(rows: list[list[str]]) -> list[PortalVisitRow]:
    """Normalise the 'View Submitted Visits' table; rows that do not start
    with a visit date followed by an EV reference are layout noise."""
    parsed: list[PortalVisitRow] = []
    for cells in rows:
        cells = [re.sub(r"\s+", " ", c or "").strip() for c in cells]
        if len(cells) < 4 or not DATE_CELL.match(cells[0]) or not SUBMITTED_REF.match(cells[1]):
            continue
        parsed.append(PortalVisitRow(
            visit_date=parse_portal_date(cells[0]),
            portal_reference=cells[1],
            status_label=f"submitted:{cells[2]}" if cells[2] else "submitted",
            patient_name=cells[3],
            total_fee=cells[4] if len(cells) > 4 else None,
            total_claim=cells[5] if len(cells) > 5 else None,
            mc_days=cells[6] if len(cells) > 6 else None,
        ))
    return parsed


class MHCFamilyAdapter(TargetAdapter):
    family = "mhc"
    portal_name = "MHC Asia"
    # Program tile / link label per payer code; MHC uses the default program list
    PROGRAMS = {"MHC": None, "AIA": "AIA", "AIACLIENT": "aiaclient"}

    def login(self) -> None:
        page = self.page
        logger.info("logging into %s", self.portal_name)
        page.goto(self.credentials.url)
        try:
            page.wait_for_any(USERNAME_SELECTORS, timeout=15)
        except PortalTimeoutError as exc:
            raise AuthenticationError(f"{self.portal_name} login form not found") from exc
        username = page.first_visible(USERNAME_SELECTORS)
        password = page.first_visible(PASSWORD_SELECTORS)
        if username is None or password is None:
            raise AuthenticationError(f"{self.portal_name} login fields not found")
        page.fill_element(username, self.credentials.username)
        page.fill_element(password, self.credentials.password)
        button = page.first_visible(LOGIN_BUTTON_SELECTORS)
        if button is not None:
            button.click()
        else:
            password.send_keys(Keys.ENTER)
        page.settle(2)
        if "authenticate" in page.text().lower():
            raise AuthenticationError(f"{self.portal_name} rejected the credentials")
        if page.first_visible(PASSWORD_SELECTORS) is not None and not page.has_text("log out"):
            raise AuthenticationError(f"{self.portal_name} login did not complete")
        logger.info("logged into %s", self.portal_name)

    def _reset_to_home(self) -> None:
        """Each patient starts from the home page; the session may have lapsed."""
        self.page.goto(self.credentials.url)
        self.page.settle()
        if self.page.first_visible(PASSWORD_SELECTORS) is not None:
            logger.info("%s session expired; logging in again", self.portal_name)
            self.login()

    @property
    def program(self) -> Optional[str]:
        return self.PROGRAMS.get(self.portal_code)

    def locate_patient(self, nric: str) -> bool:
        page = self.page
        self._reset_to_home()
        if not page.click_text("Normal Visit"):
            raise NavigationError("Normal Visit menu not found")
        page.settle()
        page.click_text("Search Other Programs")
        page.settle()
        if self.portal_code in ("AIA", "AIACLIENT"):
            page.click_text("Search under AIA Program")
            page.settle()

        field = page.first_visible(SEARCH_SELECTORS)
        if field is None:
            raise NavigationError("patient search field not found")
        page.fill_element(field, nric)
        if not page.click_text("Search", tags="button|input"):
            field.send_keys(Keys.ENTER)
        page.settle(2)

        if re.search(r"no (record|patient)s? found|0 records", page.text(), re.I):
            return False
        rows = page.xpath(f"//tr[contains(normalize-space(.), '{nric}')]")
        if not rows:
            return False
        links = rows[0].find_elements("tag name", "a")
        (links[0] if links else rows[0]).click()
        page.settle()
        return True

    def start_visit_form(self, context: VisitFormContext) -> None:
        page = self.page
        if not (page.has_text("Visit Date") or page.has_text("Add Employee Visit")):
            if self.program:
                page.click_text(self.program, tags="a|button")
                page.settle()
            label = f"Add {self.program} Visit" if self.program else "Add Visit"
            if not (page.click_text(label, tags="a|button|input") or page.click_text("Add Visit", tags="a|button|input")):
                raise NavigationError("Add Visit control not found")
            page.settle(2)
        if not page.has_text("Visit Date"):
            raise NavigationError("visit form did not open")
        if context.visit_date:
            date_input = self._row_control("Visit Date", "input")
            if date_input is not None:
                page.fill_element(date_input, format_portal_date(context.visit_date))

    def _row_control(self, row_label: str, tag: str = "select"):
        controls = self.page.xpath(
            f"//tr[td[contains(normalize-space(.), '{row_label}')] or th[contains(normalize-space(.), '{row_label}')]]//{tag}"
        )
        for el in controls:
            if el.is_displayed():
                return el
        return None

    def fill_field(self, name: str, value: Any) -> bool:
        handlers = {
            FIELD_VISIT_TYPE: self._fill_charge_type,
            FIELD_MC_DAYS: self._fill_mc_days,
            FIELD_DIAGNOSIS: self._select_diagnosis,
            FIELD_CONSULTATION_FEE: self._fill_fee,
            FIELD_LINE_ITEMS: self._fill_line_items,
        }
        handler = handlers.get(name)
        if handler is None:
            raise ValueError(f"{self.portal_name} has no field {name}")
        return handler(value)

    def _fill_charge_type(self, charge_type: str) -> bool:
        wanted = re.compile(r"new|first" if charge_type == "first" else r"follow", re.I)
        for css in ('select[name*="charge" i]', 'select[id*="charge" i]'):
            el = self.page.query(css)
            if el is None:
                continue
            for label in self.page.option_labels(el):
                if wanted.search(label):
                    self.page.select_by_label(el, label)
                    return True
        logger.warning("charge type %s not set", charge_type)
        return False

    def _fill_mc_days(self, days: int) -> bool:
        control = self._row_control("MC Day", "select") or self._row_control("MC Day", "input")
        if control is None:
            return False
        if control.tag_name.lower() == "select":
            labels = self.page.option_labels(control)
            if str(days) not in labels:
                return False
            Select(control).select_by_visible_text(str(days))
        else:
            self.page.fill_element(control, str(days))
        return True

    def diagnosis_vocabulary(self) -> list[str]:
        for row in DIAGNOSIS_ROWS:
            select = self._row_control(row, "select")
            if select is not None:
                return self.page.option_labels(select)
        return []

    def _select_diagnosis(self, label: str) -> bool:
        for row in DIAGNOSIS_ROWS:
            select = self._row_control(row, "select")
            if select is not None and label in self.page.option_labels(select):
                self.page.select_by_label(select, label)
                return True
        return False

    def _fill_fee(self, amount: float) -> bool:
        control = self._row_control("Consultation Fee", "input")
        if control is None:
            return False
        self.page.fill_element(control, str(FEE_AT_CONTRACT_MAX))
        self.page.settle(0.5)
        capped = self.page.accept_dialog()
        if capped:
            logger.info("consultation fee capped by portal: %s", capped)
        return True

    def _fill_line_items(self, items: list[str]) -> bool:
        drugs, procedures = split_line_items(items)
        filled = 0
        if drugs:
            filled += self.page.evaluate(FILL_SECTION_SCRIPT, "Drug Name", "Total Drug Fee", drugs) or 0
        if procedures:
            filled += self.page.evaluate(FILL_SECTION_SCRIPT, "Procedure Name", "Total Proc Fee", procedures) or 0
        logger.info("filled %d of %d line items", filled, len(drugs) + len(procedures))
        return filled > 0

    def _click_button_matching(self, must: str, must_not: str) -> bool:
        for el in self.page.query_all("button, input[type=button], input[type=submit], a"):
            label = f"{el.text} {el.get_attribute('value') or ''} {el.get_attribute('aria-label') or ''}".lower()
            if must in label and must_not not in label and el.is_displayed():
                el.click()
                return True
        return False

    def save_draft(self) -> dict[str, Any]:
        page = self.page
        if self._click_button_matching("compute claim", "submit"):
            page.settle(1.2)
            page.accept_dialog()
        if not self._click_button_matching("draft", "submit"):
            raise DraftSaveError("Save As Draft control not found")
        message = None
        page.settle(1.5)
        message = page.accept_dialog()
        if message and re.search(r"must\s+compute\s+claim", message, re.I):
            raise DraftSaveError(f"draft refused: {message}")
        return {"saved": True, "dialog": message}

    def submit(self) -> dict[str, Any]:
        page = self.page
        if self._click_button_matching("compute claim", "draft"):
            page.settle(1.2)
            page.accept_dialog()
        if not self._click_button_matching("submit", "draft"):
            raise NavigationError("Submit control not found")
        page.settle(1.5)
        return {"submitted": True, "dialog": page.accept_dialog()}

    def list_submitted_visits(self, date_from: date, date_to: date, patient_key: str) -> list[PortalVisitRow]:
        page = self.page
        self.ensure_logged_in()
        self._reset_to_home()
        if not page.click_text("View Submitted Visits"):
            raise NavigationError("View Submitted Visits not found")
        page.settle()
        for prefix, value in (("fromDate", date_from), ("toDate", date_to)):
            for part, text in (("Day", f"{value.day:02d}"), ("Month", f"{value.month:02d}"), ("Year", str(value.year))):
                el = page.query(f'[name="{prefix}{part}"]')
                if el is None:
                    continue
                if el.tag_name.lower() == "select":
                    Select(el).select_by_value(text)
                else:
                    page.fill_element(el, text)
        key = page.query('select[name="key"]')
        if key is not None:
            Select(key).select_by_value("patientNric")
        key_type = page.query('select[name="keyType"]')
        if key_type is not None:
            Select(key_type).select_by_value("E")
        page.fill('input[name="keyValue"]', patient_key)
        page.click('input[name="SearchAction"]')
        page.settle(2)
        raw = page.evaluate(
            "return Array.from(document.querySelectorAll('table tr')).map("
            "r => Array.from(r.querySelectorAll('td')).map(c => c.innerText));"
        ) or []
        return parse_submitted_rows(raw)

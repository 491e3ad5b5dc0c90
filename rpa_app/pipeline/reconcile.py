"""
Reconciliation of local submission state against the portals' own claim
history.
"""

from __future__ import annotations

from dataclasses import dataclass, field, asdict
from datetime import date
from typing import Any, Callable, Iterable, Optional

import pandas as pd
from flask import current_app
from selenium.common.exceptions import WebDriverException

from rpa_app.adapters import PortalRoute, require_route
from rpa_app.adapters.base import PortalVisitRow, TargetAdapter
from rpa_app.utils.error_handler import RPAError, UnsupportedRouteError
from rpa_app.utils.normalize import names_match, normalize_nric, normalize_pay_type


ALIGNED = "aligned"
RECORDED_BUT_ABSENT = "recorded_but_absent"
PRESENT_BUT_UNRECORDED = "present_but_unrecorded"
ACCEPTED_EXCEPTION = "accepted_exception"
UNCHECKED = "unchecked"
CLASSIFICATIONS = (ALIGNED, RECORDED_BUT_ABSENT, PRESENT_BUT_UNRECORDED, ACCEPTED_EXCEPTION, UNCHECKED)
MISMATCHES = (RECORDED_BUT_ABSENT, PRESENT_BUT_UNRECORDED)
RECORDED_STATUSES = ("draft", "submitted")


@dataclass
class ReconciliationRow:
    item_id: int
    visit_date: Optional[date]
    patient_name: Optional[str]
    nric: Optional[str]
    pay_type: Optional[str]
    local_status: Optional[str]
    portal_found: bool = False
    portal_status: Optional[str] = None
    portal_reference: Optional[str] = None
    classification: str = UNCHECKED
    note: Optional[str] = None


@dataclass
class ReconciliationReport:
    date_from: date
    date_to: date
    rows: list[ReconciliationRow] = field(default_factory=list)
    summary: dict[str, Any] = field(default_factory=dict)

    def to_frame(self) -> pd.DataFrame:
        columns = list(ReconciliationRow.__dataclass_fields__)
        return pd.DataFrame([asdict(r) for r in self.rows], columns=columns)

    def write_csv(self, path: str) -> str:
        self.to_frame().to_csv(path, index=False)
        return path

    def to_dict(self) -> dict[str, Any]:
        return {
            "date_from": self.date_from.isoformat(),
            "date_to": self.date_to.isoformat(),
            "summary": dict(self.summary),
            "rows": [asdict(r) for r in self.rows],
        }


def recompute_summary(report: ReconciliationReport) -> dict[str, Any]:
    """Derive counts and verdict from the current rows. Call after any change
    to ``report.rows``; nothing recomputes it implicitly."""
    counts = {name: 0 for name in CLASSIFICATIONS}
    for row in report.rows:
        counts[row.classification] = counts.get(row.classification, 0) + 1
    mismatches = sum(counts[name] for name in MISMATCHES)
    report.summary = {
        "total": len(report.rows),
        **counts,
        "mismatches": mismatches,
        "verdict": "Aligned" if mismatches == 0 else "Needs fix",
    }
    return report.summary


def find_portal_match(visit_date: Optional[date], patient_name: Optional[str],
                      rows: Iterable[PortalVisitRow]) -> Optional[PortalVisitRow]:
    same_day = [r for r in rows if r.visit_date == visit_date]
    if not same_day:
        return None
    if not (patient_name or "").strip():
        return same_day[0]
    for row in same_day:
        if names_match(patient_name, row.patient_name):
            return row
    return None


def classify(locally_recorded: bool, portal_found: bool, accepted: bool) -> str:
    if locally_recorded and not portal_found:
        return ACCEPTED_EXCEPTION if accepted else RECORDED_BUT_ABSENT
    if portal_found and not locally_recorded:
        return PRESENT_BUT_UNRECORDED
    return ALIGNED


class ReconciliationEngine:
    def __init__(self, store, adapter_factory: Callable[[PortalRoute], TargetAdapter],
                 accepted_exceptions: Iterable[str] = ()) -> None:
        self.store = store
        self.adapter_factory = adapter_factory
        self.accepted_exceptions = {str(v).strip().upper() for v in accepted_exceptions if str(v).strip()}

    def is_accepted(self, visit) -> bool:
        """Allow-list entries name single visits by id or identity number."""
        keys = {str(visit.id)}
        if visit.nric:
            keys.add(normalize_nric(visit.nric))
        return bool(keys & self.accepted_exceptions)

    def reconcile(self, date_from: date, date_to: date, pay_type: Optional[str] = None) -> ReconciliationReport:
        report = ReconciliationReport(date_from=date_from, date_to=date_to)
        listings: dict[tuple, list[PortalVisitRow]] = {}

        for visit in self.store.list_for_reconciliation(date_from, date_to, normalize_pay_type(pay_type)):
            code = normalize_pay_type(visit.pay_type)
            row = ReconciliationRow(
                item_id=visit.id,
                visit_date=visit.visit_date,
                patient_name=visit.patient_name,
                nric=visit.nric,
                pay_type=code,
                local_status=visit.submission_status,
            )
            report.rows.append(row)

            try:
                route = require_route(code)
            except UnsupportedRouteError as exc:
                row.note = str(exc)
                continue
            if not visit.nric:
                row.note = "no identity number"
                continue

            key = (code, normalize_nric(visit.nric), visit.visit_date)
            if key not in listings:
                try:
                    adapter = self.adapter_factory(route)
                    listings[key] = adapter.list_submitted_visits(visit.visit_date, visit.visit_date, visit.nric)
                except (RPAError, WebDriverException) as exc:
                    current_app.logger.warning("Portal listing failed for visit %s: %s", visit.id, exc)
                    row.note = f"listing error: {exc}"
                    continue

            match = find_portal_match(visit.visit_date, visit.patient_name, listings[key])
            if match is not None:
                row.portal_found = True
                row.portal_status = match.status_label
                row.portal_reference = match.portal_reference
            row.classification = classify(
                visit.submission_status in RECORDED_STATUSES, row.portal_found, self.is_accepted(visit)
            )

        recompute_summary(report)
        current_app.logger.info("Reconciliation %s..%s: %s", date_from, date_to, report.summary)
        return report

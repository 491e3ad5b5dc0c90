"""
SQLAlchemy-backed record store for visits, runs and portals.

The pipeline talks to persistence only through this class. Every write is
scoped to one row and committed on its own.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Optional

from flask import current_app
from sqlalchemy import or_, and_
from sqlalchemy.exc import IntegrityError

from ..models.models import Visit, ExtractionRun, Portal


EXTRACTION_KIND = "extraction"
SUBMISSION_KIND = "submission"

# Listing fields the basic backlog may refresh on an existing visit
LISTING_FIELDS = (
    "time_arrived", "time_left", "patient_name", "patient_number", "nric",
    "pay_type", "visit_type", "total_amount",
)


@dataclass
class BacklogSelector:
    backlog: str = "details"  # basic | details
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    retry_failed: bool = False
    max_attempts: int = 3
    pay_type: Optional[str] = None
    limit: Optional[int] = None
    all_pending: bool = False

    @property
    def is_unscoped(self) -> bool:
        return self.date_from is None and self.date_to is None

    def describe(self) -> dict[str, Any]:
        return {
            "backlog": self.backlog,
            "date_from": self.date_from.isoformat() if self.date_from else None,
            "date_to": self.date_to.isoformat() if self.date_to else None,
            "retry_failed": self.retry_failed,
            "max_attempts": self.max_attempts,
            "pay_type": self.pay_type,
            "limit": self.limit,
            "all_pending": self.all_pending,
        }


class SqlRecordStore:
    def __init__(self, session) -> None:
        self.session = session

    # -- work items ---------------------------------------------------------

    def get_pending(self, kind: str, selector: BacklogSelector) -> list[Visit]:
        q = self.session.query(Visit)
        if kind == EXTRACTION_KIND:
            states = [Visit.extraction_status.in_(["pending", "in_progress"])]
            if selector.retry_failed:
                states.append(and_(
                    Visit.extraction_status == "failed",
                    Visit.extraction_attempts < selector.max_attempts,
                ))
            q = q.filter(or_(*states))
            if selector.backlog == "details":
                q = q.filter(Visit.diagnosis_description.is_(None))
        elif kind == SUBMISSION_KIND:
            q = q.filter(
                Visit.submission_status.is_(None),
                Visit.extraction_status == "completed",
                Visit.pay_type.isnot(None),
                Visit.pay_type != "",
            )
        else:
            raise ValueError(f"unknown backlog kind: {kind}")

        if selector.date_from:
            q = q.filter(Visit.visit_date >= selector.date_from)
        if selector.date_to:
            q = q.filter(Visit.visit_date <= selector.date_to)
        if selector.pay_type:
            q = q.filter(Visit.pay_type == selector.pay_type)
        q = q.order_by(Visit.visit_date.asc(), Visit.id.asc())
        if selector.limit:
            q = q.limit(selector.limit)
        return q.all()

    def get_by_id(self, item_id: int) -> Optional[Visit]:
        return self.session.get(Visit, item_id)

    def update(self, item_id: int, fields: dict[str, Any]) -> Visit:
        visit = self.get_by_id(item_id)
        if visit is None:
            raise LookupError(f"visit {item_id} not found")
        for key, value in fields.items():
            if not hasattr(Visit, key):
                raise AttributeError(f"unknown visit field: {key}")
            setattr(visit, key, value)
        self.session.add(visit)
        self.session.commit()
        return visit

    def upsert_listing(self, row: dict[str, Any]) -> tuple[Visit, str]:
        """Insert a queue-listing row or refresh the listing fields of an
        existing visit. Completed visits and unchanged rows are not written.
        Returns the visit and one of created/updated/unchanged.
        """
        existing = (
            self.session.query(Visit)
            .filter_by(visit_record_no=row.get("visit_record_no"), visit_date=row.get("visit_date"))
            .first()
        )
        if existing is None:
            visit = Visit(**row)
            self.session.add(visit)
            try:
                self.session.commit()
                return visit, "created"
            except IntegrityError:
                # Another writer inserted the same key; refresh that row instead
                self.session.rollback()
                existing = (
                    self.session.query(Visit)
                    .filter_by(visit_record_no=row.get("visit_record_no"), visit_date=row.get("visit_date"))
                    .one()
                )

        if existing.extraction_status == "completed":
            return existing, "unchanged"
        changes = {
            k: v for k, v in row.items()
            if k in LISTING_FIELDS and v is not None and getattr(existing, k) != v
        }
        if not changes:
            return existing, "unchanged"
        return self.update(existing.id, changes), "updated"

    def list_for_reconciliation(self, date_from: date, date_to: date, pay_type: Optional[str] = None) -> list[Visit]:
        q = self.session.query(Visit).filter(
            Visit.visit_date >= date_from,
            Visit.visit_date <= date_to,
            Visit.pay_type.isnot(None),
            Visit.pay_type != "",
        )
        if pay_type:
            q = q.filter(Visit.pay_type == pay_type)
        return q.order_by(Visit.visit_date.asc(), Visit.id.asc()).all()

    # -- runs ---------------------------------------------------------------

    def create_run(self, kind: str, metadata: Optional[dict[str, Any]] = None) -> ExtractionRun:
        run = ExtractionRun(
            run_type=kind,
            status="running",
            started_at=datetime.utcnow(),
            total_records=0,
            completed_count=0,
            failed_count=0,
            run_metadata=metadata or {},
        )
        self.session.add(run)
        self.session.commit()
        current_app.logger.info("run %s started (%s)", run.id, kind)
        return run

    def update_run(self, run_id: int, fields: dict[str, Any]) -> ExtractionRun:
        run = self.session.get(ExtractionRun, run_id)
        if run is None:
            raise LookupError(f"run {run_id} not found")
        for key, value in fields.items():
            setattr(run, "run_metadata" if key == "metadata" else key, value)
        self.session.add(run)
        self.session.commit()
        return run

    def get_run(self, run_id: int) -> Optional[ExtractionRun]:
        return self.session.get(ExtractionRun, run_id)

    def fail_running_runs(self, message: str) -> list[int]:
        runs = self.session.query(ExtractionRun).filter_by(status="running").all()
        for run in runs:
            run.status = "failed"
            run.finished_at = datetime.utcnow()
            run.error_message = message
            self.session.add(run)
        self.session.commit()
        return [run.id for run in runs]

    # -- portals ------------------------------------------------------------

    def ensure_portal(self, code: str, name: Optional[str] = None, enabled: bool = False) -> Portal:
        portal = self.session.query(Portal).filter_by(code=code).first()
        if portal is None:
            portal = Portal(code=code, name=name or code, enabled=enabled)
            self.session.add(portal)
            self.session.commit()
            current_app.logger.info("registered portal code %s (enabled=%s)", code, enabled)
        return portal

    def portal_enabled(self, code: str) -> bool:
        portal = self.session.query(Portal).filter_by(code=code).first()
        return bool(portal and portal.enabled)

    def set_portal_enabled(self, code: str, enabled: bool) -> Portal:
        portal = self.ensure_portal(code)
        portal.enabled = enabled
        self.session.add(portal)
        self.session.commit()
        return portal


class UnscopedSelectorError(ValueError):
    """A selector with no date range was used without opting into the whole backlog."""


def require_scope(selector: BacklogSelector) -> None:
    if selector.is_unscoped and not selector.all_pending:
        raise UnscopedSelectorError("a date range (--from/--to) is required unless --all-pending is given")

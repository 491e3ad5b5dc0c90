"""
Source extraction batch orchestrator
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta
from typing import Any, Callable, Optional

from flask import current_app
from selenium.common.exceptions import WebDriverException

from rpa_app.store.records import EXTRACTION_KIND, BacklogSelector, require_scope
from rpa_app.utils.error_handler import ErrorHandler, ProcessInterrupted, RPAError
from rpa_app.pipeline.run_tracker import RUN_COMPLETED, RUN_FAILED, RunTracker


SOURCE_EXTRACTION = "source_extraction"


@dataclass
class RunSummary:
    run_id: Optional[int]
    status: Optional[str]
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    error_message: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_tracker(cls, tracker: RunTracker, error_message: Optional[str] = None) -> "RunSummary":
        state = tracker.state
        return cls(
            run_id=state.run_id,
            status=tracker.status,
            total=state.total,
            succeeded=state.succeeded,
            failed=state.failed,
            error_message=error_message,
            metadata=dict(state.metadata),
        )


def listing_dates(selector: BacklogSelector) -> list[date]:
    start = selector.date_from or selector.date_to
    end = selector.date_to or selector.date_from
    if start is None:
        return []
    if end < start:
        start, end = end, start
    return [start + timedelta(days=n) for n in range((end - start).days + 1)]


class BatchOrchestrator:
    """Walks the extraction backlog one visit at a time.

    Each visit is marked in_progress, scraped through the source adapter and
    written back as completed or failed. Item-scoped errors never stop the
    run; run-fatal ones (login, unreachable listing, interruption) finalize
    it as failed.
    """

    def __init__(self, store, source, tracker: RunTracker, config,
                 sleep: Callable[[float], None] = time.sleep,
                 after_item: Optional[Callable[[], Any]] = None) -> None:
        self.store = store
        self.source = source
        self.tracker = tracker
        self.config = config
        self.sleep = sleep
        self.after_item = after_item

    def run_batch(self, selector: BacklogSelector) -> RunSummary:
        require_scope(selector)
        if selector.limit is None:
            selector = replace(selector, limit=self.config.batch_size)

        self.tracker.start(SOURCE_EXTRACTION, {"selector": selector.describe()})
        try:
            self.source.ensure_logged_in()
            if selector.backlog == "basic":
                self._ingest_listing(selector)
            items = self.store.get_pending(EXTRACTION_KIND, selector)
            self.tracker.set_total(len(items))
            current_app.logger.info("Extraction run %s: %d pending visits", self.tracker.state.run_id, len(items))

            for index, item in enumerate(items):
                self.tracker.check_interrupted()
                self.tracker.record_item(self._process_item(item))
                if self.after_item is not None:
                    self.after_item()
                if index < len(items) - 1:
                    self.sleep(self.config.item_delay_seconds)
            self.tracker.check_interrupted()
        except ProcessInterrupted as exc:
            self.tracker.finalize(RUN_FAILED, str(exc))
            return RunSummary.from_tracker(self.tracker, str(exc))
        except RPAError as exc:
            ErrorHandler.log_error(exc, {"run_id": self.tracker.state.run_id, "component": "batch"})
            self.tracker.finalize(RUN_FAILED, str(exc))
            return RunSummary.from_tracker(self.tracker, str(exc))
        except Exception as exc:  # noqa: BLE001
            current_app.logger.exception("Extraction run aborted by unexpected error")
            self.tracker.finalize(RUN_FAILED, f"{type(exc).__name__}: {exc}")
            return RunSummary.from_tracker(self.tracker, str(exc))

        self.tracker.finalize(RUN_COMPLETED)
        return RunSummary.from_tracker(self.tracker)

    def _ingest_listing(self, selector: BacklogSelector) -> None:
        counts = {"created": 0, "updated": 0, "unchanged": 0}
        for day in listing_dates(selector):
            self.tracker.check_interrupted()
            for row in self.source.list_visits(day):
                _, outcome = self.store.upsert_listing(row)
                counts[outcome] += 1
        current_app.logger.info("Queue listing ingested: %s", counts)
        self.tracker.add_metadata(listing=counts)

    def _process_item(self, item) -> bool:
        previous_status = item.extraction_status
        attempts = (item.extraction_attempts or 0) + 1
        self.store.update(item.id, {
            "extraction_status": "in_progress",
            "extraction_last_attempt_at": datetime.utcnow(),
        })
        try:
            result = self.source.extract(item)
        except (RPAError, WebDriverException) as exc:
            if getattr(exc, "run_fatal", False):
                # run-fatal: the visit keeps its status and retry budget
                self.store.update(item.id, {"extraction_status": previous_status})
                raise
            details = ErrorHandler.handle_item_error(exc, item.id, "extraction")
            metadata = dict(item.extraction_metadata or {})
            metadata["last_error"] = details
            self.store.update(item.id, {
                "extraction_status": "failed",
                "extraction_attempts": attempts,
                "extraction_error": details["error_message"],
                "extraction_metadata": metadata,
            })
            return False

        fields = extraction_fields(item, result, attempts)
        self.store.update(item.id, fields)
        return True


def extraction_fields(item, result, attempts: int) -> dict[str, Any]:
    """Visit columns written for a successful extraction. Values the source
    did not have are annotated in metadata and leave existing data alone."""
    metadata = dict(item.extraction_metadata or {})
    metadata.pop("last_error", None)
    metadata.update({
        "source_missing": list(result.source_missing),
        "rejections": dict(result.rejections),
        "extracted_at": datetime.utcnow().isoformat(),
    })
    fields: dict[str, Any] = {
        "extraction_status": "completed",
        "extraction_attempts": attempts,
        "extraction_error": None,
        "extraction_sources": dict(result.sources),
        "extraction_metadata": metadata,
    }
    if result.nric:
        fields["nric"] = result.nric
    if result.diagnosis:
        fields["diagnosis_description"] = result.diagnosis
    if result.diagnosis_code:
        fields["diagnosis_code"] = result.diagnosis_code
    if result.treatment:
        fields["treatment_detail"] = result.treatment
    if result.line_items:
        fields["line_items"] = list(result.line_items)
    if result.mc_days is not None:
        fields["mc_days"] = result.mc_days
        if item.mc_start_date is None and item.visit_date is not None:
            fields["mc_start_date"] = item.visit_date
    return fields

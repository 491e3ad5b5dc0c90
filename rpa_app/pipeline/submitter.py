"""
Claim submission into insurer portals
"""

from __future__ import annotations

import time
from datetime import datetime
from typing import Any, Callable, Optional

from flask import current_app
from selenium.common.exceptions import WebDriverException

from rpa_app.adapters import PortalRoute, not_implemented_result, resolve_route
from rpa_app.adapters.base import MODE_DRAFT, MODE_FILL_ONLY, MODE_SUBMIT, SUBMISSION_MODES, TargetAdapter
from rpa_app.pipeline.engine import RunSummary
from rpa_app.pipeline.run_tracker import RUN_COMPLETED, RUN_FAILED, RunTracker
from rpa_app.store.records import SUBMISSION_KIND, BacklogSelector, require_scope
from rpa_app.utils.error_handler import ErrorHandler, ProcessInterrupted, RPAError, UnsupportedRouteError
from rpa_app.utils.normalize import normalize_pay_type


CLAIM_SUBMISSION = "claim_submission"
STATUS_BY_MODE = {MODE_DRAFT: "draft", MODE_SUBMIT: "submitted", MODE_FILL_ONLY: None}


def choose_mode(final_submit: bool, save_as_draft: bool) -> str:
    if final_submit:
        return MODE_SUBMIT
    return MODE_DRAFT if save_as_draft else MODE_FILL_ONLY


class PortalAdapterFactory:
    """Lazily opens one browser session for all target portals and keeps
    one logged-in adapter per portal family."""

    def __init__(self, config, session_manager, step_hook: Optional[Callable[[], None]] = None) -> None:
        self.config = config
        self.session_manager = session_manager
        self.step_hook = step_hook
        self.session = None
        self._adapters: dict[str, TargetAdapter] = {}

    def __call__(self, route: PortalRoute) -> TargetAdapter:
        adapter = self._adapters.get(route.family)
        if adapter is None:
            if self.session is None:
                self.session = self.session_manager.open()
                self.session.step_hook = self.step_hook
            page = self.session_manager.new_page(self.session)
            adapter = route.adapter_class(
                page,
                self.config.portal_credentials(route.family),
                route.code,
                min_confidence=self.config.diagnosis_min_confidence,
            )
            self._adapters[route.family] = adapter
        adapter.portal_code = route.code
        return adapter

    def tidy(self) -> None:
        """Close windows a portal opened behind the adapters' backs."""
        if self.session is not None:
            self.session_manager.close_stray_windows(self.session)

    def close(self) -> None:
        if self.session is not None:
            self.session_manager.close(self.session)
            self.session = None
        self._adapters.clear()


class ClaimSubmitter:
    def __init__(self, store, tracker: RunTracker, config,
                 adapter_factory: Callable[[PortalRoute], TargetAdapter],
                 sleep: Callable[[float], None] = time.sleep,
                 after_item: Optional[Callable[[], Any]] = None) -> None:
        self.store = store
        self.tracker = tracker
        self.config = config
        self.adapter_factory = adapter_factory
        self.sleep = sleep
        self.after_item = after_item

    def submit_pending(self, selector: BacklogSelector, mode: str = MODE_FILL_ONLY) -> RunSummary:
        if mode not in SUBMISSION_MODES:
            raise ValueError(f"unknown submission mode: {mode}")
        if mode == MODE_SUBMIT and not self.config.final_submit:
            raise ValueError("final submission requires RPA_FINAL_SUBMIT=1")
        require_scope(selector)

        self.tracker.start(CLAIM_SUBMISSION, {"mode": mode, "selector": selector.describe()})
        counts = {"not_implemented": 0}
        try:
            items = self.store.get_pending(SUBMISSION_KIND, selector)
            self.tracker.set_total(len(items))
            current_app.logger.info("Submission run %s: %d visits, mode=%s", self.tracker.state.run_id, len(items), mode)

            for index, item in enumerate(items):
                self.tracker.check_interrupted()
                outcome = self._submit_item(item, mode)
                if self.after_item is not None:
                    self.after_item()
                if outcome is None:
                    counts["not_implemented"] += 1
                else:
                    self.tracker.record_item(outcome)
                    if index < len(items) - 1:
                        self.sleep(self.config.claim_delay_seconds)
            self.tracker.check_interrupted()
        except ProcessInterrupted as exc:
            self.tracker.add_metadata(**counts)
            self.tracker.finalize(RUN_FAILED, str(exc))
            return RunSummary.from_tracker(self.tracker, str(exc))
        except RPAError as exc:
            ErrorHandler.log_error(exc, {"run_id": self.tracker.state.run_id, "component": "submitter"})
            self.tracker.add_metadata(**counts)
            self.tracker.finalize(RUN_FAILED, str(exc))
            return RunSummary.from_tracker(self.tracker, str(exc))
        except Exception as exc:  # noqa: BLE001
            current_app.logger.exception("Submission run aborted by unexpected error")
            self.tracker.finalize(RUN_FAILED, f"{type(exc).__name__}: {exc}")
            return RunSummary.from_tracker(self.tracker, str(exc))

        self.tracker.add_metadata(**counts)
        self.tracker.finalize(RUN_COMPLETED)
        return RunSummary.from_tracker(self.tracker)

    def _route(self, code: Optional[str]) -> PortalRoute:
        route = resolve_route(code)
        self.store.ensure_portal(code, name=route.name if route else None, enabled=route is not None)
        if route is None or not self.store.portal_enabled(code):
            raise UnsupportedRouteError(code)
        return route

    def _submit_item(self, item, mode: str) -> Optional[bool]:
        """True/False for a submitted/failed visit, None when the payer has
        no enabled portal route."""
        code = normalize_pay_type(item.pay_type)
        try:
            route = self._route(code)
        except UnsupportedRouteError as exc:
            current_app.logger.info("Visit %s: %s; skipped", item.id, exc)
            self.store.update(item.id, {"submission_result": not_implemented_result(exc.portal)})
            return None

        try:
            adapter = self.adapter_factory(route)
            outcome = adapter.submit_claim(item, mode)
        except (RPAError, WebDriverException) as exc:
            if getattr(exc, "run_fatal", False):
                # run-fatal: the visit stays in the submission backlog
                raise
            details = ErrorHandler.handle_item_error(exc, item.id, "submission")
            self.store.update(item.id, {
                "submission_status": "error",
                "submission_portal": code,
                "submission_error": details["error_message"],
                "submission_result": {"success": False, "portal": code, "error": details},
            })
            return False

        fields: dict[str, Any] = {
            "submission_portal": code,
            "submission_result": outcome.to_dict(),
            "submission_error": None,
        }
        status = STATUS_BY_MODE[mode]
        if status is not None:
            fields["submission_status"] = status
            fields["submitted_at"] = datetime.utcnow()
        self.store.update(item.id, fields)
        return True

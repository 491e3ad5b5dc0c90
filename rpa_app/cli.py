"""
Command line entry point: ``rpa extract | submit | reconcile``.

Exit codes: 0 when the run completed, 1 when it failed, 2 when the
invocation was refused (bad arguments, unscoped selector, missing
credentials).
"""

from __future__ import annotations

import argparse
import json
import sys
from datetime import date
from typing import Optional

from flask import Flask

from rpa_app import create_app
from rpa_app.adapters.source import ClinicSourceAdapter
from rpa_app.browser.session import BrowserSessionManager
from rpa_app.extensions import db
from rpa_app.pipeline.engine import BatchOrchestrator
from rpa_app.pipeline.reconcile import ReconciliationEngine
from rpa_app.pipeline.run_tracker import RunTracker, exit_code_for
from rpa_app.pipeline.submitter import ClaimSubmitter, PortalAdapterFactory, choose_mode
from rpa_app.store.records import BacklogSelector, SqlRecordStore, UnscopedSelectorError, require_scope
from rpa_app.utils.error_handler import RPAError
from rpa_app.utils.normalize import normalize_pay_type

EXIT_REFUSED = 2


def _iso_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not a YYYY-MM-DD date: {value!r}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="rpa", description="Clinic visit extraction and insurer claim automation")
    sub = parser.add_subparsers(dest="command", required=True)

    def add_range(p: argparse.ArgumentParser, required: bool = False) -> None:
        p.add_argument("--from", dest="date_from", type=_iso_date, required=required, help="first visit date (YYYY-MM-DD)")
        p.add_argument("--to", dest="date_to", type=_iso_date, required=required, help="last visit date (YYYY-MM-DD)")
        p.add_argument("--pay-type", dest="pay_type", help="only visits with this payer code")

    extract = sub.add_parser("extract", help="extract visit details from the clinic system")
    add_range(extract)
    extract.add_argument("--backlog", choices=("basic", "details"), default="details")
    extract.add_argument("--retry-failed", action="store_true", help="include failed visits under the retry limit")
    extract.add_argument("--all-pending", action="store_true", help="process the whole backlog without a date range")
    extract.add_argument("--limit", type=int)

    submit = sub.add_parser("submit", help="fill insurer portal claim forms")
    add_range(submit)
    submit.add_argument("--save-as-draft", action="store_true", help="save each filled form as a draft")
    submit.add_argument("--all-pending", action="store_true")
    submit.add_argument("--limit", type=int)

    reconcile = sub.add_parser("reconcile", help="compare local submissions with portal claim history")
    add_range(reconcile, required=True)
    reconcile.add_argument("--report", help="write the per-visit report as CSV")
    return parser


def _selector(args, config, backlog: str = "details") -> BacklogSelector:
    return BacklogSelector(
        backlog=backlog,
        date_from=args.date_from,
        date_to=args.date_to,
        retry_failed=getattr(args, "retry_failed", False),
        max_attempts=config.max_retries,
        pay_type=normalize_pay_type(args.pay_type),
        limit=args.limit,
        all_pending=args.all_pending,
    )


def _emit(payload: dict) -> None:
    print(json.dumps(payload, indent=2, default=str))


def run_extract(args, app: Flask, session_manager) -> int:
    config = app.config["RPA_CONFIG"]
    selector = _selector(args, config, backlog=args.backlog)
    require_scope(selector)
    if not config.source.configured:
        app.logger.error("CLINIC_ASSIST_URL/USERNAME/PASSWORD must be set")
        return EXIT_REFUSED

    store = SqlRecordStore(db.session)
    tracker = RunTracker(store)
    session = session_manager.open()
    session.step_hook = tracker.check_interrupted
    try:
        page = session_manager.new_page(session)
        source = ClinicSourceAdapter(page, config.source, amount_max=config.amount_max)
        orchestrator = BatchOrchestrator(store, source, tracker, config,
                                         after_item=lambda: session_manager.close_stray_windows(session))
        summary = orchestrator.run_batch(selector)
    finally:
        session_manager.close(session)
    _emit(summary.__dict__)
    return exit_code_for(summary.status)


def run_submit(args, app: Flask, session_manager) -> int:
    config = app.config["RPA_CONFIG"]
    selector = _selector(args, config)
    require_scope(selector)
    mode = choose_mode(config.final_submit, args.save_as_draft)

    store = SqlRecordStore(db.session)
    tracker = RunTracker(store)
    factory = PortalAdapterFactory(config, session_manager, step_hook=tracker.check_interrupted)
    try:
        submitter = ClaimSubmitter(store, tracker, config, factory, after_item=factory.tidy)
        summary = submitter.submit_pending(selector, mode)
    finally:
        factory.close()
    _emit(summary.__dict__)
    return exit_code_for(summary.status)


def run_reconcile(args, app: Flask, session_manager) -> int:
    config = app.config["RPA_CONFIG"]
    if args.date_to < args.date_from:
        app.logger.error("--to is before --from")
        return EXIT_REFUSED

    store = SqlRecordStore(db.session)
    factory = PortalAdapterFactory(config, session_manager)
    try:
        report = ReconciliationEngine(store, factory, config.accepted_exceptions).reconcile(
            args.date_from, args.date_to, args.pay_type
        )
    finally:
        factory.close()
    if args.report:
        report.write_csv(args.report)
        app.logger.info("reconciliation report written to %s", args.report)
    _emit(report.summary)
    return 0


COMMANDS = {"extract": run_extract, "submit": run_submit, "reconcile": run_reconcile}


def main(argv: Optional[list[str]] = None, app: Optional[Flask] = None, session_manager=None) -> int:
    try:
        args = build_parser().parse_args(argv)
    except SystemExit as exc:
        return exc.code if isinstance(exc.code, int) else EXIT_REFUSED

    app = app or create_app()
    with app.app_context():
        manager = session_manager or BrowserSessionManager(app.config["RPA_CONFIG"])
        try:
            return COMMANDS[args.command](args, app, manager)
        except UnscopedSelectorError as exc:
            app.logger.error(str(exc))
            return EXIT_REFUSED
        except ValueError as exc:
            app.logger.error("refused: %s", exc)
            return EXIT_REFUSED
        except RPAError as exc:
            app.logger.error("%s: %s", type(exc).__name__, exc)
            return 1


if __name__ == "__main__":
    sys.exit(main())

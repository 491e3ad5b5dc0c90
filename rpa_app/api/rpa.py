from datetime import date
from flask import Blueprint, jsonify, request, current_app
from flask_jwt_extended import jwt_required, get_jwt
from sqlalchemy import desc
from rpa_app.extensions import db
from rpa_app.models.models import Visit, ExtractionRun, Portal
from rpa_app.store.records import SqlRecordStore
from rpa_app.utils.error_handler import ErrorHandler
from rpa_app.utils.normalize import normalize_pay_type


rpa_bp = Blueprint("rpa", __name__)

CANCELLED_MESSAGE = "Cancelled by operator"


def _paging() -> tuple[int, int]:
    try:
        page = max(1, int(request.args.get("page", 1)))
        page_size = min(200, max(1, int(request.args.get("page_size", 50))))
    except ValueError:
        page, page_size = 1, 50
    return page, page_size


def _page_of(query, serialize) -> dict:
    page, page_size = _paging()
    total = query.count()
    items = query.offset((page - 1) * page_size).limit(page_size).all()
    return {
        "items": [serialize(i) for i in items],
        "page": page,
        "page_size": page_size,
        "total": total,
    }


def _parse_date(value: str | None) -> date | None:
    if not value:
        return None
    return date.fromisoformat(value)


@rpa_bp.get("/runs")
@jwt_required()
def list_runs():
    q = ExtractionRun.query
    status = request.args.get("status")
    if status:
        q = q.filter(ExtractionRun.status == status)
    run_type = request.args.get("run_type")
    if run_type:
        q = q.filter(ExtractionRun.run_type == run_type)
    q = q.order_by(desc(ExtractionRun.started_at), desc(ExtractionRun.id))
    return jsonify(_page_of(q, lambda r: r.to_dict())), 200


@rpa_bp.get("/runs/<int:run_id>")
@jwt_required()
def get_run(run_id: int):
    run = db.session.get(ExtractionRun, run_id)
    if run is None:
        return jsonify({"message": "run not found"}), 404
    return jsonify(run.to_dict()), 200


@rpa_bp.post("/runs/cancel")
@jwt_required()
def cancel_runs():
    """Mark every running run failed; used when the owning process is gone."""
    operator = get_jwt().get("sub")
    try:
        ids = SqlRecordStore(db.session).fail_running_runs(CANCELLED_MESSAGE)
    except Exception as exc:  # noqa: BLE001
        db.session.rollback()
        body, code = ErrorHandler.create_error_response(exc, 500, {"endpoint": "cancel_runs"})
        return jsonify(body), code
    current_app.logger.warning("operator %s cancelled runs %s", operator, ids)
    return jsonify({"cancelled": ids}), 200


@rpa_bp.get("/visits")
@jwt_required()
def list_visits():
    q = Visit.query
    try:
        date_from = _parse_date(request.args.get("date_from"))
        date_to = _parse_date(request.args.get("date_to"))
    except ValueError:
        return jsonify({"message": "dates must be YYYY-MM-DD"}), 400
    if date_from:
        q = q.filter(Visit.visit_date >= date_from)
    if date_to:
        q = q.filter(Visit.visit_date <= date_to)
    for arg, column in (("extraction_status", Visit.extraction_status), ("submission_status", Visit.submission_status)):
        value = request.args.get(arg)
        if value == "null":
            q = q.filter(column.is_(None))
        elif value:
            q = q.filter(column == value)
    pay_type = normalize_pay_type(request.args.get("pay_type"))
    if pay_type:
        q = q.filter(Visit.pay_type == pay_type)
    q = q.order_by(desc(Visit.visit_date), desc(Visit.id))
    return jsonify(_page_of(q, lambda v: v.to_dict())), 200


def _portal_dict(p: Portal) -> dict:
    return {
        "code": p.code,
        "name": p.name,
        "enabled": p.enabled,
        "updated_at": p.updated_at.isoformat() if p.updated_at else None,
    }


@rpa_bp.get("/portals")
@jwt_required()
def list_portals():
    portals = Portal.query.order_by(Portal.code).all()
    return jsonify({"items": [_portal_dict(p) for p in portals]}), 200


@rpa_bp.put("/portals/<code>")
@jwt_required()
def update_portal(code: str):
    payload = request.get_json(silent=True) or {}
    if not isinstance(payload.get("enabled"), bool):
        return jsonify({"message": "enabled (boolean) is required"}), 400
    key = normalize_pay_type(code)
    store = SqlRecordStore(db.session)
    portal = store.set_portal_enabled(key, payload["enabled"])
    name = (payload.get("name") or "").strip()
    if name:
        portal.name = name
        db.session.commit()
    current_app.logger.info("portal %s enabled=%s", key, portal.enabled)
    return jsonify(_portal_dict(portal)), 200

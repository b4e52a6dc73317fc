"""Promotion endpoints.

``/functions/*`` are the two batch handlers called from the promotion
screen. They answer with a flat ``{"error": ...}`` body and carry CORS
headers. ``/rpc/*`` expose the named ledger procedures, and
``/promotions/*`` back the preview and history views.
"""
from flask import Blueprint, request, jsonify, current_app, session

from extensions import db
from models import StudentPromotion
from utils import FINANCE_ROLES, STAFF_ROLES, actor_name, admin_required, is_admin, role_required
from utils.academic_year import resolve_year_id
from utils.classes import get_next_class_id
from utils.errors import AppError, MissingFeePlans, ValidationFailed
from utils.promotion import (
    backfill_fees,
    debug_fee_counts,
    promote_students_with_fees,
    promote_students_with_fees_by_name,
    promotion_preview,
)
from utils.validation import parse_int, require_fields

functions_bp = Blueprint('functions', __name__, url_prefix='/functions')
rpc_bp = Blueprint('rpc', __name__, url_prefix='/rpc')
promotion_bp = Blueprint('promotions', __name__, url_prefix='/promotions')

CORS_HEADERS = {
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
}


@functions_bp.after_request
def _cors(resp):
    resp.headers.setdefault("Access-Control-Allow-Origin", current_app.config.get("FUNCTIONS_ALLOWED_ORIGIN", "*"))
    for key, value in CORS_HEADERS.items():
        resp.headers.setdefault(key, value)
    return resp


def _admin_gate():
    if not session.get("user_id"):
        return jsonify({"error": "unauthorized: sign in required"}), 401
    if session.get("role") != "admin":
        return jsonify({"error": "forbidden: admin role required"}), 403
    return None


def _run(operation):
    """Commit on success; map service errors onto the flat function error body."""
    try:
        result = operation()
        db.session.commit()
        return jsonify(result), 200
    except MissingFeePlans as exc:
        db.session.rollback()
        return jsonify({"error": exc.code, "missing": exc.missing}), exc.status
    except ValidationFailed as exc:
        db.session.rollback()
        message = exc.message if exc.message.startswith("invalid_payload") else f"invalid_payload: {exc.message}"
        return jsonify({"error": message}), 400
    except AppError as exc:
        db.session.rollback()
        return jsonify({"error": exc.message}), exc.status
    except Exception as exc:
        db.session.rollback()
        current_app.logger.exception("function %s failed", request.path)
        return jsonify({"error": str(exc)}), 500


@functions_bp.route('/fees-backfill', methods=['POST', 'OPTIONS'])
def fees_backfill():
    if request.method == 'OPTIONS':
        return "ok", 200
    denied = _admin_gate()
    if denied:
        return denied
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        return jsonify({"error": "invalid_payload: JSON body required"}), 400
    return _run(lambda: backfill_fees(payload.get("target_academic_year_id"), created_by=actor_name()))


@functions_bp.route('/promotions-execute', methods=['POST', 'OPTIONS'])
def promotions_execute():
    if request.method == 'OPTIONS':
        return "ok", 200
    denied = _admin_gate()
    if denied:
        return denied
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        return jsonify({"error": "invalid_payload: JSON body required"}), 400
    return _run(lambda: promote_students_with_fees(
        payload.get("promotion_data"),
        payload.get("target_academic_year_id"),
        promoted_by=payload.get("promoted_by_user") or "Admin",
        idempotency_key=payload.get("idempotency_key"),
    ))


@rpc_bp.route('/promote_students_with_fees', methods=['POST'])
@admin_required
def rpc_promote():
    payload = request.get_json(silent=True) or {}
    result = promote_students_with_fees(
        payload.get("promotion_data"),
        payload.get("target_academic_year_id"),
        promoted_by=payload.get("promoted_by_user") or actor_name(),
        idempotency_key=payload.get("idempotency_key"),
    )
    db.session.commit()
    return jsonify(result)


@rpc_bp.route('/promote_students_with_fees_by_name', methods=['POST'])
@admin_required
def rpc_promote_by_name():
    payload = request.get_json(silent=True) or {}
    require_fields(payload, ("source_year_name", "target_year_name"))
    result = promote_students_with_fees_by_name(
        payload["source_year_name"],
        payload["target_year_name"],
        promoted_by=payload.get("promoted_by") or actor_name(),
    )
    db.session.commit()
    return jsonify(result)


@rpc_bp.route('/debug_fee_counts', methods=['GET'])
@role_required(*FINANCE_ROLES)
def rpc_debug_fee_counts():
    year_id = parse_int(request.args.get("p_year"), "p_year")
    return jsonify({"p_year": year_id, "count": debug_fee_counts(year_id)})


@rpc_bp.route('/get_next_class_id', methods=['GET'])
@role_required(*STAFF_ROLES)
def rpc_next_class():
    class_id = parse_int(request.args.get("current_class_id"), "current_class_id")
    return jsonify({"current_class_id": class_id, "next_class_id": get_next_class_id(class_id)})


@rpc_bp.route('/is_admin', methods=['GET'])
def rpc_is_admin():
    return jsonify(is_admin())


@promotion_bp.route('/preview', methods=['GET'])
@admin_required
def preview():
    year_id = resolve_year_id(request.args.get("source_academic_year_id"))
    if year_id is None:
        raise ValidationFailed("source_academic_year_id is required", {"source_academic_year_id": "required"})
    return jsonify({"source_academic_year_id": year_id, "students": promotion_preview(year_id)})


@promotion_bp.route('', methods=['GET'])
@admin_required
def history():
    query = StudentPromotion.query
    if request.args.get("to_academic_year_id"):
        query = query.filter_by(to_academic_year_id=parse_int(request.args["to_academic_year_id"],
                                                              "to_academic_year_id"))
    if request.args.get("student_id"):
        query = query.filter_by(student_id=parse_int(request.args["student_id"], "student_id"))
    rows = query.order_by(StudentPromotion.promotion_date.desc(), StudentPromotion.id.desc()).all()
    return jsonify({"promotions": [r.to_dict() for r in rows]})

from datetime import datetime

from flask import Blueprint, request, jsonify, Response, current_app

from extensions import db
from utils import FINANCE_ROLES, actor_name, role_required
from utils.academic_year import get_year, resolve_year_id
from utils.audit import log_event
from utils.errors import ValidationFailed
from utils.exports import fee_records_csv, fee_records_xlsx
from utils.ledger import (
    apply_discount,
    apply_previous_year_dues_discount,
    change_history,
    consolidated_by_student,
    create_fee_records_for_student,
    discount_history,
    discount_report,
    get_record,
    list_fee_records,
    pyd_summary,
    record_to_dict,
    set_payment_blocked,
    verify_dues,
    year_summary,
)
from utils.notifications import send_fee_reminders
from utils.students import get_student
from utils.validation import parse_int, require_fields

fee_bp = Blueprint('fees', __name__, url_prefix='/fees')


def _year_id() -> int:
    year_id = resolve_year_id(request.args.get("academic_year_id"))
    if year_id is None:
        raise ValidationFailed("No academic year selected", {"academic_year_id": "required"})
    return year_id


@fee_bp.route('/records', methods=['GET'])
@role_required(*FINANCE_ROLES)
def records():
    year_id = _year_id()
    rows = list_fee_records(
        year_id,
        class_id=request.args.get("class_id"),
        status=request.args.get("status"),
        fee_type=request.args.get("fee_type"),
        student_id=request.args.get("student_id"),
    )
    if request.args.get("view") == "consolidated":
        return jsonify({"academic_year_id": year_id, "students": consolidated_by_student(rows)})
    return jsonify({"academic_year_id": year_id, "records": [record_to_dict(r) for r in rows]})


@fee_bp.route('/records', methods=['POST'])
@role_required(*FINANCE_ROLES)
def create_records():
    """Create missing fee rows for one student from the class's active plan."""
    payload = request.get_json(silent=True) or {}
    require_fields(payload, ("student_id",))
    student = get_student(parse_int(payload["student_id"], "student_id"))
    year_id = resolve_year_id(payload.get("academic_year_id"))
    if year_id is None:
        raise ValidationFailed("No academic year selected", {"academic_year_id": "required"})
    created = create_fee_records_for_student(student, year_id, created_by=actor_name())
    db.session.commit()
    return jsonify({"created": len(created), "records": [record_to_dict(r) for r in created]}), 201


@fee_bp.route('/records/<int:record_id>', methods=['GET'])
@role_required(*FINANCE_ROLES)
def show_record(record_id):
    return jsonify({"record": record_to_dict(get_record(record_id))})


@fee_bp.route('/records/<int:record_id>/history', methods=['GET'])
@role_required(*FINANCE_ROLES)
def record_history(record_id):
    return jsonify({"fee_record_id": record_id, "history": change_history(record_id)})


@fee_bp.route('/records/<int:record_id>/discount', methods=['POST'])
@role_required(*FINANCE_ROLES)
def discount(record_id):
    payload = request.get_json(silent=True) or {}
    require_fields(payload, ("discount_type", "discount_value"))
    record = apply_discount(
        record_id,
        payload["discount_type"],
        payload["discount_value"],
        reason=payload.get("reason"),
        applied_by=actor_name(),
        notes=payload.get("notes"),
        tag=payload.get("tag"),
    )
    db.session.commit()
    return jsonify({"record": record_to_dict(record)})


@fee_bp.route('/records/<int:record_id>/discounts', methods=['GET'])
@role_required(*FINANCE_ROLES)
def record_discounts(record_id):
    get_record(record_id)
    return jsonify({"fee_record_id": record_id, "discounts": discount_history(record_id=record_id)})


@fee_bp.route('/records/<int:record_id>/block', methods=['POST'])
@role_required(*FINANCE_ROLES)
def block(record_id):
    record = set_payment_blocked(record_id, True, actor_name())
    db.session.commit()
    return jsonify({"record": record_to_dict(record)})


@fee_bp.route('/records/<int:record_id>/unblock', methods=['POST'])
@role_required(*FINANCE_ROLES)
def unblock(record_id):
    record = set_payment_blocked(record_id, False, actor_name())
    db.session.commit()
    return jsonify({"record": record_to_dict(record)})


@fee_bp.route('/pyd-discount', methods=['POST'])
@role_required(*FINANCE_ROLES)
def pyd_discount():
    """Discount on a student's Previous Year Dues row; reason and tag are required."""
    payload = request.get_json(silent=True) or {}
    require_fields(payload, ("student_id", "current_year_id", "discount_type", "discount_amount"))
    result = apply_previous_year_dues_discount(
        payload["student_id"],
        payload["current_year_id"],
        payload["discount_type"],
        payload["discount_amount"],
        reason=payload.get("reason"),
        notes=payload.get("notes"),
        approved_by=payload.get("approved_by") or actor_name(),
        tag=payload.get("tag"),
    )
    db.session.commit()
    return jsonify(result)


@fee_bp.route('/discounts', methods=['GET'])
@role_required(*FINANCE_ROLES)
def discounts():
    student_id = parse_int(request.args.get("student_id"), "student_id", required=False)
    if student_id is not None:
        return jsonify({"student_id": student_id, "discounts": discount_history(student_id=student_id)})
    return jsonify(discount_report(_year_id()))


@fee_bp.route('/summary', methods=['GET'])
@role_required(*FINANCE_ROLES)
def summary():
    return jsonify(year_summary(_year_id()))


@fee_bp.route('/pyd-summary', methods=['GET'])
@role_required(*FINANCE_ROLES)
def previous_dues_summary():
    return jsonify(pyd_summary(_year_id()))


@fee_bp.route('/verify', methods=['GET'])
@role_required(*FINANCE_ROLES)
def verify():
    year_id = parse_int(request.args.get("academic_year_id"), "academic_year_id", required=False)
    return jsonify(verify_dues(year_id))


@fee_bp.route('/export', methods=['GET'])
@role_required(*FINANCE_ROLES)
def export():
    year = get_year(_year_id())
    rows = list_fee_records(year.id, class_id=request.args.get("class_id"))
    ts = datetime.now().strftime('%Y%m%d_%H%M%S')
    if (request.args.get("format") or "csv").lower() == "xlsx":
        body = fee_records_xlsx(rows, title=f"Fees {year.year_name}")
        return Response(
            body,
            mimetype='application/vnd.openxmlformats-officedocument.spreadsheetml.sheet',
            headers={'Content-Disposition': f'attachment; filename=fees_{year.year_name}_{ts}.xlsx'},
        )
    return Response(
        fee_records_csv(rows),
        mimetype='text/csv',
        headers={'Content-Disposition': f'attachment; filename=fees_{year.year_name}_{ts}.csv'},
    )


@fee_bp.route('/reminders', methods=['POST'])
@role_required(*FINANCE_ROLES)
def reminders():
    payload = request.get_json(silent=True) or {}
    year_id = resolve_year_id(payload.get("academic_year_id"))
    if year_id is None:
        raise ValidationFailed("No academic year selected", {"academic_year_id": "required"})
    result = send_fee_reminders(year_id, class_id=payload.get("class_id"))
    log_event("fee_reminders", target=f"academic_year:{year_id}", detail=str(result))
    db.session.commit()
    current_app.logger.info("reminders sent by %s: %s", actor_name(), result)
    return jsonify(result)

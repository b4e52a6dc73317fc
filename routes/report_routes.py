from datetime import date, timedelta

from flask import Blueprint, request, jsonify

from utils import FINANCE_ROLES, STAFF_ROLES, admin_required, role_required
from utils.academic_year import resolve_year_id
from utils.audit import fetch_audit_logs
from utils.errors import ValidationFailed
from utils.reports import attendance_report, dashboard, exam_report, fee_report
from utils.validation import parse_date, parse_int

report_bp = Blueprint('reports', __name__, url_prefix='/reports')


def _year_id() -> int:
    year_id = resolve_year_id(request.args.get("academic_year_id"))
    if year_id is None:
        raise ValidationFailed("No academic year selected", {"academic_year_id": "required"})
    return year_id


@report_bp.route('/dashboard', methods=['GET'])
@role_required(*STAFF_ROLES)
def dashboard_view():
    return jsonify(dashboard(resolve_year_id(request.args.get("academic_year_id"))))


@report_bp.route('/fees', methods=['GET'])
@role_required(*FINANCE_ROLES)
def fees():
    return jsonify(fee_report(_year_id()))


@report_bp.route('/attendance', methods=['GET'])
@role_required(*STAFF_ROLES)
def attendance():
    end = parse_date(request.args.get("end"), "end") or date.today()
    start = parse_date(request.args.get("start"), "start") or end - timedelta(days=30)
    if start > end:
        raise ValidationFailed("start must not be after end", {"start": "after end"})
    return jsonify(attendance_report(start, end, class_id=request.args.get("class_id")))


@report_bp.route('/exams', methods=['GET'])
@role_required(*STAFF_ROLES)
def exams():
    return jsonify(exam_report(_year_id(), class_id=request.args.get("class_id")))


@report_bp.route('/audit', methods=['GET'])
@admin_required
def audit():
    limit = parse_int(request.args.get("limit"), "limit", required=False) or 50
    return jsonify({"logs": fetch_audit_logs(request.args.get("action"), min(limit, 500))})

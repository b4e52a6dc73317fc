from datetime import date

from flask import Blueprint, request, jsonify, session

from extensions import db
from models import ATTENDANCE_STATUSES, Attendance, Student
from utils import STAFF_ROLES, role_required
from utils.errors import ValidationFailed
from utils.ledger import percentage
from utils.students import get_student
from utils.validation import parse_date, parse_int, require_choice, require_fields

attendance_bp = Blueprint('attendance', __name__, url_prefix='/attendance')


@attendance_bp.route('', methods=['GET'])
@role_required(*STAFF_ROLES)
def index():
    query = Attendance.query
    if request.args.get("class_id"):
        query = query.filter(Attendance.class_id == parse_int(request.args["class_id"], "class_id"))
    start = parse_date(request.args.get("start"), "start")
    end = parse_date(request.args.get("end"), "end")
    if start:
        query = query.filter(Attendance.date >= start)
    if end:
        query = query.filter(Attendance.date <= end)
    rows = query.order_by(Attendance.date.desc(), Attendance.student_id).all()
    return jsonify({"attendance": [r.to_dict() for r in rows]})


@attendance_bp.route('/mark', methods=['POST'])
@role_required("admin", "teacher")
def mark():
    """Mark a class for one day. Existing rows for (student, date) are overwritten."""
    payload = request.get_json(silent=True) or {}
    require_fields(payload, ("class_id", "entries"))
    class_id = parse_int(payload["class_id"], "class_id")
    day = parse_date(payload.get("date"), "date") or date.today()
    if day > date.today():
        raise ValidationFailed("Attendance cannot be marked for a future date", {"date": "in the future"})
    entries = payload["entries"]
    if not isinstance(entries, list):
        raise ValidationFailed("entries must be a list", {"entries": "not a list"})
    enrolled = {s.id for s in Student.query.filter_by(class_id=class_id, status="Active")}
    saved = 0
    for index, entry in enumerate(entries):
        student_id = parse_int(entry.get("student_id"), f"entries[{index}].student_id")
        if student_id not in enrolled:
            raise ValidationFailed(f"Student {student_id} is not an active member of this class",
                                   {f"entries[{index}].student_id": "not in class"})
        status = require_choice(entry.get("status"), ATTENDANCE_STATUSES, f"entries[{index}].status")
        row = Attendance.query.filter_by(student_id=student_id, date=day).first()
        if row is None:
            row = Attendance(student_id=student_id, date=day)
            db.session.add(row)
        row.class_id = class_id
        row.status = status
        row.remarks = entry.get("remarks")
        row.marked_by = session.get("user_id")
        saved += 1
    db.session.commit()
    return jsonify({"date": day.isoformat(), "class_id": class_id, "saved": saved})


@attendance_bp.route('/students/<int:student_id>/summary', methods=['GET'])
@role_required(*STAFF_ROLES)
def student_summary(student_id):
    student = get_student(student_id)
    query = Attendance.query.filter_by(student_id=student.id)
    start = parse_date(request.args.get("start"), "start")
    end = parse_date(request.args.get("end"), "end")
    if start:
        query = query.filter(Attendance.date >= start)
    if end:
        query = query.filter(Attendance.date <= end)
    counts = {status: 0 for status in ATTENDANCE_STATUSES}
    for row in query.all():
        counts[row.status] = counts.get(row.status, 0) + 1
    total = sum(counts.values())
    return jsonify({
        "student_id": student.id,
        "counts": counts,
        "total": total,
        "percentage": percentage(counts["Present"] + counts["Late"], total),
    })

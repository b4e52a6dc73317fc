from flask import Blueprint, request, jsonify, current_app
from sqlalchemy import or_

from extensions import db
from models import STUDENT_STATUSES, Parent, SchoolClass, Student, StudentParentLink
from utils import STAFF_ROLES, FINANCE_ROLES, actor_name, admin_required, role_required
from utils.academic_year import current_year, resolve_year_id
from utils.audit import log_event
from utils.errors import Conflict, NotFound, ValidationFailed
from utils.ledger import (
    create_fee_records_for_student,
    cross_year_allocations,
    outstanding_dues,
    payment_history,
    record_to_dict,
    list_fee_records,
)
from utils.students import delete_student, get_student, reactivate_student, set_student_status
from utils.validation import clean_text, parse_date, parse_int, require_choice, require_fields

student_bp = Blueprint('students', __name__, url_prefix='/students')

_TEXT_FIELDS = ("admission_number", "first_name", "last_name", "gender")
GENDERS = ("Male", "Female", "Other")


def _student_dict(student: Student) -> dict:
    data = student.to_dict()
    data["full_name"] = student.full_name
    data["class"] = student.school_class.label if student.school_class else None
    return data


def _apply(student: Student, payload: dict, creating: bool) -> None:
    if creating:
        require_fields(payload, ("admission_number", "first_name", "last_name", "date_of_birth", "gender"))
    values = clean_text(payload, _TEXT_FIELDS)
    if "gender" in values:
        require_choice(values["gender"], GENDERS, "gender")
    admission = values.get("admission_number")
    if admission:
        clash = Student.query.filter(Student.admission_number == admission, Student.id != student.id).first()
        if clash is not None:
            raise ValidationFailed("Admission number already in use", {"admission_number": "duplicate"})
    for key, value in values.items():
        setattr(student, key, value)
    if "date_of_birth" in payload:
        student.date_of_birth = parse_date(payload["date_of_birth"], "date_of_birth", required=creating)
    if "date_of_join" in payload:
        student.date_of_join = parse_date(payload["date_of_join"], "date_of_join")
    if "class_id" in payload:
        class_id = parse_int(payload["class_id"], "class_id", required=False)
        if class_id is not None and db.session.get(SchoolClass, class_id) is None:
            raise ValidationFailed("Unknown class", {"class_id": "not found"})
        student.class_id = class_id


@student_bp.route('', methods=['GET'])
@role_required(*STAFF_ROLES)
def index():
    query = Student.query
    status = request.args.get("status")
    if status:
        query = query.filter(Student.status == require_choice(status, STUDENT_STATUSES, "status"))
    if request.args.get("class_id"):
        query = query.filter(Student.class_id == parse_int(request.args["class_id"], "class_id"))
    q = (request.args.get("q") or "").strip()
    if q:
        like = f"%{q}%"
        query = query.filter(or_(
            Student.first_name.ilike(like), Student.last_name.ilike(like), Student.admission_number.ilike(like)
        ))
    students = query.order_by(Student.last_name, Student.first_name).all()
    return jsonify({"students": [_student_dict(s) for s in students]})


@student_bp.route('', methods=['POST'])
@admin_required
def create():
    """Create a student; an assigned class gets its fee rows for the current year."""
    payload = request.get_json(silent=True) or {}
    student = Student(status="Active")
    _apply(student, payload, creating=True)
    db.session.add(student)
    db.session.flush()
    created = []
    year = current_year()
    if year is not None and student.class_id is not None:
        created = create_fee_records_for_student(student, year.id, created_by=actor_name())
    log_event("student_created", target=f"student:{student.id}", detail=student.admission_number)
    db.session.commit()
    current_app.logger.info("student %s created with %d fee record(s)", student.admission_number, len(created))
    return jsonify({"student": _student_dict(student), "fee_records_created": len(created)}), 201


@student_bp.route('/<int:student_id>', methods=['GET'])
@role_required(*STAFF_ROLES)
def show(student_id):
    student = get_student(student_id)
    data = _student_dict(student)
    data["parents"] = [
        {**link.parent.to_dict(), "is_primary": link.is_primary} for link in student.parent_links
    ]
    return jsonify({"student": data})


@student_bp.route('/<int:student_id>', methods=['PUT', 'PATCH'])
@admin_required
def update(student_id):
    student = get_student(student_id)
    _apply(student, request.get_json(silent=True) or {}, creating=False)
    db.session.commit()
    return jsonify({"student": _student_dict(student)})


@student_bp.route('/<int:student_id>', methods=['DELETE'])
@admin_required
def delete(student_id):
    delete_student(student_id)
    log_event("student_deleted", target=f"student:{student_id}")
    db.session.commit()
    return jsonify({"deleted": student_id})


@student_bp.route('/<int:student_id>/status', methods=['POST'])
@admin_required
def change_status(student_id):
    payload = request.get_json(silent=True) or {}
    require_fields(payload, ("new_status",))
    result = set_student_status(
        student_id,
        payload["new_status"],
        exit_reason=payload.get("exit_reason"),
        feedback_notes=payload.get("feedback_notes"),
        exit_date=payload.get("exit_date"),
        anonymize=bool(payload.get("anonymize")),
    )
    db.session.commit()
    return jsonify(result)


@student_bp.route('/<int:student_id>/reactivate', methods=['POST'])
@admin_required
def reactivate(student_id):
    result = reactivate_student(student_id)
    db.session.commit()
    return jsonify(result)


@student_bp.route('/<int:student_id>/parents', methods=['POST'])
@admin_required
def link_parent(student_id):
    student = get_student(student_id)
    payload = request.get_json(silent=True) or {}
    parent_id = parse_int(payload.get("parent_id"), "parent_id")
    if db.session.get(Parent, parent_id) is None:
        raise NotFound(f"Parent {parent_id} not found")
    if StudentParentLink.query.filter_by(student_id=student.id, parent_id=parent_id).first():
        raise Conflict("Parent already linked")
    link = StudentParentLink(student_id=student.id, parent_id=parent_id, is_primary=bool(payload.get("is_primary")))
    db.session.add(link)
    db.session.commit()
    return jsonify({"link": link.to_dict()}), 201


@student_bp.route('/<int:student_id>/fees', methods=['GET'])
@role_required(*STAFF_ROLES)
def fees(student_id):
    student = get_student(student_id)
    year_id = resolve_year_id(request.args.get("academic_year_id"))
    records = list_fee_records(year_id, student_id=student.id)
    return jsonify({"academic_year_id": year_id, "records": [record_to_dict(r) for r in records]})


@student_bp.route('/<int:student_id>/payments', methods=['GET'])
@role_required(*FINANCE_ROLES)
def payments(student_id):
    """Payment history split into current-year fees and previous year dues tabs."""
    student = get_student(student_id)
    year_id = resolve_year_id(request.args.get("academic_year_id"))
    tabs = payment_history(student.id, year_id)
    return jsonify({"student_id": student.id, "academic_year_id": year_id, **tabs})


@student_bp.route('/<int:student_id>/outstanding', methods=['GET'])
@role_required(*FINANCE_ROLES)
def outstanding(student_id):
    student = get_student(student_id)
    exclude = request.args.get("exclude_year_id") or request.args.get("academic_year_id")
    return jsonify({
        "student_id": student.id,
        "years": outstanding_dues(student.id, parse_int(exclude, "exclude_year_id", required=False)),
    })


@student_bp.route('/<int:student_id>/allocations', methods=['GET'])
@role_required(*FINANCE_ROLES)
def allocations(student_id):
    student = get_student(student_id)
    return jsonify({"student_id": student.id, "allocations": cross_year_allocations(student.id)})

from flask import Blueprint, request, jsonify
from sqlalchemy import or_

from extensions import db
from models import SchoolClass, Teacher
from utils import STAFF_ROLES, admin_required, role_required
from utils.audit import log_event
from utils.errors import Conflict, NotFound, ValidationFailed
from utils.validation import (
    PHONE_RE,
    clean_text,
    is_valid_email,
    normalize_email,
    parse_amount,
    parse_date,
    require_choice,
    require_fields,
)

teacher_bp = Blueprint('teachers', __name__, url_prefix='/teachers')

_TEXT_FIELDS = ("employee_id", "first_name", "last_name", "phone_number", "department",
                "designation", "qualification")
TEACHER_STATUSES = ("Active", "On Leave", "Resigned")


def _get(teacher_id) -> Teacher:
    teacher = db.session.get(Teacher, teacher_id)
    if teacher is None:
        raise NotFound(f"Teacher {teacher_id} not found")
    return teacher


def _apply(teacher: Teacher, payload: dict, creating: bool) -> None:
    if creating:
        require_fields(payload, ("first_name", "last_name", "email"))
    errors = {}
    if "email" in payload:
        email = normalize_email(payload["email"])
        if not is_valid_email(email):
            errors["email"] = "Please enter a valid email address"
        elif Teacher.query.filter(Teacher.email == email, Teacher.id != teacher.id).first() is not None:
            errors["email"] = "already in use"
        teacher.email = email
    values = clean_text(payload, _TEXT_FIELDS)
    if values.get("phone_number") and not PHONE_RE.match(values["phone_number"]):
        errors["phone_number"] = "Please enter a valid phone number"
    if errors:
        raise ValidationFailed("Invalid teacher details", errors)
    for key, value in values.items():
        setattr(teacher, key, value or None)
    if "hire_date" in payload:
        teacher.hire_date = parse_date(payload["hire_date"], "hire_date")
    if "salary" in payload:
        teacher.salary = parse_amount(payload["salary"], "salary", required=False, positive=False)
    if "status" in payload:
        teacher.status = require_choice(payload["status"], TEACHER_STATUSES, "status")


@teacher_bp.route('', methods=['GET'])
@role_required(*STAFF_ROLES)
def index():
    query = Teacher.query
    if request.args.get("status"):
        query = query.filter(Teacher.status == request.args["status"])
    if request.args.get("department"):
        query = query.filter(Teacher.department == request.args["department"])
    q = (request.args.get("q") or "").strip()
    if q:
        like = f"%{q}%"
        query = query.filter(or_(Teacher.first_name.ilike(like), Teacher.last_name.ilike(like),
                                 Teacher.email.ilike(like)))
    teachers = query.order_by(Teacher.last_name, Teacher.first_name).all()
    return jsonify({"teachers": [t.to_dict() for t in teachers]})


@teacher_bp.route('', methods=['POST'])
@admin_required
def create():
    teacher = Teacher()
    _apply(teacher, request.get_json(silent=True) or {}, creating=True)
    db.session.add(teacher)
    db.session.flush()
    log_event("teacher_created", target=f"teacher:{teacher.id}", detail=teacher.email)
    db.session.commit()
    return jsonify({"teacher": teacher.to_dict()}), 201


@teacher_bp.route('/<int:teacher_id>', methods=['GET'])
@role_required(*STAFF_ROLES)
def show(teacher_id):
    teacher = _get(teacher_id)
    data = teacher.to_dict()
    data["homeroom_classes"] = [
        c.to_dict() for c in SchoolClass.query.filter_by(homeroom_teacher_id=teacher.id).all()
    ]
    return jsonify({"teacher": data})


@teacher_bp.route('/<int:teacher_id>', methods=['PUT', 'PATCH'])
@admin_required
def update(teacher_id):
    teacher = _get(teacher_id)
    _apply(teacher, request.get_json(silent=True) or {}, creating=False)
    db.session.commit()
    return jsonify({"teacher": teacher.to_dict()})


@teacher_bp.route('/<int:teacher_id>', methods=['DELETE'])
@admin_required
def delete(teacher_id):
    teacher = _get(teacher_id)
    if SchoolClass.query.filter_by(homeroom_teacher_id=teacher.id).first() is not None:
        raise Conflict("Teacher is a homeroom teacher; reassign the class first")
    db.session.delete(teacher)
    log_event("teacher_deleted", target=f"teacher:{teacher_id}")
    db.session.commit()
    return jsonify({"deleted": teacher_id})

from flask import Blueprint, request, jsonify
from sqlalchemy import func

from extensions import db
from models import FeeStructure, SchoolClass, Student, StudentFeeRecord, Teacher
from utils import STAFF_ROLES, admin_required, role_required
from utils.academic_year import resolve_year_id
from utils.audit import log_event
from utils.classes import get_next_class_id
from utils.errors import Conflict, NotFound, ValidationFailed
from utils.ledger import ZERO, money, percentage
from utils.validation import parse_int, require_fields
from utils.security import sanitize_input

class_bp = Blueprint('classes', __name__, url_prefix='/classes')


def _get(class_id) -> SchoolClass:
    klass = db.session.get(SchoolClass, class_id)
    if klass is None:
        raise NotFound(f"Class {class_id} not found")
    return klass


def _class_dict(klass: SchoolClass) -> dict:
    data = klass.to_dict()
    data["label"] = klass.label
    data["student_count"] = klass.students.filter(Student.status == "Active").count()
    return data


def _apply(klass: SchoolClass, payload: dict, creating: bool) -> None:
    if creating:
        require_fields(payload, ("name",))
    if "name" in payload:
        klass.name = sanitize_input(payload["name"])
    if "section" in payload:
        klass.section = sanitize_input(payload["section"]) or None
    if "homeroom_teacher_id" in payload:
        teacher_id = parse_int(payload["homeroom_teacher_id"], "homeroom_teacher_id", required=False)
        if teacher_id is not None and db.session.get(Teacher, teacher_id) is None:
            raise ValidationFailed("Unknown teacher", {"homeroom_teacher_id": "not found"})
        klass.homeroom_teacher_id = teacher_id
    query = SchoolClass.query.filter(SchoolClass.name == klass.name)
    if klass.section:
        query = query.filter(SchoolClass.section == klass.section)
    else:
        query = query.filter(SchoolClass.section.is_(None))
    if klass.id:
        query = query.filter(SchoolClass.id != klass.id)
    with db.session.no_autoflush:
        clash = query.first()
    if clash is not None:
        raise Conflict(f"Class {klass.label} already exists")


@class_bp.route('', methods=['GET'])
@role_required(*STAFF_ROLES)
def index():
    classes = SchoolClass.query.order_by(SchoolClass.name, SchoolClass.section).all()
    return jsonify({"classes": [_class_dict(c) for c in classes]})


@class_bp.route('', methods=['POST'])
@admin_required
def create():
    klass = SchoolClass()
    _apply(klass, request.get_json(silent=True) or {}, creating=True)
    db.session.add(klass)
    db.session.flush()
    log_event("class_created", target=f"class:{klass.id}", detail=klass.label)
    db.session.commit()
    return jsonify({"class": _class_dict(klass)}), 201


@class_bp.route('/<int:class_id>', methods=['GET'])
@role_required(*STAFF_ROLES)
def show(class_id):
    return jsonify({"class": _class_dict(_get(class_id))})


@class_bp.route('/<int:class_id>', methods=['PUT', 'PATCH'])
@admin_required
def update(class_id):
    klass = _get(class_id)
    _apply(klass, request.get_json(silent=True) or {}, creating=False)
    db.session.commit()
    return jsonify({"class": _class_dict(klass)})


@class_bp.route('/<int:class_id>', methods=['DELETE'])
@admin_required
def delete(class_id):
    klass = _get(class_id)
    if klass.students.count() or FeeStructure.query.filter_by(class_id=klass.id).count():
        raise Conflict("Class has students or fee structures and cannot be deleted")
    db.session.delete(klass)
    log_event("class_deleted", target=f"class:{class_id}")
    db.session.commit()
    return jsonify({"deleted": class_id})


@class_bp.route('/<int:class_id>/stats', methods=['GET'])
@role_required(*STAFF_ROLES)
def stats(class_id):
    """Head count, gender split and fee collection for one class in a year."""
    klass = _get(class_id)
    year_id = resolve_year_id(request.args.get("academic_year_id"))
    gender = dict(
        db.session.query(Student.gender, func.count(Student.id))
        .filter(Student.class_id == klass.id, Student.status == "Active")
        .group_by(Student.gender)
        .all()
    )
    records = StudentFeeRecord.query.filter_by(class_id=klass.id, academic_year_id=year_id).all()
    collected = sum((money(r.paid_amount) for r in records), ZERO)
    pending = sum((money(r.balance_fee) for r in records), ZERO)
    discount = sum((money(r.discount_amount) for r in records), ZERO)
    return jsonify({
        "class": _class_dict(klass),
        "academic_year_id": year_id,
        "by_gender": {(k or "Unspecified"): v for k, v in gender.items()},
        "fees": {
            "collected": float(collected),
            "pending": float(pending),
            "discount": float(discount),
            "collection_rate": percentage(collected, collected + pending + discount),
        },
    })


@class_bp.route('/<int:class_id>/next', methods=['GET'])
@role_required(*STAFF_ROLES)
def next_class(class_id):
    _get(class_id)
    next_id = get_next_class_id(class_id)
    return jsonify({"class_id": class_id, "next_class_id": next_id})

from flask import Blueprint, request, jsonify

from extensions import db
from models import Parent, StudentParentLink
from utils import STAFF_ROLES, admin_required, role_required
from utils.errors import NotFound, ValidationFailed
from utils.validation import PHONE_RE, clean_text, is_valid_email, normalize_email, require_fields

parent_bp = Blueprint('parents', __name__, url_prefix='/parents')

_TEXT_FIELDS = ("first_name", "last_name", "phone_number", "relation", "occupation")


def _get(parent_id) -> Parent:
    parent = db.session.get(Parent, parent_id)
    if parent is None:
        raise NotFound(f"Parent {parent_id} not found")
    return parent


def _parent_dict(parent: Parent) -> dict:
    data = parent.to_dict()
    data["students"] = [
        {"student_id": link.student_id, "name": link.student.full_name, "is_primary": link.is_primary}
        for link in parent.links
    ]
    return data


def _apply(parent: Parent, payload: dict, creating: bool) -> None:
    if creating:
        require_fields(payload, ("first_name", "last_name"))
    errors = {}
    if payload.get("email"):
        email = normalize_email(payload["email"])
        if not is_valid_email(email):
            errors["email"] = "Please enter a valid email address"
        parent.email = email
    values = clean_text(payload, _TEXT_FIELDS)
    if values.get("phone_number") and not PHONE_RE.match(values["phone_number"]):
        errors["phone_number"] = "Please enter a valid phone number"
    if errors:
        raise ValidationFailed("Invalid parent details", errors)
    for key, value in values.items():
        setattr(parent, key, value or None)


@parent_bp.route('', methods=['GET'])
@role_required(*STAFF_ROLES)
def index():
    parents = Parent.query.order_by(Parent.last_name, Parent.first_name).all()
    return jsonify({"parents": [_parent_dict(p) for p in parents]})


@parent_bp.route('', methods=['POST'])
@admin_required
def create():
    payload = request.get_json(silent=True) or {}
    parent = Parent()
    _apply(parent, payload, creating=True)
    db.session.add(parent)
    db.session.flush()
    for student_id in payload.get("student_ids") or []:
        db.session.add(StudentParentLink(student_id=int(student_id), parent_id=parent.id))
    db.session.commit()
    return jsonify({"parent": _parent_dict(parent)}), 201


@parent_bp.route('/<int:parent_id>', methods=['GET'])
@role_required(*STAFF_ROLES)
def show(parent_id):
    return jsonify({"parent": _parent_dict(_get(parent_id))})


@parent_bp.route('/<int:parent_id>', methods=['PUT', 'PATCH'])
@admin_required
def update(parent_id):
    parent = _get(parent_id)
    _apply(parent, request.get_json(silent=True) or {}, creating=False)
    db.session.commit()
    return jsonify({"parent": _parent_dict(parent)})


@parent_bp.route('/<int:parent_id>', methods=['DELETE'])
@admin_required
def delete(parent_id):
    parent = _get(parent_id)
    db.session.delete(parent)
    db.session.commit()
    return jsonify({"deleted": parent_id})

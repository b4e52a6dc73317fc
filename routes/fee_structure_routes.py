from flask import Blueprint, request, jsonify

from extensions import db
from models import FEE_TYPES, PYD_FEE_TYPE, FeeStructure, SchoolClass
from utils import FINANCE_ROLES, STAFF_ROLES, actor_name, role_required
from utils.academic_year import get_year, resolve_year_id
from utils.audit import log_event
from utils.errors import Conflict, NotFound, ValidationFailed
from utils.validation import parse_amount, parse_int, require_choice, require_fields
from utils.security import sanitize_input

fee_structure_bp = Blueprint('fee_structures', __name__, url_prefix='/fee-structures')

STRUCTURE_FEE_TYPES = tuple(t for t in FEE_TYPES if t != PYD_FEE_TYPE)
FREQUENCIES = ("Monthly", "Quarterly", "Half-Yearly", "Annually", "One-Time")


def _get(structure_id) -> FeeStructure:
    structure = db.session.get(FeeStructure, structure_id)
    if structure is None:
        raise NotFound(f"Fee structure {structure_id} not found")
    return structure


def _structure_dict(structure: FeeStructure) -> dict:
    data = structure.to_dict()
    data["class"] = structure.school_class.label if structure.school_class else None
    data["academic_year"] = structure.academic_year.year_name if structure.academic_year else None
    return data


@fee_structure_bp.route('', methods=['GET'])
@role_required(*STAFF_ROLES)
def index():
    year_id = resolve_year_id(request.args.get("academic_year_id"))
    query = FeeStructure.query.filter_by(academic_year_id=year_id)
    if request.args.get("class_id"):
        query = query.filter_by(class_id=parse_int(request.args["class_id"], "class_id"))
    structures = query.order_by(FeeStructure.class_id, FeeStructure.fee_type).all()
    return jsonify({"academic_year_id": year_id, "fee_structures": [_structure_dict(s) for s in structures]})


@fee_structure_bp.route('', methods=['POST'])
@role_required(*FINANCE_ROLES)
def create():
    payload = request.get_json(silent=True) or {}
    require_fields(payload, ("class_id", "academic_year_id", "fee_type", "amount"))
    class_id = parse_int(payload["class_id"], "class_id")
    if db.session.get(SchoolClass, class_id) is None:
        raise ValidationFailed("Unknown class", {"class_id": "not found"})
    year = get_year(parse_int(payload["academic_year_id"], "academic_year_id"))
    fee_type = require_choice(payload["fee_type"], STRUCTURE_FEE_TYPES, "fee_type")
    if FeeStructure.query.filter_by(class_id=class_id, academic_year_id=year.id, fee_type=fee_type).first():
        raise Conflict(f"{fee_type} already defined for this class and year")
    structure = FeeStructure(
        class_id=class_id,
        academic_year_id=year.id,
        fee_type=fee_type,
        amount=parse_amount(payload["amount"]),
        frequency=require_choice(payload.get("frequency") or "Annually", FREQUENCIES, "frequency"),
        description=sanitize_input(payload.get("description")) or None,
        is_active=bool(payload.get("is_active", True)),
    )
    db.session.add(structure)
    db.session.flush()
    log_event("fee_structure_created", target=f"fee_structure:{structure.id}",
              detail=f"{fee_type} {structure.amount} by {actor_name()}")
    db.session.commit()
    return jsonify({"fee_structure": _structure_dict(structure)}), 201


@fee_structure_bp.route('/<int:structure_id>', methods=['PUT', 'PATCH'])
@role_required(*FINANCE_ROLES)
def update(structure_id):
    """Edit a plan. Existing student fee rows keep the amount they were created with."""
    structure = _get(structure_id)
    payload = request.get_json(silent=True) or {}
    if "amount" in payload:
        structure.amount = parse_amount(payload["amount"])
    if "frequency" in payload:
        structure.frequency = require_choice(payload["frequency"], FREQUENCIES, "frequency")
    if "description" in payload:
        structure.description = sanitize_input(payload["description"]) or None
    if "is_active" in payload:
        structure.is_active = bool(payload["is_active"])
    db.session.commit()
    return jsonify({"fee_structure": _structure_dict(structure)})


@fee_structure_bp.route('/<int:structure_id>', methods=['DELETE'])
@role_required(*FINANCE_ROLES)
def delete(structure_id):
    structure = _get(structure_id)
    db.session.delete(structure)
    db.session.commit()
    return jsonify({"deleted": structure_id})


@fee_structure_bp.route('/check', methods=['GET'])
@role_required(*STAFF_ROLES)
def check():
    class_id = parse_int(request.args.get("class_id"), "class_id")
    year_id = resolve_year_id(request.args.get("academic_year_id"))
    active = FeeStructure.query.filter_by(class_id=class_id, academic_year_id=year_id, is_active=True).count()
    return jsonify({"class_id": class_id, "academic_year_id": year_id, "has_active_plan": active > 0,
                    "active_structures": active})

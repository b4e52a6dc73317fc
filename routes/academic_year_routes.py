from flask import Blueprint, request, jsonify

from extensions import db
from utils import admin_required, login_required
from utils.academic_year import (
    create_year,
    delete_year,
    get_year,
    list_years,
    select_manual,
    select_system,
    set_current_year,
    update_year,
    year_context,
)
from utils.audit import log_event
from utils.validation import parse_date, parse_int, require_fields

academic_year_bp = Blueprint("academic_years", __name__, url_prefix="/academic-years")


@academic_year_bp.route("", methods=["GET"])
@login_required
def index():
    return jsonify({"academic_years": [y.to_dict() for y in list_years()]})


@academic_year_bp.route("", methods=["POST"])
@admin_required
def create():
    payload = request.get_json(silent=True) or {}
    require_fields(payload, ("year_name", "start_date", "end_date"))
    year = create_year(
        payload["year_name"],
        parse_date(payload["start_date"], "start_date", required=True),
        parse_date(payload["end_date"], "end_date", required=True),
        make_current=bool(payload.get("is_current")),
    )
    log_event("academic_year_created", target=f"academic_year:{year.id}", detail=year.year_name)
    db.session.commit()
    return jsonify({"academic_year": year.to_dict()}), 201


@academic_year_bp.route("/<int:year_id>", methods=["GET"])
@login_required
def show(year_id):
    return jsonify({"academic_year": get_year(year_id).to_dict()})


@academic_year_bp.route("/<int:year_id>", methods=["PUT", "PATCH"])
@admin_required
def update(year_id):
    payload = request.get_json(silent=True) or {}
    year = update_year(
        year_id,
        year_name=payload.get("year_name"),
        start_date=parse_date(payload.get("start_date"), "start_date"),
        end_date=parse_date(payload.get("end_date"), "end_date"),
    )
    if payload.get("is_current"):
        set_current_year(year.id)
    db.session.commit()
    return jsonify({"academic_year": year.to_dict()})


@academic_year_bp.route("/<int:year_id>", methods=["DELETE"])
@admin_required
def delete(year_id):
    delete_year(year_id)
    db.session.commit()
    return jsonify({"deleted": year_id})


@academic_year_bp.route("/<int:year_id>/set-current", methods=["POST"])
@admin_required
def set_current(year_id):
    """Make one academic year current, clearing the flag on all others."""
    year = set_current_year(year_id)
    db.session.commit()
    return jsonify({"academic_year": year.to_dict()})


@academic_year_bp.route("/context", methods=["GET"])
@login_required
def context():
    return jsonify(year_context())


@academic_year_bp.route("/context/manual", methods=["POST"])
@login_required
def context_manual():
    payload = request.get_json(silent=True) or {}
    year_id = parse_int(payload.get("academic_year_id", payload.get("id")), "academic_year_id")
    select_manual(year_id)
    return jsonify(year_context())


@academic_year_bp.route("/context/system", methods=["POST"])
@login_required
def context_system():
    select_system()
    return jsonify(year_context())

from flask import Blueprint, request, jsonify, current_app

from extensions import db
from models import FeePaymentRecord
from utils import FINANCE_ROLES, actor_name, role_required
from utils.ledger import (
    PAYMENT_METHODS,
    get_payment,
    payment_to_dict,
    record_payment,
    reverse_payment,
    simulate_allocation,
)
from utils.validation import parse_date, parse_int, require_choice, require_fields

payment_bp = Blueprint('payments', __name__, url_prefix='/payments')


@payment_bp.route('', methods=['POST'])
@role_required(*FINANCE_ROLES)
def create():
    """Record a payment.

    With ``fee_record_id`` the whole amount goes to that row. Without it the
    amount is spread over the student's outstanding rows in the target year
    (current year by default), Previous Year Dues first, then by due date.
    """
    payload = request.get_json(silent=True) or {}
    require_fields(payload, ("student_id", "amount"))
    payment, allocation = record_payment(
        payload["student_id"],
        payload["amount"],
        payment_receiver=payload.get("payment_receiver") or actor_name(),
        payment_method=require_choice(payload.get("payment_method") or "Cash", PAYMENT_METHODS, "payment_method"),
        receipt_number=payload.get("receipt_number"),
        fee_record_id=payload.get("fee_record_id"),
        academic_year_id=payload.get("target_academic_year_id") or payload.get("academic_year_id"),
        payment_date=parse_date(payload.get("payment_date"), "payment_date"),
        notes=payload.get("notes"),
        late_fee=payload.get("late_fee"),
        created_by=actor_name(),
    )
    db.session.commit()
    current_app.logger.info("payment %s recorded by %s", payment.receipt_number, actor_name())
    return jsonify({"payment": payment_to_dict(payment), "allocation": allocation}), 201


@payment_bp.route('/simulate', methods=['POST'])
@role_required(*FINANCE_ROLES)
def simulate():
    payload = request.get_json(silent=True) or {}
    require_fields(payload, ("student_id", "amount"))
    return jsonify(simulate_allocation(
        parse_int(payload["student_id"], "student_id"),
        payload["amount"],
        payload.get("target_academic_year_id") or payload.get("academic_year_id"),
    ))


@payment_bp.route('', methods=['GET'])
@role_required(*FINANCE_ROLES)
def index():
    query = FeePaymentRecord.query
    if request.args.get("student_id"):
        query = query.filter_by(student_id=parse_int(request.args["student_id"], "student_id"))
    if request.args.get("academic_year_id"):
        query = query.filter_by(
            target_academic_year_id=parse_int(request.args["academic_year_id"], "academic_year_id")
        )
    start = parse_date(request.args.get("start"), "start")
    end = parse_date(request.args.get("end"), "end")
    if start:
        query = query.filter(FeePaymentRecord.payment_date >= start)
    if end:
        query = query.filter(FeePaymentRecord.payment_date <= end)
    payments = query.order_by(FeePaymentRecord.payment_date.desc(), FeePaymentRecord.id.desc()).limit(500).all()
    return jsonify({"payments": [payment_to_dict(p) for p in payments]})


@payment_bp.route('/<int:payment_id>', methods=['GET'])
@role_required(*FINANCE_ROLES)
def show(payment_id):
    return jsonify({"payment": payment_to_dict(get_payment(payment_id))})


@payment_bp.route('/<int:payment_id>/reverse', methods=['POST'])
@role_required(*FINANCE_ROLES)
def reverse(payment_id):
    payload = request.get_json(silent=True) or {}
    require_fields(payload, ("reversal_type", "amount", "reason"))
    reversal = reverse_payment(
        payment_id,
        payload["reversal_type"],
        payload["amount"],
        reason=payload.get("reason"),
        authorized_by=payload.get("authorized_by") or actor_name(),
        notes=payload.get("notes"),
    )
    db.session.commit()
    return jsonify({"reversal": reversal.to_dict(), "payment": payment_to_dict(get_payment(payment_id))})

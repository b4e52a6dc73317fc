"""Student fee ledger: balances, discounts, payments, reversals and checks.

Every write goes through :func:`refresh_record`, which recomputes

    balance_fee = max(0, actual_fee - discount_amount - paid_amount)

and the display status. Functions here add to ``db.session`` and flush; the
calling route owns the commit.
"""
from __future__ import annotations

import logging
import secrets
import string
import time
from collections import defaultdict
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, Iterable, List, Optional

from flask import current_app
from sqlalchemy import func

from extensions import db
from models import (
    PYD_FEE_TYPE,
    AcademicYear,
    DiscountHistory,
    FeeChangeHistory,
    FeePaymentRecord,
    FeeStructure,
    PaymentAllocation,
    PaymentReversal,
    Student,
    StudentFeeRecord,
)
from utils.academic_year import current_year, get_year
from utils.errors import Conflict, NotFound, ValidationFailed
from utils.events import emit, fee_records_changed, payment_recorded, payment_reversed
from utils.validation import parse_amount, parse_int, require_choice, validate_payment

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
TOLERANCE = Decimal("0.01")

FIXED = "Fixed Amount"
PERCENTAGE = "Percentage"
DISCOUNT_TYPES = (FIXED, PERCENTAGE)
PYD_DISCOUNT_TAGS = (
    "Parent Request",
    "Management Waiver",
    "Scholarship",
    "Financial Hardship",
    "Good Performance",
    "Sibling Discount",
    "Other",
)
REVERSAL_TYPES = ("reversal", "refund")
PAYMENT_METHODS = ("Cash", "Card", "UPI", "Bank Transfer", "Cheque", "Online")


def money(value: Any) -> Decimal:
    """Coerce to a cent-rounded Decimal; None, NaN and junk become 0."""
    if value is None:
        return ZERO
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError):
        return ZERO
    if not amount.is_finite():
        return ZERO
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def compute_balance(actual_fee, discount_amount, paid_amount) -> Decimal:
    return max(ZERO, money(actual_fee) - money(discount_amount) - money(paid_amount))


def fee_status(balance, paid, due_date: Optional[date], today: Optional[date] = None) -> str:
    today = today or date.today()
    if money(balance) == ZERO:
        return "Paid"
    if money(paid) > ZERO:
        return "Partial"
    if due_date and due_date < today:
        return "Overdue"
    return "Pending"


def refresh_record(record: StudentFeeRecord, today: Optional[date] = None) -> StudentFeeRecord:
    record.actual_fee = money(record.actual_fee)
    record.discount_amount = money(record.discount_amount)
    record.paid_amount = money(record.paid_amount)
    record.balance_fee = compute_balance(record.actual_fee, record.discount_amount, record.paid_amount)
    record.status = fee_status(record.balance_fee, record.paid_amount, record.due_date, today)
    return record


def record_to_dict(record: StudentFeeRecord, today: Optional[date] = None) -> Dict[str, Any]:
    data = record.to_dict()
    # Overdue depends on today's date, not on when the row was last written
    data["status"] = fee_status(record.balance_fee, record.paid_amount, record.due_date, today)
    data["academic_year"] = record.academic_year.year_name if record.academic_year else None
    data["is_previous_year_dues"] = record.is_pyd
    if record.student is not None:
        data["student_name"] = record.student.full_name
        data["admission_number"] = record.student.admission_number
    return data


def add_history(record: StudentFeeRecord, change_type: str, previous_value=None, new_value=None,
                amount=None, changed_by: str | None = None, notes: str | None = None,
                payment_method: str | None = None, receipt_number: str | None = None) -> FeeChangeHistory:
    entry = FeeChangeHistory(
        fee_record_id=record.id,
        change_type=change_type,
        previous_value=previous_value,
        new_value=new_value,
        amount=amount,
        changed_by=changed_by,
        notes=notes,
        payment_method=payment_method,
        receipt_number=receipt_number,
    )
    db.session.add(entry)
    return entry


def default_due_date(today: Optional[date] = None) -> date:
    days = current_app.config.get("FEE_DUE_DAYS", 30)
    return (today or date.today()) + timedelta(days=days)


def get_record(record_id) -> StudentFeeRecord:
    record = db.session.get(StudentFeeRecord, record_id) if record_id is not None else None
    if record is None:
        raise NotFound(f"Fee record {record_id} not found")
    return record


def find_record(student_id: int, year_id: int, fee_type: str) -> Optional[StudentFeeRecord]:
    return StudentFeeRecord.query.filter_by(
        student_id=student_id, academic_year_id=year_id, fee_type=fee_type
    ).first()


def create_fee_record(student_id: int, class_id: Optional[int], year_id: int, fee_type: str, amount,
                      due_date: Optional[date] = None, created_by: str | None = None,
                      **extra) -> StudentFeeRecord:
    record = StudentFeeRecord(
        student_id=student_id,
        class_id=class_id,
        academic_year_id=year_id,
        fee_type=fee_type,
        actual_fee=money(amount),
        discount_amount=ZERO,
        paid_amount=ZERO,
        due_date=due_date or default_due_date(),
        **extra,
    )
    refresh_record(record)
    db.session.add(record)
    db.session.flush()
    add_history(record, "creation", None, record.actual_fee, record.actual_fee, created_by,
                "Carried forward" if record.is_carry_forward else None)
    emit(fee_records_changed, year_id=year_id)
    return record


def active_structures(class_id: int, year_id: int) -> List[FeeStructure]:
    return (
        FeeStructure.query.filter_by(class_id=class_id, academic_year_id=year_id, is_active=True)
        .filter(FeeStructure.fee_type != PYD_FEE_TYPE)
        .order_by(FeeStructure.id)
        .all()
    )


def create_fee_records_for_student(student: Student, year_id: int, class_id: Optional[int] = None,
                                   due_date: Optional[date] = None,
                                   created_by: str | None = None) -> List[StudentFeeRecord]:
    """One row per active structure of the class; existing (year, fee type) rows are kept."""
    class_id = class_id if class_id is not None else student.class_id
    if class_id is None:
        return []
    created = []
    for structure in active_structures(class_id, year_id):
        if find_record(student.id, year_id, structure.fee_type) is not None:
            continue
        created.append(
            create_fee_record(student.id, class_id, year_id, structure.fee_type, structure.amount,
                              due_date=due_date, created_by=created_by)
        )
    return created


def source_year_outstanding(student_id: int, year_id: int) -> Decimal:
    """Sum of positive balances the student still owes in ``year_id``."""
    total = (
        db.session.query(func.coalesce(func.sum(StudentFeeRecord.balance_fee), 0))
        .filter(
            StudentFeeRecord.student_id == student_id,
            StudentFeeRecord.academic_year_id == year_id,
            StudentFeeRecord.balance_fee > 0,
        )
        .scalar()
    )
    return money(total)


def create_pyd_record(student: Student, year_id: int, source_year_id: int, amount,
                      class_id: Optional[int] = None, created_by: str | None = None) -> Optional[StudentFeeRecord]:
    """Create the single PYD row for (student, year) unless one already exists."""
    amount = money(amount)
    if amount <= ZERO or find_record(student.id, year_id, PYD_FEE_TYPE) is not None:
        return None
    return create_fee_record(
        student.id,
        class_id if class_id is not None else student.class_id,
        year_id,
        PYD_FEE_TYPE,
        amount,
        created_by=created_by,
        is_carry_forward=True,
        carry_forward_source_year_id=source_year_id,
        priority_order=0,
    )


# --------------------------
# Listing and summaries
# --------------------------

def list_fee_records(year_id: Optional[int], class_id=None, status: str | None = None,
                     fee_type: str | None = None, student_id=None) -> List[StudentFeeRecord]:
    query = StudentFeeRecord.query
    if year_id is not None:
        query = query.filter(StudentFeeRecord.academic_year_id == year_id)
    if class_id:
        query = query.filter(StudentFeeRecord.class_id == parse_int(class_id, "class_id"))
    if fee_type:
        query = query.filter(StudentFeeRecord.fee_type == fee_type)
    if student_id:
        query = query.filter(StudentFeeRecord.student_id == parse_int(student_id, "student_id"))
    records = query.order_by(
        StudentFeeRecord.student_id, StudentFeeRecord.priority_order, StudentFeeRecord.id
    ).all()
    if status:
        today = date.today()
        records = [r for r in records if fee_status(r.balance_fee, r.paid_amount, r.due_date, today) == status]
    return records


def consolidated_by_student(records: Iterable[StudentFeeRecord]) -> List[Dict[str, Any]]:
    """One entry per student with totals across the given rows."""
    grouped: Dict[int, Dict[str, Any]] = {}
    for record in records:
        entry = grouped.get(record.student_id)
        if entry is None:
            entry = grouped[record.student_id] = {
                "student_id": record.student_id,
                "student_name": record.student.full_name if record.student else None,
                "class_id": record.class_id,
                "total_fee": ZERO,
                "total_discount": ZERO,
                "total_paid": ZERO,
                "total_balance": ZERO,
                "previous_year_dues": ZERO,
                "records": [],
            }
        entry["total_fee"] += money(record.actual_fee)
        entry["total_discount"] += money(record.discount_amount)
        entry["total_paid"] += money(record.paid_amount)
        entry["total_balance"] += money(record.balance_fee)
        if record.is_pyd:
            entry["previous_year_dues"] += money(record.balance_fee)
        entry["records"].append(record_to_dict(record))
    result = []
    for entry in grouped.values():
        for key in ("total_fee", "total_discount", "total_paid", "total_balance", "previous_year_dues"):
            entry[key] = float(entry[key])
        result.append(entry)
    return result


def percentage(part, whole) -> float:
    whole = money(whole)
    if whole <= ZERO:
        return 0.0
    return float((money(part) * 100 / whole).quantize(CENT, rounding=ROUND_HALF_UP))


def year_summary(year_id: int, today: Optional[date] = None) -> Dict[str, Any]:
    today = today or date.today()
    records = StudentFeeRecord.query.filter_by(academic_year_id=year_id).all()
    collected = sum((money(r.paid_amount) for r in records), ZERO)
    pending = sum((compute_balance(r.actual_fee, r.discount_amount, r.paid_amount) for r in records), ZERO)
    discount = sum((money(r.discount_amount) for r in records), ZERO)
    overdue = sum(
        1 for r in records if fee_status(r.balance_fee, r.paid_amount, r.due_date, today) == "Overdue"
    )
    return {
        "academic_year_id": year_id,
        "total_collected": float(collected),
        "total_pending": float(pending),
        "total_discount": float(discount),
        "collection_rate": percentage(collected, collected + pending + discount),
        "total_students": len({r.student_id for r in records}),
        "overdue_count": overdue,
    }


def pyd_summary(year_id: int) -> Dict[str, Any]:
    rows = StudentFeeRecord.query.filter_by(academic_year_id=year_id, fee_type=PYD_FEE_TYPE).all()
    return {
        "academic_year_id": year_id,
        "student_count": len({r.student_id for r in rows}),
        "total_actual": float(sum((money(r.actual_fee) for r in rows), ZERO)),
        "total_discount": float(sum((money(r.discount_amount) for r in rows), ZERO)),
        "total_paid": float(sum((money(r.paid_amount) for r in rows), ZERO)),
        "total_outstanding": float(sum((money(r.balance_fee) for r in rows), ZERO)),
        "records": [record_to_dict(r) for r in rows],
    }


def outstanding_dues(student_id: int, exclude_year_id: Optional[int] = None) -> List[Dict[str, Any]]:
    """Per-year outstanding balances for a student, optionally skipping one year."""
    query = StudentFeeRecord.query.filter(
        StudentFeeRecord.student_id == student_id, StudentFeeRecord.balance_fee > 0
    )
    if exclude_year_id is not None:
        query = query.filter(StudentFeeRecord.academic_year_id != exclude_year_id)
    by_year: Dict[int, Dict[str, Any]] = {}
    for record in query.all():
        entry = by_year.setdefault(record.academic_year_id, {
            "academic_year_id": record.academic_year_id,
            "academic_year": record.academic_year.year_name if record.academic_year else None,
            "balance": ZERO,
            "records": [],
        })
        entry["balance"] += money(record.balance_fee)
        entry["records"].append(record_to_dict(record))
    for entry in by_year.values():
        entry["balance"] = float(entry["balance"])
    return sorted(by_year.values(), key=lambda e: e["academic_year"] or "")


# --------------------------
# Discounts
# --------------------------

def _discount_value(record: StudentFeeRecord, discount_type: str, value) -> tuple[Decimal, Optional[Decimal]]:
    require_choice(discount_type, DISCOUNT_TYPES, "discount_type")
    value = parse_amount(value, "discount_value")
    if discount_type == PERCENTAGE:
        if value > 100:
            raise ValidationFailed("Percentage cannot exceed 100", {"discount_value": "cannot exceed 100"})
        return money(money(record.actual_fee) * value / 100), value
    return money(value), None


def apply_discount(record_id, discount_type: str, value, reason: str | None = None,
                   applied_by: str | None = None, notes: str | None = None,
                   tag: str | None = None, applies_to: str = "fee") -> StudentFeeRecord:
    """Add a discount on top of any earlier one; it may not exceed the remaining balance."""
    record = get_record(record_id)
    amount, pct = _discount_value(record, discount_type, value)
    if amount <= ZERO:
        raise ValidationFailed("Discount must be greater than 0", {"discount_value": "must be greater than 0"})
    remaining = compute_balance(record.actual_fee, record.discount_amount, record.paid_amount)
    if amount > remaining:
        raise ValidationFailed(
            f"Discount {amount} exceeds the remaining balance {remaining}",
            {"discount_value": "exceeds remaining balance"},
        )
    before = money(record.balance_fee)
    record.discount_amount = money(record.discount_amount) + amount
    record.discount_notes = notes or reason
    record.discount_updated_by = applied_by
    record.discount_updated_at = datetime.utcnow()
    refresh_record(record)
    db.session.add(DiscountHistory(
        fee_record_id=record.id,
        student_id=record.student_id,
        discount_type=discount_type,
        discount_amount=amount,
        discount_percentage=pct,
        reason=reason,
        notes=notes,
        tag=tag,
        applies_to=applies_to,
        applied_by=applied_by,
    ))
    add_history(record, "discount", before, record.balance_fee, amount, applied_by, reason)
    db.session.flush()
    logger.info("discount %s applied to fee record %s by %s", amount, record.id, applied_by)
    emit(fee_records_changed, year_id=record.academic_year_id)
    return record


def apply_previous_year_dues_discount(student_id, current_year_id, discount_type: str, amount,
                                      reason: str | None, notes: str | None = None,
                                      approved_by: str | None = None,
                                      tag: str | None = None) -> Dict[str, Any]:
    errors = {}
    if not (reason or "").strip():
        errors["reason"] = "required"
    if tag not in PYD_DISCOUNT_TAGS:
        errors["tag"] = "must be one of: " + ", ".join(PYD_DISCOUNT_TAGS)
    if errors:
        raise ValidationFailed("Invalid previous year dues discount", errors)
    record = find_record(parse_int(student_id, "student_id"), parse_int(current_year_id, "current_year_id"), PYD_FEE_TYPE)
    if record is None:
        raise NotFound("No previous year dues for this student in the selected year")
    before = money(record.balance_fee)
    apply_discount(record.id, discount_type, amount, reason.strip(), approved_by, notes, tag, applies_to="pyd")
    return {
        "success": True,
        "fee_record_id": record.id,
        "previous_balance": float(before),
        "discount_applied": float(before - money(record.balance_fee)),
        "new_balance": float(record.balance_fee),
    }


def discount_history(record_id=None, student_id=None) -> List[Dict[str, Any]]:
    query = DiscountHistory.query
    if record_id is not None:
        query = query.filter_by(fee_record_id=parse_int(record_id, "record_id"))
    if student_id is not None:
        query = query.filter_by(student_id=parse_int(student_id, "student_id"))
    return [h.to_dict() for h in query.order_by(DiscountHistory.applied_at.desc(), DiscountHistory.id.desc())]


def discount_report(year_id: int) -> Dict[str, Any]:
    rows = (
        db.session.query(DiscountHistory)
        .join(StudentFeeRecord, StudentFeeRecord.id == DiscountHistory.fee_record_id)
        .filter(StudentFeeRecord.academic_year_id == year_id)
        .all()
    )
    by_tag: Dict[str, Decimal] = defaultdict(lambda: ZERO)
    by_type: Dict[str, Decimal] = defaultdict(lambda: ZERO)
    for row in rows:
        by_tag[row.tag or "Untagged"] += money(row.discount_amount)
        by_type[row.discount_type] += money(row.discount_amount)
    return {
        "academic_year_id": year_id,
        "count": len(rows),
        "total": float(sum(by_type.values(), ZERO)),
        "by_tag": {k: float(v) for k, v in by_tag.items()},
        "by_type": {k: float(v) for k, v in by_type.items()},
    }


# --------------------------
# Payments
# --------------------------

def generate_receipt_number() -> str:
    suffix = "".join(secrets.choice(string.ascii_uppercase + string.digits) for _ in range(4))
    return f"RCP-{int(time.time() * 1000)}-{suffix}"


def outstanding_records(student_id: int, year_id: Optional[int]) -> List[StudentFeeRecord]:
    """Rows a FIFO payment may touch: PYD first, then by due date."""
    query = StudentFeeRecord.query.filter(
        StudentFeeRecord.student_id == student_id,
        StudentFeeRecord.balance_fee > 0,
        StudentFeeRecord.status != "Paid",
        StudentFeeRecord.payment_blocked.is_(False),
    )
    if year_id is not None:
        query = query.filter(StudentFeeRecord.academic_year_id == year_id)
    return query.order_by(
        StudentFeeRecord.priority_order,
        StudentFeeRecord.due_date,
        StudentFeeRecord.id,
    ).all()


def _plan(records: Iterable[StudentFeeRecord], amount: Decimal) -> Dict[str, Any]:
    remaining = money(amount)
    allocations = []
    for record in records:
        if remaining <= ZERO:
            break
        before = money(record.balance_fee)
        take = min(remaining, before)
        if take <= ZERO:
            continue
        remaining -= take
        allocations.append({
            "fee_record_id": record.id,
            "fee_type": record.fee_type,
            "academic_year": record.academic_year.year_name if record.academic_year else None,
            "due_date": record.due_date.isoformat() if record.due_date else None,
            "balance_before": before,
            "allocated_amount": take,
            "balance_after": before - take,
        })
    return {
        "total_allocated": money(amount) - remaining,
        "remaining_amount": remaining,
        "allocations": allocations,
    }


def _plain_plan(plan: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "total_allocated": float(plan["total_allocated"]),
        "remaining_amount": float(plan["remaining_amount"]),
        "allocations": [
            {k: (float(v) if isinstance(v, Decimal) else v) for k, v in a.items()}
            for a in plan["allocations"]
        ],
    }


def _target_year_id(academic_year_id) -> Optional[int]:
    if academic_year_id not in (None, ""):
        return get_year(parse_int(academic_year_id, "academic_year_id")).id
    year = current_year()
    return year.id if year else None


def simulate_allocation(student_id, amount, academic_year_id=None) -> Dict[str, Any]:
    amount = parse_amount(amount)
    year_id = _target_year_id(academic_year_id)
    plan = _plan(outstanding_records(parse_int(student_id, "student_id"), year_id), amount)
    result = _plain_plan(plan)
    result["target_academic_year_id"] = year_id
    return result


def record_payment(student_id, amount, payment_receiver: str | None, payment_method: str = "Cash",
                   receipt_number: str | None = None, fee_record_id=None, academic_year_id=None,
                   payment_date: Optional[date] = None, notes: str | None = None, late_fee=None,
                   created_by: str | None = None) -> tuple[FeePaymentRecord, Dict[str, Any]]:
    """Record a payment against one row, or FIFO across the student's outstanding rows."""
    student_id = parse_int(student_id, "student_id", required=False)
    student = db.session.get(Student, student_id) if student_id is not None else None
    if student is None:
        raise NotFound(f"Student {student_id} not found")

    fee_record_id = parse_int(fee_record_id, "fee_record_id", required=False)
    if fee_record_id is not None:
        record = get_record(fee_record_id)
        if record.student_id != student.id:
            raise ValidationFailed("Fee record does not belong to this student", {"fee_record_id": "mismatch"})
        if record.payment_blocked:
            raise Conflict("Payments are blocked for this fee record")
        year_id = record.academic_year_id
        candidates = [record]
    else:
        year_id = _target_year_id(academic_year_id)
        candidates = outstanding_records(student.id, year_id)

    outstanding = sum((money(r.balance_fee) for r in candidates), ZERO)
    if outstanding <= ZERO:
        raise ValidationFailed("No outstanding fees to pay", {"amount": "nothing outstanding"})
    if receipt_number is not None and not isinstance(receipt_number, str):
        raise ValidationFailed("Receipt number must be text", {"receipt_number": "must be text"})
    receipt_number = (receipt_number or "").strip() or None
    amount = validate_payment(amount, outstanding, receipt_number, payment_receiver)
    late_fee = parse_amount(late_fee, "late_fee", required=False, positive=False)
    receipt_number = receipt_number or generate_receipt_number()
    if FeePaymentRecord.query.filter_by(receipt_number=receipt_number).first() is not None:
        raise Conflict(f"Receipt number {receipt_number} already exists")

    payment = FeePaymentRecord(
        student_id=student.id,
        fee_record_id=candidates[0].id if len(candidates) == 1 else None,
        target_academic_year_id=year_id,
        amount_paid=money(amount),
        late_fee=money(late_fee),
        payment_date=payment_date or date.today(),
        payment_method=payment_method or "Cash",
        receipt_number=receipt_number,
        payment_receiver=payment_receiver.strip(),
        notes=notes,
        created_by=created_by,
    )
    db.session.add(payment)
    db.session.flush()

    plan = _plan(candidates, payment.amount_paid)
    by_id = {r.id: r for r in candidates}
    for order, alloc in enumerate(plan["allocations"], start=1):
        record = by_id[alloc["fee_record_id"]]
        record.paid_amount = money(record.paid_amount) + alloc["allocated_amount"]
        refresh_record(record)
        payment.allocations.append(PaymentAllocation(
            fee_record=record,
            allocated_amount=alloc["allocated_amount"],
            allocation_order=order,
        ))
        add_history(record, "payment", alloc["balance_before"], record.balance_fee,
                    alloc["allocated_amount"], created_by or payment.payment_receiver, notes,
                    payment.payment_method, receipt_number)
    db.session.flush()
    result = _plain_plan(plan)
    logger.info("payment %s of %s allocated to %d record(s)", receipt_number, payment.amount_paid,
                len(result["allocations"]))
    emit(payment_recorded, payment=payment, allocations=result["allocations"])
    return payment, result


def get_payment(payment_id) -> FeePaymentRecord:
    payment = db.session.get(FeePaymentRecord, payment_id) if payment_id is not None else None
    if payment is None:
        raise NotFound(f"Payment {payment_id} not found")
    return payment


def reversible_amount(payment: FeePaymentRecord) -> Decimal:
    reversed_total = sum((money(r.reversal_amount) for r in payment.reversals), ZERO)
    return money(payment.amount_paid) - reversed_total


def reverse_payment(payment_id, reversal_type: str, amount, reason: str | None,
                    authorized_by: str | None, notes: str | None = None) -> PaymentReversal:
    """Undo part or all of a payment, newest allocation first."""
    payment = get_payment(payment_id)
    require_choice(reversal_type, REVERSAL_TYPES, "reversal_type")
    amount = parse_amount(amount)
    errors = {}
    if not (reason or "").strip():
        errors["reason"] = "required"
    if not (authorized_by or "").strip():
        errors["authorized_by"] = "required"
    available = reversible_amount(payment)
    if amount > available:
        errors["amount"] = f"cannot exceed {available}"
    if errors:
        raise ValidationFailed("Invalid reversal", errors)

    remaining = money(amount)
    for alloc in sorted(payment.allocations, key=lambda a: a.allocation_order, reverse=True):
        if remaining <= ZERO:
            break
        open_amount = money(alloc.allocated_amount) - money(alloc.reversed_amount)
        take = min(remaining, open_amount)
        if take <= ZERO:
            continue
        record = alloc.fee_record
        before = money(record.balance_fee)
        alloc.reversed_amount = money(alloc.reversed_amount) + take
        record.paid_amount = max(ZERO, money(record.paid_amount) - take)
        refresh_record(record)
        add_history(record, "reversal", before, record.balance_fee, take, authorized_by,
                    f"{reversal_type}: {reason}", payment.payment_method, payment.receipt_number)
        remaining -= take

    reversal = PaymentReversal(
        reversal_type=reversal_type,
        reversal_amount=money(amount),
        reason=reason.strip(),
        notes=notes,
        authorized_by=authorized_by.strip(),
    )
    payment.reversals.append(reversal)
    db.session.flush()
    logger.info("payment %s %s of %s by %s", payment.receipt_number, reversal_type, amount, authorized_by)
    emit(payment_reversed, payment=payment, reversal=reversal)
    return reversal


def payment_to_dict(payment: FeePaymentRecord) -> Dict[str, Any]:
    data = payment.to_dict()
    data["allocations"] = [
        {
            **a.to_dict(),
            "fee_type": a.fee_record.fee_type,
            "academic_year_id": a.fee_record.academic_year_id,
            "academic_year": a.fee_record.academic_year.year_name if a.fee_record.academic_year else None,
        }
        for a in payment.allocations
    ]
    data["reversed_total"] = float(money(payment.amount_paid) - reversible_amount(payment))
    return data


def payment_history(student_id: int, year_id: Optional[int] = None) -> Dict[str, List[Dict[str, Any]]]:
    """Payments split into current-year fees and previous year dues.

    A payment that touched both kinds of row appears in both tabs, each entry
    carrying only that tab's allocations and their total.
    """
    tabs: Dict[str, List[Dict[str, Any]]] = {"current_year": [], "previous_dues": []}
    payments = (
        FeePaymentRecord.query.filter_by(student_id=student_id)
        .order_by(FeePaymentRecord.payment_date.desc(), FeePaymentRecord.id.desc())
        .all()
    )
    for payment in payments:
        split: Dict[str, list] = {"current_year": [], "previous_dues": []}
        for alloc in payment.allocations:
            record = alloc.fee_record
            if year_id is not None and record.academic_year_id != year_id:
                continue
            split["previous_dues" if record.is_pyd else "current_year"].append(alloc)
        for tab, allocs in split.items():
            if not allocs:
                continue
            tabs[tab].append({
                "payment_id": payment.id,
                "receipt_number": payment.receipt_number,
                "payment_date": payment.payment_date.isoformat(),
                "payment_method": payment.payment_method,
                "payment_receiver": payment.payment_receiver,
                "amount": float(sum((money(a.allocated_amount) - money(a.reversed_amount) for a in allocs), ZERO)),
                "fee_types": sorted({a.fee_record.fee_type for a in allocs}),
            })
    return tabs


def cross_year_allocations(student_id: int) -> List[Dict[str, Any]]:
    """Each allocation of the student's payments with the year it landed in."""
    rows = (
        db.session.query(PaymentAllocation, FeePaymentRecord, StudentFeeRecord, AcademicYear)
        .join(FeePaymentRecord, FeePaymentRecord.id == PaymentAllocation.payment_record_id)
        .join(StudentFeeRecord, StudentFeeRecord.id == PaymentAllocation.fee_record_id)
        .join(AcademicYear, AcademicYear.id == StudentFeeRecord.academic_year_id)
        .filter(FeePaymentRecord.student_id == student_id)
        .order_by(FeePaymentRecord.payment_date, PaymentAllocation.id)
        .all()
    )
    return [
        {
            "receipt_number": payment.receipt_number,
            "payment_date": payment.payment_date.isoformat(),
            "paid_into_year_id": payment.target_academic_year_id,
            "fee_record_id": record.id,
            "fee_type": record.fee_type,
            "academic_year_id": year.id,
            "academic_year": year.year_name,
            "allocated_amount": float(alloc.allocated_amount),
            "reversed_amount": float(alloc.reversed_amount),
        }
        for alloc, payment, record, year in rows
    ]


def set_payment_blocked(record_id, blocked: bool, changed_by: str | None = None) -> StudentFeeRecord:
    record = get_record(record_id)
    record.payment_blocked = bool(blocked)
    add_history(record, "status_update", None, None, None, changed_by,
                "Payments blocked" if blocked else "Payments unblocked")
    emit(fee_records_changed, year_id=record.academic_year_id)
    return record


def change_history(record_id) -> List[Dict[str, Any]]:
    get_record(record_id)
    rows = (
        FeeChangeHistory.query.filter_by(fee_record_id=parse_int(record_id, "record_id"))
        .order_by(FeeChangeHistory.created_at, FeeChangeHistory.id)
        .all()
    )
    return [r.to_dict() for r in rows]


# --------------------------
# Consistency checks
# --------------------------

def verify_dues(year_id: Optional[int] = None) -> Dict[str, Any]:
    query = StudentFeeRecord.query
    if year_id is not None:
        query = query.filter_by(academic_year_id=year_id)
    records = query.all()

    net_allocated = dict(
        db.session.query(
            PaymentAllocation.fee_record_id,
            func.sum(PaymentAllocation.allocated_amount - PaymentAllocation.reversed_amount),
        )
        .group_by(PaymentAllocation.fee_record_id)
        .all()
    )

    issues: List[Dict[str, Any]] = []
    seen: Dict[tuple, int] = {}
    for record in records:
        final_fee = money(record.actual_fee) - money(record.discount_amount)
        expected = max(ZERO, final_fee - money(record.paid_amount))
        base = {"fee_record_id": record.id, "student_id": record.student_id, "fee_type": record.fee_type,
                "academic_year_id": record.academic_year_id}
        if final_fee < ZERO or money(record.balance_fee) < ZERO:
            issues.append({**base, "issue_type": "calculation_error",
                           "detail": f"final fee {final_fee}, balance {record.balance_fee}"})
        if abs(money(record.balance_fee) - expected) > TOLERANCE:
            issues.append({**base, "issue_type": "incorrect_balance",
                           "expected": float(expected), "actual": float(money(record.balance_fee))})
        allocated = money(net_allocated.get(record.id))
        if abs(allocated - money(record.paid_amount)) > TOLERANCE:
            issues.append({**base, "issue_type": "paid_mismatch",
                           "expected": float(allocated), "actual": float(money(record.paid_amount))})
        key = (record.student_id, record.academic_year_id, record.fee_type)
        if key in seen:
            issues.append({**base, "issue_type": "duplicate_record", "duplicate_of": seen[key]})
        else:
            seen[key] = record.id
    return {"checked": len(records), "issue_count": len(issues), "ok": not issues, "issues": issues}

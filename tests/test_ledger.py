from datetime import date, timedelta
from decimal import Decimal

import pytest

from conftest import make_structure, make_student
from models import DiscountHistory, FeePaymentRecord
from utils.errors import Conflict, NotFound, ValidationFailed
from utils.ledger import (
    apply_discount,
    compute_balance,
    create_fee_records_for_student,
    fee_status,
    money,
    payment_history,
    record_payment,
    reverse_payment,
    set_payment_blocked,
    simulate_allocation,
    verify_dues,
    year_summary,
)


def test_money_coerces_junk_to_zero():
    assert money(None) == Decimal("0.00")
    assert money(float("nan")) == Decimal("0.00")
    assert money("abc") == Decimal("0.00")
    assert money("10.005") == Decimal("10.01")


def test_balance_never_negative():
    assert compute_balance(1000, 200, 300) == Decimal("500.00")
    assert compute_balance(1000, 800, 300) == Decimal("0.00")
    assert compute_balance(None, None, None) == Decimal("0.00")


def test_fee_status_rules():
    today = date(2025, 1, 10)
    assert fee_status(0, 0, None, today) == "Paid"
    assert fee_status(100, 50, today - timedelta(days=5), today) == "Partial"
    assert fee_status(100, 0, today - timedelta(days=1), today) == "Overdue"
    assert fee_status(100, 0, today + timedelta(days=1), today) == "Pending"


def test_fee_records_created_from_active_plan_only(school):
    make_structure(school["c5"], school["y1"], 1500, fee_type="Library Fee", active=False)
    created = create_fee_records_for_student(school["student"], school["y1"].id)
    assert [r.fee_type for r in created] == ["Tuition Fee"]
    assert create_fee_records_for_student(school["student"], school["y1"].id) == []


def test_discount_payment_and_balance(school):
    record = create_fee_records_for_student(school["student"], school["y1"].id)[0]
    apply_discount(record.id, "Fixed Amount", 5000, reason="Sibling", applied_by="Admin")
    assert record.balance_fee == Decimal("17000.00")
    payment, allocation = record_payment(school["student"].id, 10000, "Front Desk", receipt_number="R-100")
    assert allocation["total_allocated"] == 10000.0
    assert record.paid_amount == Decimal("10000.00")
    assert record.balance_fee == Decimal("7000.00")
    assert record.status == "Partial"
    assert DiscountHistory.query.filter_by(fee_record_id=record.id).count() == 1


def test_discount_cannot_exceed_remaining_balance(school):
    record = create_fee_records_for_student(school["student"], school["y1"].id)[0]
    record_payment(school["student"].id, 20000, "Front Desk")
    with pytest.raises(ValidationFailed):
        apply_discount(record.id, "Fixed Amount", 2500)
    with pytest.raises(ValidationFailed):
        apply_discount(record.id, "Percentage", 150)
    apply_discount(record.id, "Percentage", 5)
    assert record.discount_amount == Decimal("1100.00")
    assert record.balance_fee == Decimal("900.00")


def test_payment_rejects_overpayment_and_short_receipt(school):
    create_fee_records_for_student(school["student"], school["y1"].id)
    with pytest.raises(ValidationFailed) as excinfo:
        record_payment(school["student"].id, 30000, "Front Desk")
    assert "amount" in excinfo.value.errors
    with pytest.raises(ValidationFailed) as excinfo:
        record_payment(school["student"].id, 100, "Front Desk", receipt_number="ab")
    assert "receipt_number" in excinfo.value.errors
    with pytest.raises(ValidationFailed) as excinfo:
        record_payment(school["student"].id, 100, "  ")
    assert "payment_receiver" in excinfo.value.errors


def test_duplicate_receipt_rejected(school):
    create_fee_records_for_student(school["student"], school["y1"].id)
    record_payment(school["student"].id, 100, "Front Desk", receipt_number="R-1")
    with pytest.raises(Conflict):
        record_payment(school["student"].id, 100, "Front Desk", receipt_number="R-1")


def test_generated_receipt_number_format(school):
    create_fee_records_for_student(school["student"], school["y1"].id)
    payment, _ = record_payment(school["student"].id, 100, "Front Desk")
    prefix, stamp, suffix = payment.receipt_number.split("-")
    assert prefix == "RCP" and stamp.isdigit() and len(suffix) == 4 and suffix.upper() == suffix


def test_fifo_orders_by_priority_then_due_date(school):
    make_structure(school["c5"], school["y1"], 3000, fee_type="Transport Fee")
    records = {r.fee_type: r for r in create_fee_records_for_student(school["student"], school["y1"].id)}
    records["Transport Fee"].due_date = date.today() + timedelta(days=5)
    records["Tuition Fee"].due_date = date.today() + timedelta(days=40)
    plan = simulate_allocation(school["student"].id, 4000, school["y1"].id)
    assert [a["fee_type"] for a in plan["allocations"]] == ["Transport Fee", "Tuition Fee"]
    assert plan["allocations"][0]["allocated_amount"] == 3000.0
    assert plan["allocations"][1]["balance_after"] == 21000.0
    assert FeePaymentRecord.query.count() == 0


def test_blocked_record_skipped_and_refuses_direct_payment(school):
    record = create_fee_records_for_student(school["student"], school["y1"].id)[0]
    set_payment_blocked(record.id, True, "Admin")
    with pytest.raises(Conflict):
        record_payment(school["student"].id, 100, "Front Desk", fee_record_id=record.id)
    with pytest.raises(ValidationFailed):
        record_payment(school["student"].id, 100, "Front Desk")


def test_reversal_restores_balance(school):
    record = create_fee_records_for_student(school["student"], school["y1"].id)[0]
    payment, _ = record_payment(school["student"].id, 5000, "Front Desk")
    reverse_payment(payment.id, "refund", 2000, "Cheque bounced", "Principal")
    assert record.paid_amount == Decimal("3000.00")
    assert record.balance_fee == Decimal("19000.00")
    with pytest.raises(ValidationFailed):
        reverse_payment(payment.id, "reversal", 3500, "Too much", "Principal")
    with pytest.raises(ValidationFailed):
        reverse_payment(payment.id, "chargeback", 100, "Bad type", "Principal")
    assert verify_dues(school["y1"].id)["ok"]


def test_payment_for_unknown_student(school):
    with pytest.raises(NotFound):
        record_payment(9999, 100, "Front Desk")


def test_verify_dues_flags_tampered_balance(school):
    record = create_fee_records_for_student(school["student"], school["y1"].id)[0]
    record.balance_fee = Decimal("100.00")
    report = verify_dues(school["y1"].id)
    assert not report["ok"]
    assert {i["issue_type"] for i in report["issues"]} == {"incorrect_balance"}


def test_year_summary_collection_rate(school):
    record = create_fee_records_for_student(school["student"], school["y1"].id)[0]
    apply_discount(record.id, "Fixed Amount", 2000)
    record_payment(school["student"].id, 5000, "Front Desk")
    summary = year_summary(school["y1"].id)
    assert summary["total_collected"] == 5000.0
    assert summary["total_pending"] == 15000.0
    assert summary["total_discount"] == 2000.0
    assert summary["collection_rate"] == pytest.approx(22.73)
    assert summary["total_students"] == 1


def test_history_tab_split_for_two_students(school):
    other = make_student(school["c5"], admission="ADM002", first="Ravi")
    create_fee_records_for_student(school["student"], school["y1"].id)
    create_fee_records_for_student(other, school["y1"].id)
    record_payment(other.id, 1000, "Front Desk")
    tabs = payment_history(school["student"].id, school["y1"].id)
    assert tabs == {"current_year": [], "previous_dues": []}


def test_student_without_class_gets_no_rows(school):
    loose = make_student(None, admission="ADM003")
    assert create_fee_records_for_student(loose, school["y1"].id) == []

from decimal import Decimal

import pytest

from conftest import make_class, make_structure, make_student
from models import PYD_FEE_TYPE, StudentFeeRecord, StudentPromotion
from utils.classes import get_next_class_id, next_class_name
from utils.errors import MissingFeePlans, ValidationFailed
from utils.ledger import (
    apply_discount,
    apply_previous_year_dues_discount,
    create_fee_records_for_student,
    payment_history,
    pyd_summary,
    record_payment,
)
from utils.promotion import (
    backfill_fees,
    debug_fee_counts,
    promote_students_with_fees,
    promote_students_with_fees_by_name,
)


def _owe_7000(school):
    record = create_fee_records_for_student(school["student"], school["y1"].id)[0]
    apply_discount(record.id, "Fixed Amount", 5000, reason="Merit")
    record_payment(school["student"].id, 10000, "Front Desk")
    assert record.balance_fee == Decimal("7000.00")
    return record


def _promote(school, **extra):
    item = {
        "student_id": school["student"].id,
        "from_academic_year_id": school["y1"].id,
        "from_class_id": school["c5"].id,
        "promotion_type": "promoted",
    }
    item.update(extra)
    return promote_students_with_fees([item], school["y2"].id, "Admin")


def test_next_class_names():
    assert next_class_name("Nursery") == "LKG"
    assert next_class_name("UKG") == "Class 1"
    assert next_class_name("Class 5") == "Class 6"
    assert next_class_name("Grade 9") == "Grade 10"
    assert next_class_name("3rd Grade") == "4th Grade"
    assert next_class_name("Class 12") is None
    assert next_class_name("Music Room") is None


def test_next_class_prefers_same_section(school):
    make_class("Class 6", section="B")
    c5b = make_class("Class 5", section="B")
    assert get_next_class_id(school["c5"].id) == school["c6"].id
    assert get_next_class_id(c5b.id) != school["c6"].id


def test_golden_carry_forward(school):
    source = _owe_7000(school)
    result = _promote(school)

    assert result["promoted_students"] == 1
    assert result["fee_rows_created"] == 1
    assert result["pyd_rows"] == 1
    assert result["pyd_total"] == 7000.0

    target_rows = {r.fee_type: r for r in StudentFeeRecord.query.filter_by(academic_year_id=school["y2"].id)}
    assert set(target_rows) == {"Tuition Fee", PYD_FEE_TYPE}
    pyd = target_rows[PYD_FEE_TYPE]
    assert pyd.balance_fee == Decimal("7000.00")
    assert pyd.is_carry_forward and pyd.priority_order == 0
    assert pyd.carry_forward_source_year_id == school["y1"].id
    assert school["student"].class_id == school["c6"].id

    # Source year untouched and holds no PYD row
    assert source.balance_fee == Decimal("7000.00")
    assert StudentFeeRecord.query.filter_by(academic_year_id=school["y1"].id, fee_type=PYD_FEE_TYPE).count() == 0
    assert pyd_summary(school["y3"].id)["total_outstanding"] == 0.0


def test_second_run_creates_nothing(school):
    _owe_7000(school)
    _promote(school)
    again = _promote(school)
    assert again["pyd_rows"] == 0
    assert again["fee_rows_created"] == 0
    assert again["skipped_students"] == 1
    assert StudentPromotion.query.count() == 1
    assert StudentFeeRecord.query.filter_by(fee_type=PYD_FEE_TYPE).count() == 1


def test_idempotency_key_replays_result(school):
    _owe_7000(school)
    item = [{"student_id": school["student"].id, "from_academic_year_id": school["y1"].id,
             "promotion_type": "promoted"}]
    first = promote_students_with_fees(item, school["y2"].id, "Admin", idempotency_key="run-1")
    replay = promote_students_with_fees(item, school["y2"].id, "Admin", idempotency_key="run-1")
    assert replay["replayed"] is True
    assert replay["pyd_rows"] == first["pyd_rows"] == 1


def test_pyd_discount_and_split_history(school):
    _owe_7000(school)
    _promote(school)
    result = apply_previous_year_dues_discount(
        school["student"].id, school["y2"].id, "Fixed Amount", 1000,
        reason="Hardship", approved_by="Principal", tag="Financial Hardship",
    )
    assert result["new_balance"] == 6000.0

    record_payment(school["student"].id, 8000, "Front Desk", academic_year_id=school["y2"].id)
    tabs = payment_history(school["student"].id, school["y2"].id)
    assert [e["amount"] for e in tabs["previous_dues"]] == [6000.0]
    assert [e["amount"] for e in tabs["current_year"]] == [2000.0]


def test_pyd_discount_requires_reason_and_tag(school):
    _owe_7000(school)
    _promote(school)
    with pytest.raises(ValidationFailed) as excinfo:
        apply_previous_year_dues_discount(school["student"].id, school["y2"].id, "Fixed Amount", 500,
                                          reason="", tag="Bribe")
    assert set(excinfo.value.errors) == {"reason", "tag"}


def test_missing_fee_plan_blocks_whole_run(school):
    c7 = make_class("Class 7")
    other = make_student(school["c6"], admission="ADM009")
    items = [
        {"student_id": school["student"].id, "from_academic_year_id": school["y1"].id,
         "promotion_type": "promoted"},
        {"student_id": other.id, "from_academic_year_id": school["y1"].id, "to_class_id": c7.id,
         "promotion_type": "promoted"},
    ]
    with pytest.raises(MissingFeePlans) as excinfo:
        promote_students_with_fees(items, school["y2"].id)
    assert excinfo.value.missing == [{"year": "2025-26", "class": "Class 7 (A)"}]
    assert StudentPromotion.query.count() == 0


def test_repeat_and_dropout(school):
    make_structure(school["c5"], school["y2"], 21000)
    dropout = make_student(school["c5"], admission="ADM010")
    result = promote_students_with_fees([
        {"student_id": school["student"].id, "from_academic_year_id": school["y1"].id,
         "from_class_id": school["c5"].id, "to_class_id": school["c6"].id, "promotion_type": "repeated"},
        {"student_id": dropout.id, "from_academic_year_id": school["y1"].id, "promotion_type": "dropout",
         "reason": "Relocated"},
    ], school["y2"].id)
    assert result["repeated_students"] == 1
    assert result["dropped_students"] == 1
    assert school["student"].class_id == school["c5"].id
    assert dropout.status == "Withdrawn"
    assert StudentFeeRecord.query.filter_by(student_id=dropout.id).count() == 0


def test_terminal_class_graduates(school):
    c12 = make_class("Class 12")
    senior = make_student(c12, admission="ADM012")
    result = promote_students_with_fees(
        [{"student_id": senior.id, "from_academic_year_id": school["y1"].id, "promotion_type": "promoted"}],
        school["y2"].id,
    )
    assert result["graduated_students"] == 1
    assert senior.status == "Alumni"


def test_invalid_payloads(school):
    with pytest.raises(ValidationFailed):
        promote_students_with_fees({"student_id": 1}, school["y2"].id)
    with pytest.raises(ValidationFailed):
        promote_students_with_fees([], None)
    with pytest.raises(ValidationFailed):
        promote_students_with_fees([{"student_id": school["student"].id, "promotion_type": "expelled"}],
                                   school["y2"].id)


def test_promote_by_name(school):
    _owe_7000(school)
    result = promote_students_with_fees_by_name("2024-25", "2025-26", "Admin")
    assert result["promoted_students"] == 1
    assert result["pyd_rows"] == 1
    assert debug_fee_counts(school["y2"].id) == 2


def test_backfill_creates_missing_rows_and_pyd(school):
    _owe_7000(school)
    school["student"].class_id = school["c6"].id
    result = backfill_fees(school["y2"].id, created_by="Admin")
    assert result == {"backfilled": 1, "previous_dues_created": 1}
    again = backfill_fees(school["y2"].id)
    assert again["backfilled"] == 0 and again["previous_dues_created"] == 0
    assert "message" in again


def test_backfill_without_plans(school):
    result = backfill_fees(school["y3"].id)
    assert result["backfilled"] == 0
    assert result["message"].startswith("No active fee plans")

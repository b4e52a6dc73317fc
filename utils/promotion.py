"""Year-end promotion and fee carry-forward.

A promotion moves students into a target academic year, creates their fee
rows from the target class's active fee structures, and carries any unpaid
source-year balance into a single "Previous Year Dues" row. Source-year
rows are only ever read.
"""
from __future__ import annotations

import json
import logging
from collections import defaultdict
from datetime import date
from typing import Any, Dict, List, Optional

from extensions import db
from models import (
    FeeStructure,
    PromotionRun,
    SchoolClass,
    Student,
    StudentFeeRecord,
    StudentPromotion,
)
from utils.academic_year import find_year_by_name, get_year, previous_year
from utils.classes import get_next_class_id, next_class_name
from utils.errors import MissingFeePlans, NotFound, ValidationFailed
from utils.events import emit, promotion_completed
from utils.validation import parse_int
from utils.ledger import (
    ZERO,
    create_fee_records_for_student,
    create_pyd_record,
    money,
    source_year_outstanding,
)

logger = logging.getLogger(__name__)

PROMOTED = "promoted"
REPEATED = "repeated"
DROPOUT = "dropout"
GRADUATED = "graduated"
PROMOTION_TYPES = (PROMOTED, REPEATED, DROPOUT)


def check_fee_plans(target_year_id: int, class_ids) -> List[Dict[str, str]]:
    """Classes among ``class_ids`` with no active fee structure in the target year."""
    year = get_year(target_year_id)
    wanted = {int(c) for c in class_ids if c is not None}
    if not wanted:
        return []
    planned = {
        row.class_id
        for row in FeeStructure.query.filter(
            FeeStructure.academic_year_id == year.id,
            FeeStructure.is_active.is_(True),
            FeeStructure.class_id.in_(wanted),
        )
    }
    missing = []
    for class_id in sorted(wanted - planned):
        klass = db.session.get(SchoolClass, class_id)
        label = f"{klass.name} ({klass.section or '-'})" if klass else str(class_id)
        missing.append({"year": year.year_name, "class": label})
    return missing


def _target_class(item: Dict[str, Any]) -> tuple[str, Optional[int]]:
    """Resolve the effective promotion type and target class of one item."""
    kind = item["promotion_type"]
    from_class = item.get("from_class_id")
    if kind == DROPOUT:
        return DROPOUT, None
    if kind == REPEATED:
        return REPEATED, from_class
    if item.get("to_class_id"):
        return PROMOTED, item["to_class_id"]
    klass = db.session.get(SchoolClass, from_class) if from_class else None
    if klass is not None and next_class_name(klass.name) is None:
        return GRADUATED, None
    return PROMOTED, get_next_class_id(from_class) or from_class


def _normalize(promotion_data) -> List[Dict[str, Any]]:
    if not isinstance(promotion_data, list):
        raise ValidationFailed("invalid_payload: promotion_data must be an array")
    items = []
    seen = set()
    for index, raw in enumerate(promotion_data):
        prefix = f"promotion_data[{index}]"
        if not isinstance(raw, dict) or raw.get("student_id") in (None, ""):
            raise ValidationFailed(f"invalid_payload: {prefix}.student_id is required")
        kind = raw.get("promotion_type") or PROMOTED
        if not isinstance(kind, str) or kind.strip().lower() not in PROMOTION_TYPES:
            raise ValidationFailed(
                f"invalid_payload: {prefix}.promotion_type must be one of " + ", ".join(PROMOTION_TYPES)
            )
        item = {**raw, "promotion_type": kind.strip().lower()}
        item["student_id"] = parse_int(raw["student_id"], f"{prefix}.student_id")
        for field in ("from_academic_year_id", "from_class_id", "to_class_id"):
            item[field] = parse_int(raw.get(field), f"{prefix}.{field}", required=False)
        if item["student_id"] in seen:
            raise ValidationFailed(f"invalid_payload: duplicate student_id {item['student_id']} in promotion_data")
        seen.add(item["student_id"])
        items.append(item)
    return items


def promote_students_with_fees(promotion_data, target_academic_year_id, promoted_by: str = "Admin",
                               idempotency_key: str | None = None) -> Dict[str, Any]:
    if target_academic_year_id in (None, ""):
        raise ValidationFailed("invalid_payload: target_academic_year_id is required")
    target = get_year(parse_int(target_academic_year_id, "target_academic_year_id"))
    items = _normalize(promotion_data)
    promoted_by = promoted_by or "Admin"

    if idempotency_key:
        run = PromotionRun.query.filter_by(idempotency_key=idempotency_key).first()
        if run is not None:
            logger.info("[PROMOTE] replaying run %s", idempotency_key)
            return {**json.loads(run.result), "replayed": True}

    fallback_source = previous_year(target)
    planned = []
    for item in items:
        student = db.session.get(Student, item["student_id"])
        if student is None:
            raise NotFound(f"Student {item['student_id']} not found")
        source_id = item.get("from_academic_year_id") or (fallback_source.id if fallback_source else None)
        if source_id is None:
            raise ValidationFailed("invalid_payload: from_academic_year_id is required")
        source_id = get_year(source_id).id
        if source_id == target.id:
            raise ValidationFailed("invalid_payload: source and target academic year are the same")
        if item.get("from_class_id") is None:
            item["from_class_id"] = student.class_id
        kind, to_class = _target_class(item)
        existing = StudentPromotion.query.filter_by(
            student_id=student.id, from_academic_year_id=source_id, to_academic_year_id=target.id
        ).first()
        if existing is not None:
            kind, to_class = existing.promotion_type, existing.to_class_id
        planned.append((student, item, source_id, kind, to_class, existing))

    logger.info("[PROMOTE] source=%s target=%s students=%d",
                sorted({p[2] for p in planned}), target.id, len(planned))

    missing = check_fee_plans(target.id, {p[4] for p in planned if p[3] in (PROMOTED, REPEATED)})
    if missing:
        raise MissingFeePlans(missing)

    counts = defaultdict(int)
    fee_rows = pyd_rows = 0
    pyd_total = ZERO
    today = date.today()
    for student, item, source_id, kind, to_class, existing in planned:
        if existing is not None:
            counts["skipped"] += 1
        else:
            db.session.add(StudentPromotion(
                student_id=student.id,
                from_academic_year_id=source_id,
                to_academic_year_id=target.id,
                from_class_id=item.get("from_class_id"),
                to_class_id=to_class,
                promotion_type=kind,
                reason=item.get("reason"),
                notes=item.get("notes"),
                promoted_by=promoted_by,
            ))
            counts[kind] += 1
            if kind == DROPOUT:
                student.status = "Withdrawn"
                student.exit_reason = item.get("reason") or "Dropout"
                student.exit_date = today
            elif kind == GRADUATED:
                student.status = "Alumni"
                student.exit_reason = "Graduated"
                student.exit_date = today
            else:
                student.class_id = to_class
                student.status = "Active"

        if kind not in (PROMOTED, REPEATED):
            continue
        fee_rows += len(create_fee_records_for_student(
            student, target.id, class_id=to_class, created_by=promoted_by
        ))
        outstanding = source_year_outstanding(student.id, source_id)
        pyd = create_pyd_record(student, target.id, source_id, outstanding,
                                class_id=to_class, created_by=promoted_by)
        if pyd is not None:
            pyd_rows += 1
            pyd_total += money(pyd.actual_fee)

    db.session.flush()
    result = {
        "promoted_students": counts[PROMOTED],
        "repeated_students": counts[REPEATED],
        "dropped_students": counts[DROPOUT],
        "graduated_students": counts[GRADUATED],
        "skipped_students": counts["skipped"],
        "fee_rows_created": fee_rows,
        "pyd_rows": pyd_rows,
        "pyd_total": float(pyd_total),
        "source_year_ids": sorted({p[2] for p in planned}),
        "source_year_id": planned[0][2] if planned else (fallback_source.id if fallback_source else None),
        "target_year_id": target.id,
        "message": (
            f"Processed {len(planned)} student(s) into {target.year_name}: "
            f"{fee_rows} fee row(s), {pyd_rows} previous year dues row(s)"
        ),
    }
    if idempotency_key:
        db.session.add(PromotionRun(
            idempotency_key=idempotency_key,
            target_academic_year_id=target.id,
            promoted_by=promoted_by,
            result=json.dumps(result),
        ))
    logger.info("[PROMOTE][OK] %s", json.dumps(result))
    emit(promotion_completed, result=result, target_year_id=target.id)
    return result


def promote_students_with_fees_by_name(source_year_name: str, target_year_name: str,
                                       promoted_by: str = "Admin") -> Dict[str, Any]:
    """Promote every active student of the source year to their next class."""
    source = find_year_by_name(source_year_name)
    if source is None:
        raise NotFound(f"Academic year {source_year_name} not found")
    target = find_year_by_name(target_year_name)
    if target is None:
        raise NotFound(f"Academic year {target_year_name} not found")
    students = (
        Student.query.filter(Student.status == "Active", Student.class_id.isnot(None))
        .order_by(Student.id)
        .all()
    )
    items = [
        {
            "student_id": s.id,
            "from_academic_year_id": source.id,
            "from_class_id": s.class_id,
            "promotion_type": PROMOTED,
        }
        for s in students
    ]
    return promote_students_with_fees(items, target.id, promoted_by)


def backfill_fees(target_academic_year_id, created_by: str | None = None) -> Dict[str, Any]:
    """Create missing fee rows and PYD rows for active students of planned classes."""
    if target_academic_year_id in (None, ""):
        raise ValidationFailed("invalid_payload: target_academic_year_id is required")
    target = get_year(parse_int(target_academic_year_id, "target_academic_year_id"))
    source = previous_year(target)

    planned_classes = {
        row.class_id
        for row in FeeStructure.query.filter_by(academic_year_id=target.id, is_active=True)
    }
    if not planned_classes:
        return {"backfilled": 0, "previous_dues_created": 0,
                "message": f"No active fee plans for {target.year_name}"}

    students = (
        Student.query.filter(Student.status == "Active", Student.class_id.in_(planned_classes))
        .order_by(Student.id)
        .all()
    )
    if not students:
        return {"backfilled": 0, "previous_dues_created": 0,
                "message": "No active students in classes with fee plans"}

    backfilled = pyd_created = 0
    for student in students:
        backfilled += len(create_fee_records_for_student(student, target.id, created_by=created_by))
        if source is None:
            continue
        if create_pyd_record(student, target.id, source.id, source_year_outstanding(student.id, source.id),
                             created_by=created_by) is not None:
            pyd_created += 1
    db.session.flush()
    logger.info("backfill %s: %d fee row(s), %d PYD row(s)", target.year_name, backfilled, pyd_created)
    result: Dict[str, Any] = {"backfilled": backfilled, "previous_dues_created": pyd_created}
    if not backfilled and not pyd_created:
        result["message"] = "All fee records already exist"
    return result


def debug_fee_counts(p_year) -> int:
    year = get_year(parse_int(p_year, "p_year"))
    return StudentFeeRecord.query.filter_by(academic_year_id=year.id).count()


def promotion_preview(source_academic_year_id) -> List[Dict[str, Any]]:
    source = get_year(parse_int(source_academic_year_id, "source_academic_year_id"))
    rows = []
    students = (
        Student.query.filter(Student.status == "Active", Student.class_id.isnot(None))
        .order_by(Student.class_id, Student.last_name, Student.first_name)
        .all()
    )
    for student in students:
        klass = student.school_class
        next_id = get_next_class_id(student.class_id)
        next_klass = db.session.get(SchoolClass, next_id) if next_id else None
        rows.append({
            "student_id": student.id,
            "student_name": student.full_name,
            "current_class_id": student.class_id,
            "current_class": klass.label if klass else None,
            "next_class_id": next_id,
            "next_class": next_klass.label if next_klass else None,
            "graduates": bool(klass and next_class_name(klass.name) is None),
            "outstanding": float(source_year_outstanding(student.id, source.id)),
        })
    return rows

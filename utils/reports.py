from __future__ import annotations

import logging
from collections import defaultdict
from datetime import date
from decimal import Decimal
from typing import Any, Dict, Optional

from flask import current_app
from sqlalchemy import func

from extensions import db
from models import (
    Attendance,
    Exam,
    FeePaymentRecord,
    Grade,
    PaymentAllocation,
    SchoolClass,
    Student,
    StudentFeeRecord,
    Teacher,
)
from utils.events import (
    academic_year_changed,
    fee_records_changed,
    payment_recorded,
    payment_reversed,
    promotion_completed,
)
from utils.ledger import ZERO, money, percentage, pyd_summary, year_summary

logger = logging.getLogger(__name__)

PASS_PERCENTAGE = Decimal("40")


def _cache() -> Dict[int, Dict[str, Any]]:
    """Per-app fee report cache keyed by academic_year_id."""
    return current_app.extensions.setdefault("fee_report_cache", {})


def invalidate_fee_reports(year_id: Optional[int] = None) -> None:
    if year_id is None:
        _cache().clear()
    else:
        _cache().pop(year_id, None)


@payment_recorded.connect
@payment_reversed.connect
def _on_payment(sender, payment=None, **_):
    # Allocations can land outside the target year, so drop every cached year
    invalidate_fee_reports()


@promotion_completed.connect
def _on_promotion(sender, target_year_id=None, **_):
    invalidate_fee_reports(target_year_id)


@fee_records_changed.connect
def _on_fee_records(sender, year_id=None, **_):
    invalidate_fee_reports(year_id)


@academic_year_changed.connect
def _on_year_change(sender, **_):
    invalidate_fee_reports()


def dashboard(year_id: Optional[int], today: Optional[date] = None) -> Dict[str, Any]:
    today = today or date.today()
    by_status = dict(db.session.query(Student.status, func.count(Student.id)).group_by(Student.status).all())
    active = Student.query.filter_by(status="Active")
    gender = dict(
        db.session.query(Student.gender, func.count(Student.id))
        .filter(Student.status == "Active")
        .group_by(Student.gender)
        .all()
    )
    marked = Attendance.query.filter_by(date=today)
    present = marked.filter(Attendance.status.in_(("Present", "Late"))).count()
    total_marked = marked.count()
    data = {
        "students": {
            "total": sum(by_status.values()),
            "active": active.count(),
            "by_status": by_status,
            "by_gender": {(k or "Unspecified"): v for k, v in gender.items()},
        },
        "teachers": Teacher.query.filter_by(status="Active").count(),
        "classes": SchoolClass.query.count(),
        "attendance_today": {
            "date": today.isoformat(),
            "marked": total_marked,
            "present": present,
            "percentage": percentage(present, total_marked),
        },
        "fees": year_summary(year_id, today) if year_id else None,
    }
    return data


def fee_report(year_id: int) -> Dict[str, Any]:
    cached = _cache().get(year_id)
    if cached is not None:
        return cached

    records = StudentFeeRecord.query.filter_by(academic_year_id=year_id).all()
    per_class: Dict[Any, Dict[str, Decimal]] = defaultdict(lambda: defaultdict(lambda: ZERO))
    per_type: Dict[str, Dict[str, Decimal]] = defaultdict(lambda: defaultdict(lambda: ZERO))
    for record in records:
        label = record.school_class.label if record.school_class else "Unassigned"
        for bucket in (per_class[label], per_type[record.fee_type]):
            bucket["total_fee"] += money(record.actual_fee)
            bucket["discount"] += money(record.discount_amount)
            bucket["collected"] += money(record.paid_amount)
            bucket["pending"] += money(record.balance_fee)

    methods = (
        db.session.query(
            FeePaymentRecord.payment_method,
            func.sum(PaymentAllocation.allocated_amount - PaymentAllocation.reversed_amount),
        )
        .join(PaymentAllocation, PaymentAllocation.payment_record_id == FeePaymentRecord.id)
        .join(StudentFeeRecord, StudentFeeRecord.id == PaymentAllocation.fee_record_id)
        .filter(StudentFeeRecord.academic_year_id == year_id)
        .group_by(FeePaymentRecord.payment_method)
        .all()
    )

    def _plain(groups):
        return {
            key: {**{k: float(v) for k, v in vals.items()},
                  "collection_rate": percentage(vals["collected"],
                                                vals["collected"] + vals["pending"] + vals["discount"])}
            for key, vals in groups.items()
        }

    report = {
        "summary": year_summary(year_id),
        "previous_year_dues": {k: v for k, v in pyd_summary(year_id).items() if k != "records"},
        "by_class": _plain(per_class),
        "by_fee_type": _plain(per_type),
        "by_payment_method": {m: float(money(total)) for m, total in methods},
    }
    _cache()[year_id] = report
    logger.debug("fee report cached for year %s", year_id)
    return report


def attendance_report(start: date, end: date, class_id=None) -> Dict[str, Any]:
    query = db.session.query(Attendance.class_id, Attendance.status, func.count(Attendance.id)).filter(
        Attendance.date >= start, Attendance.date <= end
    )
    if class_id:
        query = query.filter(Attendance.class_id == int(class_id))
    counts: Dict[Any, Dict[str, int]] = defaultdict(lambda: defaultdict(int))
    for cid, status, n in query.group_by(Attendance.class_id, Attendance.status).all():
        counts[cid][status] += n
    classes = []
    for cid, by_status in counts.items():
        klass = db.session.get(SchoolClass, cid) if cid else None
        total = sum(by_status.values())
        attended = by_status.get("Present", 0) + by_status.get("Late", 0)
        classes.append({
            "class_id": cid,
            "class": klass.label if klass else None,
            "present": by_status.get("Present", 0),
            "absent": by_status.get("Absent", 0),
            "late": by_status.get("Late", 0),
            "excused": by_status.get("Excused", 0),
            "total": total,
            "percentage": percentage(attended, total),
        })
    return {"start": start.isoformat(), "end": end.isoformat(), "classes": classes}


def exam_report(year_id: int, class_id=None) -> Dict[str, Any]:
    query = Exam.query.filter_by(academic_year_id=year_id)
    if class_id:
        query = query.filter_by(class_id=int(class_id))
    exams = []
    for exam in query.order_by(Exam.exam_date, Exam.id).all():
        grades = Grade.query.filter_by(exam_id=exam.id).all()
        max_score = money(exam.max_score) or Decimal("100")
        scores = [money(g.score) * 100 / max_score for g in grades]
        passed = sum(1 for s in scores if s >= PASS_PERCENTAGE)
        exams.append({
            "exam_id": exam.id,
            "name": exam.name,
            "class_id": exam.class_id,
            "entries": len(scores),
            "average_percentage": float(money(sum(scores, ZERO) / len(scores))) if scores else 0.0,
            "pass_rate": percentage(passed, len(scores)),
        })
    return {"academic_year_id": year_id, "exams": exams}

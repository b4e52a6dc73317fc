from __future__ import annotations

import logging
from datetime import date
from typing import Any, Dict, Optional

from extensions import db
from models import (
    STUDENT_STATUSES,
    Attendance,
    DiscountHistory,
    FeeChangeHistory,
    FeePaymentRecord,
    Grade,
    Student,
    StudentFeeRecord,
    StudentPromotion,
)
from utils.audit import log_event
from utils.errors import Conflict, NotFound, ValidationFailed
from utils.events import emit, fee_records_changed
from utils.validation import parse_date, require_choice

logger = logging.getLogger(__name__)

EXIT_STATUSES = ("Inactive", "Alumni", "Transferred", "Withdrawn")


def get_student(student_id) -> Student:
    student = db.session.get(Student, student_id) if student_id is not None else None
    if student is None:
        raise NotFound(f"Student {student_id} not found")
    return student


def anonymize_student(student: Student) -> None:
    """Replace personal details with placeholders; fee and payment rows stay intact."""
    student.first_name = "Former"
    student.last_name = f"Student {student.id}"
    student.date_of_birth = None
    student.gender = None
    for link in list(student.parent_links):
        db.session.delete(link)


def set_student_status(student_id, new_status: str, exit_reason: str | None = None,
                       feedback_notes: str | None = None, exit_date=None,
                       anonymize: bool = False) -> Dict[str, Any]:
    student = get_student(student_id)
    require_choice(new_status, STUDENT_STATUSES, "new_status")
    if new_status == "Active":
        return reactivate_student(student.id)
    if new_status in EXIT_STATUSES and new_status != "Inactive" and not (exit_reason or "").strip():
        raise ValidationFailed("exit_reason is required", {"exit_reason": "required"})
    previous = student.status
    student.status = new_status
    student.exit_reason = (exit_reason or "").strip() or None
    student.exit_notes = feedback_notes
    student.exit_date = parse_date(exit_date, "exit_date") or date.today()
    if anonymize:
        anonymize_student(student)
    log_event("student_status", target=f"student:{student.id}", detail=f"{previous} -> {new_status}")
    logger.info("student %s status %s -> %s", student.id, previous, new_status)
    return {"success": True, "student_id": student.id, "previous_status": previous, "status": new_status}


def reactivate_student(student_id) -> Dict[str, Any]:
    student = get_student(student_id)
    if student.status == "Active":
        raise Conflict("Student is already active")
    previous = student.status
    student.status = "Active"
    student.exit_reason = None
    student.exit_date = None
    student.exit_notes = None
    log_event("student_reactivated", target=f"student:{student.id}", detail=f"{previous} -> Active")
    return {"success": True, "student_id": student.id, "previous_status": previous, "status": "Active"}


def can_delete_student(student: Student) -> Optional[str]:
    if FeePaymentRecord.query.filter_by(student_id=student.id).first() is not None:
        return "Student has recorded payments; set an exit status instead"
    return None


def delete_student(student_id) -> None:
    student = get_student(student_id)
    problem = can_delete_student(student)
    if problem:
        raise Conflict(problem)
    record_ids = [r.id for r in student.fee_records]
    year_ids = {r.academic_year_id for r in student.fee_records}
    if record_ids:
        FeeChangeHistory.query.filter(FeeChangeHistory.fee_record_id.in_(record_ids)).delete(
            synchronize_session=False)
        DiscountHistory.query.filter(DiscountHistory.fee_record_id.in_(record_ids)).delete(
            synchronize_session=False)
        StudentFeeRecord.query.filter(StudentFeeRecord.id.in_(record_ids)).delete(synchronize_session=False)
    for model in (Attendance, Grade, StudentPromotion):
        model.query.filter_by(student_id=student.id).delete(synchronize_session=False)
    db.session.delete(student)
    for year_id in sorted(year_ids):
        emit(fee_records_changed, year_id=year_id)

from __future__ import annotations

import logging
from datetime import date
from typing import Any, Dict, List, Optional

from flask import session

from extensions import db
from models import AcademicYear, FeeStructure, StudentFeeRecord
from utils.errors import Conflict, NotFound, ValidationFailed
from utils.events import academic_year_changed, emit
from utils.validation import parse_int

logger = logging.getLogger(__name__)

MODE_SYSTEM = "system"
MODE_MANUAL = "manual"


def list_years() -> List[AcademicYear]:
    return AcademicYear.query.order_by(AcademicYear.start_date.desc()).all()


def get_year(year_id) -> AcademicYear:
    year = db.session.get(AcademicYear, year_id) if year_id is not None else None
    if year is None:
        raise NotFound(f"Academic year {year_id} not found")
    return year


def find_year_by_name(name: str) -> Optional[AcademicYear]:
    return AcademicYear.query.filter_by(year_name=(name or "").strip()).first()


def current_year() -> Optional[AcademicYear]:
    return AcademicYear.query.filter_by(is_current=True).first()


def previous_year(year: AcademicYear) -> Optional[AcademicYear]:
    """The year that starts immediately before ``year``."""
    return (
        AcademicYear.query.filter(AcademicYear.start_date < year.start_date)
        .order_by(AcademicYear.start_date.desc())
        .first()
    )


def _check_dates(start: date, end: date) -> None:
    if end <= start:
        raise ValidationFailed("end_date must be after start_date", {"end_date": "must be after start_date"})


def create_year(year_name: str, start_date: date, end_date: date, make_current: bool = False) -> AcademicYear:
    name = (year_name or "").strip()
    if not name:
        raise ValidationFailed("year_name is required", {"year_name": "required"})
    _check_dates(start_date, end_date)
    if find_year_by_name(name):
        raise Conflict(f"Academic year {name} already exists")
    # Inserted as non-current, then flipped so the single-current rule holds
    year = AcademicYear(year_name=name, start_date=start_date, end_date=end_date, is_current=False)
    db.session.add(year)
    db.session.flush()
    if make_current:
        set_current_year(year.id)
    return year


def update_year(year_id, year_name: str | None = None, start_date: date | None = None,
                end_date: date | None = None) -> AcademicYear:
    year = get_year(year_id)
    if year_name is not None:
        name = year_name.strip()
        other = find_year_by_name(name)
        if other is not None and other.id != year.id:
            raise Conflict(f"Academic year {name} already exists")
        year.year_name = name
    if start_date is not None:
        year.start_date = start_date
    if end_date is not None:
        year.end_date = end_date
    _check_dates(year.start_date, year.end_date)
    return year


def delete_year(year_id) -> None:
    year = get_year(year_id)
    used = (
        StudentFeeRecord.query.filter_by(academic_year_id=year.id).count()
        + FeeStructure.query.filter_by(academic_year_id=year.id).count()
    )
    if used:
        raise Conflict(f"Academic year {year.year_name} has fee data and cannot be deleted")
    if year.is_current:
        raise Conflict("The current academic year cannot be deleted")
    db.session.delete(year)


def set_current_year(year_id) -> AcademicYear:
    year = get_year(year_id)
    AcademicYear.query.filter(AcademicYear.id != year.id).update(
        {AcademicYear.is_current: False}, synchronize_session="fetch"
    )
    year.is_current = True
    db.session.flush()
    logger.info("current academic year set to %s", year.year_name)
    emit(academic_year_changed, year=year)
    return year


# --------------------------
# Per-session selection
# --------------------------

def select_manual(year_id) -> AcademicYear:
    year = get_year(year_id)
    session["academic_year_mode"] = MODE_MANUAL
    session["academic_year_id"] = year.id
    return year


def select_system() -> None:
    session["academic_year_mode"] = MODE_SYSTEM
    session.pop("academic_year_id", None)


def selected_year_id() -> Optional[int]:
    """Effective year for this session: the manual pick or the system current year."""
    if session.get("academic_year_mode") == MODE_MANUAL and session.get("academic_year_id"):
        year = db.session.get(AcademicYear, session["academic_year_id"])
        if year is not None:
            return year.id
    current = current_year()
    return current.id if current else None


def resolve_year_id(explicit) -> Optional[int]:
    """An explicit ``academic_year_id`` argument wins over the session selection."""
    if explicit not in (None, ""):
        return get_year(parse_int(explicit, "academic_year_id")).id
    return selected_year_id()


def year_context() -> Dict[str, Any]:
    current = current_year()
    current_id = current.id if current else None
    mode = session.get("academic_year_mode") or MODE_SYSTEM
    notice = None
    seen = session.get("seen_current_year_id")
    if seen is not None and current_id is not None and seen != current_id:
        notice = f"Academic year changed to {current.year_name}"
    session["seen_current_year_id"] = current_id
    return {
        "years": [y.to_dict() for y in list_years()],
        "current_year_id": current_id,
        "selected_year_id": selected_year_id(),
        "mode": mode,
        "notice": notice,
    }

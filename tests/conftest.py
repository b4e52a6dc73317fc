import os
import sys
from datetime import date, datetime

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from app import create_app  # noqa: E402
from config import TestingConfig  # noqa: E402
from extensions import db  # noqa: E402
from models import AcademicYear, FeeStructure, Profile, SchoolClass, Student  # noqa: E402
from utils.security import hash_password  # noqa: E402

PASSWORD = "Str0ng!Pass"


@pytest.fixture
def app():
    app = create_app(TestingConfig)
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def ctx(app):
    """Request context for calling service functions directly."""
    with app.test_request_context():
        yield
        db.session.rollback()


def make_profile(email="admin@example.org", role="admin", confirmed=True, password=PASSWORD):
    profile = Profile(
        email=email,
        password_hash=hash_password(password),
        first_name=role.title(),
        last_name="User",
        role=role,
        email_confirmed=confirmed,
    )
    db.session.add(profile)
    db.session.flush()
    return profile


def make_year(name, start, end, current=False):
    year = AcademicYear(year_name=name, start_date=start, end_date=end, is_current=current)
    db.session.add(year)
    db.session.flush()
    return year


def make_class(name, section="A"):
    klass = SchoolClass(name=name, section=section)
    db.session.add(klass)
    db.session.flush()
    return klass


def make_structure(klass, year, amount, fee_type="Tuition Fee", active=True):
    structure = FeeStructure(class_id=klass.id, academic_year_id=year.id, fee_type=fee_type,
                             amount=amount, is_active=active)
    db.session.add(structure)
    db.session.flush()
    return structure


def make_student(klass, admission="ADM001", first="Asha", last="Rao", status="Active"):
    student = Student(
        admission_number=admission,
        first_name=first,
        last_name=last,
        gender="Female",
        date_of_birth=date(2014, 6, 1),
        class_id=klass.id if klass else None,
        status=status,
    )
    db.session.add(student)
    db.session.flush()
    return student


@pytest.fixture
def school(ctx):
    """Two consecutive years, Class 5 -> Class 6, tuition plans in both years."""
    y1 = make_year("2024-25", date(2024, 4, 1), date(2025, 3, 31), current=True)
    y2 = make_year("2025-26", date(2025, 4, 1), date(2026, 3, 31))
    y3 = make_year("2026-27", date(2026, 4, 1), date(2027, 3, 31))
    c5 = make_class("Class 5")
    c6 = make_class("Class 6")
    make_structure(c5, y1, 22000)
    make_structure(c6, y2, 25000)
    student = make_student(c5)
    return {"y1": y1, "y2": y2, "y3": y3, "c5": c5, "c6": c6, "student": student}


def login(client, profile_id, role, username="Test User"):
    with client.session_transaction() as sess:
        sess["user_id"] = profile_id
        sess["role"] = role
        sess["username"] = username
        sess["last_seen"] = datetime.utcnow().timestamp()


@pytest.fixture
def seeded(app):
    """Committed data for HTTP tests; returns plain ids."""
    with app.app_context():
        admin = make_profile()
        teacher = make_profile("teacher@example.org", "teacher")
        accountant = make_profile("accounts@example.org", "accountant")
        y1 = make_year("2024-25", date(2024, 4, 1), date(2025, 3, 31), current=True)
        y2 = make_year("2025-26", date(2025, 4, 1), date(2026, 3, 31))
        c5 = make_class("Class 5")
        c6 = make_class("Class 6")
        make_structure(c5, y1, 22000)
        student = make_student(c5)
        ids = {
            "admin": admin.id,
            "teacher": teacher.id,
            "accountant": accountant.id,
            "y1": y1.id,
            "y2": y2.id,
            "c5": c5.id,
            "c6": c6.id,
            "student": student.id,
        }
        db.session.commit()
    return ids

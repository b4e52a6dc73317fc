from datetime import date

import pytest

from conftest import login
from extensions import db
from models import AcademicYear, AuditLog
from utils.academic_year import create_year, delete_year, set_current_year
from utils.errors import Conflict, ValidationFailed


def test_only_one_current_year(ctx):
    first = create_year("2024-25", date(2024, 4, 1), date(2025, 3, 31), make_current=True)
    second = create_year("2025-26", date(2025, 4, 1), date(2026, 3, 31), make_current=True)
    assert AcademicYear.query.filter_by(is_current=True).one().id == second.id
    set_current_year(first.id)
    assert [y.id for y in AcademicYear.query.filter_by(is_current=True)] == [first.id]
    assert AuditLog.query.filter_by(action="academic_year_changed").count() == 3


def test_year_validation(ctx):
    with pytest.raises(ValidationFailed):
        create_year("2024-25", date(2025, 3, 31), date(2024, 4, 1))
    create_year("2024-25", date(2024, 4, 1), date(2025, 3, 31), make_current=True)
    with pytest.raises(Conflict):
        create_year("2024-25", date(2024, 4, 1), date(2025, 3, 31))


def test_current_or_used_year_cannot_be_deleted(school):
    with pytest.raises(Conflict):
        delete_year(school["y1"].id)
    with pytest.raises(Conflict):
        delete_year(school["y2"].id)
    delete_year(school["y3"].id)
    db.session.flush()
    assert db.session.get(AcademicYear, school["y3"].id) is None


def test_context_manual_then_system(client, seeded):
    login(client, seeded["teacher"], "teacher")
    ctx = client.get('/academic-years/context').get_json()
    assert ctx["mode"] == "system"
    assert ctx["selected_year_id"] == seeded["y1"]
    assert ctx["notice"] is None

    manual = client.post('/academic-years/context/manual', json={"id": seeded["y2"]}).get_json()
    assert manual["mode"] == "manual"
    assert manual["selected_year_id"] == seeded["y2"]
    assert manual["current_year_id"] == seeded["y1"]

    system = client.post('/academic-years/context/system').get_json()
    assert system["selected_year_id"] == seeded["y1"]


def test_context_notices_year_change(client, seeded):
    login(client, seeded["admin"], "admin")
    client.get('/academic-years/context')
    resp = client.post(f'/academic-years/{seeded["y2"]}/set-current')
    assert resp.get_json()["academic_year"]["is_current"] is True
    ctx = client.get('/academic-years/context').get_json()
    assert ctx["notice"] == "Academic year changed to 2025-26"
    assert client.get('/academic-years/context').get_json()["notice"] is None


def test_year_crud_requires_admin(client, seeded):
    login(client, seeded["teacher"], "teacher")
    payload = {"year_name": "2026-27", "start_date": "2026-04-01", "end_date": "2027-03-31"}
    assert client.post('/academic-years', json=payload).status_code == 403
    login(client, seeded["admin"], "admin")
    created = client.post('/academic-years', json=payload)
    assert created.status_code == 201
    assert created.get_json()["academic_year"]["is_current"] is False
    assert len(client.get('/academic-years').get_json()["academic_years"]) == 3

from conftest import login, make_structure
from extensions import db
from models import AcademicYear, PromotionRun, SchoolClass, Student


def _execute(client, seeded, **extra):
    payload = {
        "promotion_data": [{
            "student_id": seeded["student"],
            "from_academic_year_id": seeded["y1"],
            "from_class_id": seeded["c5"],
            "promotion_type": "promoted",
        }],
        "target_academic_year_id": seeded["y2"],
        "promoted_by_user": "Principal",
    }
    payload.update(extra)
    return client.post('/functions/promotions-execute', json=payload)


def _plan_class6(app, seeded):
    with app.app_context():
        make_structure(db.session.get(SchoolClass, seeded["c6"]), db.session.get(AcademicYear, seeded["y2"]),
                       25000)
        db.session.commit()


def test_preflight_carries_cors_headers(client):
    resp = client.options('/functions/promotions-execute')
    assert resp.status_code == 200
    assert resp.headers["Access-Control-Allow-Origin"] == "*"
    assert "content-type" in resp.headers["Access-Control-Allow-Headers"]


def test_requires_signed_in_admin(client, seeded):
    resp = _execute(client, seeded)
    assert resp.status_code == 401
    assert resp.get_json()["error"].startswith("unauthorized")

    login(client, seeded["accountant"], "accountant")
    resp = client.post('/functions/fees-backfill', json={"target_academic_year_id": seeded["y2"]})
    assert resp.status_code == 403
    assert resp.get_json()["error"].startswith("forbidden")
    assert resp.headers["Access-Control-Allow-Origin"] == "*"


def test_invalid_payload(client, seeded):
    login(client, seeded["admin"], "admin")
    resp = client.post('/functions/promotions-execute', data="nope", content_type="text/plain")
    assert resp.status_code == 400
    assert resp.get_json()["error"].startswith("invalid_payload")

    resp = _execute(client, seeded, promotion_data="everyone")
    assert resp.status_code == 400
    assert resp.get_json()["error"].startswith("invalid_payload")

    resp = client.post('/functions/fees-backfill', json={"target_academic_year_id": "abc"})
    assert resp.status_code == 400
    assert resp.get_json()["error"].startswith("invalid_payload")


def test_missing_fee_plans_reported(client, seeded):
    login(client, seeded["admin"], "admin")
    resp = _execute(client, seeded)
    assert resp.status_code == 409
    assert resp.get_json() == {
        "error": "MISSING_FEE_PLANS",
        "missing": [{"year": "2025-26", "class": "Class 6 (A)"}],
    }


def test_execute_and_replay(client, seeded, app):
    _plan_class6(app, seeded)
    login(client, seeded["admin"], "admin")
    first = _execute(client, seeded, idempotency_key="batch-7")
    assert first.status_code == 200
    body = first.get_json()
    assert body["promoted_students"] == 1
    assert body["fee_rows_created"] == 1
    assert body["pyd_rows"] == 0

    again = _execute(client, seeded, idempotency_key="batch-7")
    assert again.get_json()["replayed"] is True
    with app.app_context():
        assert PromotionRun.query.count() == 1

    history = client.get('/promotions', query_string={"to_academic_year_id": seeded["y2"]})
    promotions = history.get_json()["promotions"]
    assert len(promotions) == 1
    assert promotions[0]["promoted_by"] == "Principal"


def test_unknown_target_year(client, seeded):
    login(client, seeded["admin"], "admin")
    resp = _execute(client, seeded, target_academic_year_id=9999)
    assert resp.status_code == 404
    assert "error" in resp.get_json()


def test_backfill_endpoint(client, seeded, app):
    _plan_class6(app, seeded)
    with app.app_context():
        db.session.get(Student, seeded["student"]).class_id = seeded["c6"]
        db.session.commit()
    login(client, seeded["admin"], "admin")
    resp = client.post('/functions/fees-backfill', json={"target_academic_year_id": seeded["y2"]})
    assert resp.status_code == 200
    assert resp.get_json() == {"backfilled": 1, "previous_dues_created": 0}


def test_rpc_endpoints(client, seeded, app):
    assert client.get('/rpc/is_admin').get_json() is False
    login(client, seeded["teacher"], "teacher")
    nxt = client.get('/rpc/get_next_class_id', query_string={"current_class_id": seeded["c5"]})
    assert nxt.get_json()["next_class_id"] == seeded["c6"]
    assert client.get('/rpc/debug_fee_counts', query_string={"p_year": seeded["y2"]}).status_code == 403

    _plan_class6(app, seeded)
    login(client, seeded["admin"], "admin")
    assert client.get('/rpc/is_admin').get_json() is True
    resp = client.post('/rpc/promote_students_with_fees_by_name',
                       json={"source_year_name": "2024-25", "target_year_name": "2025-26"})
    assert resp.status_code == 200
    assert resp.get_json()["promoted_students"] == 1
    counts = client.get('/rpc/debug_fee_counts', query_string={"p_year": seeded["y2"]})
    assert counts.get_json() == {"p_year": seeded["y2"], "count": 1}

    missing = client.post('/rpc/promote_students_with_fees_by_name', json={"source_year_name": "2024-25"})
    assert missing.status_code == 400


def test_preview_lists_next_class(client, seeded):
    login(client, seeded["admin"], "admin")
    resp = client.get('/promotions/preview', query_string={"source_academic_year_id": seeded["y1"]})
    rows = resp.get_json()["students"]
    assert rows[0]["next_class_id"] == seeded["c6"]
    assert rows[0]["graduates"] is False
    assert rows[0]["outstanding"] == 0.0


def test_backfill_refreshes_fee_report(client, seeded, app):
    _plan_class6(app, seeded)
    with app.app_context():
        db.session.get(Student, seeded["student"]).class_id = seeded["c6"]
        db.session.commit()
    login(client, seeded["admin"], "admin")
    year = {"academic_year_id": seeded["y2"]}
    assert client.get('/reports/fees', query_string=year).get_json()["summary"]["total_pending"] == 0.0
    client.post('/functions/fees-backfill', json={"target_academic_year_id": seeded["y2"]})
    assert client.get('/reports/fees', query_string=year).get_json()["summary"]["total_pending"] == 25000.0


def test_non_integer_ids_are_invalid_payload(client, seeded):
    login(client, seeded["admin"], "admin")
    resp = client.post('/functions/promotions-execute', json={
        "promotion_data": [{"student_id": "abc"}],
        "target_academic_year_id": seeded["y2"],
    })
    assert resp.status_code == 400
    assert resp.get_json()["error"].startswith("invalid_payload")

    resp = _execute(client, seeded, promotion_data=[{"student_id": seeded["student"], "to_class_id": "six"}])
    assert resp.status_code == 400
    assert resp.get_json()["error"].startswith("invalid_payload")

    resp = _execute(client, seeded, promotion_data=[{"student_id": seeded["student"], "promotion_type": 3}])
    assert resp.status_code == 400
    assert "promotion_type" in resp.get_json()["error"]


def test_duplicate_student_rejected(client, seeded, app):
    _plan_class6(app, seeded)
    login(client, seeded["admin"], "admin")
    item = {"student_id": seeded["student"], "from_academic_year_id": seeded["y1"], "promotion_type": "promoted"}
    resp = _execute(client, seeded, promotion_data=[item, dict(item)])
    assert resp.status_code == 400
    assert resp.get_json()["error"] == (
        f"invalid_payload: duplicate student_id {seeded['student']} in promotion_data"
    )
    with app.app_context():
        assert db.session.get(Student, seeded["student"]).class_id == seeded["c5"]

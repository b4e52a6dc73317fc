from datetime import date, timedelta

from conftest import login

TEACHER = {"first_name": "Nila", "last_name": "Iyer", "email": "Nila@School.org", "phone_number": "9876543210",
           "department": "Science"}


def test_class_crud_and_next(client, seeded):
    login(client, seeded["admin"], "admin")
    created = client.post('/classes', json={"name": "Class 6", "section": "B"})
    assert created.status_code == 201
    assert created.get_json()["class"]["label"] == "Class 6 (B)"
    assert client.post('/classes', json={"name": "Class 6", "section": "B"}).status_code == 409

    nxt = client.get(f'/classes/{seeded["c5"]}/next').get_json()
    assert nxt["next_class_id"] == seeded["c6"]

    assert client.delete(f'/classes/{seeded["c5"]}').status_code == 409
    assert client.delete(f'/classes/{created.get_json()["class"]["id"]}').status_code == 200


def test_class_stats(client, seeded):
    login(client, seeded["admin"], "admin")
    client.post('/fees/records', json={"student_id": seeded["student"]})
    client.post('/payments', json={"student_id": seeded["student"], "amount": 11000})
    stats = client.get(f'/classes/{seeded["c5"]}/stats').get_json()
    assert stats["class"]["student_count"] == 1
    assert stats["by_gender"] == {"Female": 1}
    assert stats["fees"]["collection_rate"] == 50.0


def test_teacher_crud(client, seeded):
    login(client, seeded["admin"], "admin")
    created = client.post('/teachers', json=TEACHER)
    assert created.status_code == 201
    teacher = created.get_json()["teacher"]
    assert teacher["email"] == "nila@school.org"

    dup = client.post('/teachers', json=TEACHER)
    assert dup.status_code == 400
    assert dup.get_json()["errors"]["email"] == "already in use"

    bad = client.post('/teachers', json={**TEACHER, "email": "x@y.org", "phone_number": "12"})
    assert bad.get_json()["errors"] == {"phone_number": "Please enter a valid phone number"}

    updated = client.patch(f'/teachers/{teacher["id"]}', json={"status": "On Leave"})
    assert updated.get_json()["teacher"]["status"] == "On Leave"
    assert client.get('/teachers', query_string={"q": "iyer"}).get_json()["teachers"][0]["id"] == teacher["id"]


def test_parent_crud(client, seeded):
    login(client, seeded["admin"], "admin")
    created = client.post('/parents', json={"first_name": "Ravi", "last_name": "Rao", "email": "RAVI@example.org"})
    assert created.status_code == 201
    parent = created.get_json()["parent"]
    assert parent["email"] == "ravi@example.org"
    assert client.post('/parents', json={"first_name": "X", "last_name": "Y", "email": "nope"}).status_code == 400
    assert client.get(f'/parents/{parent["id"]}').status_code == 200
    assert client.delete(f'/parents/{parent["id"]}').status_code == 200
    assert client.get(f'/parents/{parent["id"]}').status_code == 404


def test_attendance_marking(client, seeded):
    login(client, seeded["teacher"], "teacher")
    today = date.today().isoformat()
    entries = [{"student_id": seeded["student"], "status": "Present"}]
    resp = client.post('/attendance/mark', json={"class_id": seeded["c5"], "date": today, "entries": entries})
    assert resp.get_json()["saved"] == 1

    # Re-marking the same day overwrites the row
    entries[0]["status"] = "Late"
    client.post('/attendance/mark', json={"class_id": seeded["c5"], "date": today, "entries": entries})
    rows = client.get('/attendance', query_string={"class_id": seeded["c5"]}).get_json()["attendance"]
    assert [r["status"] for r in rows] == ["Late"]

    summary = client.get(f'/attendance/students/{seeded["student"]}/summary').get_json()
    assert summary["total"] == 1
    assert summary["percentage"] == 100.0

    future = (date.today() + timedelta(days=1)).isoformat()
    assert client.post('/attendance/mark', json={"class_id": seeded["c5"], "date": future,
                                                 "entries": entries}).status_code == 400
    wrong_class = client.post('/attendance/mark', json={"class_id": seeded["c6"], "entries": entries})
    assert wrong_class.status_code == 400


def test_exam_grades_and_results(client, seeded):
    login(client, seeded["admin"], "admin")
    maths = client.post('/exams/subjects', json={"name": "Maths"}).get_json()["subject"]
    science = client.post('/exams/subjects', json={"name": "Science"}).get_json()["subject"]
    exam = client.post('/exams', json={"name": "Midterm", "class_id": seeded["c5"],
                                       "exam_date": "2024-09-15"}).get_json()["exam"]
    assert exam["academic_year_id"] == seeded["y1"]

    graded = client.post(f'/exams/{exam["id"]}/grades', json={"grades": [
        {"student_id": seeded["student"], "subject_id": maths["id"], "score": 92},
        {"student_id": seeded["student"], "subject_id": science["id"], "score": 30},
    ]})
    assert [g["grade"] for g in graded.get_json()["grades"]] == ["A+", "F"]

    too_high = client.post(f'/exams/{exam["id"]}/grades', json={"grades": [
        {"student_id": seeded["student"], "subject_id": maths["id"], "score": 101},
    ]})
    assert too_high.status_code == 400

    results = client.get(f'/exams/{exam["id"]}/results').get_json()["results"]
    assert results == [{"student_id": seeded["student"], "total": 122.0, "average": 61.0, "grade": "B"}]

    report = client.get('/reports/exams').get_json()["exams"][0]
    assert report["entries"] == 2
    assert report["pass_rate"] == 50.0


def test_reports(client, seeded):
    login(client, seeded["admin"], "admin")
    client.post('/fees/records', json={"student_id": seeded["student"]})
    dashboard = client.get('/reports/dashboard').get_json()
    assert dashboard["students"]["active"] == 1
    assert dashboard["fees"]["total_pending"] == 22000.0

    before = client.get('/reports/fees').get_json()
    assert before["by_class"]["Class 5 (A)"]["pending"] == 22000.0
    client.post('/payments', json={"student_id": seeded["student"], "amount": 2000, "payment_method": "Card"})
    after = client.get('/reports/fees').get_json()
    assert after["by_payment_method"] == {"Card": 2000.0}
    assert after["summary"]["total_collected"] == 2000.0

    logs = client.get('/reports/audit', query_string={"action": "payment_recorded"}).get_json()["logs"]
    assert len(logs) == 1

    assert client.get('/reports/attendance', query_string={"start": "2025-02-01",
                                                           "end": "2025-01-01"}).status_code == 400


def test_health_and_security_headers(client):
    resp = client.get('/health')
    assert resp.get_json()["status"] == "ok"
    assert resp.headers["X-Content-Type-Options"] == "nosniff"
    assert resp.headers["X-Frame-Options"] == "SAMEORIGIN"

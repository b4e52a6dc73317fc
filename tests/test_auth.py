import string
from datetime import datetime, timedelta

from conftest import PASSWORD, login, make_profile
from extensions import db
from models import AuditLog, Profile
from utils.security import (
    generate_secure_password,
    hash_password,
    is_strong_password,
    sanitize_input,
    verify_password,
)


def _signin(client, email, password=PASSWORD):
    return client.post('/auth/signin', json={"email": email, "password": password})


def test_sanitize_input_strips_markup_and_caps_length():
    assert sanitize_input("  <b>O'Neil & \"Co\"</b> ") == "bONeil  Co/b"
    assert sanitize_input(None) == ""
    assert len(sanitize_input("x" * 5000)) == 1000


def test_generated_password_is_strong():
    for _ in range(20):
        password = generate_secure_password()
        assert len(password) == 16
        assert is_strong_password(password)
        assert any(c in string.punctuation for c in password)


def test_verify_password_rejects_plaintext_values():
    assert verify_password(hash_password(" Secret1! "), "Secret1!")
    assert not verify_password("Secret1!", "Secret1!")


def test_first_signup_becomes_admin(client, app):
    first = client.post('/auth/signup', json={"email": "Head@School.org", "password": PASSWORD,
                                              "first_name": "<i>Meera</i>"})
    assert first.status_code == 201
    body = first.get_json()
    assert body["admin_setup"] is True
    assert body["profile"]["role"] == "admin"
    assert body["profile"]["email"] == "head@school.org"
    assert body["profile"]["first_name"] == "iMeera/i"
    assert "password_hash" not in body["profile"]

    second = client.post('/auth/signup', json={"email": "clerk@school.org", "password": PASSWORD})
    assert second.get_json()["profile"]["role"] == "teacher"


def test_signup_validation(client):
    weak = client.post('/auth/signup', json={"email": "bad-email", "password": "short"})
    assert weak.status_code == 400
    assert set(weak.get_json()["errors"]) == {"email", "password"}

    client.post('/auth/signup', json={"email": "a@b.org", "password": PASSWORD})
    dup = client.post('/auth/signup', json={"email": "A@B.org", "password": PASSWORD})
    assert dup.status_code == 409


def test_signin_requires_confirmed_email(client, app):
    with app.app_context():
        make_profile("new@example.org", "teacher", confirmed=False)
        db.session.commit()
    resp = _signin(client, "new@example.org")
    assert resp.status_code == 403
    assert resp.get_json()["error"] == "email_not_confirmed"


def test_signin_success_starts_session(client, app):
    with app.app_context():
        make_profile()
        db.session.commit()
    resp = _signin(client, "ADMIN@example.org")
    assert resp.status_code == 200
    me = client.get('/auth/session')
    assert me.status_code == 200
    assert me.get_json()["profile"]["role"] == "admin"
    assert client.get('/auth/is-admin').get_json() == {"is_admin": True}
    client.post('/auth/signout')
    assert client.get('/auth/session').status_code == 401


def test_lockout_after_repeated_failures(client, app):
    with app.app_context():
        make_profile()
        db.session.commit()
    for _ in range(5):
        resp = _signin(client, "admin@example.org", "Wrong!Pass1")
        assert resp.status_code == 401
        assert resp.get_json()["error"] == "invalid_credentials"
    locked = _signin(client, "admin@example.org")
    assert locked.status_code == 423
    assert locked.get_json()["minutes_remaining"] >= 1


def test_failed_counter_resets_on_success(client, app):
    with app.app_context():
        make_profile()
        db.session.commit()
    _signin(client, "admin@example.org", "Wrong!Pass1")
    assert _signin(client, "admin@example.org").status_code == 200
    with app.app_context():
        assert Profile.query.filter_by(email="admin@example.org").one().failed_attempts == 0


def test_unknown_user_gets_generic_error(client):
    resp = _signin(client, "ghost@example.org")
    assert resp.status_code == 401
    assert resp.get_json()["error"] == "invalid_credentials"


def test_idle_session_expires(client, app):
    with app.app_context():
        admin = make_profile()
        db.session.commit()
        admin_id = admin.id
    login(client, admin_id, "admin")
    with client.session_transaction() as sess:
        sess["last_seen"] = (datetime.utcnow() - timedelta(minutes=31)).timestamp()
    resp = client.get('/auth/session')
    assert resp.status_code == 401
    assert resp.get_json()["error"] == "session_expired"


def test_admin_creates_user_and_resets_password(client, seeded, app):
    login(client, seeded["teacher"], "teacher")
    assert client.get('/auth/users').status_code == 403

    login(client, seeded["admin"], "admin", "Admin User")
    created = client.post('/auth/users', json={"email": "acc2@example.org", "password": PASSWORD,
                                               "role": "accountant"})
    assert created.status_code == 201
    user_id = created.get_json()["profile"]["id"]

    reset = client.post(f'/auth/users/{user_id}/reset-password')
    new_password = reset.get_json()["password"]
    assert is_strong_password(new_password)
    with app.app_context():
        profile = db.session.get(Profile, user_id)
        assert verify_password(profile.password_hash, new_password)
        assert AuditLog.query.filter_by(action="password_reset").count() == 1

    assert client.post('/auth/users/9999/reset-password').status_code == 404

import pytest
from flask import Flask
from utils import admin_required, role_required

@pytest.fixture
def app():
    app = Flask(__name__)
    app.secret_key = "test_secret"

    @app.route('/protected')
    @admin_required
    def protected():
        return "Admin Access"

    @app.route('/ledger')
    @role_required("admin", "accountant")
    def ledger():
        return "Ledger"

    return app

@pytest.fixture
def client(app):
    return app.test_client()

def _sign_in(client, role):
    with client.session_transaction() as sess:
        sess['user_id'] = 1
        sess['role'] = role

def test_admin_required_rejects_if_not_logged_in(client):
    response = client.get('/protected')
    assert response.status_code == 401
    assert response.get_json()['error'] == 'not_authenticated'

def test_admin_required_rejects_other_roles(client):
    _sign_in(client, 'teacher')
    response = client.get('/protected')
    assert response.status_code == 403
    assert response.get_json()['error'] == 'forbidden'

def test_admin_required_allows_admin(client):
    _sign_in(client, 'admin')
    response = client.get('/protected')
    assert response.status_code == 200
    assert b"Admin Access" in response.data

def test_role_required_allows_listed_roles(client):
    _sign_in(client, 'accountant')
    assert client.get('/ledger').status_code == 200
    _sign_in(client, 'teacher')
    assert client.get('/ledger').status_code == 403

import pytest

from gantt_server import auth_bp

from .conftest import ADMIN_PASSWORD, login


@pytest.fixture(autouse=True)
def reset_rate_limit():
    auth_bp.FAILED_LOGINS.clear()
    yield
    auth_bp.FAILED_LOGINS.clear()


def test_login_returns_token_and_profile(client):
    resp = client.post('/api/auth/login', json={'userId': 'Alice', 'password': 'AlicePass1!'})
    assert resp.status_code == 200
    body = resp.get_json()
    assert body['ok'] is True
    assert body['authType'] == 'local'
    assert body['token']
    assert body['user']['userId'] == 'alice'
    assert body['user']['isAdmin'] is False


def test_login_failures(client):
    assert client.post('/api/auth/login', json={}).status_code == 400
    resp = client.post('/api/auth/login', json={'userId': 'alice', 'password': 'wrong'})
    assert resp.status_code == 401
    assert resp.get_json()['error']['code'] == 'INVALID_CREDENTIALS'
    resp = client.post('/api/auth/login', json={'userId': 'admin', 'password': ADMIN_PASSWORD})
    assert resp.status_code == 403
    assert resp.get_json()['error']['code'] == 'ADMIN_LOCAL_ONLY'


def test_repeated_failures_are_rate_limited(client):
    for _ in range(auth_bp.LOGIN_RATE_LIMIT_MAX):
        client.post('/api/auth/login', json={'userId': 'bob', 'password': 'nope'})
    resp = client.post('/api/auth/login', json={'userId': 'bob', 'password': 'BobPass1!'})
    assert resp.status_code == 429
    assert resp.get_json()['error']['code'] == 'RATE_LIMITED'


def test_logout_revokes_session(client, sales):
    token = login(client, 'alice')
    headers = {'X-User-Token': token}
    assert client.post('/api/auth/logout', headers=headers).status_code == 204
    resp = client.post('/api/lock/Sales/acquire', json={'userName': 'alice'}, headers=headers)
    assert resp.status_code == 401


def test_admin_login_and_user_creation(client, admin):
    assert client.post('/api/admin/login', json={'userId': 'admin', 'password': 'x'}).status_code == 401

    resp = client.post('/api/admin/users', headers=admin, json={
        'userId': 'carol', 'password': 'CarolPass1!', 'displayName': 'Carol', 'department': 'Sales'})
    assert resp.status_code == 201
    assert resp.get_json()['user']['displayName'] == 'Carol'
    assert client.post('/api/admin/users', headers=admin,
                       json={'userId': 'carol', 'password': 'x'}).status_code == 409
    assert client.post('/api/admin/users', headers=admin, json={'userId': 'dave'}).status_code == 400

    resp = client.post('/api/auth/login', json={'userId': 'carol', 'password': 'CarolPass1!'})
    assert resp.status_code == 200


def test_admin_logout(client, admin):
    assert client.post('/api/admin/logout', headers=admin).status_code == 204
    assert client.post('/api/admin/users', headers=admin,
                       json={'userId': 'erin', 'password': 'x'}).status_code == 401


def test_health(client):
    assert client.get('/api/health').get_json() == {'ok': True, 'locks': 0}

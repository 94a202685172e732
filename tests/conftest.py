import time
from datetime import datetime, timedelta, UTC

import pytest

from gantt_server import create_app
from gantt_server.db import create_user

ADMIN_PASSWORD = 'AdminPass1!'
PASSWORDS = {'alice': 'AlicePass1!', 'bob': 'BobPass1!'}


class FakeClock:
    def __init__(self, start=None):
        self.now = start or datetime(2025, 3, 3, 9, 0, tzinfo=UTC)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


def wait_for(predicate, timeout=2.0, interval=0.01):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def app(tmp_path, clock):
    app = create_app(testing=True, clock=clock, config={
        'DATA_DIR': str(tmp_path / 'Data'),
        'LOCK_TIMEOUT_MINUTES': 60,
        'ADMIN_USER': 'admin',
        'ADMIN_PASSWORD': ADMIN_PASSWORD,
    })
    with app.app_context():
        for name, password in PASSWORDS.items():
            create_user(name, password)
    yield app
    app.extensions['gantt'].locks.stop_sweeper()


@pytest.fixture()
def services(app):
    return app.extensions['gantt']


@pytest.fixture()
def client(app):
    return app.test_client()


def login(client, user_name):
    resp = client.post('/api/auth/login', json={'userId': user_name, 'password': PASSWORDS[user_name]})
    assert resp.status_code == 200, resp.get_json()
    return resp.get_json()['token']


def user_headers(token):
    return {'X-User-Token': token}


@pytest.fixture()
def alice(client):
    return user_headers(login(client, 'alice'))


@pytest.fixture()
def bob(client):
    return user_headers(login(client, 'bob'))


@pytest.fixture()
def admin(client):
    resp = client.post('/api/admin/login', json={'userId': 'admin', 'password': ADMIN_PASSWORD})
    assert resp.status_code == 200
    return {'Authorization': 'Bearer ' + resp.get_json()['token']}


@pytest.fixture()
def sales(services):
    services.documents.create('Sales')
    return 'Sales'

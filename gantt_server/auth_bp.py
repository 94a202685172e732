import logging
import time
from functools import wraps

from flask import Blueprint, current_app, g, jsonify, request
from flask_login import UserMixin, current_user

from . import login_manager
from .db import create_user, find_user
from .errors import InvalidRequest, Unauthorized

log = logging.getLogger(__name__)

auth_bp = Blueprint('auth', __name__)

FAILED_LOGINS = {}
LOGIN_RATE_LIMIT_WINDOW = 600
LOGIN_RATE_LIMIT_MAX = 5


def services():
    return current_app.extensions['gantt']


def json_body():
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _login_rate_limited(key):
    now = time.time()
    attempts = [t for t in FAILED_LOGINS.get(key, []) if now - t < LOGIN_RATE_LIMIT_WINDOW]
    FAILED_LOGINS[key] = attempts
    if len(attempts) >= LOGIN_RATE_LIMIT_MAX:
        return True, int(LOGIN_RATE_LIMIT_WINDOW - (now - attempts[0]))
    return False, 0


def _record_failed_login(key):
    FAILED_LOGINS.setdefault(key, []).append(time.time())


# --- Session resolution (Flask-Login) ---

class SessionUser(UserMixin):
    def __init__(self, user_name, token):
        self.id = user_name
        self.user_name = user_name
        self.token = token


def _user_token():
    token = request.headers.get('X-User-Token')
    if not token:
        token = json_body().get('userToken') or request.form.get('userToken')
    return token


@login_manager.request_loader
def load_user_from_request(req):
    token = _user_token()
    session = services().sessions.get(token)
    if session is None:
        return None
    return SessionUser(session['userName'], token)


def require_user(user_name):
    """Check the caller's session belongs to ``user_name``; returns the trimmed name."""
    if not user_name or not isinstance(user_name, str) or not user_name.strip():
        raise InvalidRequest('userName is required')
    user_name = user_name.strip()
    if not _user_token():
        raise Unauthorized('User token required')
    if not current_user.is_authenticated or current_user.user_name != user_name:
        raise Unauthorized('Invalid or expired user session')
    return user_name


def admin_required(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        auth_header = request.headers.get('Authorization', '')
        if not auth_header.startswith('Bearer '):
            raise Unauthorized('Admin authentication required')
        admin_name = services().admin_tokens.lookup(auth_header[len('Bearer '):])
        if admin_name is None:
            raise Unauthorized('Invalid or expired admin token')
        g.admin_name = admin_name
        return f(*args, **kwargs)
    return decorated_function


# --- Routes ---

@auth_bp.post('/api/auth/login')
def login():
    data = json_body()
    user_id = data.get('userId')
    if not user_id or not isinstance(user_id, str):
        raise InvalidRequest('userId is required')
    user_id = user_id.strip()
    key = (request.remote_addr or 'unknown') + '|' + user_id.lower()
    limited, wait = _login_rate_limited(key)
    if limited:
        return jsonify({'error': {'code': 'RATE_LIMITED',
                                  'message': f'Too many login attempts. Try again in ~{wait} seconds.'}}), 429
    user = find_user(user_id)
    if user is None or not user.check_password(data.get('password') or ''):
        _record_failed_login(key)
        return jsonify({'error': {'code': 'INVALID_CREDENTIALS', 'message': 'Invalid credentials'}}), 401
    if user.is_admin:
        return jsonify({'error': {'code': 'ADMIN_LOCAL_ONLY', 'message': 'Use the admin login'}}), 403
    FAILED_LOGINS.pop(key, None)
    token = services().sessions.create(user.username)
    return jsonify({'ok': True, 'authType': 'local', 'token': token, 'user': user.to_dict()})


@auth_bp.post('/api/auth/logout')
def logout():
    services().sessions.revoke(_user_token())
    return '', 204


@auth_bp.post('/api/admin/login')
def admin_login():
    data = json_body()
    user = find_user(data.get('userId'))
    if user is None or not user.is_admin or not user.check_password(data.get('password') or ''):
        return jsonify({'error': {'code': 'INVALID_CREDENTIALS', 'message': 'Invalid admin credentials'}}), 401
    token = services().admin_tokens.issue(user.username)
    user_token = services().sessions.create(user.username)
    log.info('Admin %s logged in', user.username)
    return jsonify({'token': token, 'userToken': user_token})


@auth_bp.post('/api/admin/logout')
@admin_required
def admin_logout():
    services().admin_tokens.revoke(request.headers['Authorization'][len('Bearer '):])
    return '', 204


@auth_bp.post('/api/admin/users')
@admin_required
def admin_create_user():
    data = json_body()
    username = (data.get('userId') or '').strip()
    password = (data.get('password') or '').strip()
    if not username or not password:
        raise InvalidRequest('userId and password required')
    if find_user(username):
        return jsonify({'error': {'code': 'ALREADY_EXISTS', 'message': 'Username already exists'}}), 409
    user = create_user(username, password, is_admin=bool(data.get('isAdmin', False)),
                       display_name=data.get('displayName'), mail=data.get('mail'),
                       department=data.get('department'))
    log.info('User %s created by %s', user.username, g.admin_name)
    return jsonify({'ok': True, 'user': user.to_dict()}), 201

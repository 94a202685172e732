from flask import Blueprint, g, jsonify

from .auth_bp import admin_required, json_body, require_user, services
from .errors import LockConflict, LockNotOwned
from .models import unlocked_info

locks_bp = Blueprint('locks', __name__, url_prefix='/api/lock')


def lock_info(department, lock):
    return lock.to_info() if lock is not None else unlocked_info(department)


def lock_denied_response(outcome: LockNotOwned, action):
    """423 for a write attempted without holding the lease."""
    if outcome.lock is not None:
        return jsonify(outcome.lock.to_info()), 423
    return jsonify({'error': {'code': 'LOCK_REQUIRED', 'message': f'Lock required to {action}'}}), 423


@locks_bp.post('/<department>/acquire')
def acquire(department):
    data = json_body()
    user_name = require_user(data.get('userName'))
    result = services().coordinator.acquire(
        department, user_name,
        client_host=data.get('clientHost'),
        owner_type=data.get('ownerType') or 'user',
    )
    if isinstance(result, LockConflict):
        return jsonify(result.lock.to_info()), 423
    return jsonify(result.to_info())


@locks_bp.post('/<department>/heartbeat')
def heartbeat(department):
    user_name = require_user(json_body().get('userName'))
    result = services().coordinator.heartbeat(department, user_name)
    if isinstance(result, LockNotOwned):
        return jsonify({'error': {'code': 'LOCK_NOT_OWNED', 'message': 'Lock not owned by user'}}), 409
    return '', 204


@locks_bp.post('/<department>/release')
def release(department):
    user_name = require_user(json_body().get('userName'))
    services().coordinator.release(department, user_name)
    return '', 204


@locks_bp.get('/<department>/status')
def status(department):
    lock = services().coordinator.status(department)
    return jsonify(lock_info(department.strip(), lock))


@locks_bp.post('/<department>/admin-release')
@admin_required
def admin_release(department):
    services().coordinator.admin_release(department, admin_name=g.admin_name)
    return '', 204

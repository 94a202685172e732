import json
import logging

from flask import Blueprint, g, jsonify, request

from .auth_bp import admin_required, json_body, require_user, services
from .errors import (CorruptData, DepartmentNotFound, InvalidRequest, LockNotOwned,
                     RevisionMismatch, ValidationError)
from .locks_bp import lock_denied_response, lock_info
from .storage import current_revision, require_name, validation_errors

log = logging.getLogger(__name__)

departments_bp = Blueprint('departments', __name__)


def _accepted(result):
    return jsonify({'ok': True, 'meta': result.meta})


def _has_password(document):
    password = document.get('password')
    return bool(password and password.strip())


# --- Department catalogue ---

@departments_bp.get('/api/departments')
def list_departments():
    documents = services().documents
    departments = []
    for name in documents.list_departments():
        try:
            document = documents.read(name)
        except (CorruptData, DepartmentNotFound):
            # already logged by the store; unreadable departments are not offered
            continue
        departments.append({'name': name, 'protected': _has_password(document)})
    return jsonify({'departments': departments})


@departments_bp.post('/api/departments')
@admin_required
def create_department():
    name = json_body().get('name')
    if not name:
        raise InvalidRequest('Department name is required')
    name = require_name(name)
    services().documents.create(name, created_by=g.admin_name)
    log.info('Department %s created by %s', name, g.admin_name)
    return jsonify({'name': name}), 201


@departments_bp.delete('/api/departments/<name>')
@admin_required
def delete_department(name):
    if not services().documents.exists(name):
        raise DepartmentNotFound('Department not found')
    services().coordinator.delete_department(name)
    return '', 204


@departments_bp.get('/api/admin/departments')
@admin_required
def admin_departments():
    svc = services()
    rows = []
    for name in svc.documents.list_departments():
        row = {'name': name, 'lock': lock_info(name, svc.coordinator.status(name))}
        try:
            document = svc.documents.read(name)
            row.update(protected=_has_password(document), meta=document.get('meta'),
                       projectCount=len(document.get('projects') or []), status='ok')
        except CorruptData:
            row['status'] = 'invalid_json'
        rows.append(row)
    return jsonify({'departments': rows})


# --- Department password (viewer gate, independent of the lock) ---

@departments_bp.post('/api/departments/<name>/verify')
def verify_password(name):
    document = services().documents.read(name)
    if not _has_password(document) or document['password'] == json_body().get('password'):
        return jsonify({'ok': True})
    return jsonify({'ok': False, 'error': {'code': 'INVALID_PASSWORD', 'message': 'Invalid password'}}), 401


@departments_bp.post('/api/departments/<name>/change-password')
def change_password(name):
    data = json_body()
    new_password = data.get('newPassword')
    if not isinstance(new_password, str):
        raise InvalidRequest('newPassword is required')
    document = services().documents.read(name)
    if _has_password(document) and document['password'] != data.get('oldPassword'):
        return jsonify({'error': {'code': 'INVALID_PASSWORD', 'message': 'Invalid old password'}}), 401

    def set_password(doc):
        doc['password'] = new_password if new_password.strip() else None
        return doc

    services().guard.apply(name, set_password, 'password_change')
    return jsonify({'ok': True})


@departments_bp.post('/api/departments/<name>/reset-password')
@admin_required
def reset_password(name):
    new_password = json_body().get('newPassword') or None

    def set_password(doc):
        doc['password'] = new_password
        return doc

    services().guard.apply(name, set_password, g.admin_name)
    return jsonify({'ok': True})


# --- Projects ---

@departments_bp.get('/api/projects/<department>')
def get_projects(department):
    document = services().documents.read(department)
    return jsonify({
        'projects': document.get('projects') or [],
        'meta': document.get('meta') or {'revision': current_revision(document)},
        'validationErrors': validation_errors(document),
    })


@departments_bp.post('/api/projects/<department>')
def save_projects(department):
    data = json_body()
    expected_revision = data.get('expectedRevision')
    if expected_revision is None:
        raise InvalidRequest('expectedRevision is required')
    if isinstance(expected_revision, bool) or not isinstance(expected_revision, int):
        raise InvalidRequest('expectedRevision must be an integer')
    projects = data.get('projects')
    if not isinstance(projects, list):
        raise InvalidRequest('projects must be an array')
    user_name = require_user(data.get('userName'))

    result = services().coordinator.save(department, user_name, projects, expected_revision)
    if isinstance(result, LockNotOwned):
        return lock_denied_response(result, 'save')
    if isinstance(result, RevisionMismatch):
        return jsonify({
            'error': {
                'code': 'REVISION_MISMATCH',
                'message': 'Data has been updated by another user',
                'details': {'expectedRevision': result.expected_revision,
                            'currentRevision': result.current_revision},
            },
            'currentRevision': result.current_revision,
            'meta': result.meta,
        }), 409
    return _accepted(result)


@departments_bp.get('/api/departments/<name>/export')
def export_department(name):
    document = services().documents.read(name)
    return jsonify({'data': document, 'validationErrors': validation_errors(document)})


@departments_bp.post('/api/departments/<name>/import')
def import_department(name):
    body = json_body()
    data = body.get('data')
    if not isinstance(data, dict):
        raise InvalidRequest('data is required')
    user_name = require_user(body.get('userName'))
    errors = validation_errors({k: v for k, v in data.items() if k != 'meta'})
    if errors:
        raise ValidationError('Invalid department data', details={'errors': errors})

    result = services().coordinator.import_document(name, user_name, data)
    if isinstance(result, LockNotOwned):
        return lock_denied_response(result, 'import')
    return _accepted(result)


@departments_bp.post('/api/upload/<department>')
def upload(department):
    user_name = require_user(request.form.get('userName'))
    denied = services().coordinator.owner_check(require_name(department), user_name)
    if denied is not None:
        return lock_denied_response(denied, 'upload')
    f = request.files.get('file')
    if f is None or not f.filename:
        return jsonify({'error': {'code': 'NO_FILE', 'message': 'No file uploaded'}}), 400
    if not (f.mimetype == 'application/json' or f.filename.endswith('.json')):
        return jsonify({'error': {'code': 'INVALID_FILE_TYPE', 'message': 'Only JSON files are allowed'}}), 400
    try:
        uploaded = json.loads(f.read().decode('utf-8'))
    except (ValueError, UnicodeDecodeError):
        return jsonify({'error': {'code': 'INVALID_JSON', 'message': 'Invalid JSON file'}}), 400
    if not isinstance(uploaded, dict):
        raise ValidationError('Invalid data schema', details={'errors': ['document must be an object']})
    errors = validation_errors({k: v for k, v in uploaded.items() if k != 'meta'})
    if errors:
        raise ValidationError('Invalid data schema', details={'errors': errors})

    result = services().coordinator.upload(department, user_name, uploaded)
    if isinstance(result, LockNotOwned):
        return lock_denied_response(result, 'upload')
    return _accepted(result)

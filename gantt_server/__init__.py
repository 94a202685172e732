import logging
import os
from dataclasses import dataclass
from datetime import timedelta

from flask import Flask, jsonify
from flask_login import LoginManager
from werkzeug.exceptions import HTTPException, RequestEntityTooLarge

from .config import data_paths, load_config
from .coordinator import LockCoordinator
from .db import db, ensure_admin_user
from .errors import GanttServerError
from .lock_store import LockStore
from .models import utcnow
from .revision import RevisionGuard
from .sessions import AdminTokenStore, SessionStore
from .storage import DocumentStore

log = logging.getLogger(__name__)

login_manager = LoginManager()


@dataclass
class GanttServices:
    documents: DocumentStore
    locks: LockStore
    guard: RevisionGuard
    coordinator: LockCoordinator
    sessions: SessionStore
    admin_tokens: AdminTokenStore


def build_services(config, clock=utcnow):
    paths = data_paths(config['DATA_DIR'])
    for key in ('departments', 'config'):
        os.makedirs(paths[key], exist_ok=True)
    documents = DocumentStore(paths['departments'], enable_bak=config['ENABLE_BAK'])
    locks = LockStore(os.path.join(paths['config'], 'locks.json'), clock=clock)
    guard = RevisionGuard(documents, clock=clock)
    coordinator = LockCoordinator(
        locks, documents, guard,
        ttl=timedelta(minutes=config['LOCK_TIMEOUT_MINUTES']),
        clock=clock,
    )
    return GanttServices(
        documents=documents,
        locks=locks,
        guard=guard,
        coordinator=coordinator,
        sessions=SessionStore(clock=clock),
        admin_tokens=AdminTokenStore(ttl=timedelta(hours=config['ADMIN_TTL_HOURS']), clock=clock),
    )


def _register_error_handlers(app):
    @app.errorhandler(GanttServerError)
    def handle_gantt_error(err):
        return jsonify(err.to_dict()), err.status

    @app.errorhandler(RequestEntityTooLarge)
    def handle_too_large(err):
        return jsonify({'error': {'code': 'FILE_TOO_LARGE', 'message': 'File size exceeds limit'}}), 400

    @app.errorhandler(HTTPException)
    def handle_http(err):
        code = (err.name or 'error').upper().replace(' ', '_')
        return jsonify({'error': {'code': code, 'message': err.description}}), err.code

    @app.errorhandler(Exception)
    def handle_unexpected(err):
        log.exception('Unhandled error: %s', err)
        return jsonify({'error': {'code': 'INTERNAL_ERROR', 'message': str(err)}}), 500


def create_app(testing=False, config=None, clock=None):
    app = Flask(__name__)
    app.config.update(load_config())
    if testing:
        app.config['TESTING'] = True
        app.config['SQLALCHEMY_DATABASE_URI'] = 'sqlite:///:memory:'
        app.config['LOCK_SWEEP_SECONDS'] = 0
    if config:
        app.config.update(config)

    logging.basicConfig(level=app.config['LOG_LEVEL'],
                        format='%(asctime)s %(levelname)s [%(name)s] %(message)s')

    paths = data_paths(app.config['DATA_DIR'])
    if not app.config.get('SQLALCHEMY_DATABASE_URI'):
        os.makedirs(paths['config'], exist_ok=True)
        app.config['SQLALCHEMY_DATABASE_URI'] = 'sqlite:///' + os.path.abspath(os.path.join(paths['config'], 'users.db'))

    services = build_services(app.config, clock=clock or utcnow)
    app.extensions['gantt'] = services

    db.init_app(app)
    login_manager.init_app(app)

    from .auth_bp import auth_bp
    from .departments_bp import departments_bp
    from .locks_bp import locks_bp
    app.register_blueprint(auth_bp)
    app.register_blueprint(departments_bp)
    app.register_blueprint(locks_bp)
    _register_error_handlers(app)

    with app.app_context():
        db.create_all()
        ensure_admin_user(app.config['ADMIN_USER'], app.config['ADMIN_PASSWORD'])

    services.locks.load_from_disk()
    services.documents.validate_all()
    if app.config['LOCK_SWEEP_SECONDS'] > 0:
        services.locks.start_sweeper(app.config['LOCK_SWEEP_SECONDS'])

    @app.get('/api/health')
    def health():
        return jsonify({'ok': True, 'locks': len(services.locks)})

    return app

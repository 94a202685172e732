"""Per-department lease state machine and the write gate built on it.

    Unlocked --acquire(u)--> Held(u)
    Held(u)  --acquire(u) / heartbeat(u)--> Held(u)   (expiry extended)
    Held(u)  --acquire(v), live--> Held(u)            (LockConflict)
    Held(u)  --expired--> treated as Unlocked
    Held(u)  --release(u) / admin_release--> Unlocked
"""
import logging
import threading
from datetime import timedelta

from .errors import LockConflict, LockNotOwned
from .models import OWNER_TYPES, Lock, utcnow
from .storage import require_name

log = logging.getLogger(__name__)


class LockCoordinator:
    def __init__(self, locks, documents, guard, ttl=timedelta(minutes=60), clock=utcnow):
        self.locks = locks
        self.documents = documents
        self.guard = guard
        self.ttl = ttl
        self.clock = clock
        # get-then-set on the lock map must not interleave across requests
        self._transition = threading.Lock()

    def sweep(self):
        return self.locks.sweep_expired(self.clock())

    def _live_lock(self, department, now):
        lock = self.locks.get(department)
        if lock is not None and lock.is_held(now):
            return lock
        return None

    # --- lease operations ---

    def acquire(self, department, user_name, client_host=None, owner_type='user'):
        department = require_name(department)
        if owner_type not in OWNER_TYPES:
            owner_type = 'user'
        with self._transition:
            self.sweep()
            now = self.clock()
            existing = self._live_lock(department, now)
            if existing is not None and existing.owner_user_name != user_name:
                return LockConflict(lock=existing)
            expires_at = now + self.ttl
            if existing is not None:
                lock = existing.renewed(now, expires_at, owner_type=owner_type,
                                        client_host=client_host or existing.client_host)
            else:
                lock = Lock(
                    department=department,
                    owner_user_name=user_name,
                    owner_type=owner_type,
                    client_host=client_host or None,
                    locked_at=now,
                    expires_at=expires_at,
                    last_heartbeat_at=now,
                )
            self.locks.set(department, lock)
            return lock

    def heartbeat(self, department, user_name):
        department = require_name(department)
        with self._transition:
            self.sweep()
            now = self.clock()
            existing = self._live_lock(department, now)
            if existing is None or existing.owner_user_name != user_name:
                return LockNotOwned(department=department, lock=existing)
            lock = existing.renewed(now, now + self.ttl)
            self.locks.set(department, lock)
            return lock

    def release(self, department, user_name):
        department = require_name(department)
        with self._transition:
            existing = self.locks.get(department)
            if existing is None or existing.owner_user_name != user_name:
                return False
            return self.locks.remove(department)

    def admin_release(self, department, admin_name=None):
        department = require_name(department)
        with self._transition:
            existing = self.locks.get(department)
            removed = self.locks.remove(department)
        if removed:
            log.warning('Admin override: lock on %s released by %s (holder was %s)',
                        department, admin_name or 'admin', existing.owner_user_name if existing else 'unknown')
        return removed

    def status(self, department):
        department = require_name(department)
        self.sweep()
        return self._live_lock(department, self.clock())

    def owner_check(self, department, user_name):
        """None when ``user_name`` holds a live lease, else the LockNotOwned outcome."""
        self.sweep()
        lock = self._live_lock(department, self.clock())
        if lock is not None and lock.owner_user_name == user_name:
            return None
        return LockNotOwned(department=department, lock=lock)

    def _holder_check(self, department, user_name):
        # runs under the department write lock: no other write can land between the check and ours
        return lambda: self.owner_check(department, user_name)

    # --- writes ---

    def save(self, department, user_name, projects, expected_revision):
        """Revision-checked save of the project list."""
        department = require_name(department)

        def replace_projects(document):
            document['projects'] = projects
            return document

        return self.guard.check_and_apply(department, expected_revision, replace_projects, user_name,
                                         precondition=self._holder_check(department, user_name))

    def import_document(self, department, user_name, data):
        """Replace the whole document; bumps whatever revision is current."""
        department = require_name(department)

        def replace_document(document):
            replaced = dict(data)
            replaced.setdefault('password', document.get('password'))
            replaced.setdefault('projects', [])
            return replaced

        return self.guard.apply(department, replace_document, user_name,
                                precondition=self._holder_check(department, user_name))

    def upload(self, department, user_name, uploaded):
        """Take only the projects from an uploaded file; unchecked revision like import."""
        department = require_name(department)

        def replace_projects(document):
            document['projects'] = uploaded.get('projects') or []
            return document

        return self.guard.apply(department, replace_projects, user_name,
                                precondition=self._holder_check(department, user_name))

    def delete_department(self, department):
        department = require_name(department)
        with self.guard.department_lock(department):
            with self._transition:
                self.locks.remove(department)
            self.documents.delete(department)
        log.info('Department %s deleted', department)

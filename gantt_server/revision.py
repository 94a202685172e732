import copy
import logging
import threading
from contextlib import contextmanager

import portalocker

from .errors import DepartmentNotFound, RevisionMismatch, WriteAccepted
from .models import to_iso, utcnow
from .storage import current_revision, require_name

log = logging.getLogger(__name__)


class RevisionGuard:
    """Optimistic concurrency for department documents.

    The read of ``meta.revision`` and the write that bumps it run inside one
    critical section per department: an in-process mutex plus an exclusive
    lock on the companion ``.lock`` file. Atomic rename alone does not stop two
    writers from computing the same next revision.
    """

    def __init__(self, documents, clock=utcnow):
        self.documents = documents
        self.clock = clock
        self._mutexes = {}
        self._mutexes_guard = threading.Lock()

    def _mutex_for(self, department):
        with self._mutexes_guard:
            mutex = self._mutexes.get(department)
            if mutex is None:
                mutex = self._mutexes[department] = threading.Lock()
            return mutex

    @contextmanager
    def department_lock(self, department):
        department = require_name(department)
        if not self.documents.exists(department):
            raise DepartmentNotFound('Department not found')
        with self._mutex_for(department):
            # Exclusive lock via companion .lock file to serialize writers
            with open(self.documents.lockfile_path(department), 'w') as lock_f:
                portalocker.lock(lock_f, portalocker.LOCK_EX)
                try:
                    yield
                finally:
                    portalocker.unlock(lock_f)

    def _commit(self, department, document, mutator, revision, updated_by):
        updated = mutator(copy.deepcopy(document))
        meta = {'updatedAt': to_iso(self.clock()), 'updatedBy': updated_by or 'unknown', 'revision': revision}
        updated['meta'] = meta
        self.documents.write(department, updated)
        return WriteAccepted(revision=revision, meta=dict(meta))

    def check_and_apply(self, department, expected_revision, mutator, updated_by, precondition=None):
        """Apply ``mutator`` only if the stored revision still equals ``expected_revision``.

        ``precondition`` runs inside the critical section before the document
        is read; a non-None result is returned as is and nothing is written.
        """
        with self.department_lock(department):
            if precondition is not None:
                denied = precondition()
                if denied is not None:
                    return denied
            document = self.documents.read(department)
            current = current_revision(document)
            if current != expected_revision:
                log.info('Revision mismatch on %s: expected %s, current %s (by %s)',
                         department, expected_revision, current, updated_by)
                return RevisionMismatch(expected_revision=expected_revision, current_revision=current,
                                        meta=dict(document.get('meta') or {}))
            return self._commit(department, document, mutator, expected_revision + 1, updated_by)

    def apply(self, department, mutator, updated_by, precondition=None):
        """Read-modify-write against whatever revision is current (last writer wins)."""
        with self.department_lock(department):
            if precondition is not None:
                denied = precondition()
                if denied is not None:
                    return denied
            document = self.documents.read(department)
            return self._commit(department, document, mutator, current_revision(document) + 1, updated_by)

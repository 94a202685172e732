"""Server-side exceptions and the typed outcomes of lock/revision checks.

Storage and corruption problems are exceptions: they are rare and degrade a
single department. Lock conflicts and revision mismatches are routine, so the
coordinator returns them as plain values the routes translate into responses.
"""
from dataclasses import dataclass, field
from typing import Any, Optional


class GanttServerError(Exception):
    code = 'INTERNAL_ERROR'
    status = 500

    def __init__(self, message, details=None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self):
        payload = {'code': self.code, 'message': self.message}
        if self.details:
            payload['details'] = self.details
        return {'error': payload}


class InvalidRequest(GanttServerError):
    code = 'INVALID_REQUEST'
    status = 400


class InvalidDepartmentName(InvalidRequest):
    code = 'INVALID_NAME'


class ValidationError(GanttServerError):
    code = 'VALIDATION_ERROR'
    status = 400


class DepartmentNotFound(GanttServerError):
    code = 'NOT_FOUND'
    status = 404


class DepartmentExists(GanttServerError):
    code = 'ALREADY_EXISTS'
    status = 409


class CorruptData(GanttServerError):
    code = 'INVALID_JSON'
    status = 500


class StorageFailure(GanttServerError):
    code = 'STORAGE_FAILURE'
    status = 500


class Unauthorized(GanttServerError):
    code = 'UNAUTHORIZED'
    status = 401


# --- Typed outcomes ---

@dataclass(frozen=True)
class LockConflict:
    """Another identity holds a live lease."""
    lock: Any


@dataclass(frozen=True)
class LockNotOwned:
    """Caller does not hold the lease. `lock` is whoever does, if anyone."""
    department: str
    lock: Optional[Any] = None


@dataclass(frozen=True)
class RevisionMismatch:
    expected_revision: int
    current_revision: int
    meta: dict = field(default_factory=dict)


@dataclass(frozen=True)
class WriteAccepted:
    revision: int
    meta: dict = field(default_factory=dict)

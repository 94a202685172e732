from .api import (ApiError, DepartmentLockedError, GanttApiClient, LockNotOwnedError,
                  RevisionConflictError)
from .lease import LeaseAgent, LeaseConfig, LeaseState

__all__ = [
    'ApiError', 'DepartmentLockedError', 'GanttApiClient', 'LockNotOwnedError',
    'RevisionConflictError', 'LeaseAgent', 'LeaseConfig', 'LeaseState',
]

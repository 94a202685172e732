"""Department documents on disk.

One JSON file per department under ``<data>/departments``. Writes go through
:func:`atomic_write_json`, so the live file only ever changes by rename.
Who may write, and when, is decided by the caller (see ``revision.py``).
"""
import copy
import json
import logging
import os
import re
import shutil
import tempfile

from .errors import (CorruptData, DepartmentExists, DepartmentNotFound,
                     InvalidDepartmentName, StorageFailure, ValidationError)
from .models import to_iso, utcnow

log = logging.getLogger(__name__)

NAME_MAX_LENGTH = 50
NAME_PATTERN = re.compile(r'^[A-Za-z0-9 _-]+$')
RESERVED_NAMES = {'CON', 'PRN', 'AUX', 'NUL'} | {f'COM{i}' for i in range(1, 10)} | {f'LPT{i}' for i in range(1, 10)}
DOCUMENT_SUFFIX = '.json'
BACKUP_SUFFIX = '.bak'
LOCKFILE_SUFFIX = '.lock'


def atomic_write_json(path, data, backup_path=None):
    """Write JSON atomically (write temp then replace).

    When ``backup_path`` is given and ``path`` exists, the current file is
    copied there first. A failure at any step leaves ``path`` untouched.
    """
    dir_ = os.path.dirname(path)
    os.makedirs(dir_, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=dir_, prefix='.tmp_', suffix='.json')
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as tmp_f:
            json.dump(data, tmp_f, indent=2, ensure_ascii=False)
            tmp_f.flush()
            os.fsync(tmp_f.fileno())
        if backup_path and os.path.exists(path):
            shutil.copyfile(path, backup_path)
        os.replace(tmp_path, path)
    finally:
        # only left behind when something above failed
        if os.path.exists(tmp_path):
            try:
                os.remove(tmp_path)
            except OSError:
                log.warning('Could not remove temp file %s', tmp_path)


def normalize_name(name):
    """Return the trimmed department name, or None when it is not usable as a file name."""
    if not name or not isinstance(name, str):
        return None
    trimmed = name.strip()
    if not trimmed or len(trimmed) > NAME_MAX_LENGTH:
        return None
    if not NAME_PATTERN.match(trimmed):
        return None
    if '..' in trimmed or '/' in trimmed or '\\' in trimmed:
        return None
    if trimmed.upper() in RESERVED_NAMES:
        return None
    return trimmed


def require_name(name):
    normalized = normalize_name(name)
    if not normalized:
        raise InvalidDepartmentName('Invalid department name')
    return normalized


def validation_errors(document):
    """Structural checks only; project/phase contents are validated elsewhere."""
    errors = []
    if not isinstance(document, dict):
        return ['document must be an object']
    password = document.get('password')
    if password is not None and not isinstance(password, str):
        errors.append('password must be null or a string')
    projects = document.get('projects', [])
    if not isinstance(projects, list):
        errors.append('projects must be an array')
    else:
        for idx, project in enumerate(projects):
            if not isinstance(project, dict):
                errors.append(f'Project {idx}: must be an object')
    meta = document.get('meta')
    if meta is not None:
        if not isinstance(meta, dict):
            errors.append('meta must be an object')
        else:
            revision = meta.get('revision')
            if isinstance(revision, bool) or not isinstance(revision, int) or revision < 1:
                errors.append('meta.revision must be a positive integer')
    return errors


def current_revision(document):
    meta = document.get('meta') if isinstance(document, dict) else None
    revision = meta.get('revision') if isinstance(meta, dict) else None
    if isinstance(revision, bool) or not isinstance(revision, int):
        return 0
    return revision


class DocumentStore:
    def __init__(self, directory, enable_bak=True):
        self.directory = directory
        self.enable_bak = enable_bak

    def ensure_dir(self):
        os.makedirs(self.directory, exist_ok=True)

    def path_for(self, department):
        return os.path.join(self.directory, require_name(department) + DOCUMENT_SUFFIX)

    def backup_path(self, department):
        return self.path_for(department) + BACKUP_SUFFIX

    def lockfile_path(self, department):
        return self.path_for(department) + LOCKFILE_SUFFIX

    def exists(self, department):
        return os.path.exists(self.path_for(department))

    def read(self, department):
        path = self.path_for(department)
        try:
            with open(path, 'r', encoding='utf-8') as f:
                return json.load(f)
        except FileNotFoundError:
            raise DepartmentNotFound('Department not found') from None
        except (ValueError, UnicodeDecodeError) as e:
            log.warning('Invalid JSON for department %s (%s): %s', department, path, e)
            raise CorruptData(f'Invalid JSON data for department {department}',
                              details={'file': os.path.basename(path)}) from e

    def write(self, department, document):
        path = self.path_for(department)
        errors = validation_errors(document)
        if errors:
            raise ValidationError('Invalid department data', details={'errors': errors})
        try:
            atomic_write_json(path, document, backup_path=path + BACKUP_SUFFIX if self.enable_bak else None)
        except OSError as e:
            log.error('Write failed for department %s: %s', department, e)
            raise StorageFailure(f'Failed to write department {department}') from e

    def create(self, department, created_by='admin'):
        name = require_name(department)
        if self.exists(name):
            raise DepartmentExists('Department already exists')
        document = {
            'password': None,
            'projects': [],
            'meta': {'updatedAt': to_iso(utcnow()), 'updatedBy': created_by, 'revision': 1},
        }
        self.write(name, document)
        return copy.deepcopy(document)

    def delete(self, department):
        path = self.path_for(department)
        if not os.path.exists(path):
            raise DepartmentNotFound('Department not found')
        try:
            os.remove(path)
            for extra in (path + BACKUP_SUFFIX, path + LOCKFILE_SUFFIX):
                if os.path.exists(extra):
                    os.remove(extra)
        except OSError as e:
            raise StorageFailure(f'Failed to delete department {department}') from e

    def list_departments(self):
        if not os.path.isdir(self.directory):
            return []
        names = []
        for fname in sorted(os.listdir(self.directory)):
            if not fname.endswith(DOCUMENT_SUFFIX):
                continue
            stem = fname[:-len(DOCUMENT_SUFFIX)]
            if normalize_name(stem) == stem:
                names.append(stem)
        return names

    def validate_all(self):
        """Log every unreadable or structurally invalid document. Returns the problem count."""
        problems = 0
        for name in self.list_departments():
            try:
                document = self.read(name)
            except (CorruptData, DepartmentNotFound):
                problems += 1
                continue
            errors = validation_errors(document)
            if errors:
                problems += 1
                log.warning('Validation errors in department %s: %s', name, errors)
        return problems

import logging
import threading
from urllib.parse import quote

import requests

log = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0


class ApiError(Exception):
    def __init__(self, message, status=None, code=None, details=None, data=None):
        super().__init__(message)
        self.status = status
        self.code = code
        self.details = details
        self.data = data


class DepartmentLockedError(ApiError):
    """Another user holds the department lease (HTTP 423)."""

    @property
    def lock_info(self):
        return self.data or {}


class LockNotOwnedError(ApiError):
    """Heartbeat rejected: the caller no longer holds the lease (HTTP 409)."""


class RevisionConflictError(ApiError):
    """Save rejected because the document moved on since it was read."""

    @property
    def current_revision(self):
        return (self.data or {}).get('currentRevision')


class GanttApiClient:
    """Thin REST client for the Gantt server.

    Every call carries a timeout so an unresponsive server cannot pin the
    caller. ``login`` stores the session token and user name used by the lock
    and save calls.
    """

    def __init__(self, base_url, session=None, timeout=DEFAULT_TIMEOUT):
        self.base_url = base_url.rstrip('/')
        self.http = session or requests.Session()
        self.timeout = timeout
        self.user_name = None
        self.user_token = None
        self.admin_token = None

    # --- plumbing ---

    def _url(self, path):
        return self.base_url + path

    def _headers(self, admin=False):
        headers = {}
        if self.user_token:
            headers['X-User-Token'] = self.user_token
        if admin and self.admin_token:
            headers['Authorization'] = f'Bearer {self.admin_token}'
        return headers

    def _payload(self, **fields):
        payload = {'userName': self.user_name}
        payload.update({k: v for k, v in fields.items() if v is not None})
        return payload

    @staticmethod
    def _decode(response):
        if response.status_code == 204 or not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            return {}

    def _raise_for_error(self, response, data):
        error = data.get('error') if isinstance(data.get('error'), dict) else {}
        message = error.get('message') or f'HTTP {response.status_code}'
        raise ApiError(message, status=response.status_code, code=error.get('code'),
                       details=error.get('details'), data=data)

    def _request(self, method, path, admin=False, timeout=None, **kwargs):
        response = self.http.request(method, self._url(path), headers=self._headers(admin=admin),
                                     timeout=timeout or self.timeout, **kwargs)
        data = self._decode(response)
        if not response.ok:
            self._raise_for_error(response, data)
        return data

    @staticmethod
    def _dept(department):
        return quote(department, safe='')

    # --- auth ---

    def login(self, user_id, password):
        data = self._request('POST', '/api/auth/login', json={'userId': user_id, 'password': password})
        self.user_name = data['user']['userId']
        self.user_token = data['token']
        return data

    def admin_login(self, user_id, password):
        data = self._request('POST', '/api/admin/login', json={'userId': user_id, 'password': password})
        self.admin_token = data['token']
        self.user_token = data['userToken']
        self.user_name = user_id
        return data

    # --- locks ---

    def acquire_lock(self, department, client_host=None, owner_type=None):
        response = self.http.post(
            self._url(f'/api/lock/{self._dept(department)}/acquire'),
            json=self._payload(clientHost=client_host, ownerType=owner_type),
            headers=self._headers(), timeout=self.timeout,
        )
        data = self._decode(response)
        if response.status_code == 423:
            raise DepartmentLockedError('Department is locked by another user', status=423, data=data)
        if not response.ok:
            self._raise_for_error(response, data)
        return data

    def heartbeat_lock(self, department):
        response = self.http.post(
            self._url(f'/api/lock/{self._dept(department)}/heartbeat'),
            json=self._payload(), headers=self._headers(), timeout=self.timeout,
        )
        if response.status_code == 409:
            raise LockNotOwnedError('Lock not owned by user', status=409, code='LOCK_NOT_OWNED',
                                    data=self._decode(response))
        if not response.ok:
            self._raise_for_error(response, self._decode(response))

    def release_lock(self, department):
        self._request('POST', f'/api/lock/{self._dept(department)}/release', json=self._payload())

    def release_lock_beacon(self, department):
        """Fire-and-forget release; never blocks and never raises."""
        payload = self._payload(userToken=self.user_token)

        def send():
            try:
                self.http.post(self._url(f'/api/lock/{self._dept(department)}/release'),
                               json=payload, timeout=self.timeout)
            except requests.RequestException as e:
                log.debug('Release beacon for %s failed: %s', department, e)

        thread = threading.Thread(target=send, daemon=True, name=f'lock-release-{department}')
        thread.start()
        return thread

    def lock_status(self, department):
        return self._request('GET', f'/api/lock/{self._dept(department)}/status')

    def admin_release_lock(self, department):
        self._request('POST', f'/api/lock/{self._dept(department)}/admin-release', admin=True)

    # --- documents ---

    def list_departments(self):
        return self._request('GET', '/api/departments')['departments']

    def get_projects(self, department):
        return self._request('GET', f'/api/projects/{self._dept(department)}')

    def save_projects(self, department, projects, expected_revision):
        try:
            return self._request('POST', f'/api/projects/{self._dept(department)}',
                                 json=self._payload(projects=projects, expectedRevision=expected_revision))
        except ApiError as e:
            if e.status == 409 and e.code == 'REVISION_MISMATCH':
                raise RevisionConflictError(str(e), status=e.status, code=e.code,
                                            details=e.details, data=e.data) from None
            if e.status == 423:
                raise DepartmentLockedError(str(e), status=e.status, code=e.code, data=e.data) from None
            raise

    def import_department(self, department, data):
        return self._request('POST', f'/api/departments/{self._dept(department)}/import',
                             json=self._payload(data=data))

    def upload_department(self, department, filename, content):
        return self._request('POST', f'/api/upload/{self._dept(department)}',
                             data={'userName': self.user_name},
                             files={'file': (filename, content, 'application/json')})

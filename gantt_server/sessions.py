import secrets
import threading
from datetime import timedelta

from .models import to_iso, utcnow


class SessionStore:
    """token -> {userName, createdAt}. Proves a caller logged in as userName."""

    def __init__(self, clock=utcnow):
        self.clock = clock
        self._sessions = {}
        self._mutex = threading.Lock()

    def create(self, user_name):
        token = secrets.token_hex(16)
        with self._mutex:
            self._sessions[token] = {'userName': user_name, 'createdAt': to_iso(self.clock())}
        return token

    def get(self, token):
        if not token:
            return None
        with self._mutex:
            session = self._sessions.get(token)
            return dict(session) if session else None

    def revoke(self, token):
        with self._mutex:
            return self._sessions.pop(token, None) is not None


class AdminTokenStore:
    """Admin bearer tokens with a fixed TTL; expired tokens are dropped when looked up."""

    def __init__(self, ttl=timedelta(hours=8), clock=utcnow):
        self.ttl = ttl
        self.clock = clock
        self._tokens = {}
        self._mutex = threading.Lock()

    def issue(self, user_name):
        token = secrets.token_hex(32)
        now = self.clock()
        with self._mutex:
            self._tokens[token] = {'userName': user_name, 'createdAt': now, 'expiresAt': now + self.ttl}
        return token

    def lookup(self, token):
        """Admin user name for a valid token, else None."""
        if not token:
            return None
        with self._mutex:
            entry = self._tokens.get(token)
            if entry is None:
                return None
            if self.clock() > entry['expiresAt']:
                del self._tokens[token]
                return None
            return entry['userName']

    def revoke(self, token):
        with self._mutex:
            return self._tokens.pop(token, None) is not None

from dataclasses import dataclass, replace
from datetime import datetime, UTC
from typing import Optional

OWNER_TYPES = ('user', 'admin')


def utcnow() -> datetime:
    return datetime.now(UTC)


def to_iso(dt: datetime) -> str:
    """ISO-8601 in UTC with millisecond precision and a trailing Z."""
    return dt.astimezone(UTC).isoformat(timespec='milliseconds').replace('+00:00', 'Z')


def parse_iso(value) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if not value or not isinstance(value, str):
        return None
    try:
        dt = datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=UTC)


@dataclass(frozen=True)
class Lock:
    department: str
    owner_user_name: str
    locked_at: datetime
    expires_at: datetime
    last_heartbeat_at: datetime
    owner_type: str = 'user'
    client_host: Optional[str] = None

    def is_held(self, now: datetime) -> bool:
        return now < self.expires_at

    def is_expired(self, now: datetime) -> bool:
        return not self.is_held(now)

    def renewed(self, now: datetime, expires_at: datetime, **changes) -> 'Lock':
        return replace(self, expires_at=expires_at, last_heartbeat_at=now, **changes)

    def to_dict(self):
        return {
            'department': self.department,
            'ownerUserName': self.owner_user_name,
            'ownerType': self.owner_type,
            'clientHost': self.client_host,
            'lockedAt': to_iso(self.locked_at),
            'expiresAt': to_iso(self.expires_at),
            'lastHeartbeatAt': to_iso(self.last_heartbeat_at),
        }

    def to_info(self):
        """Shape returned to clients by status/acquire and on conflicts."""
        return {
            'locked': True,
            'department': self.department,
            'lockedBy': self.owner_user_name,
            'ownerUserName': self.owner_user_name,
            'ownerType': self.owner_type,
            'lockedAt': to_iso(self.locked_at),
            'expiresAt': to_iso(self.expires_at),
            'lastHeartbeatAt': to_iso(self.last_heartbeat_at),
            'clientHost': self.client_host,
        }

    @classmethod
    def from_dict(cls, data) -> Optional['Lock']:
        """Build a Lock from a snapshot record; None if the record is unusable."""
        if not isinstance(data, dict) or not isinstance(data.get('department'), str):
            return None
        expires_at = parse_iso(data.get('expiresAt'))
        if expires_at is None:
            return None
        locked_at = parse_iso(data.get('lockedAt')) or expires_at
        owner_type = data.get('ownerType') if data.get('ownerType') in OWNER_TYPES else 'user'
        return cls(
            department=data['department'],
            owner_user_name=str(data.get('ownerUserName') or ''),
            owner_type=owner_type,
            client_host=data.get('clientHost') or None,
            locked_at=locked_at,
            expires_at=expires_at,
            last_heartbeat_at=parse_iso(data.get('lastHeartbeatAt')) or locked_at,
        )


def unlocked_info(department):
    return {'locked': False, 'department': department}

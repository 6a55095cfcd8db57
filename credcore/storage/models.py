from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    """Timezone-aware UTC timestamp used for every persisted instant."""

    return datetime.now(timezone.utc)


PRINCIPAL_USER = "user"
PRINCIPAL_SERVICE = "service"


@dataclass
class User:
    id: str
    username: str
    email: str
    password_hash: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    role: str = "user"
    enabled: bool = True
    created_at: datetime = field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None


@dataclass
class ServiceAccount:
    """Non-interactive principal authenticated by an API key.

    Only the digest of the key is kept; ``lookup_hint`` is a short,
    deterministic fingerprint used to narrow candidate rows before the
    (salted, non-reproducible) digest is verified.
    """

    id: str
    service_name: str
    description: str
    api_key_hash: str
    lookup_hint: Optional[str] = None
    active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    last_used_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None


@dataclass
class RefreshTokenRecord:
    id: str
    principal_kind: str
    principal_id: str
    token: str
    expires_at: datetime
    revoked: bool = False
    created_at: datetime = field(default_factory=utcnow)
    revoked_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        principal_kind: str,
        principal_id: str,
        token: str,
        *,
        ttl_seconds: int,
        now: Optional[datetime] = None,
    ) -> "RefreshTokenRecord":
        issued = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            principal_kind=principal_kind,
            principal_id=principal_id,
            token=token,
            expires_at=issued + timedelta(seconds=ttl_seconds),
            created_at=issued,
        )

    def is_expired(self, now: datetime) -> bool:
        # A token checked at exactly its expiry instant is already expired
        return now >= self.expires_at

    def is_active(self, now: datetime) -> bool:
        return not self.revoked and not self.is_expired(now)

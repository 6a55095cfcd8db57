"""Common storage contracts shared between memory and postgres implementations.

Both backends implement :class:`CredentialStore`; services only ever depend
on this protocol so the in-memory store can stand in for Postgres in tests.
"""

from __future__ import annotations

import hashlib
from contextlib import AbstractContextManager
from datetime import datetime, timezone
from typing import List, Optional, Protocol

from credcore.storage.models import RefreshTokenRecord, ServiceAccount, User

# Hex characters of the SHA-256 fingerprint kept as the API-key lookup hint
LOOKUP_HINT_LENGTH = 16


def lookup_hint_for(api_key: str) -> str:
    """Deterministic short fingerprint of an API key.

    The hint only narrows the rows whose salted digest must be verified; it
    never authenticates a key on its own.
    """

    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()[:LOOKUP_HINT_LENGTH]


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize naive timestamps (older rows, some drivers) to aware UTC."""

    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class CredentialStore(Protocol):
    def transaction(self) -> AbstractContextManager[None]: ...

    # users
    def create_user(
        self,
        username: str,
        email: str,
        password_hash: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        role: str = "user",
        enabled: bool = True,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def set_user_last_login(self, user_id: str, at: datetime) -> None: ...

    def set_user_enabled(self, user_id: str, enabled: bool) -> Optional[User]: ...

    # service accounts
    def create_service_account(
        self,
        service_name: str,
        description: str,
        api_key_hash: str,
        *,
        lookup_hint: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> ServiceAccount: ...

    def get_service_account(self, account_id: str) -> Optional[ServiceAccount]: ...

    def get_service_account_by_name(self, service_name: str) -> Optional[ServiceAccount]: ...

    def list_service_accounts(
        self, *, active: Optional[bool] = None, lookup_hint: Optional[str] = None
    ) -> List[ServiceAccount]: ...

    def touch_service_account(self, account_id: str, at: datetime) -> None: ...

    def deactivate_service_account(
        self, account_id: str, at: datetime
    ) -> Optional[ServiceAccount]: ...

    # refresh tokens
    def create_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord: ...

    def get_refresh_token(self, token: str) -> Optional[RefreshTokenRecord]: ...

    def get_active_refresh_token(
        self, principal_kind: str, principal_id: str, now: datetime
    ) -> Optional[RefreshTokenRecord]: ...

    def list_refresh_tokens(
        self, principal_kind: str, principal_id: str
    ) -> List[RefreshTokenRecord]: ...

    def revoke_refresh_token(self, token: str, at: datetime) -> Optional[RefreshTokenRecord]: ...

    def revoke_principal_refresh_tokens(
        self, principal_kind: str, principal_id: str, at: datetime
    ) -> int: ...

    def delete_expired_refresh_tokens(self, before: datetime) -> int: ...


__all__ = [
    "CredentialStore",
    "LOOKUP_HINT_LENGTH",
    "as_utc",
    "lookup_hint_for",
    "normalize_email",
]

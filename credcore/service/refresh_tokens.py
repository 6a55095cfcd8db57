from __future__ import annotations

from datetime import datetime
from typing import Optional

from credcore.logging import get_logger
from credcore.service.errors import (
    InvalidRefreshToken,
    RefreshTokenExpired,
    RefreshTokenRevoked,
)
from credcore.service.principals import (
    Principal,
    ServiceAccountPrincipal,
    UserPrincipal,
)
from credcore.service.tokens import (
    DISABLED,
    EXPIRED,
    TOKEN_REFRESH,
    TokenCodec,
)
from credcore.storage.common import CredentialStore
from credcore.storage.models import (
    PRINCIPAL_SERVICE,
    PRINCIPAL_USER,
    RefreshTokenRecord,
)

logger = get_logger(__name__)


def resolve_principal(
    store: CredentialStore, principal_kind: str, principal_id: str
) -> Optional[Principal]:
    """Load the current state of a principal from its persisted row."""
    if principal_kind == PRINCIPAL_USER:
        user = store.get_user(principal_id)
        return UserPrincipal(user) if user else None
    if principal_kind == PRINCIPAL_SERVICE:
        account = store.get_service_account(principal_id)
        return ServiceAccountPrincipal(account) if account else None
    return None


class RefreshTokenRotation:
    """Persisted refresh tokens with single-active-token semantics.

    Each login revokes every outstanding token of the principal and stores a
    new one inside one store transaction, so after a completed login exactly
    one usable refresh token exists. Expiry is detected lazily on use.
    """

    def __init__(
        self,
        store: CredentialStore,
        codec: TokenCodec,
        *,
        ttl_seconds: Optional[float] = None,
    ) -> None:
        self.store = store
        self.codec = codec
        self.ttl_seconds = codec.refresh_ttl if ttl_seconds is None else ttl_seconds

    def _now(self) -> datetime:
        return self.codec.clock()

    def issue_and_rotate(self, principal: Principal) -> str:
        now = self._now()
        token = self.codec.issue_refresh_token(principal, ttl=self.ttl_seconds)
        record = RefreshTokenRecord.new(
            principal.kind,
            principal.principal_id,
            token,
            ttl_seconds=self.ttl_seconds,
            now=now,
        )
        with self.store.transaction():
            revoked = self.store.revoke_principal_refresh_tokens(
                principal.kind, principal.principal_id, now
            )
            self.store.create_refresh_token(record)
        logger.info(
            "refresh_token_rotated",
            principal_kind=principal.kind,
            principal_id=principal.principal_id,
            superseded=revoked,
        )
        return token

    def validate(self, token: str) -> Principal:
        """Return the owner of an active refresh token.

        A disabled owner is still returned; deciding what a disabled
        principal may do is left to the caller.
        """
        if not token:
            raise InvalidRefreshToken()
        record = self.store.get_refresh_token(token)
        if record is None:
            raise InvalidRefreshToken()
        if record.revoked:
            raise RefreshTokenRevoked()
        if record.is_expired(self._now()):
            raise RefreshTokenExpired()

        principal = resolve_principal(self.store, record.principal_kind, record.principal_id)
        if principal is None:
            logger.warning(
                "refresh_token_owner_missing",
                principal_kind=record.principal_kind,
                principal_id=record.principal_id,
            )
            raise InvalidRefreshToken()

        verification = self.codec.verify(token, principal, token_type=TOKEN_REFRESH)
        if verification.valid or verification.reason == DISABLED:
            return principal
        if verification.reason == EXPIRED:
            raise RefreshTokenExpired()
        logger.warning(
            "refresh_token_verification_failed",
            principal_kind=record.principal_kind,
            principal_id=record.principal_id,
            reason=verification.reason,
        )
        raise InvalidRefreshToken()

    def revoke(self, token: str) -> RefreshTokenRecord:
        if not token:
            raise InvalidRefreshToken()
        record = self.store.revoke_refresh_token(token, self._now())
        if record is None:
            raise InvalidRefreshToken()
        logger.info(
            "refresh_token_revoked",
            principal_kind=record.principal_kind,
            principal_id=record.principal_id,
        )
        return record

    def active_token_for(self, principal: Principal) -> Optional[RefreshTokenRecord]:
        return self.store.get_active_refresh_token(
            principal.kind, principal.principal_id, self._now()
        )

    def purge_expired(self, before: Optional[datetime] = None) -> int:
        cutoff = before or self._now()
        with self.store.transaction():
            removed = self.store.delete_expired_refresh_tokens(cutoff)
        if removed:
            logger.info("refresh_tokens_purged", removed=removed)
        return removed


__all__ = ["RefreshTokenRotation", "resolve_principal"]

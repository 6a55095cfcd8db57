from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional, Tuple

from credcore.logging import get_logger
from credcore.service.api_keys import ApiKeyService
from credcore.service.errors import (
    EmailExists,
    InvalidApiKey,
    InvalidCredentials,
    MalformedToken,
    ServiceAccountInactive,
    ServiceAccountNotFound,
    ServiceError,
    TokenExpired,
    UserNotFound,
    UsernameExists,
)
from credcore.service.hashing import CredentialHasher
from credcore.service.principals import (
    ROLE_SERVICE,
    Principal,
    ServiceAccountPrincipal,
    UserPrincipal,
)
from credcore.service.refresh_tokens import RefreshTokenRotation
from credcore.service.tokens import (
    DISABLED,
    EXPIRED,
    SUBJECT_MISMATCH,
    TOKEN_ACCESS,
    TokenCodec,
)
from credcore.storage.common import CredentialStore
from credcore.storage.errors import ConstraintViolation
from credcore.storage.models import PRINCIPAL_SERVICE, PRINCIPAL_USER

TOKEN_TYPE_BEARER = "bearer"


@dataclass
class TokenBundle:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = TOKEN_TYPE_BEARER
    meta: dict[str, Any] = field(default_factory=dict)


@dataclass
class AuthContext:
    principal_kind: str
    principal_id: str
    identifier: str
    authorities: Tuple[str, ...]
    claims: dict[str, Any] = field(default_factory=dict)
    # "token" or "api_key"
    via: str = "token"

    @property
    def is_service(self) -> bool:
        return self.principal_kind == PRINCIPAL_SERVICE

    def has_authority(self, authority: str) -> bool:
        return authority in self.authorities


class CredentialEngine:
    """Login, refresh, logout and request authentication for users and services.

    Every use case runs inside one store transaction. Both principal kinds go
    through the same token codec and the same refresh-token rotation; only the
    claim set and the persisted row differ.
    """

    def __init__(
        self,
        store: CredentialStore,
        hasher: CredentialHasher,
        codec: TokenCodec,
        *,
        api_keys: Optional[ApiKeyService] = None,
        refresh_tokens: Optional[RefreshTokenRotation] = None,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.codec = codec
        self.api_keys = api_keys or ApiKeyService(store, hasher, clock=codec.clock)
        self.refresh_tokens = refresh_tokens or RefreshTokenRotation(store, codec)
        self.logger = get_logger(__name__)

    # helpers
    @staticmethod
    def _extract_bearer(authorization: Optional[str]) -> Optional[str]:
        if not authorization:
            return None
        scheme, _, token = authorization.strip().partition(" ")
        if scheme.lower() != "bearer":
            return None
        return token.strip() or None

    @staticmethod
    def _access_claims(principal: Principal) -> dict[str, Any]:
        if isinstance(principal, ServiceAccountPrincipal):
            return principal.service_claims()
        return {"role": principal.user.role}

    @staticmethod
    def _bundle_meta(principal: Principal) -> dict[str, Any]:
        if isinstance(principal, ServiceAccountPrincipal):
            return {
                "service_name": principal.account.service_name,
                "service_id": principal.account.id,
            }
        return {"username": principal.user.username, "email": principal.user.email}

    def _issue_bundle(self, principal: Principal, refresh_token: str) -> TokenBundle:
        access_token = self.codec.issue_access_token(
            principal, self._access_claims(principal)
        )
        return TokenBundle(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=int(self.codec.access_ttl),
            meta=self._bundle_meta(principal),
        )

    @staticmethod
    def _disabled_error(principal: Principal) -> ServiceError:
        if principal.kind == PRINCIPAL_SERVICE:
            return ServiceAccountInactive()
        return InvalidCredentials()

    # users
    def register_user(
        self,
        username: str,
        email: str,
        password: str,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        *,
        role: str = "user",
    ) -> TokenBundle:
        if not username or not email or not password:
            raise ServiceError("username, email and password are required")
        password_hash = self.hasher.hash(password)
        with self.store.transaction():
            if self.store.get_user_by_username(username):
                raise UsernameExists()
            if self.store.get_user_by_email(email):
                raise EmailExists()
            try:
                user = self.store.create_user(
                    username,
                    email,
                    password_hash,
                    first_name=first_name,
                    last_name=last_name,
                    role=role,
                )
            except ConstraintViolation as exc:
                if exc.field == "email":
                    raise EmailExists() from exc
                if exc.field == "username":
                    raise UsernameExists() from exc
                raise
            principal = UserPrincipal(user)
            refresh_token = self.refresh_tokens.issue_and_rotate(principal)
            bundle = self._issue_bundle(principal, refresh_token)
        self.logger.info("user_registered", user_id=user.id, username=user.username)
        return bundle

    def login_user(self, username: str, password: str) -> TokenBundle:
        # Hash verification runs before the transaction; the row is re-read inside it
        candidate = self.store.get_user_by_username(username)
        if candidate is None:
            raise UserNotFound()
        if not self.hasher.verify(password, candidate.password_hash):
            self.logger.warning("user_login_failed", user_id=candidate.id, reason="password")
            raise InvalidCredentials()
        with self.store.transaction():
            user = self.store.get_user(candidate.id)
            if user is None:
                raise UserNotFound()
            if user.password_hash != candidate.password_hash:
                self.logger.warning("user_login_failed", user_id=user.id, reason="changed")
                raise InvalidCredentials()
            if not user.enabled:
                self.logger.warning("user_login_failed", user_id=user.id, reason="disabled")
                raise InvalidCredentials()
            now = self.codec.clock()
            self.store.set_user_last_login(user.id, now)
            user.last_login_at = now
            principal = UserPrincipal(user)
            refresh_token = self.refresh_tokens.issue_and_rotate(principal)
            bundle = self._issue_bundle(principal, refresh_token)
        self.logger.info("user_authenticated", user_id=user.id, username=user.username)
        return bundle

    def set_user_enabled(self, user_id: str, enabled: bool) -> None:
        with self.store.transaction():
            if self.store.set_user_enabled(user_id, enabled) is None:
                raise UserNotFound()
        self.logger.info("user_enabled_changed", user_id=user_id, enabled=enabled)

    # service accounts
    def login_service_account(self, service_name: str, api_key: str) -> TokenBundle:
        candidate = self.store.get_service_account_by_name(service_name)
        if candidate is None:
            raise ServiceAccountNotFound()
        if not candidate.active:
            self.logger.warning(
                "service_login_failed", service_name=service_name, reason="inactive"
            )
            raise ServiceAccountInactive()
        # Login checks the digest directly rather than trusting the cache
        if not self.hasher.verify(api_key, candidate.api_key_hash):
            self.logger.warning(
                "service_login_failed", service_name=service_name, reason="api_key"
            )
            raise InvalidApiKey()
        with self.store.transaction():
            account = self.store.get_service_account(candidate.id)
            if account is None:
                raise ServiceAccountNotFound()
            if not account.active:
                self.logger.warning(
                    "service_login_failed", service_name=service_name, reason="inactive"
                )
                raise ServiceAccountInactive()
            now = self.codec.clock()
            self.store.touch_service_account(account.id, now)
            account.last_used_at = now
            principal = ServiceAccountPrincipal(account)
            refresh_token = self.refresh_tokens.issue_and_rotate(principal)
            bundle = self._issue_bundle(principal, refresh_token)
        self.logger.info(
            "service_authenticated", service_name=service_name, service_account_id=account.id
        )
        return bundle

    # tokens
    def refresh_access(self, refresh_token: str) -> TokenBundle:
        """Mint a new access token; the refresh token itself is not rotated."""
        with self.store.transaction():
            principal = self.refresh_tokens.validate(refresh_token)
            if not principal.is_enabled():
                raise self._disabled_error(principal)
            bundle = self._issue_bundle(principal, refresh_token)
        self.logger.info(
            "access_token_refreshed",
            principal_kind=principal.kind,
            principal_id=principal.principal_id,
        )
        return bundle

    def logout(self, refresh_token: str) -> None:
        with self.store.transaction():
            self.refresh_tokens.revoke(refresh_token)

    def _load_principal(self, kind: Any, subject: str) -> Principal:
        if kind == PRINCIPAL_SERVICE:
            account = self.store.get_service_account_by_name(subject)
            if account is None:
                raise ServiceAccountNotFound()
            return ServiceAccountPrincipal(account)
        if kind == PRINCIPAL_USER:
            user = self.store.get_user_by_username(subject)
            if user is None:
                raise UserNotFound()
            return UserPrincipal(user)
        raise MalformedToken()

    def validate_access_token(self, token: str) -> AuthContext:
        """Identify the principal named by ``token`` then verify the token against it."""
        payload = self.codec.peek_claims(token)
        if payload.get("token_type") != TOKEN_ACCESS:
            raise MalformedToken()
        subject = self.codec.extract_subject(token)
        principal = self._load_principal(payload.get("principal_type"), subject)

        verification = self.codec.verify(token, principal, token_type=TOKEN_ACCESS)
        if not verification.valid:
            if verification.reason == EXPIRED:
                raise TokenExpired()
            if verification.reason == DISABLED:
                raise self._disabled_error(principal)
            if verification.reason == SUBJECT_MISMATCH:
                raise InvalidCredentials()
            raise MalformedToken()
        return AuthContext(
            principal_kind=principal.kind,
            principal_id=principal.principal_id,
            identifier=principal.identifier(),
            authorities=principal.authorities(),
            claims=verification.claims,
        )

    # request authentication
    def authenticate_api_key(self, api_key: Optional[str]) -> Optional[AuthContext]:
        if not api_key or not api_key.strip():
            return None
        account = self.api_keys.validate(api_key)
        if account is None or not account.active:
            self.logger.warning("api_key_authentication_failed")
            raise InvalidApiKey()
        principal = ServiceAccountPrincipal(account)
        self.logger.info(
            "service_authenticated_via_api_key",
            service_name=account.service_name,
            service_account_id=account.id,
        )
        return AuthContext(
            principal_kind=principal.kind,
            principal_id=principal.principal_id,
            identifier=principal.identifier(),
            authorities=(ROLE_SERVICE,),
            claims=principal.service_claims(),
            via="api_key",
        )

    def authenticate(
        self,
        authorization: Optional[str] = None,
        api_key: Optional[str] = None,
    ) -> Optional[AuthContext]:
        """Resolve request credentials: API key first, then a bearer token.

        A rejected API key falls through to the bearer token when one is
        present; with no bearer token the rejection is raised.
        """
        token = self._extract_bearer(authorization)
        if api_key and api_key.strip():
            try:
                return self.authenticate_api_key(api_key)
            except InvalidApiKey:
                if not token:
                    raise
        if token:
            return self.validate_access_token(token)
        return None


__all__ = ["AuthContext", "CredentialEngine", "TOKEN_TYPE_BEARER", "TokenBundle"]

from __future__ import annotations

import base64
import secrets
from typing import List, Optional, Tuple

from credcore.logging import get_logger
from credcore.service.api_key_cache import ApiKeyCache, ApiKeyValidationCache
from credcore.service.errors import ServiceAccountExists, ServiceAccountNotFound
from credcore.service.hashing import CredentialHasher
from credcore.service.tokens import Clock
from credcore.storage.common import CredentialStore, lookup_hint_for
from credcore.storage.errors import ConstraintViolation
from credcore.storage.models import ServiceAccount, utcnow

logger = get_logger(__name__)

API_KEY_BYTES = 32


def new_api_key() -> str:
    """32 random bytes, URL-safe base64 without padding (43 characters)."""
    return base64.urlsafe_b64encode(secrets.token_bytes(API_KEY_BYTES)).decode("ascii").rstrip("=")


class ApiKeyService:
    """Generate, validate, revoke and rotate service-account API keys.

    Only a salted digest of each key is stored. Because the digest cannot be
    recomputed from the key, validation narrows candidates by a short
    deterministic lookup hint and then verifies each candidate's digest.
    Validated keys are remembered in ``cache``; revoke and rotate evict the
    account after the store commit.
    """

    def __init__(
        self,
        store: CredentialStore,
        hasher: CredentialHasher,
        *,
        cache: Optional[ApiKeyCache] = None,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.cache: ApiKeyCache = cache if cache is not None else ApiKeyValidationCache()
        self.clock = clock

    # issuing
    def create(self, service_name: str, description: str = "") -> Tuple[ServiceAccount, str]:
        """Persist a new active account and return it with its plaintext key."""
        if not service_name or not service_name.strip():
            raise ValueError("service_name is required")
        api_key = new_api_key()
        try:
            with self.store.transaction():
                account = self.store.create_service_account(
                    service_name,
                    description or "",
                    self.hasher.hash(api_key),
                    lookup_hint=lookup_hint_for(api_key),
                    created_at=self.clock(),
                )
        except ConstraintViolation as exc:
            if exc.field == "service_name":
                raise ServiceAccountExists(detail={"service_name": service_name}) from exc
            raise
        logger.info(
            "api_key_generated", service_name=service_name, service_account_id=account.id
        )
        return account, api_key

    def generate(self, service_name: str, description: str = "") -> str:
        return self.create(service_name, description)[1]

    # validation
    def validate(self, api_key: Optional[str]) -> Optional[ServiceAccount]:
        """Return the active account owning ``api_key``, or ``None``."""
        if not api_key or not api_key.strip():
            return None
        cached = self.cache.get(api_key)
        if cached is not None and cached.active:
            return cached

        generation = self.cache.generation()
        account = self._find_account(api_key)
        if account is None:
            return None
        now = self.clock()
        with self.store.transaction():
            self.store.touch_service_account(account.id, now)
        account.last_used_at = now
        self.cache.put(api_key, account, generation=generation)
        return account

    def _find_account(self, api_key: str) -> Optional[ServiceAccount]:
        hint = lookup_hint_for(api_key)
        candidates = self.store.list_service_accounts(active=True, lookup_hint=hint)
        for account in candidates:
            if self.hasher.verify(api_key, account.api_key_hash):
                return account
        # Accounts created without a hint can only be found by full verification
        for account in self.store.list_service_accounts(active=True):
            if account.lookup_hint:
                continue
            if self.hasher.verify(api_key, account.api_key_hash):
                return account
        return None

    # lifecycle
    def revoke(self, account_id: str) -> ServiceAccount:
        with self.store.transaction():
            account = self.store.deactivate_service_account(account_id, self.clock())
            if account is None:
                raise ServiceAccountNotFound(detail={"service_account_id": account_id})
        self.cache.evict_account(account_id)
        logger.info(
            "api_key_revoked",
            service_name=account.service_name,
            service_account_id=account_id,
        )
        return account

    def rotate(self, account_id: str) -> str:
        """Revoke the account's key and issue a fresh one under the same name."""
        now = self.clock()
        api_key = new_api_key()
        with self.store.transaction():
            existing = self.store.deactivate_service_account(account_id, now)
            if existing is None:
                raise ServiceAccountNotFound(detail={"service_account_id": account_id})
            replacement = self.store.create_service_account(
                existing.service_name,
                existing.description,
                self.hasher.hash(api_key),
                lookup_hint=lookup_hint_for(api_key),
                created_at=now,
            )
        self.cache.evict_account(account_id)
        logger.info(
            "api_key_rotated",
            service_name=existing.service_name,
            previous_service_account_id=account_id,
            service_account_id=replacement.id,
        )
        return api_key

    # lookup
    def get_service_account(self, service_name: str) -> Optional[ServiceAccount]:
        return self.store.get_service_account_by_name(service_name)

    def list_service_accounts(self, active: Optional[bool] = None) -> List[ServiceAccount]:
        return self.store.list_service_accounts(active=active)


__all__ = ["API_KEY_BYTES", "ApiKeyService", "new_api_key"]

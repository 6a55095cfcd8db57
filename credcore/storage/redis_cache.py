from __future__ import annotations

import hashlib
import json
from dataclasses import asdict
from datetime import datetime
from typing import Any, Optional

from redis import Redis
from redis.exceptions import WatchError

from credcore.logging import get_logger
from credcore.storage.common import as_utc
from credcore.storage.models import ServiceAccount

logger = get_logger(__name__)

_DATETIME_FIELDS = ("created_at", "last_used_at", "revoked_at")


class RedisApiKeyCache:
    """Shared API key cache so every worker sees the same evictions.

    Keys are stored under the SHA-256 of the raw API key; the plaintext never
    reaches Redis. Each account keeps a set of the fingerprints cached for it
    so revoke and rotate can evict by account id.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(
        self,
        redis_url: Optional[str] = None,
        *,
        client: Optional[Redis] = None,
        ttl_seconds: int = 300,
        prefix: str = "credcore:apikey",
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
    ) -> None:
        if client is None:
            if not redis_url:
                raise ValueError("redis_url or client is required")
            client = Redis.from_url(
                redis_url,
                decode_responses=True,
                socket_timeout=socket_timeout,
                socket_connect_timeout=socket_timeout,
            )
        self.redis_url = redis_url
        self.client = client
        self.ttl_seconds = max(1, int(ttl_seconds))
        self.prefix = prefix

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling the shared cache."""
        self.client.ping()

    # keys
    @staticmethod
    def _fingerprint(api_key: str) -> str:
        return hashlib.sha256(api_key.encode("utf-8")).hexdigest()

    def _entry_key(self, fingerprint: str) -> str:
        return f"{self.prefix}:entry:{fingerprint}"

    def _account_key(self, account_id: str) -> str:
        return f"{self.prefix}:account:{account_id}"

    def _generation_key(self) -> str:
        return f"{self.prefix}:generation"

    # encoding
    @staticmethod
    def _dump(account: ServiceAccount) -> str:
        data = asdict(account)
        for key in _DATETIME_FIELDS:
            if data.get(key) is not None:
                data[key] = data[key].isoformat()
        return json.dumps(data)

    @staticmethod
    def _load(raw: str) -> Optional[ServiceAccount]:
        try:
            data: dict[str, Any] = json.loads(raw)
            for key in _DATETIME_FIELDS:
                if data.get(key):
                    data[key] = as_utc(datetime.fromisoformat(data[key]))
            return ServiceAccount(**data)
        except (TypeError, ValueError) as exc:
            logger.warning("api_key_cache_entry_corrupt", error=str(exc))
            return None

    # cache operations
    def generation(self) -> int:
        value = self.client.get(self._generation_key())
        return int(value) if value else 0

    def get(self, api_key: str) -> Optional[ServiceAccount]:
        if not api_key:
            return None
        raw = self.client.get(self._entry_key(self._fingerprint(api_key)))
        if not raw:
            return None
        return self._load(raw)

    def put(
        self, api_key: str, account: ServiceAccount, *, generation: Optional[int] = None
    ) -> bool:
        if not api_key or not account.active:
            return False
        fingerprint = self._fingerprint(api_key)
        account_key = self._account_key(account.id)
        generation_key = self._generation_key()
        with self.client.pipeline() as pipe:
            try:
                if generation is not None:
                    # EXEC aborts if an eviction bumps the generation after this read
                    pipe.watch(generation_key)
                    value = pipe.get(generation_key)
                    if generation != (int(value) if value else 0):
                        return False
                pipe.multi()
                pipe.set(
                    self._entry_key(fingerprint), self._dump(account), ex=self.ttl_seconds
                )
                pipe.sadd(account_key, fingerprint)
                pipe.expire(account_key, self.ttl_seconds)
                pipe.execute()
            except WatchError:
                logger.debug("api_key_cache_fill_superseded", account_id=account.id)
                return False
        return True

    def evict(self, api_key: str) -> None:
        pipe = self.client.pipeline()
        pipe.incr(self._generation_key())
        pipe.delete(self._entry_key(self._fingerprint(api_key)))
        pipe.execute()

    def evict_account(self, account_id: str) -> int:
        account_key = self._account_key(account_id)
        # Bumped before SMEMBERS: uncommitted fills fail, committed ones are listed
        self.client.incr(self._generation_key())
        fingerprints = self.client.smembers(account_key) or set()
        pipe = self.client.pipeline()
        for fingerprint in fingerprints:
            pipe.delete(self._entry_key(fingerprint))
        pipe.delete(account_key)
        pipe.execute()
        return len(fingerprints)

    def clear(self) -> None:
        pipe = self.client.pipeline()
        pipe.incr(self._generation_key())
        for key in self.client.scan_iter(match=f"{self.prefix}:entry:*"):
            pipe.delete(key)
        for key in self.client.scan_iter(match=f"{self.prefix}:account:*"):
            pipe.delete(key)
        pipe.execute()

    def close(self) -> None:
        self.client.close()


__all__ = ["RedisApiKeyCache"]

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, replace
from typing import Callable, Dict, Optional, Protocol, Set

from credcore.storage.models import ServiceAccount


class ApiKeyCache(Protocol):
    """Read-through cache of validated API keys.

    Never authoritative: a revoked or rotated account must be evicted, and
    ``put`` with a stale ``generation`` is ignored so a fill that raced an
    eviction cannot resurrect a revoked key.
    """

    def get(self, api_key: str) -> Optional[ServiceAccount]: ...

    def put(
        self, api_key: str, account: ServiceAccount, *, generation: Optional[int] = None
    ) -> bool: ...

    def evict(self, api_key: str) -> None: ...

    def evict_account(self, account_id: str) -> int: ...

    def generation(self) -> int: ...

    def clear(self) -> None: ...


@dataclass
class _CacheEntry:
    account: ServiceAccount
    filled_at: float


class ApiKeyValidationCache:
    """Process-local, thread-safe API key cache with TTL and size bounds."""

    def __init__(
        self,
        *,
        ttl_seconds: float = 300,
        max_entries: int = 10000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.max_entries = max(1, max_entries)
        self._clock = clock
        self._entries: "OrderedDict[str, _CacheEntry]" = OrderedDict()
        # account id -> raw keys cached for it, for eviction by account
        self._by_account: Dict[str, Set[str]] = {}
        self._generation = 0
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def generation(self) -> int:
        with self._lock:
            return self._generation

    def get(self, api_key: str) -> Optional[ServiceAccount]:
        if not api_key:
            return None
        with self._lock:
            entry = self._entries.get(api_key)
            if entry is None:
                return None
            if self._clock() - entry.filled_at >= self.ttl_seconds:
                self._drop(api_key)
                return None
            self._entries.move_to_end(api_key)
            return replace(entry.account)

    def put(
        self, api_key: str, account: ServiceAccount, *, generation: Optional[int] = None
    ) -> bool:
        if not api_key or not account.active:
            return False
        with self._lock:
            if generation is not None and generation != self._generation:
                return False
            self._drop(api_key)
            self._entries[api_key] = _CacheEntry(replace(account), self._clock())
            self._by_account.setdefault(account.id, set()).add(api_key)
            while len(self._entries) > self.max_entries:
                oldest = next(iter(self._entries))
                self._drop(oldest)
            return True

    def evict(self, api_key: str) -> None:
        with self._lock:
            self._generation += 1
            self._drop(api_key)

    def evict_account(self, account_id: str) -> int:
        with self._lock:
            self._generation += 1
            keys = self._by_account.pop(account_id, set())
            for key in keys:
                self._entries.pop(key, None)
            return len(keys)

    def clear(self) -> None:
        with self._lock:
            self._generation += 1
            self._entries.clear()
            self._by_account.clear()

    def _drop(self, api_key: str) -> None:
        entry = self._entries.pop(api_key, None)
        if entry is None:
            return
        keys = self._by_account.get(entry.account.id)
        if keys is not None:
            keys.discard(api_key)
            if not keys:
                self._by_account.pop(entry.account.id, None)


__all__ = ["ApiKeyCache", "ApiKeyValidationCache"]

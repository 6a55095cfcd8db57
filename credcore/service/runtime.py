from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from credcore.config import ApiKeyCacheBackend, Settings, get_settings, reset_settings_cache
from credcore.logging import get_logger
from credcore.service.api_key_cache import ApiKeyValidationCache
from credcore.service.api_keys import ApiKeyService
from credcore.service.engine import CredentialEngine
from credcore.service.hashing import CredentialHasher
from credcore.service.refresh_tokens import RefreshTokenRotation
from credcore.service.tokens import TokenCodec
from credcore.storage.memory import MemoryStore
from credcore.storage.postgres import PostgresStore
from credcore.storage.redis_cache import RedisApiKeyCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a DSN for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse(
                (
                    parsed.scheme,
                    netloc,
                    parsed.path,
                    parsed.params,
                    parsed.query,
                    parsed.fragment,
                )
            )
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds the store, cache and services built from settings."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        use_memory = self.settings.use_memory_store or self.settings.test_mode
        store_type = "memory" if use_memory else "postgres"
        logger.info(
            "runtime_init_started",
            store_type=store_type,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if use_memory
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = self._build_cache()
        self.hasher = CredentialHasher.from_settings(self.settings)
        self.codec = TokenCodec.from_settings(self.settings)
        self.api_keys = ApiKeyService(
            self.store, self.hasher, cache=self.cache, clock=self.codec.clock
        )
        self.refresh_tokens = RefreshTokenRotation(self.store, self.codec)
        self.engine = CredentialEngine(
            self.store,
            self.hasher,
            self.codec,
            api_keys=self.api_keys,
            refresh_tokens=self.refresh_tokens,
        )
        logger.info(
            "runtime_initialized",
            store_type=store_type,
            api_key_cache=type(self.cache).__name__,
            access_token_ttl_seconds=self.settings.access_token_ttl_seconds,
        )

    def _build_cache(self) -> Union[ApiKeyValidationCache, RedisApiKeyCache]:
        settings = self.settings
        local = ApiKeyValidationCache(
            ttl_seconds=settings.api_key_cache_ttl_seconds,
            max_entries=settings.api_key_cache_max_entries,
        )
        if settings.api_key_cache_backend != ApiKeyCacheBackend.REDIS:
            return local

        redis_error: Exception | None = None
        if settings.redis_url:
            try:
                cache = RedisApiKeyCache(
                    settings.redis_url, ttl_seconds=settings.api_key_cache_ttl_seconds
                )
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if not settings.test_mode:
            raise RuntimeError(
                "API_KEY_CACHE_BACKEND=redis requires a reachable REDIS_URL; "
                "start Redis or set API_KEY_CACHE_BACKEND=memory."
            ) from redis_error
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message="Running with a process-local API key cache under TEST_MODE",
        )
        return local

    def close(self) -> None:
        if isinstance(self.cache, RedisApiKeyCache):
            self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Double-checked locking: the unlocked read is the fast path once the
    runtime exists; the locked re-check prevents two threads building it.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            try:
                runtime.close()
            except Exception as exc:
                logger.warning("runtime_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests"]

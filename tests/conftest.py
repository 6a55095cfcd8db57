import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="credcore_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Cheap argon2 parameters keep hashing fast in tests
os.environ.setdefault("ARGON2_TIME_COST", "1")
os.environ.setdefault("ARGON2_MEMORY_COST", "8")
os.environ.setdefault("ARGON2_PARALLELISM", "1")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from credcore.config import reset_settings_cache  # noqa: E402
from credcore.service.api_key_cache import ApiKeyValidationCache  # noqa: E402
from credcore.service.api_keys import ApiKeyService  # noqa: E402
from credcore.service.engine import CredentialEngine  # noqa: E402
from credcore.service.hashing import CredentialHasher  # noqa: E402
from credcore.service.refresh_tokens import RefreshTokenRotation  # noqa: E402
from credcore.service.runtime import reset_runtime_for_tests  # noqa: E402
from credcore.service.tokens import TokenCodec  # noqa: E402
from credcore.storage.memory import MemoryStore  # noqa: E402

TEST_SECRET = "unit-test-signing-secret-0123456789abcdef"
ACCESS_TTL = 900
REFRESH_TTL = 3600


class FakeClock:
    """Controllable UTC clock; whole seconds so token expiry lands exactly."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class RecordingLogger:
    """Stand-in for a module logger that keeps every call for inspection."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, str, dict]] = []

    def _record(self, level: str):
        def log(event, **kwargs):
            self.calls.append((level, event, kwargs))

        return log

    def __getattr__(self, level: str):
        return self._record(level)

    def events(self) -> list[str]:
        return [event for _, event, _ in self.calls]


@pytest.fixture(autouse=True)
def reset_settings():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def signing_secret() -> str:
    return TEST_SECRET


@pytest.fixture
def recording_logger() -> RecordingLogger:
    return RecordingLogger()


@pytest.fixture
def hasher() -> CredentialHasher:
    return CredentialHasher(time_cost=1, memory_cost=8, parallelism=1)


@pytest.fixture
def memory_store(tmp_path) -> MemoryStore:
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def codec(clock) -> TokenCodec:
    return TokenCodec(
        TEST_SECRET,
        issuer="credcore-test",
        audience="credcore-test-clients",
        access_ttl=ACCESS_TTL,
        refresh_ttl=REFRESH_TTL,
        clock=clock,
    )


@pytest.fixture
def api_key_cache() -> ApiKeyValidationCache:
    return ApiKeyValidationCache(ttl_seconds=300, max_entries=100)


@pytest.fixture
def api_keys(memory_store, hasher, api_key_cache, clock) -> ApiKeyService:
    return ApiKeyService(memory_store, hasher, cache=api_key_cache, clock=clock)


@pytest.fixture
def rotation(memory_store, codec) -> RefreshTokenRotation:
    return RefreshTokenRotation(memory_store, codec)


@pytest.fixture
def engine(memory_store, hasher, codec, api_keys, rotation) -> CredentialEngine:
    return CredentialEngine(
        memory_store, hasher, codec, api_keys=api_keys, refresh_tokens=rotation
    )


@pytest.fixture
def runtime(tmp_path, monkeypatch):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
    monkeypatch.setenv("TEST_MODE", "true")
    monkeypatch.setenv("USE_MEMORY_STORE", "true")
    monkeypatch.setenv("API_KEY_CACHE_BACKEND", "memory")
    rt = reset_runtime_for_tests()
    yield rt
    rt.close()

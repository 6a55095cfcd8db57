import pytest

from credcore.service.api_key_cache import ApiKeyValidationCache
from credcore.service.runtime import Runtime, _mask_url_password, get_runtime
from credcore.storage.memory import MemoryStore


class TestRuntime:
    def test_test_mode_wires_memory_components(self, runtime):
        assert isinstance(runtime.store, MemoryStore)
        assert isinstance(runtime.cache, ApiKeyValidationCache)
        assert runtime.engine.api_keys is runtime.api_keys
        assert runtime.engine.refresh_tokens is runtime.refresh_tokens
        assert get_runtime() is runtime

    def test_end_to_end_flow(self, runtime):
        engine = runtime.engine
        bundle = engine.register_user("alice", "alice@example.com", "Sup3r-Secret-pw")
        ctx = engine.authenticate(authorization=f"Bearer {bundle.access_token}")
        assert ctx.identifier == "alice"
        assert bundle.expires_in == runtime.settings.access_token_ttl_seconds

        key = runtime.api_keys.generate("billing")
        assert engine.authenticate(api_key=key).identifier == "billing"

    def test_redis_backend_without_url_falls_back_in_test_mode(self, monkeypatch, runtime):
        monkeypatch.setenv("API_KEY_CACHE_BACKEND", "redis")
        monkeypatch.delenv("REDIS_URL", raising=False)
        from credcore.service.runtime import reset_runtime_for_tests

        rebuilt = reset_runtime_for_tests()
        assert isinstance(rebuilt.cache, ApiKeyValidationCache)

    def test_redis_backend_required_outside_test_mode(self, monkeypatch, tmp_path):
        from credcore.config import Settings

        settings = Settings(
            shared_fs_root=str(tmp_path),
            use_memory_store=True,
            test_mode=False,
            jwt_secret="x" * 40,
            api_key_cache_backend="redis",
        )
        with pytest.raises(RuntimeError):
            Runtime(settings)


@pytest.mark.parametrize(
    "url, expected",
    [
        (None, None),
        ("redis://localhost:6379/0", "redis://localhost:6379/0"),
        ("redis://:pw@localhost:6379/0", "redis://:***@localhost:6379/0"),
        ("postgresql://app:pw@db:5432/creds", "postgresql://app:***@db:5432/creds"),
    ],
)
def test_mask_url_password(url, expected):
    assert _mask_url_password(url) == expected


def test_bootstrap_admin_script(runtime):
    from scripts.bootstrap_admin import bootstrap_admin, validate_password

    assert validate_password("Sup3r-Secret-pw")
    assert not validate_password("short")

    result = bootstrap_admin(
        "root", "root@example.com", "Sup3r-Secret-pw", service_name="billing"
    )
    assert result["status"] == "created"
    assert runtime.store.get_user_by_username("root").role == "admin"
    assert runtime.api_keys.validate(result["api_key"]).service_name == "billing"

    again = bootstrap_admin("root", "root@example.com", "Sup3r-Secret-pw")
    assert again["status"] == "exists"

from credcore.logging import (
    _add_correlation_id,
    correlation_id_var,
    redact_secrets,
    set_correlation_id,
)
from credcore.service.hashing import CredentialHasher


class TestRedaction:
    def test_secret_fields_masked(self):
        event = redact_secrets(
            None,
            "info",
            {
                "event": "token_issued",
                "password": "hunter2",
                "api_key": "raw-key",
                "refresh_token": "tok",
                "Authorization": "Bearer abc",
                "service_name": "billing",
            },
        )
        assert event["event"] == "token_issued"
        assert event["password"] == "***"
        assert event["api_key"] == "***"
        assert event["refresh_token"] == "***"
        assert event["Authorization"] == "***"
        assert event["service_name"] == "billing"

    def test_non_string_values_left_alone(self):
        event = redact_secrets(None, "info", {"event": "x", "token_count": 3, "secret": ""})
        assert event["token_count"] == 3
        assert event["secret"] == ""


def test_correlation_id_added():
    token = correlation_id_var.set(None)
    try:
        cid = set_correlation_id("req-123")
        assert cid == "req-123"
        assert _add_correlation_id(None, "info", {"event": "x"})["correlation_id"] == "req-123"
    finally:
        correlation_id_var.reset(token)


class TestCredentialHasher:
    def test_hash_is_salted(self, hasher):
        first = hasher.hash("secret")
        second = hasher.hash("secret")
        assert first != second
        assert hasher.verify("secret", first)
        assert hasher.verify("secret", second)

    def test_mismatch_and_garbage(self, hasher):
        digest = hasher.hash("secret")
        assert not hasher.verify("other", digest)
        assert not hasher.verify("secret", "not-an-argon2-digest")
        assert not hasher.verify("", digest)

    def test_needs_rehash_when_parameters_change(self, hasher):
        digest = hasher.hash("secret")
        assert not hasher.needs_rehash(digest)
        stronger = CredentialHasher(time_cost=2, memory_cost=16, parallelism=1)
        assert stronger.needs_rehash(digest)
        assert stronger.needs_rehash("garbage")

    def test_from_settings(self):
        from credcore.config import get_settings

        settings = get_settings()
        hasher = CredentialHasher.from_settings(settings)
        assert hasher.verify("pw", hasher.hash("pw"))

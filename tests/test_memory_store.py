"""MemoryStore persistence, constraints and transactional rollback."""

from datetime import datetime, timedelta, timezone

import pytest

from credcore.storage.errors import ConstraintViolation
from credcore.storage.memory import MemoryStore
from credcore.storage.models import RefreshTokenRecord

T0 = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class TestTransactions:
    """The outermost transaction restores prior state when its block raises."""

    def test_rollback_on_error(self, memory_store):
        memory_store.create_user("keep", "keep@example.com", "digest")
        with pytest.raises(RuntimeError):
            with memory_store.transaction():
                memory_store.create_user("gone", "gone@example.com", "digest")
                memory_store.set_user_enabled(
                    memory_store.get_user_by_username("keep").id, False
                )
                raise RuntimeError("abort")

        assert memory_store.get_user_by_username("gone") is None
        assert memory_store.get_user_by_username("keep").enabled

    def test_nested_transaction_joins_outer(self, memory_store):
        with pytest.raises(RuntimeError):
            with memory_store.transaction():
                with memory_store.transaction():
                    memory_store.create_user("inner", "inner@example.com", "digest")
                raise RuntimeError("outer fails")
        assert memory_store.get_user_by_username("inner") is None

    def test_commit_persists_once(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        state_file = tmp_path / "state" / "credential_store.json"
        with store.transaction():
            store.create_user("alice", "alice@example.com", "digest")
            assert not state_file.exists()
        assert state_file.exists()

    def test_rollback_does_not_persist(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        with pytest.raises(RuntimeError):
            with store.transaction():
                store.create_user("alice", "alice@example.com", "digest")
                raise RuntimeError("abort")
        reloaded = MemoryStore(fs_root=str(tmp_path))
        assert reloaded.get_user_by_username("alice") is None

    def test_failed_persist_rolls_back(self, memory_store, engine, monkeypatch):
        first = engine.register_user("alice", "alice@example.com", "Sup3r-Secret-pw")

        def fail_persist():
            raise RuntimeError("disk full")

        monkeypatch.setattr(memory_store, "_persist_state", fail_persist)
        with pytest.raises(RuntimeError):
            engine.login_user("alice", "Sup3r-Secret-pw")
        monkeypatch.undo()

        refreshed = engine.refresh_access(first.refresh_token)
        assert refreshed.refresh_token == first.refresh_token
        alice = memory_store.get_user_by_username("alice")
        assert alice.last_login_at is None
        assert len(memory_store.list_refresh_tokens("user", alice.id)) == 1


class TestPersistence:
    def test_state_survives_reload(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        user = store.create_user("alice", "Alice@Example.com", "digest", first_name="Alice")
        account = store.create_service_account(
            "billing", "worker", "key-digest", lookup_hint="abcd", created_at=T0
        )
        store.deactivate_service_account(account.id, T0 + timedelta(hours=1))
        record = RefreshTokenRecord.new("user", user.id, "tok-1", ttl_seconds=60, now=T0)
        store.create_refresh_token(record)

        reloaded = MemoryStore(fs_root=str(tmp_path))

        loaded_user = reloaded.get_user(user.id)
        assert loaded_user.email == "alice@example.com"
        assert loaded_user.first_name == "Alice"
        assert loaded_user.created_at.tzinfo is not None
        loaded_account = reloaded.get_service_account(account.id)
        assert not loaded_account.active
        assert loaded_account.revoked_at == T0 + timedelta(hours=1)
        assert loaded_account.lookup_hint == "abcd"
        loaded_token = reloaded.get_refresh_token("tok-1")
        assert loaded_token.expires_at == T0 + timedelta(seconds=60)

    def test_no_persistence_when_disabled(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path / "ephemeral"), persist=False)
        store.create_user("alice", "alice@example.com", "digest")
        assert not (tmp_path / "ephemeral").exists()


class TestConstraints:
    def test_duplicate_username(self, memory_store):
        memory_store.create_user("alice", "alice@example.com", "digest")
        with pytest.raises(ConstraintViolation) as excinfo:
            memory_store.create_user("alice", "other@example.com", "digest")
        assert excinfo.value.field == "username"

    def test_duplicate_email(self, memory_store):
        memory_store.create_user("alice", "alice@example.com", "digest")
        with pytest.raises(ConstraintViolation) as excinfo:
            memory_store.create_user("alice2", " ALICE@example.com ", "digest")
        assert excinfo.value.field == "email"

    def test_service_name_unique_among_active(self, memory_store):
        first = memory_store.create_service_account("billing", "", "digest-1")
        with pytest.raises(ConstraintViolation) as excinfo:
            memory_store.create_service_account("billing", "", "digest-2")
        assert excinfo.value.field == "service_name"

        memory_store.deactivate_service_account(first.id, T0)
        second = memory_store.create_service_account("billing", "", "digest-2")
        assert memory_store.get_service_account_by_name("billing").id == second.id

    def test_duplicate_key_digest(self, memory_store):
        memory_store.create_service_account("billing", "", "digest-1")
        with pytest.raises(ConstraintViolation) as excinfo:
            memory_store.create_service_account("reports", "", "digest-1")
        assert excinfo.value.field == "api_key_hash"

    def test_duplicate_refresh_token(self, memory_store):
        record = RefreshTokenRecord.new("user", "u1", "tok", ttl_seconds=60, now=T0)
        memory_store.create_refresh_token(record)
        again = RefreshTokenRecord.new("user", "u1", "tok", ttl_seconds=60, now=T0)
        with pytest.raises(ConstraintViolation):
            memory_store.create_refresh_token(again)


class TestReads:
    def test_reads_return_copies(self, memory_store):
        user = memory_store.create_user("alice", "alice@example.com", "digest")
        fetched = memory_store.get_user(user.id)
        fetched.enabled = False
        assert memory_store.get_user(user.id).enabled

    def test_refresh_token_queries(self, memory_store):
        older = RefreshTokenRecord.new("user", "u1", "tok-old", ttl_seconds=60, now=T0)
        newer = RefreshTokenRecord.new(
            "user", "u1", "tok-new", ttl_seconds=60, now=T0 + timedelta(seconds=5)
        )
        memory_store.create_refresh_token(older)
        memory_store.create_refresh_token(newer)

        active = memory_store.get_active_refresh_token("user", "u1", T0 + timedelta(seconds=10))
        assert active.token == "tok-new"
        assert memory_store.get_active_refresh_token("user", "u1", T0 + timedelta(seconds=65)) is None

        assert memory_store.revoke_principal_refresh_tokens("user", "u1", T0) == 2
        assert memory_store.revoke_principal_refresh_tokens("user", "u1", T0) == 0
        assert memory_store.revoke_refresh_token("missing", T0) is None

        assert memory_store.delete_expired_refresh_tokens(T0 + timedelta(seconds=60)) == 1
        assert [r.token for r in memory_store.list_refresh_tokens("user", "u1")] == ["tok-new"]

    def test_list_service_accounts_by_hint(self, memory_store):
        memory_store.create_service_account("billing", "", "digest-1", lookup_hint="aaaa")
        memory_store.create_service_account("reports", "", "digest-2", lookup_hint="bbbb")
        hits = memory_store.list_service_accounts(active=True, lookup_hint="bbbb")
        assert [a.service_name for a in hits] == ["reports"]

from contextlib import contextmanager
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

from credcore.logging import get_logger
from credcore.storage.postgres import PostgresStore

T0 = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class FakeResult:
    def __init__(self, rows=None, rowcount=0):
        self.rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConnection:
    def __init__(self, result=None):
        self.events: list[str] = []
        self.statements: list[tuple[str, tuple]] = []
        self.result = result or FakeResult()

    @contextmanager
    def transaction(self):
        self.events.append("begin")
        try:
            yield
        except Exception:
            self.events.append("rollback")
            raise
        self.events.append("commit")

    def execute(self, sql, params=()):
        self.statements.append((" ".join(sql.split()), tuple(params)))
        return self.result


class FakePool:
    def __init__(self, conn: FakeConnection):
        self.conn = conn
        self.checkouts = 0

    @contextmanager
    def connection(self):
        self.checkouts += 1
        yield self.conn


def _store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    store.dsn = "postgresql://unit-test"
    store.logger = get_logger(__name__)
    return store


def test_row_mappers_normalize_naive_timestamps():
    naive = datetime(2024, 1, 1, 12, 0, 0)
    account = PostgresStore._account_from_row(
        {
            "id": "6f1c",
            "service_name": "billing",
            "description": "",
            "api_key_hash": "digest",
            "lookup_hint": "abcd",
            "active": True,
            "created_at": naive,
            "last_used_at": None,
            "revoked_at": None,
        }
    )
    assert account.created_at == T0
    assert account.lookup_hint == "abcd"

    record = PostgresStore._token_from_row(
        {
            "id": "r1",
            "principal_kind": "user",
            "principal_id": "u1",
            "token": "tok",
            "expires_at": naive,
            "revoked": False,
            "created_at": naive,
            "revoked_at": None,
        }
    )
    assert record.expires_at.tzinfo is not None
    assert record.is_expired(T0)


@pytest.mark.parametrize(
    "constraint, field",
    [
        ("app_user_username_key", "username"),
        ("app_user_email_key", "email"),
        ("service_account_active_name_idx", "service_name"),
        ("service_account_api_key_hash_key", "api_key_hash"),
        ("refresh_token_token_key", "token"),
        ("something_else", None),
    ],
)
def test_unique_violation_maps_to_field(constraint, field):
    exc = SimpleNamespace(diag=SimpleNamespace(constraint_name=constraint))
    violation = PostgresStore._violation(exc)
    assert violation.field == field
    assert violation.detail["constraint"] == constraint


def test_nested_transaction_uses_one_connection():
    conn = FakeConnection(FakeResult(rowcount=2))
    pool = FakePool(conn)
    store = _store(pool)

    with store.transaction():
        store.touch_service_account("svc-1", T0)
        with store.transaction():
            revoked = store.revoke_principal_refresh_tokens("user", "u1", T0)

    assert revoked == 2
    assert pool.checkouts == 1
    assert conn.events == ["begin", "begin", "commit", "commit"]
    assert len(conn.statements) == 2


def test_failed_transaction_rolls_back():
    conn = FakeConnection()
    store = _store(FakePool(conn))

    with pytest.raises(RuntimeError):
        with store.transaction():
            store.touch_service_account("svc-1", T0)
            raise RuntimeError("abort")

    assert conn.events == ["begin", "rollback"]


def test_store_calls_outside_transaction_do_not_leak_connection():
    conn = FakeConnection()
    pool = FakePool(conn)
    store = _store(pool)

    store.touch_service_account("svc-1", T0)
    store.touch_service_account("svc-2", T0)

    assert pool.checkouts == 2
    assert conn.events == []


def test_unit_store_never_touches_dummy_pool():
    store = _store(DummyPool())
    row = {
        "id": "u1",
        "username": "alice",
        "email": "alice@example.com",
        "password_hash": "digest",
        "role": "admin",
        "enabled": False,
        "created_at": T0,
        "last_login_at": None,
    }
    user = store._user_from_row(row)
    assert user.role == "admin"
    assert not user.enabled

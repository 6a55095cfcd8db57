from __future__ import annotations

import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime
from typing import Any, Iterator, List, Optional

from psycopg import Connection, errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from credcore.logging import get_logger
from credcore.storage.common import as_utc, normalize_email
from credcore.storage.errors import ConstraintViolation
from credcore.storage.models import RefreshTokenRecord, ServiceAccount, User, utcnow

# Connection bound to the transaction running on the current context, if any
_current_conn: ContextVar[Optional[Connection]] = ContextVar(
    "credcore_pg_conn", default=None
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        username TEXT NOT NULL UNIQUE,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        first_name TEXT,
        last_name TEXT,
        role TEXT NOT NULL DEFAULT 'user',
        enabled BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_login_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS service_account (
        id UUID PRIMARY KEY,
        service_name TEXT NOT NULL,
        description TEXT NOT NULL,
        api_key_hash TEXT NOT NULL UNIQUE,
        lookup_hint TEXT,
        active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_used_at TIMESTAMPTZ,
        revoked_at TIMESTAMPTZ
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS service_account_active_name_idx
        ON service_account (service_name) WHERE active
    """,
    """
    CREATE INDEX IF NOT EXISTS service_account_lookup_hint_idx
        ON service_account (lookup_hint) WHERE active
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        id UUID PRIMARY KEY,
        principal_kind TEXT NOT NULL,
        principal_id TEXT NOT NULL,
        token TEXT NOT NULL UNIQUE,
        expires_at TIMESTAMPTZ NOT NULL,
        revoked BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        revoked_at TIMESTAMPTZ
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS refresh_token_principal_idx
        ON refresh_token (principal_kind, principal_id) WHERE NOT revoked
    """,
)

# Unique constraint/index name -> field reported in ConstraintViolation
_CONSTRAINT_FIELDS = {
    "app_user_username_key": "username",
    "app_user_email_key": "email",
    "service_account_active_name_idx": "service_name",
    "service_account_api_key_hash_key": "api_key_hash",
    "refresh_token_token_key": "token",
}


class PostgresStore:
    """Postgres-backed credential store.

    Calls made inside :meth:`transaction` share one pooled connection through
    a context variable; calls made outside it each run in their own
    autocommitted unit.
    """

    def __init__(self, dsn: str, *, ensure_schema: bool = True) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        if ensure_schema:
            self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[Connection]:
        conn = _current_conn.get()
        if conn is not None:
            yield conn
            return
        with self.pool.connection() as pooled:
            yield pooled

    @contextmanager
    def transaction(self) -> Iterator[None]:
        conn = _current_conn.get()
        if conn is not None:
            # Nested unit of work becomes a savepoint of the outer transaction
            with conn.transaction():
                yield
            return
        with self.pool.connection() as pooled, pooled.transaction():
            token = _current_conn.set(pooled)
            try:
                yield
            finally:
                _current_conn.reset(token)

    def close(self) -> None:
        self.pool.close()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready")

    @staticmethod
    def _violation(exc: errors.UniqueViolation) -> ConstraintViolation:
        constraint = getattr(exc.diag, "constraint_name", None) or ""
        field = _CONSTRAINT_FIELDS.get(constraint)
        message = f"{field} already exists" if field else "unique constraint violated"
        return ConstraintViolation(message, {"field": field, "constraint": constraint})

    # row mapping
    @staticmethod
    def _user_from_row(row: dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            username=row["username"],
            email=row["email"],
            password_hash=row["password_hash"],
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            role=row.get("role", "user"),
            enabled=bool(row.get("enabled", True)),
            created_at=as_utc(row.get("created_at")) or utcnow(),
            last_login_at=as_utc(row.get("last_login_at")),
        )

    @staticmethod
    def _account_from_row(row: dict[str, Any]) -> ServiceAccount:
        return ServiceAccount(
            id=str(row["id"]),
            service_name=row["service_name"],
            description=row["description"],
            api_key_hash=row["api_key_hash"],
            lookup_hint=row.get("lookup_hint"),
            active=bool(row["active"]),
            created_at=as_utc(row.get("created_at")) or utcnow(),
            last_used_at=as_utc(row.get("last_used_at")),
            revoked_at=as_utc(row.get("revoked_at")),
        )

    @staticmethod
    def _token_from_row(row: dict[str, Any]) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            id=str(row["id"]),
            principal_kind=row["principal_kind"],
            principal_id=str(row["principal_id"]),
            token=row["token"],
            expires_at=as_utc(row["expires_at"]),
            revoked=bool(row["revoked"]),
            created_at=as_utc(row.get("created_at")) or utcnow(),
            revoked_at=as_utc(row.get("revoked_at")),
        )

    # users
    def create_user(
        self,
        username: str,
        email: str,
        password_hash: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        role: str = "user",
        enabled: bool = True,
    ) -> User:
        user = User(
            id=str(uuid.uuid4()),
            username=username,
            email=normalize_email(email),
            password_hash=password_hash,
            first_name=first_name,
            last_name=last_name,
            role=role,
            enabled=enabled,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, username, email, password_hash, first_name, last_name, role, enabled, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.username,
                        user.email,
                        user.password_hash,
                        first_name,
                        last_name,
                        role,
                        enabled,
                        user.created_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            raise self._violation(exc) from exc
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE username = %s", (username,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def set_user_last_login(self, user_id: str, at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET last_login_at = %s WHERE id = %s", (at, user_id)
            )

    def set_user_enabled(self, user_id: str, enabled: bool) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET enabled = %s WHERE id = %s RETURNING *",
                (enabled, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    # service accounts
    def create_service_account(
        self,
        service_name: str,
        description: str,
        api_key_hash: str,
        *,
        lookup_hint: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> ServiceAccount:
        account = ServiceAccount(
            id=str(uuid.uuid4()),
            service_name=service_name,
            description=description,
            api_key_hash=api_key_hash,
            lookup_hint=lookup_hint,
            active=True,
            created_at=created_at or utcnow(),
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO service_account (id, service_name, description, api_key_hash, lookup_hint, active, created_at)
                    VALUES (%s, %s, %s, %s, %s, TRUE, %s)
                    """,
                    (
                        account.id,
                        service_name,
                        description,
                        api_key_hash,
                        lookup_hint,
                        account.created_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            raise self._violation(exc) from exc
        return account

    def get_service_account(self, account_id: str) -> Optional[ServiceAccount]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM service_account WHERE id = %s", (account_id,)
            ).fetchone()
        return self._account_from_row(row) if row else None

    def get_service_account_by_name(self, service_name: str) -> Optional[ServiceAccount]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM service_account WHERE service_name = %s
                ORDER BY active DESC, created_at DESC LIMIT 1
                """,
                (service_name,),
            ).fetchone()
        return self._account_from_row(row) if row else None

    def list_service_accounts(
        self, *, active: Optional[bool] = None, lookup_hint: Optional[str] = None
    ) -> List[ServiceAccount]:
        clauses: list[str] = []
        params: list[Any] = []
        if active is not None:
            clauses.append("active = %s")
            params.append(active)
        if lookup_hint is not None:
            clauses.append("lookup_hint = %s")
            params.append(lookup_hint)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM service_account {where} ORDER BY created_at",
                params,
            ).fetchall()
        return [self._account_from_row(row) for row in rows]

    def touch_service_account(self, account_id: str, at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE service_account SET last_used_at = %s WHERE id = %s",
                (at, account_id),
            )

    def deactivate_service_account(
        self, account_id: str, at: datetime
    ) -> Optional[ServiceAccount]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE service_account SET active = FALSE, revoked_at = COALESCE(revoked_at, %s)
                WHERE id = %s RETURNING *
                """,
                (at, account_id),
            ).fetchone()
        return self._account_from_row(row) if row else None

    # refresh tokens
    def create_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO refresh_token (id, principal_kind, principal_id, token, expires_at, revoked, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        record.id,
                        record.principal_kind,
                        record.principal_id,
                        record.token,
                        record.expires_at,
                        record.revoked,
                        record.created_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            raise self._violation(exc) from exc
        return record

    def get_refresh_token(self, token: str) -> Optional[RefreshTokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token = %s", (token,)
            ).fetchone()
        return self._token_from_row(row) if row else None

    def get_active_refresh_token(
        self, principal_kind: str, principal_id: str, now: datetime
    ) -> Optional[RefreshTokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM refresh_token
                WHERE principal_kind = %s AND principal_id = %s
                  AND NOT revoked AND expires_at > %s
                ORDER BY created_at DESC LIMIT 1
                """,
                (principal_kind, principal_id, now),
            ).fetchone()
        return self._token_from_row(row) if row else None

    def list_refresh_tokens(
        self, principal_kind: str, principal_id: str
    ) -> List[RefreshTokenRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM refresh_token
                WHERE principal_kind = %s AND principal_id = %s
                ORDER BY created_at
                """,
                (principal_kind, principal_id),
            ).fetchall()
        return [self._token_from_row(row) for row in rows]

    def revoke_refresh_token(self, token: str, at: datetime) -> Optional[RefreshTokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE refresh_token
                SET revoked = TRUE, revoked_at = COALESCE(revoked_at, %s)
                WHERE token = %s RETURNING *
                """,
                (at, token),
            ).fetchone()
        return self._token_from_row(row) if row else None

    def revoke_principal_refresh_tokens(
        self, principal_kind: str, principal_id: str, at: datetime
    ) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE refresh_token SET revoked = TRUE, revoked_at = %s
                WHERE principal_kind = %s AND principal_id = %s AND NOT revoked
                """,
                (at, principal_kind, principal_id),
            )
            return result.rowcount

    def delete_expired_refresh_tokens(self, before: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM refresh_token WHERE expires_at <= %s", (before,)
            )
            return result.rowcount

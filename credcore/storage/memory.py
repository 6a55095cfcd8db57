from __future__ import annotations

import copy
import json
import threading
import uuid
from contextlib import contextmanager
from dataclasses import asdict, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from credcore.logging import get_logger
from credcore.storage.common import as_utc, normalize_email
from credcore.storage.errors import ConstraintViolation
from credcore.storage.models import RefreshTokenRecord, ServiceAccount, User, utcnow

_DATETIME_FIELDS = {
    "created_at",
    "last_login_at",
    "last_used_at",
    "revoked_at",
    "expires_at",
}


class MemoryStore:
    """In-process credential store with a JSON snapshot under ``fs_root``.

    Every read returns a copy so callers cannot mutate stored rows behind the
    store's back. ``transaction()`` holds the data lock for the whole unit of
    work and restores the pre-transaction state if the block raises.
    """

    def __init__(self, fs_root: str = "/tmp/credcore", *, persist: bool = True) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.service_accounts: Dict[str, ServiceAccount] = {}
        self.refresh_tokens: Dict[str, RefreshTokenRecord] = {}
        # RLock so store methods can be called from inside transaction()
        self._data_lock = threading.RLock()
        self._tx_depth = 0
        self.persist = persist
        self.fs_root = Path(fs_root)
        if self.persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "credential_store.json"

    # transactions
    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._data_lock:
            outermost = self._tx_depth == 0
            snapshot = self._snapshot() if outermost else None
            self._tx_depth += 1
            try:
                try:
                    yield
                finally:
                    self._tx_depth -= 1
                if outermost:
                    self._persist_state()
            except BaseException:
                if outermost:
                    self._restore(snapshot)
                    self.logger.debug("memory_store_rollback")
                raise

    def _snapshot(self) -> dict[str, Any]:
        return {
            "users": copy.deepcopy(self.users),
            "service_accounts": copy.deepcopy(self.service_accounts),
            "refresh_tokens": copy.deepcopy(self.refresh_tokens),
        }

    def _restore(self, snapshot: Optional[dict[str, Any]]) -> None:
        if snapshot is None:
            return
        self.users = snapshot["users"]
        self.service_accounts = snapshot["service_accounts"]
        self.refresh_tokens = snapshot["refresh_tokens"]

    def _commit(self) -> None:
        """Persist immediately unless an enclosing transaction will."""
        if self._tx_depth == 0:
            self._persist_state()

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
        normalized_email = normalize_email(email)
        with self._data_lock:
            if any(u.username == username for u in self.users.values()):
                raise ConstraintViolation(
                    "username already exists", {"field": "username"}
                )
            if any(u.email == normalized_email for u in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                username=username,
                email=normalized_email,
                password_hash=password_hash,
                first_name=first_name,
                last_name=last_name,
                role=role,
                enabled=enabled,
            )
            self.users[user.id] = user
            self._commit()
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.username == username), None)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized_email = normalize_email(email)
        with self._data_lock:
            user = next(
                (u for u in self.users.values() if u.email == normalized_email), None
            )
            return replace(user) if user else None

    def set_user_last_login(self, user_id: str, at: datetime) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.last_login_at = at
            self._commit()

    def set_user_enabled(self, user_id: str, enabled: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.enabled = enabled
            self._commit()
            return replace(user)

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
        with self._data_lock:
            for existing in self.service_accounts.values():
                if existing.active and existing.service_name == service_name:
                    raise ConstraintViolation(
                        "service name already exists", {"field": "service_name"}
                    )
                if existing.api_key_hash == api_key_hash:
                    raise ConstraintViolation(
                        "api key digest already exists", {"field": "api_key_hash"}
                    )
            account = ServiceAccount(
                id=str(uuid.uuid4()),
                service_name=service_name,
                description=description,
                api_key_hash=api_key_hash,
                lookup_hint=lookup_hint,
                active=True,
                created_at=created_at or utcnow(),
            )
            self.service_accounts[account.id] = account
            self._commit()
            return replace(account)

    def get_service_account(self, account_id: str) -> Optional[ServiceAccount]:
        with self._data_lock:
            account = self.service_accounts.get(account_id)
            return replace(account) if account else None

    def get_service_account_by_name(self, service_name: str) -> Optional[ServiceAccount]:
        """Return the active account for ``service_name``, else the newest revoked one."""
        with self._data_lock:
            matches = [
                a for a in self.service_accounts.values() if a.service_name == service_name
            ]
            if not matches:
                return None
            matches.sort(key=lambda a: (a.active, a.created_at), reverse=True)
            return replace(matches[0])

    def list_service_accounts(
        self, *, active: Optional[bool] = None, lookup_hint: Optional[str] = None
    ) -> List[ServiceAccount]:
        with self._data_lock:
            results = [
                replace(a)
                for a in self.service_accounts.values()
                if (active is None or a.active == active)
                and (lookup_hint is None or a.lookup_hint == lookup_hint)
            ]
        return sorted(results, key=lambda a: a.created_at)

    def touch_service_account(self, account_id: str, at: datetime) -> None:
        with self._data_lock:
            account = self.service_accounts.get(account_id)
            if not account:
                return
            account.last_used_at = at
            self._commit()

    def deactivate_service_account(
        self, account_id: str, at: datetime
    ) -> Optional[ServiceAccount]:
        with self._data_lock:
            account = self.service_accounts.get(account_id)
            if not account:
                return None
            account.active = False
            account.revoked_at = at
            self._commit()
            return replace(account)

    # refresh tokens
    def create_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord:
        with self._data_lock:
            if any(r.token == record.token for r in self.refresh_tokens.values()):
                raise ConstraintViolation(
                    "refresh token already exists", {"field": "token"}
                )
            stored = replace(record)
            self.refresh_tokens[stored.id] = stored
            self._commit()
            return replace(stored)

    def get_refresh_token(self, token: str) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            record = next(
                (r for r in self.refresh_tokens.values() if r.token == token), None
            )
            return replace(record) if record else None

    def get_active_refresh_token(
        self, principal_kind: str, principal_id: str, now: datetime
    ) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            active = [
                r
                for r in self.refresh_tokens.values()
                if r.principal_kind == principal_kind
                and r.principal_id == principal_id
                and r.is_active(now)
            ]
            if not active:
                return None
            newest = max(active, key=lambda r: r.created_at)
            return replace(newest)

    def list_refresh_tokens(
        self, principal_kind: str, principal_id: str
    ) -> List[RefreshTokenRecord]:
        with self._data_lock:
            results = [
                replace(r)
                for r in self.refresh_tokens.values()
                if r.principal_kind == principal_kind and r.principal_id == principal_id
            ]
        return sorted(results, key=lambda r: r.created_at)

    def revoke_refresh_token(self, token: str, at: datetime) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            record = next(
                (r for r in self.refresh_tokens.values() if r.token == token), None
            )
            if not record:
                return None
            if not record.revoked:
                record.revoked = True
                record.revoked_at = at
                self._commit()
            return replace(record)

    def revoke_principal_refresh_tokens(
        self, principal_kind: str, principal_id: str, at: datetime
    ) -> int:
        with self._data_lock:
            revoked = 0
            for record in self.refresh_tokens.values():
                if (
                    record.principal_kind == principal_kind
                    and record.principal_id == principal_id
                    and not record.revoked
                ):
                    record.revoked = True
                    record.revoked_at = at
                    revoked += 1
            if revoked:
                self._commit()
            return revoked

    def delete_expired_refresh_tokens(self, before: datetime) -> int:
        with self._data_lock:
            stale = [
                rid for rid, r in self.refresh_tokens.items() if r.expires_at <= before
            ]
            for rid in stale:
                self.refresh_tokens.pop(rid, None)
            if stale:
                self._commit()
            return len(stale)

    # persistence
    @staticmethod
    def _serialize(obj: Any) -> dict:
        data = asdict(obj)
        for key in _DATETIME_FIELDS & data.keys():
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data

    @staticmethod
    def _deserialize_fields(data: dict) -> dict:
        parsed = dict(data)
        for key in _DATETIME_FIELDS & parsed.keys():
            if parsed[key]:
                parsed[key] = as_utc(datetime.fromisoformat(parsed[key]))
        return parsed

    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "users": [self._serialize(u) for u in self.users.values()],
            "service_accounts": [
                self._serialize(a) for a in self.service_accounts.values()
            ],
            "refresh_tokens": [
                self._serialize(r) for r in self.refresh_tokens.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {
            u["id"]: User(**self._deserialize_fields(u)) for u in data.get("users", [])
        }
        self.service_accounts = {
            a["id"]: ServiceAccount(**self._deserialize_fields(a))
            for a in data.get("service_accounts", [])
        }
        self.refresh_tokens = {
            r["id"]: RefreshTokenRecord(**self._deserialize_fields(r))
            for r in data.get("refresh_tokens", [])
        }
        self.logger.info(
            "memory_store_loaded",
            users=len(self.users),
            service_accounts=len(self.service_accounts),
        )
        return True

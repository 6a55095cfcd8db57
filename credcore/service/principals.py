"""Principals: the identities tokens are issued to.

A principal is either a :class:`UserPrincipal` or a
:class:`ServiceAccountPrincipal`. Both expose the same capability set, so the
token codec and refresh-token rotation never branch on the variant; only the
claim set and the persisted row differ.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple, Union

from credcore.storage.models import (
    PRINCIPAL_SERVICE,
    PRINCIPAL_USER,
    ServiceAccount,
    User,
)

ROLE_SERVICE = "ROLE_SERVICE"


@dataclass(frozen=True)
class UserPrincipal:
    user: User
    kind: str = PRINCIPAL_USER

    @property
    def principal_id(self) -> str:
        return self.user.id

    def identifier(self) -> str:
        return self.user.username

    def credential_digest(self) -> str:
        return self.user.password_hash

    def authorities(self) -> Tuple[str, ...]:
        return (f"ROLE_{self.user.role.upper()}",)

    def is_enabled(self) -> bool:
        return self.user.enabled


@dataclass(frozen=True)
class ServiceAccountPrincipal:
    account: ServiceAccount
    kind: str = PRINCIPAL_SERVICE

    @property
    def principal_id(self) -> str:
        return self.account.id

    def identifier(self) -> str:
        return self.account.service_name

    def credential_digest(self) -> str:
        return self.account.api_key_hash

    def authorities(self) -> Tuple[str, ...]:
        return (ROLE_SERVICE,)

    def is_enabled(self) -> bool:
        return self.account.active

    def service_claims(self) -> dict:
        return {
            "service_name": self.account.service_name,
            "service_id": self.account.id,
            "type": "service",
        }


Principal = Union[UserPrincipal, ServiceAccountPrincipal]


__all__ = [
    "Principal",
    "ROLE_SERVICE",
    "ServiceAccountPrincipal",
    "UserPrincipal",
]

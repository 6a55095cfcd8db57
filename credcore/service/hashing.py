from __future__ import annotations

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from credcore.config import Settings
from credcore.logging import get_logger

logger = get_logger(__name__)

ALGORITHM = "argon2id"


class CredentialHasher:
    """Salted one-way digests for passwords and API keys.

    Every call to :meth:`hash` draws a fresh salt, so two digests of the same
    secret differ; the only way to match a secret is :meth:`verify`.
    Verification is intentionally CPU- and memory-expensive.
    """

    algorithm = ALGORITHM

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost: int = 65536,
        parallelism: int = 4,
    ) -> None:
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "CredentialHasher":
        return cls(
            time_cost=settings.argon2_time_cost,
            memory_cost=settings.argon2_memory_cost,
            parallelism=settings.argon2_parallelism,
        )

    def hash(self, secret: str) -> str:
        return self._hasher.hash(secret)

    def verify(self, secret: str, digest: str) -> bool:
        """Constant-time check of ``secret`` against a stored digest."""
        if not secret or not digest:
            return False
        try:
            return self._hasher.verify(digest, secret)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("credential_digest_unverifiable", algo=self.algorithm)
            return False

    def needs_rehash(self, digest: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(digest)
        except InvalidHash:
            return True

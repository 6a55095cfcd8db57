from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Mapping, Optional, Union

from credcore.config import Settings
from credcore.logging import get_logger
from credcore.service.errors import MalformedToken
from credcore.service.principals import Principal
from credcore.storage.models import utcnow

logger = get_logger(__name__)

Clock = Callable[[], datetime]
TTL = Union[int, float, timedelta]

TOKEN_ACCESS = "access"
TOKEN_REFRESH = "refresh"

# Claim names the codec owns; extra claims may not shadow them
REGISTERED_CLAIMS = frozenset(
    {"iss", "aud", "sub", "iat", "exp", "jti", "token_type", "principal_type"}
)

# verification failure reasons
MALFORMED = "malformed"
EXPIRED = "expired"
WRONG_TYPE = "wrong_type"
SUBJECT_MISMATCH = "subject_mismatch"
DISABLED = "disabled"


@dataclass
class TokenVerification:
    valid: bool
    claims: dict[str, Any] = field(default_factory=dict)
    reason: Optional[str] = None
    payload: dict[str, Any] = field(default_factory=dict)


def _ttl_seconds(ttl: TTL) -> float:
    if isinstance(ttl, timedelta):
        return ttl.total_seconds()
    return float(ttl)


class TokenCodec:
    """Compact HS256-signed tokens carrying a subject, claims and an expiry.

    Access and refresh tokens share one format and differ only in the
    ``token_type`` claim and their lifetime. Validity is decided by the
    signature and the expiry alone; nothing here touches storage.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str = "credcore",
        audience: str = "credcore-clients",
        access_ttl: TTL = 3600,
        refresh_ttl: TTL = 7 * 24 * 3600,
        leeway_seconds: float = 0,
        clock: Clock = utcnow,
    ) -> None:
        if not secret:
            raise ValueError("token signing secret must not be empty")
        self._secret = secret.encode("utf-8")
        self.issuer = issuer
        self.audience = audience
        self.access_ttl = _ttl_seconds(access_ttl)
        self.refresh_ttl = _ttl_seconds(refresh_ttl)
        self.leeway_seconds = leeway_seconds
        self.clock = clock

    @classmethod
    def from_settings(cls, settings: Settings, *, clock: Clock = utcnow) -> "TokenCodec":
        return cls(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl=settings.access_token_ttl_seconds,
            refresh_ttl=settings.refresh_token_ttl_seconds,
            leeway_seconds=settings.clock_skew_leeway_seconds,
            clock=clock,
        )

    # issuing
    def issue_access_token(
        self,
        principal: Principal,
        extra_claims: Optional[Mapping[str, Any]] = None,
        ttl: Optional[TTL] = None,
    ) -> str:
        claims = dict(extra_claims or {})
        shadowed = REGISTERED_CLAIMS & claims.keys()
        if shadowed:
            raise ValueError(f"extra claims may not override {sorted(shadowed)}")
        payload = self._base_payload(
            principal, TOKEN_ACCESS, self.access_ttl if ttl is None else _ttl_seconds(ttl)
        )
        payload.update(claims)
        return self._encode(payload)

    def issue_refresh_token(self, principal: Principal, ttl: Optional[TTL] = None) -> str:
        payload = self._base_payload(
            principal, TOKEN_REFRESH, self.refresh_ttl if ttl is None else _ttl_seconds(ttl)
        )
        return self._encode(payload)

    def _base_payload(
        self, principal: Principal, token_type: str, ttl_seconds: float
    ) -> dict[str, Any]:
        now = self.clock().timestamp()
        return {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": principal.identifier(),
            "principal_type": principal.kind,
            "token_type": token_type,
            # jti keeps two tokens minted in the same second distinct
            "jti": uuid.uuid4().hex,
            "iat": int(now),
            "exp": int(now + ttl_seconds),
        }

    # verification
    def verify(
        self,
        token: str,
        expected_principal: Principal,
        *,
        token_type: str = TOKEN_ACCESS,
    ) -> TokenVerification:
        """Check ``token`` against the principal it claims to belong to.

        Never raises for a bad token; the failure is reported through
        ``TokenVerification.reason``. ``claims`` holds only the extra claims
        given at issue time.
        """
        try:
            payload = self._decode(token)
        except MalformedToken:
            return TokenVerification(valid=False, reason=MALFORMED)
        if payload.get("token_type") != token_type:
            return TokenVerification(valid=False, reason=WRONG_TYPE, payload=payload)
        if self.is_expired(payload):
            return TokenVerification(valid=False, reason=EXPIRED, payload=payload)
        if (
            payload.get("sub") != expected_principal.identifier()
            or payload.get("principal_type") != expected_principal.kind
        ):
            return TokenVerification(valid=False, reason=SUBJECT_MISMATCH, payload=payload)
        if not expected_principal.is_enabled():
            return TokenVerification(valid=False, reason=DISABLED, payload=payload)
        claims = {k: v for k, v in payload.items() if k not in REGISTERED_CLAIMS}
        return TokenVerification(valid=True, claims=claims, payload=payload)

    def is_expired(self, payload: Mapping[str, Any]) -> bool:
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            return True
        # A token checked at exactly its expiry instant is already expired
        return exp_ts <= self.clock().timestamp() - self.leeway_seconds

    def extract_subject(self, token: str) -> str:
        """Signature-checked subject, used to find the candidate principal."""
        subject = self.peek_claims(token).get("sub")
        if not isinstance(subject, str) or not subject:
            raise MalformedToken("Token has no subject")
        return subject

    def peek_claims(self, token: str) -> dict[str, Any]:
        """Decode a token whose signature is valid without enforcing expiry."""
        return self._decode(token)

    # wire format
    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode(self, token: str) -> dict[str, Any]:
        if not token or not isinstance(token, str):
            raise MalformedToken()
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise MalformedToken() from None

        # Pin the algorithm so a forged header cannot downgrade verification
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("token_header_decode_failed")
            raise MalformedToken() from None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "token_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise MalformedToken()

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            raise MalformedToken()
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("token_payload_decode_failed", error=str(exc))
            raise MalformedToken() from None
        if not isinstance(payload, dict):
            raise MalformedToken()
        if payload.get("iss") != self.issuer or payload.get("aud") != self.audience:
            raise MalformedToken()
        return payload


__all__ = [
    "Clock",
    "REGISTERED_CLAIMS",
    "TOKEN_ACCESS",
    "TOKEN_REFRESH",
    "TokenCodec",
    "TokenVerification",
]

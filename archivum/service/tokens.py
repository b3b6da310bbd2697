from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from archivum.config import Settings
from archivum.logging import get_logger
from archivum.service.errors import InvalidOrExpiredTokenError
from archivum.storage.models import Role

logger = get_logger(__name__)

_TOKEN_ERROR = "invalid or expired token"


class TokenKind(str, Enum):
    """Tier of a signed token; decides which routes accept it."""

    ACCESS = "access"
    SETUP = "setup"
    PENDING = "pending"


@dataclass(frozen=True)
class TokenClaims:
    """Decoded claims of a signed token.

    ``role`` is present only on access tokens. Setup and pending tokens carry
    nothing but the subject, so they cannot be mistaken for an access grant.
    """

    kind: TokenKind
    user_id: str
    role: Optional[Role] = None
    issued_at: int = 0
    expires_at: int = 0
    jti: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_payload(self, *, issuer: str, audience: str) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "iss": issuer,
            "aud": audience,
            "sub": self.user_id,
            "iat": self.issued_at,
            "exp": self.expires_at,
            "jti": self.jti,
        }
        if self.kind is TokenKind.ACCESS:
            payload["role"] = int(self.role)
        elif self.kind is TokenKind.SETUP:
            payload["setup_mode"] = True
        else:
            payload["pending_2fa"] = True
        return payload

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "TokenClaims":
        """Recover the tagged variant, rejecting ambiguous or partial shapes."""

        sub = payload.get("sub")
        if not isinstance(sub, str) or not sub:
            raise ValueError("missing subject")
        setup = payload.get("setup_mode") is True
        pending = payload.get("pending_2fa") is True
        has_role = "role" in payload
        if setup and pending:
            raise ValueError("conflicting token flags")
        if (setup or pending) and has_role:
            raise ValueError("two-factor token carries a role")
        if setup:
            kind, role = TokenKind.SETUP, None
        elif pending:
            kind, role = TokenKind.PENDING, None
        elif has_role:
            raw_role = payload["role"]
            if isinstance(raw_role, bool) or not isinstance(raw_role, int):
                raise ValueError("role must be an integer")
            kind, role = TokenKind.ACCESS, Role(raw_role)
        else:
            raise ValueError("token carries neither role nor flag")
        return cls(
            kind=kind,
            user_id=sub,
            role=role,
            issued_at=int(payload.get("iat", 0)),
            expires_at=int(payload["exp"]),
            jti=str(payload.get("jti", "")),
        )


class TokenCodec:
    """HS256 compact tokens signed with the configured JWT secret."""

    def __init__(self, settings: Settings, *, clock=time.time) -> None:
        self.settings = settings
        self._secret = settings.jwt_secret.encode()
        self._clock = clock

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

    def encode(self, claims: TokenClaims) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload = claims.to_payload(
            issuer=self.settings.jwt_issuer, audience=self.settings.jwt_audience
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def decode(self, token: str) -> TokenClaims:
        """Verify ``token`` and return its claims.

        Raises :class:`InvalidOrExpiredTokenError` for every failure so callers
        cannot distinguish a bad signature from an expired token.
        """
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            raise InvalidOrExpiredTokenError(_TOKEN_ERROR)

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise InvalidOrExpiredTokenError(_TOKEN_ERROR)
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidOrExpiredTokenError(_TOKEN_ERROR)

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not sig_b64.isascii() or not hmac.compare_digest(expected_sig, sig_b64):
            raise InvalidOrExpiredTokenError(_TOKEN_ERROR)

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidOrExpiredTokenError(_TOKEN_ERROR)
        if not isinstance(payload, dict):
            raise InvalidOrExpiredTokenError(_TOKEN_ERROR)

        if payload.get("iss") != self.settings.jwt_issuer:
            raise InvalidOrExpiredTokenError(_TOKEN_ERROR)
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            raise InvalidOrExpiredTokenError(_TOKEN_ERROR)

        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise InvalidOrExpiredTokenError(_TOKEN_ERROR)
        if exp_ts <= self._clock() - self.settings.token_leeway_seconds:
            raise InvalidOrExpiredTokenError(_TOKEN_ERROR)

        try:
            return TokenClaims.from_payload(payload)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("jwt_claims_malformed", error=str(exc))
            raise InvalidOrExpiredTokenError(_TOKEN_ERROR)

    def _issue(self, kind: TokenKind, user_id: str, ttl_minutes: int, role: Optional[Role] = None) -> str:
        now = int(self._clock())
        claims = TokenClaims(
            kind=kind,
            user_id=user_id,
            role=role,
            issued_at=now,
            expires_at=now + ttl_minutes * 60,
        )
        return self.encode(claims)

    def issue_access(self, user_id: str, role: Role) -> str:
        return self._issue(
            TokenKind.ACCESS, user_id, self.settings.access_token_ttl_minutes, Role.parse(role)
        )

    def issue_setup(self, user_id: str) -> str:
        return self._issue(TokenKind.SETUP, user_id, self.settings.setup_token_ttl_minutes)

    def issue_pending(self, user_id: str) -> str:
        return self._issue(TokenKind.PENDING, user_id, self.settings.pending_token_ttl_minutes)

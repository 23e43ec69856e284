"""Stateless HS256 bearer tokens.

Three token types share one format and differ in the ``type`` claim and TTL:
``access`` (short lived, presented on every call), ``refresh`` (long lived,
exchanged for new access tokens) and ``two_factor`` (minutes, only good for
finishing a login whose second factor is still pending). Verification never
touches storage; revocation is enforced by the session registry.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from accountcore.config import Settings
from accountcore.logging import get_logger
from accountcore.service.errors import (
    TokenBadSignatureError,
    TokenExpiredError,
    TokenMalformedError,
    TokenWrongTypeError,
)
from accountcore.storage.models import TokenPayload, TokenType, utcnow

logger = get_logger(__name__)


def fingerprint(token: str) -> str:
    """SHA-256 hex digest used to store and look up tokens without keeping them."""
    return hashlib.sha256(token.encode()).hexdigest()


class TokenService:
    def __init__(self, settings: Settings, *, clock: Callable[[], datetime] = utcnow) -> None:
        self.settings = settings
        self._clock = clock
        self._secret = settings.jwt_secret.encode()
        self._ttls = {
            TokenType.ACCESS: timedelta(minutes=settings.access_token_ttl_minutes),
            TokenType.REFRESH: timedelta(minutes=settings.refresh_token_ttl_minutes),
            TokenType.TWO_FACTOR: timedelta(minutes=settings.two_factor_token_ttl_minutes),
        }
        self._leeway = settings.token_leeway_seconds

    def ttl(self, token_type: TokenType) -> timedelta:
        return self._ttls[token_type]

    def issue_access(
        self, account_id: str, email: str, role: str, *, session_id: Optional[str] = None
    ) -> str:
        return self._issue(TokenType.ACCESS, account_id, email, role, session_id)

    def issue_refresh(
        self, account_id: str, email: str, role: str, *, session_id: Optional[str] = None
    ) -> str:
        return self._issue(TokenType.REFRESH, account_id, email, role, session_id)

    def issue_two_factor(self, account_id: str, email: str, role: str) -> str:
        return self._issue(TokenType.TWO_FACTOR, account_id, email, role, None)

    def _issue(
        self,
        token_type: TokenType,
        account_id: str,
        email: str,
        role: str,
        session_id: Optional[str],
    ) -> str:
        now = self._clock()
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": account_id,
            "email": email,
            "role": getattr(role, "value", role),
            "type": token_type.value,
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int((now + self._ttls[token_type]).timestamp()),
        }
        if session_id:
            payload["sid"] = session_id
        return self._encode_jwt(payload)

    def verify(self, token: str, expected_type: TokenType) -> TokenPayload:
        """Decode and check a token, raising the most specific token error.

        Checks run structure, signature, claims, type, then expiry, so a
        token of the wrong type is reported as such even after it expired.
        """
        payload = self._decode_jwt(token)
        if payload.get("iss") != self.settings.jwt_issuer:
            raise TokenMalformedError("token issuer mismatch")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            raise TokenMalformedError("token audience mismatch")
        try:
            token_type = TokenType(payload.get("type"))
            exp = int(payload["exp"])
            iat = int(payload.get("iat", exp))
            account_id = str(payload["sub"])
        except (KeyError, TypeError, ValueError):
            raise TokenMalformedError("token claims incomplete")
        if token_type != expected_type:
            raise TokenWrongTypeError(
                f"expected {expected_type.value} token",
                detail={"token_type": token_type.value},
            )
        if self._clock().timestamp() > exp + self._leeway:
            raise TokenExpiredError("token expired")
        return TokenPayload(
            account_id=account_id,
            email=str(payload.get("email", "")),
            role=str(payload.get("role", "")),
            type=token_type,
            issued_at=datetime.fromtimestamp(iat, tz=timezone.utc),
            expires_at=datetime.fromtimestamp(exp, tz=timezone.utc),
            jti=str(payload.get("jti", "")),
            session_id=payload.get("sid"),
        )

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

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> dict[str, Any]:
        if not isinstance(token, str):
            raise TokenMalformedError("token must be a string")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenMalformedError("token is not a compact JWS")

        # pin the algorithm; never trust the header to pick one
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            raise TokenMalformedError("token header unreadable")
        alg = header.get("alg") if isinstance(header, dict) else None
        if alg != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=alg)
            raise TokenMalformedError("unsupported token algorithm")

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            raise TokenBadSignatureError("token signature mismatch")
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenMalformedError("token payload unreadable")
        if not isinstance(payload, dict):
            raise TokenMalformedError("token payload unreadable")
        return payload

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from edugate.config import Settings
from edugate.logging import get_logger
from edugate.service.errors import ExpiredTokenError, InvalidTokenError
from edugate.storage.models import User

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


@dataclass(frozen=True)
class AuthClaims:
    """Decoded token payload; never persisted."""

    user_id: str
    email: str
    token_type: str
    exp: int
    iat: int
    jti: str
    role: Optional[str] = None
    centre_id: Optional[str] = None
    curs_id: Optional[str] = None


class TokenIssuer:
    """Mints and verifies compact HS256 JWTs.

    Access and refresh tokens are signed with different secrets, so a token
    of one kind can never verify as the other even if the ``token_type``
    claim were forged.
    """

    def __init__(
        self, settings: Settings, *, clock: Optional[Callable[[], datetime]] = None
    ) -> None:
        self.settings = settings
        self._clock = clock

    def _now(self) -> datetime:
        if self._clock is not None:
            return self._clock()
        return datetime.now(timezone.utc)

    @property
    def access_ttl_seconds(self) -> int:
        return self.settings.access_token_ttl_minutes * 60

    @property
    def refresh_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.refresh_token_ttl_minutes)

    def _secret_for(self, token_type: str) -> bytes:
        if token_type == ACCESS:
            return self.settings.access_token_secret.encode()
        return self.settings.refresh_token_secret.encode()

    def issue_access(self, user: User) -> str:
        now = int(self._now().timestamp())
        payload = {
            "iss": self.settings.jwt_issuer,
            "sub": user.id,
            "email": user.email,
            "role": user.role,
            "centre_id": user.centre_id,
            "curs_id": user.curs_id,
            "token_type": ACCESS,
            "jti": str(uuid.uuid4()),
            "iat": now,
            "exp": now + self.access_ttl_seconds,
        }
        return self._encode_jwt(payload, self._secret_for(ACCESS))

    def issue_refresh(self, user: User) -> str:
        now = int(self._now().timestamp())
        payload = {
            "iss": self.settings.jwt_issuer,
            "sub": user.id,
            "email": user.email,
            "token_type": REFRESH,
            "jti": str(uuid.uuid4()),
            "iat": now,
            "exp": now + int(self.refresh_ttl.total_seconds()),
        }
        return self._encode_jwt(payload, self._secret_for(REFRESH))

    def verify_access(self, token: str) -> AuthClaims:
        return self._verify(token, ACCESS)

    def verify_refresh(self, token: str) -> AuthClaims:
        return self._verify(token, REFRESH)

    def _verify(self, token: str, token_type: str) -> AuthClaims:
        payload = self._decode_jwt(token, self._secret_for(token_type))
        if payload.get("token_type") != token_type:
            raise InvalidTokenError("Token invàlid")
        try:
            exp = int(payload["exp"])
            claims = AuthClaims(
                user_id=str(payload["sub"]),
                email=str(payload.get("email") or ""),
                token_type=token_type,
                exp=exp,
                iat=int(payload.get("iat", 0)),
                jti=str(payload.get("jti") or ""),
                role=payload.get("role"),
                centre_id=payload.get("centre_id"),
                curs_id=payload.get("curs_id"),
            )
        except (KeyError, TypeError, ValueError):
            raise InvalidTokenError("Token invàlid")
        if exp <= self._now().timestamp():
            raise ExpiredTokenError("Token expirat")
        return claims

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _encode_jwt(self, payload: dict[str, Any], secret: bytes) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        signature = hmac.new(secret, signing_input.encode(), hashlib.sha256).digest()
        return f"{signing_input}.{self._encode_segment(signature)}"

    def _decode_jwt(self, token: str, secret: bytes) -> dict[str, Any]:
        # compact JWTs are base64url; anything else cannot reach compare_digest
        if not token or not isinstance(token, str) or not token.isascii():
            raise InvalidTokenError("Token invàlid")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidTokenError("Token invàlid")

        # only HS256 is accepted
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise InvalidTokenError("Token invàlid")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidTokenError("Token invàlid")

        signing_input = f"{header_b64}.{payload_b64}"
        expected_sig = self._encode_segment(
            hmac.new(secret, signing_input.encode(), hashlib.sha256).digest()
        )
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise InvalidTokenError("Token invàlid")
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidTokenError("Token invàlid")
        if not isinstance(payload, dict):
            raise InvalidTokenError("Token invàlid")
        if payload.get("iss") != self.settings.jwt_issuer:
            raise InvalidTokenError("Token invàlid")
        return payload

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from claimdesk.logging import get_logger
from claimdesk.service.errors import ServerError
from claimdesk.storage.models import User

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


class InvalidToken(Exception):
    """Token failed verification; never says why."""

    def __init__(self) -> None:
        super().__init__("invalid token")


class TokenIssuer:
    """Mints and verifies HS256-signed access and refresh tokens."""

    def __init__(
        self,
        secret: Optional[str],
        *,
        issuer: str,
        audience: str,
        access_ttl: timedelta = timedelta(minutes=15),
        refresh_ttl: timedelta = timedelta(days=7),
        leeway: timedelta = timedelta(0),
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if not secret:
            raise ServerError("token signing secret is not configured")
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.leeway = leeway
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def issue_access_token(self, user: User) -> str:
        return self._issue(
            {
                "sub": user.id,
                "username": user.username,
                "email": user.email,
                "role": user.role.value,
                "type": ACCESS,
            },
            self.access_ttl,
        )

    def issue_refresh_token(self, user: User) -> str:
        return self._issue(
            {"sub": user.id, "username": user.username, "type": REFRESH},
            self.refresh_ttl,
        )

    def verify(self, token: str, expected_type: Optional[str] = None) -> dict[str, Any]:
        """Return the claims of a valid token or raise :class:`InvalidToken`."""
        payload = self._decode(token)
        if payload is None:
            raise InvalidToken()
        if expected_type is not None and payload.get("type") != expected_type:
            logger.info("token_type_mismatch", expected=expected_type)
            raise InvalidToken()
        return payload

    def _issue(self, claims: dict[str, Any], ttl: timedelta) -> str:
        now = self._clock()
        payload = {
            **claims,
            "iss": self.issuer,
            "aud": self.audience,
            "iat": int(now.timestamp()),
            "exp": int((now + ttl).timestamp()),
            # keeps tokens minted in the same second distinct
            "jti": str(uuid.uuid4()),
        }
        return self._encode(payload)

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

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

    def _decode(self, token: str) -> Optional[dict[str, Any]]:
        if not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # reject anything but HS256 to rule out algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.issuer or payload.get("aud") != self.audience:
            return None
        if not payload.get("sub"):
            return None
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            return None
        if exp_ts <= self._clock().timestamp() - self.leeway.total_seconds():
            return None
        return payload

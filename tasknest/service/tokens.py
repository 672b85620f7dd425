from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from tasknest.logging import get_logger
from tasknest.service.errors import ServerError

logger = get_logger(__name__)


class TokenSigner:
    """HS256 JSON web tokens signed with the shared server secret."""

    def __init__(
        self,
        secret: Optional[str],
        *,
        issuer: str,
        audience: str,
        clock_skew: timedelta = timedelta(seconds=30),
    ) -> None:
        self._secret = secret
        self.issuer = issuer
        self.audience = audience
        self._clock_skew = clock_skew

    def _key(self) -> bytes:
        if not self._secret:
            logger.error("jwt_secret_not_configured")
            raise ServerError("token signing is not configured")
        return self._secret.encode()

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _signature(self, signing_input: str) -> str:
        digest = hmac.new(self._key(), signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def sign(
        self,
        claims: dict[str, Any],
        ttl: timedelta,
        *,
        now: Optional[datetime] = None,
    ) -> str:
        """Return a compact token carrying ``claims`` plus the registered claims."""
        issued = now or datetime.now(timezone.utc)
        payload = {
            **claims,
            "iss": self.issuer,
            "aud": self.audience,
            "iat": int(issued.timestamp()),
            "exp": int((issued + ttl).timestamp()),
            "jti": str(uuid.uuid4()),
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._signature(signing_input)}"

    def verify(self, token: str, *, now: Optional[datetime] = None) -> Optional[dict[str, Any]]:
        """Claims of a well-formed, correctly signed, unexpired token, else None."""
        self._key()
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            return None

        # Only HS256 is accepted; anything else is an algorithm confusion attempt
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        expected = self._signature(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            if self.audience not in aud:
                return None
        elif aud != self.audience:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        current = (now or datetime.now(timezone.utc)).timestamp()
        if exp_ts <= current - self._clock_skew.total_seconds():
            return None
        return payload

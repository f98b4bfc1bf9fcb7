from __future__ import annotations

import base64
import hashlib
import hmac
import json
import re
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from zentik_auth.config import Settings
from zentik_auth.logging import get_logger
from zentik_auth.storage.models import User

logger = get_logger(__name__)

_DURATION_RE = re.compile(r"^(\d+)([dhms])$")
_DURATION_UNITS = {"d": 86400, "h": 3600, "m": 60, "s": 1}
DEFAULT_DURATION = timedelta(days=7)


def parse_duration(value: str | None) -> timedelta:
    """Parse ``15m`` / ``7d`` style durations; anything else means seven days."""
    if not value:
        return DEFAULT_DURATION
    match = _DURATION_RE.match(str(value).strip())
    if not match:
        logger.warning("duration_unparseable", value=value)
        return DEFAULT_DURATION
    amount, unit = match.groups()
    return timedelta(seconds=int(amount) * _DURATION_UNITS[unit])


class TokenError(Exception):
    """Base class for JWT verification failures."""


class InvalidSignature(TokenError):
    """Token is malformed, signed with another key/algorithm, or of the wrong type."""


class TokenExpired(TokenError):
    """Token signature is valid but its ``exp`` has passed."""


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    token_id: str
    access_expires_at: datetime
    refresh_expires_at: datetime

    def as_dict(self) -> Dict[str, str]:
        return {"access_token": self.access_token, "refresh_token": self.refresh_token}


class TokenIssuer:
    """Mints and verifies HS256 access/refresh JWT pairs.

    Both tokens of a pair carry the same ``jti``; that value is the join key
    to the owning ``UserSession``. Secrets and TTLs are resolved on every call
    from the store's system settings first and ``Settings`` second, so they
    can be rotated without a restart.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        system_settings: Optional[Callable[[], Dict[str, Any]]] = None,
        clock_skew_leeway: timedelta = timedelta(seconds=30),
    ) -> None:
        self.settings = settings
        self._system_settings = system_settings
        self._clock_skew_leeway = clock_skew_leeway

    def _resolve(self, key: str) -> Any:
        if self._system_settings:
            try:
                overrides = self._system_settings() or {}
            except Exception as exc:
                logger.warning("token_settings_lookup_failed", error=str(exc))
                overrides = {}
            if overrides.get(key):
                return overrides[key]
        return getattr(self.settings, key)

    @property
    def access_secret(self) -> str:
        return self._resolve("jwt_secret")

    @property
    def refresh_secret(self) -> str:
        return self._resolve("jwt_refresh_secret")

    @property
    def access_ttl(self) -> timedelta:
        return parse_duration(self._resolve("jwt_access_token_expiration"))

    @property
    def refresh_ttl(self) -> timedelta:
        return parse_duration(self._resolve("jwt_refresh_token_expiration"))

    def issue_token_pair(self, user: User) -> TokenPair:
        now = datetime.now(timezone.utc)
        token_id = str(uuid.uuid4())
        claims = {"sub": user.id, "email": user.email, "jti": token_id}
        access_expires_at = now + self.access_ttl
        refresh_expires_at = now + self.refresh_ttl
        access_token = self.encode(
            {
                **claims,
                "type": "access",
                "iat": int(now.timestamp()),
                "exp": int(access_expires_at.timestamp()),
            },
            self.access_secret,
        )
        refresh_token = self.encode(
            {
                **claims,
                "type": "refresh",
                "iat": int(now.timestamp()),
                "exp": int(refresh_expires_at.timestamp()),
            },
            self.refresh_secret,
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            token_id=token_id,
            access_expires_at=access_expires_at,
            refresh_expires_at=refresh_expires_at,
        )

    def verify_access_token(self, token: str) -> dict[str, Any]:
        return self.verify(token, self.access_secret, expected_type="access")

    def verify_refresh_token(self, token: str) -> dict[str, Any]:
        return self.verify(token, self.refresh_secret, expected_type="refresh")

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def encode(self, payload: dict[str, Any], secret: str) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        signature = hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
        return f"{signing_input}.{self._encode_segment(signature)}"

    def verify(
        self, token: str, secret: str, *, expected_type: Optional[str] = None
    ) -> dict[str, Any]:
        """Return the claims of ``token`` or raise ``InvalidSignature`` / ``TokenExpired``."""
        if not token or not isinstance(token, str):
            raise InvalidSignature("token missing")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidSignature("token malformed")

        # Reject anything but HS256 to rule out algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            raise InvalidSignature("token header malformed")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg") if isinstance(header, dict) else None)
            raise InvalidSignature("unsupported algorithm")

        signing_input = f"{header_b64}.{payload_b64}"
        expected_sig = self._encode_segment(
            hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
        )
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise InvalidSignature("signature mismatch")
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidSignature("token payload malformed")
        if not isinstance(payload, dict) or not payload.get("sub") or not payload.get("jti"):
            raise InvalidSignature("token claims incomplete")
        if expected_type and payload.get("type") != expected_type:
            raise InvalidSignature("unexpected token type")
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            raise InvalidSignature("token expiry missing")
        if exp_ts <= time.time() - self._clock_skew_leeway.total_seconds():
            raise TokenExpired("token expired")
        return payload


__all__ = [
    "DEFAULT_DURATION",
    "InvalidSignature",
    "TokenError",
    "TokenExpired",
    "TokenIssuer",
    "TokenPair",
    "parse_duration",
]

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Literal, Mapping, Optional

from zentik_auth.config import Settings
from zentik_auth.logging import get_logger
from zentik_auth.service.access_tokens import AccessTokenManager
from zentik_auth.service.errors import AuthenticationError
from zentik_auth.service.sessions import SessionManager
from zentik_auth.service.tokens import TokenError, TokenIssuer
from zentik_auth.storage.models import User

logger = get_logger(__name__)

ACCESS_COOKIE = "zat_access"
REFRESH_COOKIE = "zat_refresh"
LEGACY_ACCESS_COOKIE = "accessToken"

CredentialKind = Literal["jwt", "access_token", "system"]


@dataclass(frozen=True)
class Credential:
    kind: CredentialKind
    token: str


@dataclass
class AuthContext:
    """Who is calling and with what rights.

    ``scopes`` is None for JWT callers (full account-owner rights) and the
    token's scope list for opaque access tokens.
    """

    kind: CredentialKind
    user: Optional[User] = None
    token_id: Optional[str] = None
    scopes: Optional[List[str]] = field(default=None)
    raw_token: Optional[str] = None

    @property
    def user_id(self) -> Optional[str]:
        return self.user.id if self.user else None


def _bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, value = header.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    value = value.strip()
    return value or None


def extract_credential(
    authorization: Optional[str] = None,
    query: Optional[Mapping[str, str]] = None,
    cookies: Optional[Mapping[str, str]] = None,
) -> Optional[str]:
    """Header first, then the ``token`` query parameter, then cookies."""
    token = _bearer(authorization)
    if token:
        return token
    if query and query.get("token"):
        return query["token"]
    if cookies:
        for name in (ACCESS_COOKIE, LEGACY_ACCESS_COOKIE):
            if cookies.get(name):
                return cookies[name]
    return None


def classify_credential(raw: str, settings: Settings) -> Credential:
    if raw.startswith(settings.access_token_prefix):
        return Credential("access_token", raw)
    if raw.startswith(settings.system_token_prefix):
        return Credential("system", raw)
    return Credential("jwt", raw)


class AuthGateway:
    """Resolves the caller for every protected request; any failure is 401."""

    def __init__(
        self,
        store,
        settings: Settings,
        issuer: TokenIssuer,
        sessions: SessionManager,
        access_tokens: AccessTokenManager,
    ) -> None:
        self.store = store
        self.settings = settings
        self.issuer = issuer
        self.sessions = sessions
        self.access_tokens = access_tokens

    async def authenticate(
        self,
        authorization: Optional[str] = None,
        query: Optional[Mapping[str, str]] = None,
        cookies: Optional[Mapping[str, str]] = None,
    ) -> AuthContext:
        raw = extract_credential(authorization, query, cookies)
        if not raw:
            raise AuthenticationError("Authentication required")
        credential = classify_credential(raw, self.settings)
        if credential.kind == "system":
            # verified by the system-token guard, not here
            return AuthContext(kind="system", raw_token=credential.token)
        if credential.kind == "access_token":
            return await self._authenticate_access_token(credential.token)
        return self._authenticate_jwt(credential.token)

    async def _authenticate_access_token(self, token: str) -> AuthContext:
        resolved = await self.access_tokens.validate_token(token)
        if not resolved:
            logger.info("access_token_rejected")
            raise AuthenticationError("Invalid access token")
        user, scopes = resolved
        return AuthContext(kind="access_token", user=user, scopes=scopes)

    def _authenticate_jwt(self, token: str) -> AuthContext:
        try:
            claims = self.issuer.verify_access_token(token)
        except TokenError as exc:
            logger.info("jwt_rejected", reason=type(exc).__name__)
            raise AuthenticationError("Invalid token") from exc
        user = self.store.get_user(claims["sub"])
        if not user:
            raise AuthenticationError("Invalid token")
        session = self.sessions.validate_refresh_token(claims["jti"])
        if not session or session.user_id != user.id:
            logger.info("jwt_session_inactive", user_id=user.id)
            raise AuthenticationError("Session expired or revoked")
        self.sessions.update_session_activity(claims["jti"])
        return AuthContext(kind="jwt", user=user, token_id=claims["jti"], raw_token=token)


__all__ = [
    "ACCESS_COOKIE",
    "AuthContext",
    "AuthGateway",
    "Credential",
    "LEGACY_ACCESS_COOKIE",
    "REFRESH_COOKIE",
    "classify_credential",
    "extract_credential",
]

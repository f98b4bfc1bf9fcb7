from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProviderType(str, Enum):
    """External identity provider kinds (and the LOCAL password login)."""

    GITHUB = "GITHUB"
    GOOGLE = "GOOGLE"
    DISCORD = "DISCORD"
    APPLE = "APPLE"
    APPLE_SIGNIN = "APPLE_SIGNIN"
    CUSTOM = "CUSTOM"
    LOCAL = "LOCAL"


@dataclass
class User:
    id: str
    email: str
    username: str
    password: Optional[str] = None
    has_password: bool = False
    email_confirmed: bool = False
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    avatar: Optional[str] = None
    locale: Optional[str] = None
    reset_token: Optional[str] = None
    reset_token_requested_at: Optional[datetime] = None
    email_confirmation_token: Optional[str] = None
    email_confirmation_token_requested_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class UserIdentity:
    id: str
    user_id: str
    provider_type: ProviderType
    provider_user_id: Optional[str] = None
    email: Optional[str] = None
    avatar_url: Optional[str] = None
    metadata: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class UserSession:
    """One logical login; ``token_id`` is the jti of the current refresh token."""

    id: str
    user_id: str
    token_id: str
    expires_at: datetime
    last_activity: datetime = field(default_factory=utcnow)
    is_active: bool = True
    device_name: Optional[str] = None
    operating_system: Optional[str] = None
    browser: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    login_provider: Optional[str] = None
    exchange_code: Optional[str] = None
    exchange_code_requested_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        user_id: str,
        token_id: str,
        expires_at: datetime,
        *,
        device_name: str | None = None,
        operating_system: str | None = None,
        browser: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        login_provider: str | None = None,
    ) -> "UserSession":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token_id=token_id,
            expires_at=expires_at,
            last_activity=now,
            is_active=True,
            device_name=device_name,
            operating_system=operating_system,
            browser=browser,
            ip_address=ip_address,
            user_agent=user_agent,
            login_provider=login_provider,
            created_at=now,
            updated_at=now,
        )

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.expires_at <= (now or utcnow())


@dataclass
class UserAccessToken:
    id: str
    user_id: str
    name: str
    token_hash: str
    token: Optional[str] = None
    scopes: List[str] = field(default_factory=list)
    expires_at: Optional[datetime] = None
    last_used: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.expires_at is not None and self.expires_at <= (now or utcnow())


@dataclass
class OAuthProviderConfig:
    id: str
    name: str
    provider_id: str
    type: ProviderType
    client_id: str
    client_secret: str
    callback_url: Optional[str] = None
    scopes: List[str] = field(default_factory=list)
    is_enabled: bool = True
    icon_url: Optional[str] = None
    color: Optional[str] = None
    text_color: Optional[str] = None
    authorization_url: Optional[str] = None
    token_url: Optional[str] = None
    user_info_url: Optional[str] = None
    profile_fields: Optional[Dict[str, str]] = None
    team_id: Optional[str] = None
    key_id: Optional[str] = None
    private_key_path: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, provider_id: str, type: ProviderType | str, **kwargs) -> "OAuthProviderConfig":
        kwargs.setdefault("name", provider_id)
        kwargs.setdefault("client_id", "")
        kwargs.setdefault("client_secret", "")
        return cls(
            id=str(uuid.uuid4()),
            provider_id=provider_id,
            type=ProviderType(type),
            **kwargs,
        )

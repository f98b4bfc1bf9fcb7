from __future__ import annotations

import asyncio
import base64
import binascii
import dataclasses
import json
import os
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode

import httpx

from zentik_auth.config import Settings
from zentik_auth.logging import get_logger
from zentik_auth.service.errors import AuthenticationError, ProviderUnavailableError
from zentik_auth.service.identity import IdentityLinker, decode_unverified_claims
from zentik_auth.service.profiles import normalize_profile
from zentik_auth.service.sessions import SessionManager
from zentik_auth.service.tokens import TokenError, TokenIssuer
from zentik_auth.storage.models import OAuthProviderConfig, ProviderType, User

logger = get_logger(__name__)

USER_AGENT = "Zentik-OAuth-Client/1.0"

# authorization, token, user-info
_DEFAULT_ENDPOINTS: Dict[ProviderType, Tuple[str, str, Optional[str]]] = {
    ProviderType.GITHUB: (
        "https://github.com/login/oauth/authorize",
        "https://github.com/login/oauth/access_token",
        "https://api.github.com/user",
    ),
    ProviderType.GOOGLE: (
        "https://accounts.google.com/o/oauth2/v2/auth",
        "https://oauth2.googleapis.com/token",
        "https://openidconnect.googleapis.com/v1/userinfo",
    ),
    ProviderType.DISCORD: (
        "https://discord.com/api/oauth2/authorize",
        "https://discord.com/api/oauth2/token",
        "https://discord.com/api/users/@me",
    ),
    ProviderType.APPLE: (
        "https://appleid.apple.com/auth/authorize",
        "https://appleid.apple.com/auth/token",
        None,
    ),
}


@dataclass(frozen=True)
class AdapterConfig:
    """The fields an adapter is built from; equality drives update diffing."""

    provider_id: str
    type: ProviderType
    client_id: str
    client_secret: str
    callback_url: str
    scopes: Tuple[str, ...]
    authorization_url: Optional[str]
    token_url: Optional[str]
    user_info_url: Optional[str]
    profile_fields: Tuple[Tuple[str, str], ...] = ()

    def changed_fields(self, other: "AdapterConfig") -> List[str]:
        return [
            f.name
            for f in dataclasses.fields(self)
            if getattr(self, f.name) != getattr(other, f.name)
        ]

    @property
    def profile_field_map(self) -> Dict[str, str]:
        return dict(self.profile_fields)


class OAuthAdapter:
    """Authorization-code client for one configured provider."""

    def __init__(
        self,
        config: AdapterConfig,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 30.0,
    ) -> None:
        self.config = config
        self._transport = transport
        self._timeout = timeout

    def authorization_url(self, state: str) -> str:
        params = {
            "client_id": self.config.client_id,
            "redirect_uri": self.config.callback_url,
            "response_type": "code",
            "state": state,
        }
        if self.config.scopes:
            params["scope"] = " ".join(self.config.scopes)
        if self.config.type == ProviderType.APPLE:
            params["response_mode"] = "form_post"
        return f"{self.config.authorization_url}?{urlencode(params)}"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self._timeout,
            follow_redirects=False,
            transport=self._transport,
            headers={"User-Agent": USER_AGENT},
        )

    async def exchange_code(self, code: str) -> Dict[str, Any]:
        """Trade an authorization code for the provider's raw profile."""
        provider_id = self.config.provider_id
        try:
            async with self._client() as client:
                token_response = await client.post(
                    self.config.token_url,
                    data={
                        "client_id": self.config.client_id,
                        "client_secret": self.config.client_secret,
                        "code": code,
                        "redirect_uri": self.config.callback_url,
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                token_result = token_response.json()
                if not isinstance(token_result, dict):
                    raise ProviderUnavailableError()

                if self.config.type == ProviderType.APPLE:
                    claims = decode_unverified_claims(token_result.get("id_token", ""))
                    if not claims.get("sub"):
                        logger.error("oauth_id_token_missing_subject", provider_id=provider_id)
                        raise ProviderUnavailableError()
                    return claims

                access_token = token_result.get("access_token")
                if not access_token:
                    logger.error("oauth_no_access_token", provider_id=provider_id)
                    raise ProviderUnavailableError()
                return await self._fetch_user_info(client, access_token)
        except httpx.HTTPStatusError as exc:
            logger.error(
                "oauth_exchange_http_error",
                provider_id=provider_id,
                status_code=exc.response.status_code,
            )
            raise ProviderUnavailableError() from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("oauth_exchange_error", provider_id=provider_id, error=str(exc))
            raise ProviderUnavailableError() from exc

    async def _fetch_user_info(self, client: httpx.AsyncClient, access_token: str) -> Dict[str, Any]:
        if not self.config.user_info_url:
            logger.error("oauth_user_info_url_missing", provider_id=self.config.provider_id)
            raise ProviderUnavailableError()
        accept = (
            "application/vnd.github+json"
            if self.config.type == ProviderType.GITHUB
            else "application/json"
        )
        response = await client.get(
            self.config.user_info_url,
            headers={"Authorization": f"Bearer {access_token}", "Accept": accept},
        )
        response.raise_for_status()
        profile = response.json()
        if not isinstance(profile, dict):
            logger.error("oauth_user_info_invalid", provider_id=self.config.provider_id)
            raise ProviderUnavailableError()
        return profile


@dataclass(frozen=True)
class RegisteredProvider:
    name: str
    adapter: OAuthAdapter
    config: AdapterConfig


@dataclass
class CallbackResult:
    user: User
    provider_id: str
    provider_type: ProviderType
    connected: bool
    state: Dict[str, Any]


def encode_state(payload: Dict[str, Any]) -> str:
    raw = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def decode_state(state: Optional[str]) -> Dict[str, Any]:
    """Decode the base64url JSON state; an unreadable state is treated as empty."""
    if not state:
        return {}
    padded = state + "=" * (-len(state) % 4)
    try:
        decoded = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")))
    except (binascii.Error, UnicodeError, ValueError) as exc:
        logger.warning("oauth_state_decode_failed", error=str(exc))
        return {}
    return decoded if isinstance(decoded, dict) else {}


class ProviderRegistry:
    """Live set of OAuth adapters kept in step with stored provider configs.

    The registered map is copy-on-write: every mutation builds a new dict
    and swaps it in under a lock, so readers always see a complete snapshot
    and a live adapter is never modified in place.
    """

    def __init__(
        self,
        store,
        settings: Settings,
        issuer: TokenIssuer,
        linker: IdentityLinker,
        *,
        sessions: Optional[SessionManager] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.issuer = issuer
        self.linker = linker
        self.sessions = sessions
        self._transport = transport
        self._providers: Dict[str, RegisteredProvider] = {}
        self._lock = threading.Lock()
        self._initialized = False

    # state
    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def registered_provider_ids(self) -> List[str]:
        return sorted(self._providers)

    def is_registered(self, provider_id: str) -> bool:
        return provider_id in self._providers

    def get_configuration(self, provider_id: str) -> Optional[AdapterConfig]:
        if not self._initialized:
            logger.warning("oauth_registry_not_initialized", provider_id=provider_id)
            return None
        entry = self._providers.get(provider_id)
        return entry.config if entry else None

    def get_adapter(self, provider_id: str) -> OAuthAdapter:
        entry = self._providers.get(provider_id)
        if not entry:
            logger.info("oauth_provider_unavailable", provider_id=provider_id)
            raise ProviderUnavailableError()
        return entry.adapter

    def public_providers(self) -> List[Dict[str, Any]]:
        providers = []
        for provider_id in self.registered_provider_ids():
            config = self.store.get_provider_config(provider_id)
            if not config:
                continue
            providers.append(
                {
                    "provider_id": config.provider_id,
                    "name": config.name,
                    "type": config.type.value,
                    "icon_url": config.icon_url,
                    "color": config.color,
                    "text_color": config.text_color,
                }
            )
        return providers

    # building
    def default_callback_url(self, provider_id: str) -> str:
        base = self.settings.public_backend_url.rstrip("/")
        return f"{base}/v1/auth/{provider_id}/callback"

    def build_adapter_config(self, config: OAuthProviderConfig) -> AdapterConfig:
        defaults = _DEFAULT_ENDPOINTS.get(config.type, (None, None, None))
        return AdapterConfig(
            provider_id=config.provider_id,
            type=config.type,
            client_id=config.client_id or "",
            client_secret=config.client_secret or "",
            callback_url=config.callback_url or self.default_callback_url(config.provider_id),
            scopes=tuple(config.scopes or ()),
            authorization_url=config.authorization_url or defaults[0],
            token_url=config.token_url or defaults[1],
            user_info_url=config.user_info_url or defaults[2],
            profile_fields=tuple(sorted((config.profile_fields or {}).items())),
        )

    def _create_adapter(
        self, config: OAuthProviderConfig, adapter_config: AdapterConfig
    ) -> Optional[OAuthAdapter]:
        provider_id = config.provider_id
        if config.type not in _DEFAULT_ENDPOINTS and config.type != ProviderType.CUSTOM:
            logger.error("oauth_provider_type_unsupported", provider_id=provider_id, type=config.type.value)
            return None
        if not adapter_config.client_id or not adapter_config.client_secret:
            logger.warning("oauth_provider_credentials_missing", provider_id=provider_id)
            return None
        if not adapter_config.authorization_url or not adapter_config.token_url:
            logger.warning("oauth_provider_endpoints_missing", provider_id=provider_id)
            return None
        if config.type == ProviderType.APPLE and config.private_key_path:
            if not (config.team_id and config.key_id and os.path.isfile(config.private_key_path)):
                logger.warning("oauth_provider_key_material_missing", provider_id=provider_id)
                return None
        return OAuthAdapter(adapter_config, transport=self._transport)

    def _swap(self, provider_id: str, entry: Optional[RegisteredProvider]) -> None:
        with self._lock:
            providers = dict(self._providers)
            if entry is None:
                providers.pop(provider_id, None)
            else:
                providers[provider_id] = entry
            self._providers = providers

    # lifecycle
    def register_provider(self, config: OAuthProviderConfig) -> bool:
        """Activate an adapter for ``config``; returns whether the live set changed."""
        if self.is_registered(config.provider_id):
            return self.update_provider(config)
        adapter_config = self.build_adapter_config(config)
        adapter = self._create_adapter(config, adapter_config)
        if adapter is None:
            logger.warning("oauth_adapter_not_created", provider_id=config.provider_id)
            return False
        self._swap(
            config.provider_id,
            RegisteredProvider(name=config.provider_id, adapter=adapter, config=adapter_config),
        )
        logger.info(
            "oauth_provider_registered",
            provider_id=config.provider_id,
            type=config.type.value,
        )
        return True

    def update_provider(self, config: OAuthProviderConfig) -> bool:
        if not config.is_enabled:
            logger.info("oauth_provider_disabled", provider_id=config.provider_id)
            return self.unregister_provider(config.provider_id)

        current = self._providers.get(config.provider_id)
        adapter_config = self.build_adapter_config(config)
        if current is not None:
            changed = current.config.changed_fields(adapter_config)
            if not changed:
                logger.debug("oauth_provider_unchanged", provider_id=config.provider_id)
                return False
            logger.info(
                "oauth_provider_config_changed",
                provider_id=config.provider_id,
                fields=changed,
            )

        adapter = self._create_adapter(config, adapter_config)
        if adapter is None:
            # A broken edit must not leave the previous credentials live
            self.unregister_provider(config.provider_id)
            return current is not None
        self._swap(
            config.provider_id,
            RegisteredProvider(name=config.provider_id, adapter=adapter, config=adapter_config),
        )
        logger.info("oauth_provider_updated", provider_id=config.provider_id)
        return True

    def unregister_provider(self, provider_id: str) -> bool:
        if not self.is_registered(provider_id):
            logger.debug("oauth_provider_not_registered", provider_id=provider_id)
            return False
        self._swap(provider_id, None)
        logger.info("oauth_provider_unregistered", provider_id=provider_id)
        return True

    def register_all_enabled(self) -> int:
        """Register every enabled provider; one bad config never blocks the rest."""
        configs = self.store.list_provider_configs(enabled_only=True)
        logger.info("oauth_providers_found", count=len(configs))
        registered = 0
        for config in configs:
            try:
                if self.register_provider(config):
                    registered += 1
            except Exception as exc:
                logger.error(
                    "oauth_provider_register_failed",
                    provider_id=config.provider_id,
                    error=str(exc),
                )
        return registered

    async def initialize_providers_async(self) -> bool:
        """Startup registration with linear backoff; gives up without raising."""
        max_retries = max(self.settings.provider_startup_max_retries, 1)
        delay = self.settings.provider_startup_delay_seconds
        backoff = self.settings.provider_startup_backoff_seconds
        for attempt in range(max_retries):
            await asyncio.sleep(delay + attempt * backoff)
            try:
                count = self.register_all_enabled()
            except Exception as exc:
                logger.warning(
                    "oauth_registry_init_failed",
                    attempt=attempt + 1,
                    max_retries=max_retries,
                    error=str(exc),
                )
                continue
            self._initialized = True
            logger.info("oauth_registry_initialized", registered=count)
            return True
        logger.error("oauth_registry_init_exhausted", max_retries=max_retries)
        return False

    # callback
    def _connect_user_id(self, state: Dict[str, Any]) -> Optional[str]:
        if not state.get("connectToUserId"):
            return None
        access_token = state.get("accessToken")
        if not access_token:
            return None
        try:
            claims = self.issuer.verify_access_token(access_token)
        except TokenError as exc:
            logger.warning("oauth_connect_token_invalid", reason=type(exc).__name__)
            raise AuthenticationError("Invalid access token for connection flow") from exc
        if self.sessions is not None and not self.sessions.validate_refresh_token(claims["jti"]):
            logger.warning("oauth_connect_session_inactive", user_id=claims["sub"])
            raise AuthenticationError("Invalid access token for connection flow")
        return claims["sub"]

    async def validate_callback(
        self,
        provider_id: str,
        raw_profile: Dict[str, Any],
        state: Optional[str] = None,
    ) -> CallbackResult:
        entry = self._providers.get(provider_id)
        if not entry:
            raise ProviderUnavailableError()
        decoded = decode_state(state)
        connect_user_id = self._connect_user_id(decoded)
        profile = normalize_profile(
            entry.config.type, raw_profile, entry.config.profile_field_map
        )
        if decoded.get("locale"):
            profile = dataclasses.replace(profile, locale=str(decoded["locale"]))
        user = await self.linker.find_or_create_user_from_provider(
            entry.config.type, profile, connect_user_id
        )
        return CallbackResult(
            user=user,
            provider_id=provider_id,
            provider_type=entry.config.type,
            connected=connect_user_id is not None,
            state=decoded,
        )


__all__ = [
    "AdapterConfig",
    "CallbackResult",
    "OAuthAdapter",
    "ProviderRegistry",
    "RegisteredProvider",
    "decode_state",
    "encode_state",
]

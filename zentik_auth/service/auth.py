from __future__ import annotations

import re
import secrets
import string
from dataclasses import dataclass, replace
from datetime import timedelta
from typing import Any, Dict, Optional, Tuple
from urllib.parse import quote

from zentik_auth.config import Settings
from zentik_auth.logging import get_logger
from zentik_auth.service.device import DeviceInfo, extract_device_info
from zentik_auth.service.email import EmailService
from zentik_auth.service.errors import (
    AuthenticationError,
    BadRequestError,
    ConflictError,
    RateLimitedError,
    ServerError,
)
from zentik_auth.service.hashing import SecretHasher
from zentik_auth.service.identity import IdentityLinker
from zentik_auth.service.oauth_registry import ProviderRegistry, decode_state, encode_state
from zentik_auth.service.sessions import SessionManager
from zentik_auth.service.tokens import TokenPair
from zentik_auth.storage.errors import ConstraintViolation
from zentik_auth.storage.models import ProviderType, User, UserSession, utcnow

logger = get_logger(__name__)

_CODE_ALPHABET = string.ascii_uppercase + string.digits
_EMAIL_RE = re.compile(r"\S+@\S+\.\S+")
_HTTP_RE = re.compile(r"^https?://", re.IGNORECASE)


def generate_short_code(length: int = 6) -> str:
    """Six characters from A-Z0-9, easy to read back from an email."""
    return "".join(secrets.choice(_CODE_ALPHABET) for _ in range(length))


def public_user(user: User) -> Dict[str, Any]:
    return {
        "id": user.id,
        "email": user.email,
        "username": user.username,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "avatar": user.avatar,
        "locale": user.locale,
        "has_password": user.has_password,
        "email_confirmed": user.email_confirmed,
        "created_at": user.created_at,
    }


@dataclass
class LoginResult:
    user: User
    tokens: TokenPair
    session: UserSession


@dataclass
class CallbackOutcome:
    """How the HTTP layer should finish an OAuth callback."""

    location: Optional[str] = None
    body: Optional[Dict[str, Any]] = None

    @property
    def is_redirect(self) -> bool:
        return self.location is not None


class AuthService:
    """Account-level flows composed from the session, identity and token parts."""

    def __init__(
        self,
        store,
        settings: Settings,
        hasher: SecretHasher,
        sessions: SessionManager,
        linker: IdentityLinker,
        registry: ProviderRegistry,
        email: EmailService,
    ) -> None:
        self.store = store
        self.settings = settings
        self.hasher = hasher
        self.sessions = sessions
        self.linker = linker
        self.registry = registry
        self.email = email

    # registration and login
    async def register(
        self,
        email: str,
        username: str,
        password: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        locale: Optional[str] = None,
        device_info: Optional[DeviceInfo] = None,
    ) -> Dict[str, Any]:
        if self.store.get_user_by_email(email):
            logger.info("register_conflict", field="email")
            raise ConflictError("Email already registered")
        if self.store.get_user_by_username(username):
            logger.info("register_conflict", field="username")
            raise ConflictError("Username already in use")

        digest = await self.hasher.hash_async(password)
        email_enabled = self.settings.email_enabled
        try:
            user = self.store.create_user(
                email,
                username,
                password=digest,
                has_password=True,
                email_confirmed=not email_enabled,
                first_name=first_name,
                last_name=last_name,
                locale=locale,
            )
        except ConstraintViolation as exc:
            raise ConflictError("Email or username already in use", detail={"field": exc.field}) from exc
        logger.info("user_registered", user_id=user.id)

        if email_enabled:
            try:
                outcome = self.request_email_confirmation(email, locale)
                logger.debug("register_confirmation_requested", user_id=user.id, sent=outcome["sent"])
            except ServerError:
                logger.warning("register_confirmation_send_failed", user_id=user.id)
            return {
                "message": "Registration completed successfully. Please check your email to confirm your account before logging in.",
                "user": user,
                "email_confirmation_required": True,
            }

        device = device_info or DeviceInfo()
        pair, session = self.sessions.start_session(
            user, _with_provider(device, ProviderType.LOCAL.value)
        )
        return {
            "message": "Registration completed successfully.",
            "user": user,
            "email_confirmation_required": False,
            "tokens": pair,
            "session": session,
        }

    async def _validate_user(self, identifier: str, password: str) -> Optional[User]:
        if _EMAIL_RE.fullmatch(identifier):
            user = self.store.get_user_by_email(identifier)
        else:
            user = self.store.get_user_by_username(identifier)
        if not user:
            # hash anyway so unknown accounts cost the same as wrong passwords
            await self.hasher.hash_async(password)
            return None
        if not user.has_password or not user.password:
            logger.info("login_no_password", user_id=user.id)
            return None
        if not await self.hasher.verify_async(user.password, password):
            return None
        if self.hasher.needs_rehash(user.password):
            self.store.update_user(user.id, password=await self.hasher.hash_async(password))
        return user

    async def login(
        self,
        password: str,
        *,
        email: Optional[str] = None,
        username: Optional[str] = None,
        device_info: Optional[DeviceInfo] = None,
    ) -> LoginResult:
        identifier = email or username
        if not identifier:
            raise BadRequestError("Email or username is required")
        user = await self._validate_user(identifier, password or "")
        if not user:
            logger.info("login_failed")
            raise AuthenticationError("Invalid credentials")
        if not user.email_confirmed:
            logger.info("login_email_unconfirmed", user_id=user.id)
            raise AuthenticationError(
                "Please confirm your email before logging in. Check your inbox for a confirmation email."
            )
        device = device_info or DeviceInfo()
        pair, session = self.sessions.start_session(
            user, _with_provider(device, ProviderType.LOCAL.value)
        )
        logger.info("login_succeeded", user_id=user.id, session_id=session.id)
        return LoginResult(user=user, tokens=pair, session=session)

    async def refresh_tokens(self, refresh_token: str) -> Tuple[TokenPair, UserSession]:
        return await self.sessions.refresh_tokens(refresh_token)

    def logout(self, token_id: Optional[str]) -> bool:
        if not token_id:
            return False
        return self.sessions.revoke_by_refresh_token(token_id)

    # external providers
    def login_with_external_provider(
        self,
        user: User,
        provider: str,
        *,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> LoginResult:
        if not user.email_confirmed:
            user = self.store.update_user(user.id, email_confirmed=True) or user
            logger.info("oauth_email_auto_confirmed", user_id=user.id)
        device = extract_device_info(user_agent, ip_address=ip_address, login_provider=provider)
        pair, session = self.sessions.start_session(user, device)
        logger.info("oauth_login_succeeded", user_id=user.id, provider=provider, session_id=session.id)
        return LoginResult(user=user, tokens=pair, session=session)

    def authorization_redirect(
        self,
        provider_id: str,
        *,
        redirect: Optional[str] = None,
        locale: Optional[str] = None,
        connect_user_id: Optional[str] = None,
        access_token: Optional[str] = None,
    ) -> str:
        adapter = self.registry.get_adapter(provider_id)
        state: Dict[str, Any] = {}
        if redirect:
            state["redirect"] = redirect
        if locale:
            state["locale"] = locale
        if connect_user_id and access_token:
            state["connectToUserId"] = connect_user_id
            state["accessToken"] = access_token
        return adapter.authorization_url(encode_state(state))

    def _issue_exchange_code(self, session: UserSession) -> str:
        code = self.sessions.generate_exchange_code()
        self.sessions.set_exchange_code(session.id, code)
        self.sessions.schedule_exchange_code_cleanup(session.id, code)
        return code

    async def complete_oauth_callback(
        self,
        provider_id: str,
        code: str,
        state: Optional[str] = None,
        *,
        redirect: Optional[str] = None,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> CallbackOutcome:
        if not code:
            raise BadRequestError("Authorization code is required")
        adapter = self.registry.get_adapter(provider_id)
        raw_profile = await adapter.exchange_code(code)
        result = await self.registry.validate_callback(provider_id, raw_profile, state)
        redirect_uri = redirect or decode_state(state).get("redirect")
        provider_label = quote(provider_id, safe="")

        if result.connected:
            logger.info("oauth_identity_connected", user_id=result.user.id, provider_id=provider_id)
            if redirect_uri and (
                redirect_uri.startswith(self.settings.mobile_app_scheme) or _HTTP_RE.match(redirect_uri)
            ):
                return CallbackOutcome(location=f"{redirect_uri}#connected=true&provider={provider_label}")
            return CallbackOutcome(
                body={
                    "message": "Provider connected successfully",
                    "connected": True,
                    "provider": provider_id,
                }
            )

        login = self.login_with_external_provider(
            result.user,
            result.provider_type.value,
            user_agent=user_agent,
            ip_address=ip_address,
        )
        if redirect_uri and (
            redirect_uri.startswith(self.settings.mobile_app_scheme) or _HTTP_RE.match(redirect_uri)
        ):
            exchange = self._issue_exchange_code(login.session)
            return CallbackOutcome(
                location=f"{redirect_uri}#code={exchange}&sessionId={login.session.id}"
            )
        return CallbackOutcome(
            body={"message": "Login successful", "connected": False, "provider": None}
        )

    async def exchange_code(self, code: str, session_id: Optional[str] = None) -> Tuple[TokenPair, UserSession]:
        if not code:
            raise BadRequestError("Code is required")
        return await self.sessions.redeem_exchange_code(code, session_id)

    async def login_with_apple_identity_token(
        self,
        identity_token: str,
        payload: Optional[Dict[str, Any]] = None,
        *,
        current_user_id: Optional[str] = None,
        device_info: Optional[DeviceInfo] = None,
    ) -> Optional[LoginResult]:
        """Mobile Apple sign-in; with ``current_user_id`` it only links the identity."""
        user = await self.linker.link_apple_identity_token(identity_token, payload, current_user_id)
        if current_user_id:
            return None
        device = device_info or DeviceInfo()
        pair, session = self.sessions.start_session(
            user, _with_provider(device, ProviderType.APPLE_SIGNIN.value)
        )
        return LoginResult(user=user, tokens=pair, session=session)

    # password reset
    def request_password_reset(self, email: str, locale: Optional[str] = None) -> bool:
        if not self.settings.email_enabled:
            logger.warning("password_reset_email_disabled")
            raise BadRequestError("Email functionality is disabled")
        user = self.store.get_user_by_email(email.lower())
        if not user:
            # same answer for unknown accounts
            logger.info("password_reset_unknown_email")
            return True

        now = utcnow()
        interval = timedelta(seconds=self.settings.password_reset_rate_limit_seconds)
        if user.reset_token_requested_at and now - user.reset_token_requested_at < interval:
            remaining = interval - (now - user.reset_token_requested_at)
            retry_after = max(int(remaining.total_seconds() + 0.999), 1)
            logger.info("password_reset_rate_limited", user_id=user.id, retry_after=retry_after)
            raise RateLimitedError(
                f"Please wait {retry_after} seconds before requesting another password reset",
                retry_after=retry_after,
            )

        code = generate_short_code()
        self.store.update_user(user.id, reset_token=code, reset_token_requested_at=now)
        if not self.email.send_password_reset_code(user.email, code, locale):
            # keep the timestamp so the rate limit still applies
            self.store.update_user(user.id, reset_token=None)
            logger.error("password_reset_send_failed", user_id=user.id)
            raise ServerError(
                "Failed to send password reset email with 6-character code. Please try again later."
            )
        logger.info("password_reset_requested", user_id=user.id)
        return True

    def _code_is_fresh(self, requested_at) -> bool:
        if not requested_at:
            return False
        return utcnow() - requested_at <= timedelta(hours=self.settings.code_validity_hours)

    def validate_reset_token(self, code: str) -> bool:
        if not code:
            return False
        user = self.store.find_user_by_reset_token(code)
        if not user:
            return False
        return self._code_is_fresh(user.reset_token_requested_at)

    async def reset_password(self, code: str, new_password: str) -> bool:
        if not self.validate_reset_token(code):
            raise BadRequestError("Invalid or expired reset code")
        user = self.store.find_user_by_reset_token(code)
        if not user:
            raise BadRequestError("Invalid reset code")
        digest = await self.hasher.hash_async(new_password)
        self.store.update_user(
            user.id,
            password=digest,
            has_password=True,
            reset_token=None,
            reset_token_requested_at=None,
        )
        logger.info("password_reset_completed", user_id=user.id)
        return True

    # email confirmation
    def request_email_confirmation(self, email: str, locale: Optional[str] = None) -> Dict[str, Any]:
        user = self.store.get_user_by_email(email)
        if not user:
            return {"sent": False, "reason": "Email not found"}
        if user.email_confirmed:
            return {"sent": False, "reason": "Email already confirmed"}
        code = generate_short_code()
        self.store.update_user(
            user.id,
            email_confirmation_token=code,
            email_confirmation_token_requested_at=utcnow(),
        )
        if not self.email.send_email_confirmation(user.email, code, locale):
            logger.warning("email_confirmation_send_failed", user_id=user.id)
            raise ServerError("Failed to send confirmation email")
        logger.info("email_confirmation_sent", user_id=user.id)
        return {"sent": True, "reason": None}

    def confirm_email(self, code: str, locale: Optional[str] = None) -> Dict[str, Any]:
        user = self.store.find_user_by_confirmation_token(code) if code else None
        if not user or not user.email_confirmation_token_requested_at:
            return {"confirmed": False, "reason": "Invalid code"}
        if not self._code_is_fresh(user.email_confirmation_token_requested_at):
            self.store.update_user(
                user.id,
                email_confirmation_token=None,
                email_confirmation_token_requested_at=None,
            )
            return {"confirmed": False, "reason": "Code expired"}
        self.store.update_user(
            user.id,
            email_confirmed=True,
            email_confirmation_token=None,
            email_confirmation_token_requested_at=None,
        )
        logger.info("email_confirmed", user_id=user.id)
        if not self.email.send_welcome_email(user.email, user.username, locale):
            logger.warning("welcome_email_failed", user_id=user.id)
        return {"confirmed": True, "reason": None}

    def is_email_confirmed(self, email: str) -> bool:
        user = self.store.get_user_by_email(email)
        return bool(user and user.email_confirmed)


def _with_provider(device: DeviceInfo, provider: str) -> DeviceInfo:
    if device.login_provider:
        return device
    return replace(device, login_provider=provider)


__all__ = [
    "AuthService",
    "CallbackOutcome",
    "LoginResult",
    "generate_short_code",
    "public_user",
]

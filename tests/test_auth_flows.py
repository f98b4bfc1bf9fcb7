"""Tests for account flows: registration, login, password reset, email
confirmation and the OAuth callback hand-off."""

import base64
import json
from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from zentik_auth.service.auth import AuthService, generate_short_code
from zentik_auth.service.device import DeviceInfo
from zentik_auth.service.errors import (
    AuthenticationError,
    BadRequestError,
    ConflictError,
    RateLimitedError,
    ServerError,
)
from zentik_auth.service.identity import IdentityLinker
from zentik_auth.service.oauth_registry import ProviderRegistry, decode_state, encode_state
from zentik_auth.service.sessions import SessionManager
from zentik_auth.service.tokens import TokenIssuer
from zentik_auth.storage.models import OAuthProviderConfig, ProviderType, utcnow


def discord_handler(request: httpx.Request) -> httpx.Response:
    if request.url.path.endswith("/oauth2/token"):
        return httpx.Response(200, json={"access_token": "dc-token"})
    if request.url.path.endswith("/users/@me"):
        return httpx.Response(
            200,
            json={"id": "555", "username": "wumpus", "email": "wumpus@example.com", "verified": True},
        )
    return httpx.Response(404)


def build_service(store, settings, hasher, email):
    issuer = TokenIssuer(settings, system_settings=store.get_system_settings)
    sessions = SessionManager(store, issuer, settings)
    linker = IdentityLinker(store, hasher, email)
    registry = ProviderRegistry(
        store,
        settings,
        issuer,
        linker,
        sessions=sessions,
        transport=httpx.MockTransport(discord_handler),
    )
    return AuthService(store, settings, hasher, sessions, linker, registry, email)


@pytest.fixture
def service(memory_store, settings, hasher, outbox):
    return build_service(memory_store, settings, hasher, outbox)


@pytest.fixture
def mail_service(memory_store, settings, hasher, outbox):
    """Service with email confirmation and password reset switched on."""
    return build_service(
        memory_store, settings.model_copy(update={"email_enabled": True}), hasher, outbox
    )


class TestRegistration:
    """Tests for local sign-up."""

    async def test_register_without_email_logs_in_immediately(self, service, memory_store):
        result = await service.register("ada@example.com", "ada", "correct horse")

        assert result["email_confirmation_required"] is False
        assert result["user"].email_confirmed is True
        assert result["user"].has_password is True
        assert result["session"].login_provider == "LOCAL"
        assert result["tokens"].token_id == result["session"].token_id
        assert result["user"].password != "correct horse"

    async def test_register_with_email_requires_confirmation(self, mail_service, outbox):
        result = await mail_service.register("ada@example.com", "ada", "correct horse")

        assert result["email_confirmation_required"] is True
        assert "tokens" not in result
        assert result["user"].email_confirmed is False
        assert outbox.sent[0]["to"] == "ada@example.com"

    async def test_duplicate_email_or_username_conflicts(self, service):
        await service.register("ada@example.com", "ada", "correct horse")

        with pytest.raises(ConflictError):
            await service.register("ADA@example.com", "ada2", "correct horse")
        with pytest.raises(ConflictError):
            await service.register("other@example.com", "ada", "correct horse")


class TestLogin:
    """Tests for password login."""

    async def test_login_by_email_or_username(self, service):
        await service.register("ada@example.com", "ada", "correct horse")

        by_email = await service.login("correct horse", email="ada@example.com")
        by_name = await service.login("correct horse", username="ada")

        assert by_email.user.id == by_name.user.id
        assert by_email.session.id != by_name.session.id

    async def test_login_keeps_supplied_device(self, service):
        await service.register("ada@example.com", "ada", "correct horse")

        result = await service.login(
            "correct horse",
            email="ada@example.com",
            device_info=DeviceInfo(device_name="Pixel", operating_system="Android"),
        )

        assert result.session.device_name == "Pixel"
        assert result.session.login_provider == "LOCAL"

    @pytest.mark.parametrize(
        "identifier,password",
        [("ada@example.com", "wrong"), ("nobody@example.com", "correct horse"), ("nobody", "x")],
    )
    async def test_bad_credentials_share_one_message(self, service, identifier, password):
        await service.register("ada@example.com", "ada", "correct horse")

        with pytest.raises(AuthenticationError) as exc_info:
            if "@" in identifier:
                await service.login(password, email=identifier)
            else:
                await service.login(password, username=identifier)
        assert exc_info.value.message == "Invalid credentials"

    async def test_missing_identifier(self, service):
        with pytest.raises(BadRequestError):
            await service.login("pw")

    async def test_unconfirmed_email_cannot_log_in(self, mail_service):
        await mail_service.register("ada@example.com", "ada", "correct horse")

        with pytest.raises(AuthenticationError) as exc_info:
            await mail_service.login("correct horse", email="ada@example.com")
        assert "confirm your email" in exc_info.value.message

    async def test_oauth_only_account_has_no_password_login(self, service, memory_store):
        memory_store.create_user("oauth@example.com", "oauth", email_confirmed=True)

        with pytest.raises(AuthenticationError):
            await service.login("anything", email="oauth@example.com")

    async def test_logout_revokes_session(self, service):
        await service.register("ada@example.com", "ada", "correct horse")
        login = await service.login("correct horse", username="ada")

        assert service.logout(login.tokens.token_id) is True
        with pytest.raises(AuthenticationError):
            await service.refresh_tokens(login.tokens.refresh_token)
        assert service.logout(None) is False


class TestPasswordReset:
    """Tests for the emailed reset code."""

    def test_short_codes(self):
        code = generate_short_code()

        assert len(code) == 6
        assert code.isalnum() and code.upper() == code

    def test_disabled_email_is_bad_request(self, service):
        with pytest.raises(BadRequestError):
            service.request_password_reset("ada@example.com")

    def test_unknown_email_looks_like_success(self, mail_service, outbox):
        assert mail_service.request_password_reset("ghost@example.com") is True
        assert outbox.sent == []

    async def test_reset_flow(self, mail_service, memory_store, hasher, outbox):
        user = memory_store.create_user("ada@example.com", "ada", email_confirmed=True)

        assert mail_service.request_password_reset("ada@example.com") is True
        code = memory_store.get_user(user.id).reset_token
        assert len(code) == 6
        assert mail_service.validate_reset_token(code) is True

        assert await mail_service.reset_password(code, "brand-new-pass") is True

        refreshed = memory_store.get_user(user.id)
        assert refreshed.reset_token is None
        assert refreshed.has_password is True
        assert hasher.verify(refreshed.password, "brand-new-pass")
        assert mail_service.validate_reset_token(code) is False

    def test_second_request_is_rate_limited(self, mail_service, memory_store):
        memory_store.create_user("ada@example.com", "ada")
        mail_service.request_password_reset("ada@example.com")

        with pytest.raises(RateLimitedError) as exc_info:
            mail_service.request_password_reset("ada@example.com")
        assert 1 <= exc_info.value.retry_after <= 60

    def test_failed_send_clears_code_but_keeps_timestamp(self, mail_service, memory_store, outbox):
        outbox.fail = True
        user = memory_store.create_user("ada@example.com", "ada")

        with pytest.raises(ServerError):
            mail_service.request_password_reset("ada@example.com")
        stored = memory_store.get_user(user.id)
        assert stored.reset_token is None
        assert stored.reset_token_requested_at is not None

    async def test_stale_code_is_rejected(self, mail_service, memory_store):
        user = memory_store.create_user("ada@example.com", "ada")
        memory_store.update_user(
            user.id, reset_token="ABC123", reset_token_requested_at=utcnow() - timedelta(hours=25)
        )

        assert mail_service.validate_reset_token("ABC123") is False
        with pytest.raises(BadRequestError):
            await mail_service.reset_password("ABC123", "brand-new-pass")


class TestEmailConfirmation:
    """Tests for confirming an address with a short code."""

    def test_confirm_email(self, mail_service, memory_store, outbox):
        user = memory_store.create_user("ada@example.com", "ada")

        assert mail_service.request_email_confirmation("ada@example.com") == {"sent": True, "reason": None}
        code = memory_store.get_user(user.id).email_confirmation_token

        assert mail_service.confirm_email(code) == {"confirmed": True, "reason": None}
        assert mail_service.is_email_confirmed("ada@example.com")
        assert outbox.sent[-1]["subject"] == "Welcome to Zentik"

    def test_request_for_unknown_or_confirmed(self, mail_service, memory_store):
        memory_store.create_user("done@example.com", "done", email_confirmed=True)

        assert mail_service.request_email_confirmation("none@example.com")["reason"] == "Email not found"
        assert mail_service.request_email_confirmation("done@example.com")["reason"] == "Email already confirmed"

    def test_expired_code_is_cleared(self, mail_service, memory_store):
        user = memory_store.create_user("ada@example.com", "ada")
        memory_store.update_user(
            user.id,
            email_confirmation_token="XYZ789",
            email_confirmation_token_requested_at=utcnow() - timedelta(hours=25),
        )

        assert mail_service.confirm_email("XYZ789") == {"confirmed": False, "reason": "Code expired"}
        assert memory_store.get_user(user.id).email_confirmation_token is None
        assert mail_service.confirm_email("XYZ789")["reason"] == "Invalid code"


class TestOAuthCallback:
    """Tests for finishing a provider login."""

    @pytest.fixture
    def discord(self, service):
        service.registry.register_provider(
            OAuthProviderConfig.new("discord", ProviderType.DISCORD, client_id="c", client_secret="s")
        )
        return service

    def test_authorization_redirect_encodes_state(self, discord):
        url = discord.authorization_redirect("discord", redirect="zentik://oauth", locale="de")

        state = parse_qs(urlparse(url).query)["state"][0]
        assert decode_state(state) == {"redirect": "zentik://oauth", "locale": "de"}

    async def test_mobile_redirect_carries_exchange_code(self, discord, memory_store):
        outcome = await discord.complete_oauth_callback(
            "discord",
            "auth-code",
            encode_state({"redirect": "zentik://oauth"}),
            user_agent="Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) Safari/604.1",
        )

        assert outcome.is_redirect
        fragment = parse_qs(urlparse(outcome.location).fragment)
        session = memory_store.get_session(fragment["sessionId"][0])
        assert session.exchange_code == fragment["code"][0]
        assert session.login_provider == "DISCORD"

        pair, redeemed = await discord.exchange_code(fragment["code"][0], session.id)
        assert redeemed.id == session.id
        assert redeemed.token_id == pair.token_id

    async def test_without_redirect_returns_body(self, discord):
        outcome = await discord.complete_oauth_callback("discord", "auth-code")

        assert not outcome.is_redirect
        assert outcome.body == {"message": "Login successful", "connected": False, "provider": None}

    async def test_untrusted_redirect_is_ignored(self, discord):
        outcome = await discord.complete_oauth_callback(
            "discord", "auth-code", encode_state({"redirect": "javascript:alert(1)"})
        )

        assert not outcome.is_redirect

    async def test_missing_code_is_bad_request(self, discord):
        with pytest.raises(BadRequestError):
            await discord.complete_oauth_callback("discord", "")

    async def test_connect_flow_redirects_with_marker(self, discord, memory_store):
        me = memory_store.create_user("me@example.com", "me", has_password=True, email_confirmed=True)
        access = discord.sessions.start_session(me, DeviceInfo())[0].access_token
        url = discord.authorization_redirect(
            "discord", redirect="https://app.zentik.test/settings", connect_user_id=me.id, access_token=access
        )
        state = parse_qs(urlparse(url).query)["state"][0]

        outcome = await discord.complete_oauth_callback("discord", "auth-code", state)

        assert outcome.location == "https://app.zentik.test/settings#connected=true&provider=discord"
        assert memory_store.get_identity_for_user(me.id, ProviderType.DISCORD) is not None

    async def test_connect_after_logout_is_rejected(self, discord, memory_store):
        me = memory_store.create_user("me@example.com", "me", has_password=True, email_confirmed=True)
        pair, _ = discord.sessions.start_session(me, DeviceInfo())
        url = discord.authorization_redirect(
            "discord", connect_user_id=me.id, access_token=pair.access_token
        )
        state = parse_qs(urlparse(url).query)["state"][0]
        discord.sessions.revoke_by_refresh_token(pair.token_id)

        with pytest.raises(AuthenticationError):
            await discord.complete_oauth_callback("discord", "auth-code", state)

        assert memory_store.get_identity_for_user(me.id, ProviderType.DISCORD) is None

    async def test_apple_mobile_sign_in_starts_session(self, service):
        claims = base64.urlsafe_b64encode(json.dumps({"sub": "apple-9"}).encode()).decode().rstrip("=")

        result = await service.login_with_apple_identity_token(
            f"h.{claims}.s", {"email": "tim@example.com"}
        )

        assert result.user.email == "tim@example.com"
        assert result.session.login_provider == "APPLE_SIGNIN"

"""Tests for resolving the caller of a protected request."""

import pytest

from zentik_auth.service.access_tokens import AccessTokenManager
from zentik_auth.service.device import DeviceInfo
from zentik_auth.service.errors import AuthenticationError
from zentik_auth.service.gateway import AuthGateway, classify_credential, extract_credential
from zentik_auth.service.sessions import SessionManager
from zentik_auth.service.tokens import TokenIssuer


@pytest.fixture
def issuer(settings):
    return TokenIssuer(settings)


@pytest.fixture
def sessions(memory_store, issuer, settings):
    return SessionManager(memory_store, issuer, settings)


@pytest.fixture
def access_tokens(memory_store, hasher, settings):
    return AccessTokenManager(memory_store, hasher, settings)


@pytest.fixture
def gateway(memory_store, settings, issuer, sessions, access_tokens):
    return AuthGateway(memory_store, settings, issuer, sessions, access_tokens)


@pytest.fixture
def user(memory_store):
    return memory_store.create_user("alan@example.com", "alan", email_confirmed=True)


def _login(sessions, user):
    pair, session = sessions.start_session(user, DeviceInfo(login_provider="LOCAL"))
    return pair, session


class TestExtraction:
    """Credential lookup order."""

    def test_header_beats_query_and_cookie(self):
        token = extract_credential(
            "Bearer from-header", {"token": "from-query"}, {"zat_access": "from-cookie"}
        )

        assert token == "from-header"

    def test_query_beats_cookie(self):
        assert extract_credential(None, {"token": "q"}, {"zat_access": "c"}) == "q"

    def test_cookies_in_order(self):
        assert extract_credential(None, {}, {"accessToken": "legacy", "zat_access": "new"}) == "new"
        assert extract_credential(None, {}, {"accessToken": "legacy"}) == "legacy"

    @pytest.mark.parametrize("header", ["Basic abc", "Bearer", "Bearer   ", ""])
    def test_unusable_headers_fall_through(self, header):
        assert extract_credential(header, None, None) is None

    def test_classification_by_prefix(self, settings):
        assert classify_credential("zat_" + "a" * 64, settings).kind == "access_token"
        assert classify_credential("sat_abc", settings).kind == "system"
        assert classify_credential("eyJhbGciOi.x.y", settings).kind == "jwt"


class TestAuthenticate:
    """End-to-end caller resolution."""

    async def test_jwt_caller_has_unrestricted_scopes(self, gateway, sessions, user):
        pair, _ = _login(sessions, user)

        context = await gateway.authenticate(f"Bearer {pair.access_token}")

        assert context.kind == "jwt"
        assert context.user_id == user.id
        assert context.token_id == pair.token_id
        assert context.scopes is None

    async def test_jwt_touches_session_activity(self, gateway, sessions, user, memory_store):
        pair, session = _login(sessions, user)
        before = memory_store.get_session(session.id).last_activity

        await gateway.authenticate(f"Bearer {pair.access_token}")

        assert memory_store.get_session(session.id).last_activity >= before

    async def test_revoked_session_rejects_valid_jwt(self, gateway, sessions, user):
        pair, session = _login(sessions, user)
        sessions.revoke_session(user.id, session.id)

        with pytest.raises(AuthenticationError) as exc_info:
            await gateway.authenticate(f"Bearer {pair.access_token}")
        assert exc_info.value.status_code == 401

    async def test_rotated_jwt_is_rejected(self, gateway, sessions, user):
        pair, _ = _login(sessions, user)
        new_pair, _ = await sessions.refresh_tokens(pair.refresh_token)

        with pytest.raises(AuthenticationError):
            await gateway.authenticate(f"Bearer {pair.access_token}")
        context = await gateway.authenticate(f"Bearer {new_pair.access_token}")
        assert context.user_id == user.id

    async def test_refresh_token_is_not_an_access_credential(self, gateway, sessions, user):
        pair, _ = _login(sessions, user)

        with pytest.raises(AuthenticationError):
            await gateway.authenticate(f"Bearer {pair.refresh_token}")

    async def test_deleted_user_is_rejected(self, gateway, sessions, user, memory_store):
        pair, _ = _login(sessions, user)
        memory_store.delete_user(user.id)

        with pytest.raises(AuthenticationError):
            await gateway.authenticate(f"Bearer {pair.access_token}")

    async def test_access_token_caller_carries_scopes(self, gateway, access_tokens, user):
        created = await access_tokens.create_token(user.id, "ci", ["watch"])

        context = await gateway.authenticate(None, {"token": created["token"]})

        assert context.kind == "access_token"
        assert context.user_id == user.id
        assert context.scopes == ["watch"]

    async def test_unknown_access_token_is_rejected(self, gateway):
        with pytest.raises(AuthenticationError):
            await gateway.authenticate("Bearer zat_" + "f" * 64)

    async def test_system_token_passes_through_unverified(self, gateway):
        context = await gateway.authenticate("Bearer sat_anything")

        assert context.kind == "system"
        assert context.user is None
        assert context.raw_token == "sat_anything"

    async def test_missing_credential(self, gateway):
        with pytest.raises(AuthenticationError):
            await gateway.authenticate(None, {}, {})

"""Unit tests for the session manager.

Tests for:
- Session creation and in-place device updates
- Refresh token rotation
- Revocation
- Exchange code handshake
- Maintenance sweeps
"""

import asyncio
from datetime import timedelta

import pytest

from zentik_auth.service.device import DeviceInfo
from zentik_auth.service.errors import AuthenticationError, InvalidExchangeCodeError
from zentik_auth.service.sessions import SessionManager
from zentik_auth.service.tokens import TokenIssuer
from zentik_auth.storage.models import utcnow


@pytest.fixture
def issuer(settings, memory_store):
    return TokenIssuer(settings, system_settings=memory_store.get_system_settings)


@pytest.fixture
def sessions(memory_store, issuer, settings):
    return SessionManager(memory_store, issuer, settings)


@pytest.fixture
def user(memory_store):
    return memory_store.create_user("grace@example.com", "grace", email_confirmed=True)


@pytest.fixture
def device():
    return DeviceInfo(
        device_name="Mac",
        operating_system="macOS",
        browser="Safari",
        ip_address="10.0.0.1",
        user_agent="Mozilla/5.0 (Macintosh)",
        login_provider="LOCAL",
    )


class TestSessionCreation:
    """Tests for creating sessions."""

    def test_start_session_persists_device_info(self, sessions, user, device):
        pair, session = sessions.start_session(user, device)

        assert session.user_id == user.id
        assert session.token_id == pair.token_id
        assert session.expires_at == pair.refresh_expires_at
        assert session.device_name == "Mac"
        assert session.login_provider == "LOCAL"
        assert session.is_active

    def test_known_session_id_updates_in_place(self, sessions, user, device, memory_store):
        _, first = sessions.start_session(user, device)

        pair, second = sessions.start_session(user, device.with_session(first.id))

        assert second.id == first.id
        assert second.token_id == pair.token_id
        assert len(memory_store.list_sessions(user.id)) == 1

    def test_unknown_session_id_falls_back_to_new_row(self, sessions, user, device, memory_store):
        _, session = sessions.start_session(user, device.with_session("does-not-exist"))

        assert session.id != "does-not-exist"
        assert memory_store.get_session(session.id) is not None

    def test_session_of_other_user_is_not_reused(self, sessions, user, device, memory_store):
        other = memory_store.create_user("other@example.com", "other")
        _, theirs = sessions.start_session(other, device)

        _, mine = sessions.start_session(user, device.with_session(theirs.id))

        assert mine.id != theirs.id
        assert memory_store.get_session(theirs.id).user_id == other.id


class TestRefreshRotation:
    """Tests for refresh token rotation."""

    async def test_refresh_rotates_jti_and_keeps_expiry(self, sessions, user, device):
        pair, session = sessions.start_session(user, device)

        new_pair, rotated = await sessions.refresh_tokens(pair.refresh_token)

        assert rotated.id == session.id
        assert rotated.token_id == new_pair.token_id != pair.token_id
        assert rotated.expires_at == session.expires_at
        assert rotated.login_provider == "LOCAL"

    async def test_superseded_refresh_token_is_rejected(self, sessions, user, device):
        pair, _ = sessions.start_session(user, device)
        await sessions.refresh_tokens(pair.refresh_token)

        with pytest.raises(AuthenticationError):
            await sessions.refresh_tokens(pair.refresh_token)

    async def test_revoked_session_cannot_refresh(self, sessions, user, device):
        pair, session = sessions.start_session(user, device)
        assert sessions.revoke_session(user.id, session.id)

        with pytest.raises(AuthenticationError):
            await sessions.refresh_tokens(pair.refresh_token)

    async def test_access_token_cannot_be_used_to_refresh(self, sessions, user, device):
        pair, _ = sessions.start_session(user, device)

        with pytest.raises(AuthenticationError) as exc_info:
            await sessions.refresh_tokens(pair.access_token)
        assert exc_info.value.message == "Invalid refresh token"

    async def test_expired_session_cannot_refresh(self, sessions, user, device, memory_store):
        pair, session = sessions.start_session(user, device)
        memory_store.update_session(session.id, expires_at=utcnow() - timedelta(seconds=1))

        with pytest.raises(AuthenticationError):
            await sessions.refresh_tokens(pair.refresh_token)

    async def test_concurrent_refresh_yields_one_winner(self, sessions, user, device):
        pair, _ = sessions.start_session(user, device)

        results = await asyncio.gather(
            sessions.refresh_tokens(pair.refresh_token),
            sessions.refresh_tokens(pair.refresh_token),
            return_exceptions=True,
        )

        successes = [r for r in results if not isinstance(r, Exception)]
        failures = [r for r in results if isinstance(r, AuthenticationError)]
        assert len(successes) == 1
        assert len(failures) == 1


class TestRevocation:
    """Tests for listing and revoking sessions."""

    def test_list_flags_current_session(self, sessions, user, device):
        current_pair, current = sessions.start_session(user, device)
        _, other = sessions.start_session(user, device)

        views = {v.session.id: v for v in sessions.list_user_sessions(user.id, current_pair.token_id)}

        assert views[current.id].is_current is True
        assert views[other.id].is_current is False
        assert "exchange_code" not in views[current.id].as_dict()

    def test_revoke_session_requires_ownership(self, sessions, user, device, memory_store):
        other = memory_store.create_user("mallory@example.com", "mallory")
        _, session = sessions.start_session(user, device)

        assert sessions.revoke_session(other.id, session.id) is False
        assert memory_store.get_session(session.id).is_active

    def test_revoke_all_except_current(self, sessions, user, device):
        keep_pair, keep = sessions.start_session(user, device)
        sessions.start_session(user, device)
        sessions.start_session(user, device)

        count = sessions.revoke_all_except(user.id, keep_pair.token_id)

        assert count == 2
        remaining = sessions.list_user_sessions(user.id)
        assert [v.session.id for v in remaining] == [keep.id]

    def test_revoke_by_refresh_token(self, sessions, user, device):
        pair, _ = sessions.start_session(user, device)

        assert sessions.revoke_by_refresh_token(pair.token_id) is True
        assert sessions.validate_refresh_token(pair.token_id) is None


class TestExchangeCode:
    """Tests for the single-use exchange code handshake."""

    def test_generated_codes_are_url_safe_and_unique(self, sessions):
        codes = {sessions.generate_exchange_code() for _ in range(50)}

        assert len(codes) == 50
        assert all("=" not in c and "+" not in c and "/" not in c for c in codes)

    async def test_code_redeems_exactly_once(self, sessions, user, device):
        _, session = sessions.start_session(user, device)
        code = sessions.generate_exchange_code()
        sessions.set_exchange_code(session.id, code)

        pair, redeemed = await sessions.redeem_exchange_code(code, session.id)

        assert redeemed.id == session.id
        assert redeemed.token_id == pair.token_id
        assert redeemed.expires_at == session.expires_at
        assert redeemed.login_provider == "LOCAL"
        with pytest.raises(InvalidExchangeCodeError):
            await sessions.redeem_exchange_code(code, session.id)

    async def test_expired_code_is_rejected_and_cleared(self, sessions, user, device, memory_store):
        _, session = sessions.start_session(user, device)
        code = sessions.generate_exchange_code()
        sessions.set_exchange_code(session.id, code, requested_at=utcnow() - timedelta(seconds=31))

        with pytest.raises(InvalidExchangeCodeError):
            await sessions.redeem_exchange_code(code)
        assert memory_store.get_session(session.id).exchange_code is None

    async def test_code_bound_to_its_session(self, sessions, user, device):
        _, session = sessions.start_session(user, device)
        _, other = sessions.start_session(user, device)
        code = sessions.generate_exchange_code()
        sessions.set_exchange_code(session.id, code)

        with pytest.raises(InvalidExchangeCodeError):
            await sessions.redeem_exchange_code(code, other.id)

    async def test_revoked_session_code_is_rejected(self, sessions, user, device):
        _, session = sessions.start_session(user, device)
        code = sessions.generate_exchange_code()
        sessions.set_exchange_code(session.id, code)
        sessions.revoke_session(user.id, session.id)

        with pytest.raises(InvalidExchangeCodeError):
            await sessions.redeem_exchange_code(code)

    async def test_concurrent_redemption_yields_one_winner(self, sessions, user, device):
        _, session = sessions.start_session(user, device)
        code = sessions.generate_exchange_code()
        sessions.set_exchange_code(session.id, code)

        results = await asyncio.gather(
            sessions.redeem_exchange_code(code),
            sessions.redeem_exchange_code(code),
            return_exceptions=True,
        )

        assert sum(not isinstance(r, Exception) for r in results) == 1
        assert sum(isinstance(r, InvalidExchangeCodeError) for r in results) == 1

    async def test_scheduled_cleanup_scrubs_unused_code(self, sessions, user, device, memory_store):
        _, session = sessions.start_session(user, device)
        code = sessions.generate_exchange_code()
        sessions.set_exchange_code(session.id, code)

        task = sessions.schedule_exchange_code_cleanup(session.id, code, delay_seconds=0)
        await task

        assert memory_store.get_session(session.id).exchange_code is None

    async def test_cleanup_leaves_newer_code_alone(self, sessions, user, device, memory_store):
        _, session = sessions.start_session(user, device)
        old_code = sessions.generate_exchange_code()
        sessions.set_exchange_code(session.id, old_code)
        task = sessions.schedule_exchange_code_cleanup(session.id, old_code, delay_seconds=0.01)
        new_code = sessions.generate_exchange_code()
        sessions.set_exchange_code(session.id, new_code)

        await task

        assert memory_store.get_session(session.id).exchange_code == new_code

    async def test_cancel_pending_cleanups(self, sessions, user, device):
        _, session = sessions.start_session(user, device)
        code = sessions.generate_exchange_code()
        sessions.set_exchange_code(session.id, code)
        task = sessions.schedule_exchange_code_cleanup(session.id, code, delay_seconds=60)

        await sessions.cancel_pending_cleanups()

        assert task.cancelled()

    def test_cleanup_without_loop_is_skipped(self, sessions):
        assert sessions.schedule_exchange_code_cleanup("s", "c") is None


class TestMaintenance:
    """Tests for inactive and expired session cleanup."""

    def test_delete_inactive_sessions(self, sessions, user, device, memory_store):
        _, stale = sessions.start_session(user, device)
        _, fresh = sessions.start_session(user, device)
        memory_store.update_session(stale.id, last_activity=utcnow() - timedelta(days=15))

        deleted = sessions.delete_inactive_sessions(timedelta(days=14))

        assert deleted == 1
        assert memory_store.get_session(stale.id) is None
        assert memory_store.get_session(fresh.id) is not None

    def test_cleanup_expired_sessions(self, sessions, user, device, memory_store):
        _, expired = sessions.start_session(user, device)
        memory_store.update_session(expired.id, expires_at=utcnow() - timedelta(minutes=1))

        assert sessions.cleanup_expired_sessions() == 1
        assert memory_store.get_session(expired.id) is None

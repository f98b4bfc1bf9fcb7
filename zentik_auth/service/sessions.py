from __future__ import annotations

import asyncio
import base64
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, List, Optional, Set

from zentik_auth.config import Settings
from zentik_auth.logging import get_logger
from zentik_auth.service.device import DeviceInfo
from zentik_auth.service.errors import AuthenticationError, InvalidExchangeCodeError
from zentik_auth.service.tokens import TokenError, TokenIssuer, TokenPair
from zentik_auth.storage.models import UserSession, utcnow

logger = get_logger(__name__)


@dataclass
class SessionView:
    """A session as shown to its owner, flagged when it backs the calling credential."""

    session: UserSession
    is_current: bool

    def as_dict(self) -> dict[str, Any]:
        s = self.session
        return {
            "id": s.id,
            "device_name": s.device_name,
            "operating_system": s.operating_system,
            "browser": s.browser,
            "ip_address": s.ip_address,
            "login_provider": s.login_provider,
            "last_activity": s.last_activity,
            "expires_at": s.expires_at,
            "created_at": s.created_at,
            "is_current": self.is_current,
        }


class SessionManager:
    """Lifecycle of login sessions: one row per device, rotated in place.

    A refresh token is honored only while the session row holding its
    ``jti`` is active and unexpired. Rotation and exchange-code redemption
    go through conditional store updates, so a revoked session or a
    superseded ``jti`` can never yield a new token pair.
    """

    def __init__(self, store, issuer: TokenIssuer, settings: Settings) -> None:
        self.store = store
        self.issuer = issuer
        self.settings = settings
        self.logger = logger
        self._pending_cleanups: Set[asyncio.Task] = set()

    # creation and lookup
    def create_or_update_session(
        self,
        user_id: str,
        token_id: str,
        expires_at: datetime,
        device_info: Optional[DeviceInfo] = None,
    ) -> UserSession:
        device_info = device_info or DeviceInfo()
        if device_info.session_id:
            existing = self.store.get_session(device_info.session_id)
            if existing and existing.user_id == user_id:
                updated = self.store.update_session(
                    existing.id,
                    token_id=token_id,
                    expires_at=expires_at,
                    last_activity=utcnow(),
                    is_active=True,
                    **device_info.metadata(),
                )
                self.logger.debug("session_updated_in_place", session_id=existing.id)
                return updated
            self.logger.info(
                "session_not_found_creating_new",
                requested_session_id=device_info.session_id,
            )
        session = UserSession.new(
            user_id,
            token_id,
            expires_at,
            **device_info.metadata(),
        )
        created = self.store.create_session(session)
        self.logger.info(
            "session_created",
            session_id=created.id,
            user_id=user_id,
            login_provider=created.login_provider,
        )
        return created

    def start_session(
        self, user, device_info: Optional[DeviceInfo] = None
    ) -> tuple[TokenPair, UserSession]:
        """Issue a fresh token pair and persist the session row for it."""
        pair = self.issuer.issue_token_pair(user)
        session = self.create_or_update_session(
            user.id, pair.token_id, pair.refresh_expires_at, device_info
        )
        return pair, session

    def get_session_by_token_id(self, token_id: str) -> Optional[UserSession]:
        return self.store.get_session_by_token_id(token_id)

    def validate_refresh_token(self, token_id: str) -> Optional[UserSession]:
        """Return the session backing ``token_id`` when it is active and unexpired."""
        session = self.store.get_session_by_token_id(token_id)
        if not session or not session.is_active:
            return None
        if session.is_expired():
            return None
        return session

    def update_session_activity(self, token_id: str) -> None:
        session = self.store.get_session_by_token_id(token_id)
        if session and session.is_active:
            self.store.update_session(session.id, last_activity=utcnow())

    def list_user_sessions(
        self, user_id: str, current_token_id: Optional[str] = None
    ) -> List[SessionView]:
        now = utcnow()
        return [
            SessionView(session=s, is_current=bool(current_token_id) and s.token_id == current_token_id)
            for s in self.store.list_sessions(user_id, active_only=True)
            if not s.is_expired(now)
        ]

    def get_latest_session_for_user(self, user_id: str) -> Optional[UserSession]:
        return self.store.get_latest_session_for_user(user_id)

    # revocation
    def revoke_session(self, user_id: str, session_id: str) -> bool:
        revoked = self.store.deactivate_session(user_id, session_id)
        if revoked:
            self.logger.info("session_revoked", session_id=session_id, user_id=user_id)
        return revoked

    def revoke_by_refresh_token(self, token_id: str) -> bool:
        revoked = self.store.deactivate_session_by_token_id(token_id)
        if revoked:
            self.logger.info("session_revoked_by_token")
        return revoked

    def revoke_all_except(self, user_id: str, except_token_id: str) -> int:
        count = self.store.deactivate_sessions_except(user_id, except_token_id)
        self.logger.info("sessions_revoked_except_current", user_id=user_id, count=count)
        return count

    # rotation
    async def refresh_tokens(self, refresh_token: str) -> tuple[TokenPair, UserSession]:
        """Rotate a refresh token in place, keeping the session's absolute expiry."""
        try:
            payload = self.issuer.verify_refresh_token(refresh_token)
        except TokenError as exc:
            self.logger.info("refresh_token_rejected", reason=type(exc).__name__)
            raise AuthenticationError("Invalid refresh token")

        token_id = payload["jti"]
        session = self.validate_refresh_token(token_id)
        if not session:
            self.logger.info("refresh_session_inactive")
            raise AuthenticationError("Invalid refresh token")
        if session.user_id != payload["sub"]:
            # A valid signature bound to another user's session means tampering
            self.store.deactivate_session(session.user_id, session.id)
            self.logger.warning(
                "refresh_subject_mismatch",
                session_id=session.id,
                session_user_id=session.user_id,
            )
            raise AuthenticationError("Invalid refresh token")

        user = self.store.get_user(session.user_id)
        if not user:
            raise AuthenticationError("Invalid refresh token")

        pair = self.issuer.issue_token_pair(user)
        rotated = self.store.rotate_session_token(
            session.id, token_id, pair.token_id, last_activity=utcnow()
        )
        if not rotated:
            # Revoked or rotated by a concurrent request after our read
            self.logger.info("refresh_rotation_lost_race", session_id=session.id)
            raise AuthenticationError("Invalid refresh token")
        self.logger.info("session_refreshed", session_id=rotated.id, user_id=user.id)
        return pair, rotated

    # exchange code handshake
    @staticmethod
    def generate_exchange_code() -> str:
        return base64.urlsafe_b64encode(secrets.token_bytes(16)).decode("ascii").rstrip("=")

    def set_exchange_code(
        self, session_id: str, code: str, requested_at: Optional[datetime] = None
    ) -> Optional[UserSession]:
        return self.store.update_session(
            session_id,
            exchange_code=code,
            exchange_code_requested_at=requested_at or utcnow(),
        )

    def find_session_by_exchange_code(
        self, code: str, session_id: Optional[str] = None
    ) -> Optional[UserSession]:
        return self.store.find_session_by_exchange_code(code, session_id)

    def schedule_exchange_code_cleanup(
        self, session_id: str, code: str, delay_seconds: Optional[float] = None
    ) -> Optional[asyncio.Task]:
        """Scrub ``code`` after the cleanup delay if nobody redeemed it."""
        delay = (
            self.settings.exchange_code_cleanup_seconds
            if delay_seconds is None
            else delay_seconds
        )
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.logger.debug("exchange_code_cleanup_skipped_no_loop", session_id=session_id)
            return None
        task = loop.create_task(self._scrub_exchange_code_later(session_id, code, delay))
        self._pending_cleanups.add(task)
        task.add_done_callback(self._pending_cleanups.discard)
        return task

    async def _scrub_exchange_code_later(self, session_id: str, code: str, delay: float) -> None:
        await asyncio.sleep(delay)
        try:
            if self.store.clear_exchange_code_if_matches(session_id, code):
                self.logger.info("exchange_code_scrubbed_unused", session_id=session_id)
        except Exception as exc:
            self.logger.warning(
                "exchange_code_scrub_failed", session_id=session_id, error=str(exc)
            )

    async def cancel_pending_cleanups(self) -> None:
        tasks = list(self._pending_cleanups)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def redeem_exchange_code(
        self, code: str, session_id: Optional[str] = None
    ) -> tuple[TokenPair, UserSession]:
        """Trade a single-use exchange code for a token pair on the same session row."""
        if not code:
            raise InvalidExchangeCodeError()
        session = self.store.find_session_by_exchange_code(code, session_id)
        if not session:
            self.logger.info("exchange_code_unknown")
            raise InvalidExchangeCodeError()

        requested_at = session.exchange_code_requested_at
        ttl = timedelta(seconds=self.settings.exchange_code_ttl_seconds)
        if not requested_at or utcnow() - requested_at > ttl:
            self.store.clear_exchange_code_if_matches(session.id, code)
            self.logger.info("exchange_code_expired", session_id=session.id)
            raise InvalidExchangeCodeError()

        # Single-use: only the caller whose conditional clear succeeds may continue
        if not self.store.clear_exchange_code_if_matches(session.id, code):
            self.logger.warning("exchange_code_already_consumed", session_id=session.id)
            raise InvalidExchangeCodeError()

        if not session.is_active or session.is_expired():
            raise InvalidExchangeCodeError()
        user = self.store.get_user(session.user_id)
        if not user:
            raise InvalidExchangeCodeError()

        pair = self.issuer.issue_token_pair(user)
        rotated = self.store.rotate_session_token(
            session.id, session.token_id, pair.token_id, last_activity=utcnow()
        )
        if not rotated:
            raise InvalidExchangeCodeError()
        self.logger.info("exchange_code_redeemed", session_id=rotated.id, user_id=user.id)
        return pair, rotated

    # maintenance
    def delete_inactive_sessions(self, retention: timedelta) -> int:
        cutoff = utcnow() - retention
        return self.store.delete_sessions_inactive_before(cutoff)

    def cleanup_expired_sessions(self) -> int:
        count = self.store.delete_expired_sessions(utcnow())
        if count:
            self.logger.info("expired_sessions_deleted", count=count)
        return count


__all__ = ["SessionManager", "SessionView"]

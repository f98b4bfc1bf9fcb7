from __future__ import annotations

import json
import threading
import uuid
from dataclasses import asdict, fields
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from zentik_auth.logging import get_logger
from zentik_auth.storage.errors import ConstraintViolation
from zentik_auth.storage.models import (
    OAuthProviderConfig,
    ProviderType,
    User,
    UserAccessToken,
    UserIdentity,
    UserSession,
    utcnow,
)

_DATETIME_FIELDS = {
    "created_at",
    "updated_at",
    "expires_at",
    "last_activity",
    "last_used",
    "reset_token_requested_at",
    "email_confirmation_token_requested_at",
    "exchange_code_requested_at",
}


class MemoryStore:
    """In-process credential store with a JSON snapshot on disk.

    Every public method runs under one re-entrant lock, so read-then-write
    sequences inside a method are atomic with respect to other callers.
    """

    def __init__(self, fs_root: str = "/tmp/zentik") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.identities: Dict[str, UserIdentity] = {}
        self.sessions: Dict[str, UserSession] = {}
        self.access_tokens: Dict[str, UserAccessToken] = {}
        self.provider_configs: Dict[str, OAuthProviderConfig] = {}
        self.system_settings: Dict[str, Any] = {}
        # RLock so helpers can be called from inside locked methods
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        if not self._load_state():
            self._persist_state()

    # users
    def create_user(
        self,
        email: str,
        username: str,
        *,
        password: Optional[str] = None,
        has_password: bool = False,
        email_confirmed: bool = False,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        avatar: Optional[str] = None,
        locale: Optional[str] = None,
    ) -> User:
        with self._data_lock:
            lowered = email.lower()
            if any(u.email.lower() == lowered for u in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if any(u.username == username for u in self.users.values()):
                raise ConstraintViolation("username already exists", {"field": "username"})
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                username=username,
                password=password,
                has_password=has_password,
                email_confirmed=email_confirmed,
                first_name=first_name,
                last_name=last_name,
                avatar=avatar,
                locale=locale,
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            lowered = email.lower()
            return next(
                (u for u in self.users.values() if u.email.lower() == lowered), None
            )

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._data_lock:
            return next(
                (u for u in self.users.values() if u.username == username), None
            )

    def find_user_by_reset_token(self, token: str) -> Optional[User]:
        with self._data_lock:
            return next(
                (u for u in self.users.values() if u.reset_token == token), None
            )

    def find_user_by_confirmation_token(self, token: str) -> Optional[User]:
        with self._data_lock:
            return next(
                (
                    u
                    for u in self.users.values()
                    if u.email_confirmation_token == token
                ),
                None,
            )

    def update_user(self, user_id: str, **updates: Any) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if "email" in updates and updates["email"]:
                lowered = updates["email"].lower()
                if any(
                    u.email.lower() == lowered and u.id != user_id
                    for u in self.users.values()
                ):
                    raise ConstraintViolation("email already exists", {"field": "email"})
            if "username" in updates and updates["username"]:
                if any(
                    u.username == updates["username"] and u.id != user_id
                    for u in self.users.values()
                ):
                    raise ConstraintViolation(
                        "username already exists", {"field": "username"}
                    )
            for key, value in updates.items():
                setattr(user, key, value)
            user.updated_at = utcnow()
            self._persist_state()
            return user

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if self.users.pop(user_id, None) is None:
                return False
            for table in (self.identities, self.sessions, self.access_tokens):
                for key in [k for k, row in table.items() if row.user_id == user_id]:
                    table.pop(key, None)
            self._persist_state()
            return True

    # identities
    def create_identity(
        self,
        user_id: str,
        provider_type: ProviderType | str,
        *,
        provider_user_id: Optional[str] = None,
        email: Optional[str] = None,
        avatar_url: Optional[str] = None,
        metadata: Optional[str] = None,
    ) -> UserIdentity:
        provider_type = ProviderType(provider_type)
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("identity user missing", {"user_id": user_id})
            if self.get_identity_for_user(user_id, provider_type):
                raise ConstraintViolation(
                    "identity already linked",
                    {"field": "provider_type", "provider_type": provider_type.value},
                )
            identity = UserIdentity(
                id=str(uuid.uuid4()),
                user_id=user_id,
                provider_type=provider_type,
                provider_user_id=provider_user_id,
                email=email,
                avatar_url=avatar_url,
                metadata=metadata,
            )
            self.identities[identity.id] = identity
            self._persist_state()
            return identity

    def get_identity(self, identity_id: str) -> Optional[UserIdentity]:
        with self._data_lock:
            return self.identities.get(identity_id)

    def get_identity_for_user(
        self, user_id: str, provider_type: ProviderType | str
    ) -> Optional[UserIdentity]:
        provider_type = ProviderType(provider_type)
        with self._data_lock:
            return next(
                (
                    i
                    for i in self.identities.values()
                    if i.user_id == user_id and i.provider_type == provider_type
                ),
                None,
            )

    def get_identity_by_provider_email(
        self, provider_type: ProviderType | str, email: str
    ) -> Optional[UserIdentity]:
        provider_type = ProviderType(provider_type)
        with self._data_lock:
            return next(
                (
                    i
                    for i in self.identities.values()
                    if i.provider_type == provider_type and i.email == email
                ),
                None,
            )

    def get_identity_by_provider_uid(
        self, provider_type: ProviderType | str, provider_user_id: str
    ) -> Optional[UserIdentity]:
        provider_type = ProviderType(provider_type)
        with self._data_lock:
            return next(
                (
                    i
                    for i in self.identities.values()
                    if i.provider_type == provider_type
                    and i.provider_user_id == provider_user_id
                ),
                None,
            )

    def list_identities(self, user_id: str) -> List[UserIdentity]:
        with self._data_lock:
            return sorted(
                (i for i in self.identities.values() if i.user_id == user_id),
                key=lambda i: i.created_at,
            )

    def update_identity(self, identity_id: str, **updates: Any) -> Optional[UserIdentity]:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            if not identity:
                return None
            for key, value in updates.items():
                setattr(identity, key, value)
            identity.updated_at = utcnow()
            self._persist_state()
            return identity

    def delete_identity(self, identity_id: str) -> bool:
        with self._data_lock:
            removed = self.identities.pop(identity_id, None) is not None
            if removed:
                self._persist_state()
            return removed

    # sessions
    def create_session(self, session: UserSession) -> UserSession:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation(
                    "session user missing", {"user_id": session.user_id}
                )
            self.sessions[session.id] = session
            self._persist_state()
            return session

    def get_session(self, session_id: str) -> Optional[UserSession]:
        with self._data_lock:
            return self.sessions.get(session_id)

    def get_session_by_token_id(self, token_id: str) -> Optional[UserSession]:
        with self._data_lock:
            return next(
                (s for s in self.sessions.values() if s.token_id == token_id), None
            )

    def update_session(self, session_id: str, **updates: Any) -> Optional[UserSession]:
        with self._data_lock:
            session = self.sessions.get(session_id)
            if not session:
                return None
            for key, value in updates.items():
                setattr(session, key, value)
            session.updated_at = utcnow()
            self._persist_state()
            return session

    def rotate_session_token(
        self, session_id: str, expected_token_id: str, new_token_id: str, **updates: Any
    ) -> Optional[UserSession]:
        """Swap the refresh jti only if the session is active and still holds ``expected_token_id``."""
        with self._data_lock:
            session = self.sessions.get(session_id)
            if not session or not session.is_active or session.token_id != expected_token_id:
                return None
            session.token_id = new_token_id
            for key, value in updates.items():
                setattr(session, key, value)
            session.updated_at = utcnow()
            self._persist_state()
            return session

    def list_sessions(self, user_id: str, *, active_only: bool = True) -> List[UserSession]:
        with self._data_lock:
            rows = [
                s
                for s in self.sessions.values()
                if s.user_id == user_id and (s.is_active or not active_only)
            ]
            return sorted(rows, key=lambda s: s.last_activity, reverse=True)

    def get_latest_session_for_user(self, user_id: str) -> Optional[UserSession]:
        with self._data_lock:
            rows = [
                s for s in self.sessions.values() if s.user_id == user_id and s.is_active
            ]
            if not rows:
                return None
            return max(rows, key=lambda s: s.created_at)

    def deactivate_session(self, user_id: str, session_id: str) -> bool:
        with self._data_lock:
            session = self.sessions.get(session_id)
            if not session or session.user_id != user_id or not session.is_active:
                return False
            session.is_active = False
            session.updated_at = utcnow()
            self._persist_state()
            return True

    def deactivate_session_by_token_id(self, token_id: str) -> bool:
        with self._data_lock:
            session = self.get_session_by_token_id(token_id)
            if not session or not session.is_active:
                return False
            session.is_active = False
            session.updated_at = utcnow()
            self._persist_state()
            return True

    def deactivate_sessions_except(self, user_id: str, token_id: str) -> int:
        with self._data_lock:
            affected = 0
            for session in self.sessions.values():
                if (
                    session.user_id == user_id
                    and session.is_active
                    and session.token_id != token_id
                ):
                    session.is_active = False
                    session.updated_at = utcnow()
                    affected += 1
            if affected:
                self._persist_state()
            return affected

    def find_session_by_exchange_code(
        self, code: str, session_id: Optional[str] = None
    ) -> Optional[UserSession]:
        with self._data_lock:
            for session in self.sessions.values():
                if session.exchange_code != code:
                    continue
                if session_id and session.id != session_id:
                    continue
                return session
            return None

    def clear_exchange_code_if_matches(self, session_id: str, code: str) -> bool:
        """Atomically consume ``code``; True only for the caller that cleared it."""
        with self._data_lock:
            session = self.sessions.get(session_id)
            if not session or not code or session.exchange_code != code:
                return False
            session.exchange_code = None
            session.exchange_code_requested_at = None
            session.updated_at = utcnow()
            self._persist_state()
            return True

    def delete_sessions_inactive_before(self, cutoff: datetime) -> int:
        with self._data_lock:
            stale = [sid for sid, s in self.sessions.items() if s.last_activity < cutoff]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._data_lock:
            expired = [sid for sid, s in self.sessions.items() if s.expires_at <= now]
            for sid in expired:
                self.sessions.pop(sid, None)
            if expired:
                self._persist_state()
            return len(expired)

    # access tokens
    def create_access_token(self, token: UserAccessToken) -> UserAccessToken:
        with self._data_lock:
            if token.user_id not in self.users:
                raise ConstraintViolation("token user missing", {"user_id": token.user_id})
            self.access_tokens[token.id] = token
            self._persist_state()
            return token

    def get_access_token(self, token_id: str) -> Optional[UserAccessToken]:
        with self._data_lock:
            return self.access_tokens.get(token_id)

    def list_access_tokens(self, user_id: str) -> List[UserAccessToken]:
        with self._data_lock:
            return sorted(
                (t for t in self.access_tokens.values() if t.user_id == user_id),
                key=lambda t: t.created_at,
                reverse=True,
            )

    def list_all_access_tokens(self) -> List[UserAccessToken]:
        with self._data_lock:
            return list(self.access_tokens.values())

    def update_access_token(
        self, token_id: str, **updates: Any
    ) -> Optional[UserAccessToken]:
        with self._data_lock:
            token = self.access_tokens.get(token_id)
            if not token:
                return None
            for key, value in updates.items():
                setattr(token, key, value)
            token.updated_at = utcnow()
            self._persist_state()
            return token

    def delete_access_token(self, token_id: str) -> bool:
        with self._data_lock:
            removed = self.access_tokens.pop(token_id, None) is not None
            if removed:
                self._persist_state()
            return removed

    def delete_access_tokens_for_user(self, user_id: str) -> int:
        with self._data_lock:
            doomed = [tid for tid, t in self.access_tokens.items() if t.user_id == user_id]
            for tid in doomed:
                self.access_tokens.pop(tid, None)
            if doomed:
                self._persist_state()
            return len(doomed)

    # oauth provider configuration
    def list_provider_configs(self, *, enabled_only: bool = False) -> List[OAuthProviderConfig]:
        with self._data_lock:
            configs = [
                c
                for c in self.provider_configs.values()
                if c.is_enabled or not enabled_only
            ]
            return sorted(configs, key=lambda c: c.provider_id)

    def get_provider_config(self, provider_id: str) -> Optional[OAuthProviderConfig]:
        with self._data_lock:
            return self.provider_configs.get(provider_id)

    def upsert_provider_config(self, config: OAuthProviderConfig) -> OAuthProviderConfig:
        with self._data_lock:
            existing = self.provider_configs.get(config.provider_id)
            if existing:
                config.id = existing.id
                config.created_at = existing.created_at
            config.updated_at = utcnow()
            self.provider_configs[config.provider_id] = config
            self._persist_state()
            return config

    def delete_provider_config(self, provider_id: str) -> bool:
        with self._data_lock:
            removed = self.provider_configs.pop(provider_id, None) is not None
            if removed:
                self._persist_state()
            return removed

    # runtime-mutable settings
    def get_system_settings(self) -> Dict[str, Any]:
        with self._data_lock:
            return dict(self.system_settings)

    def set_system_settings(self, values: Dict[str, Any]) -> Dict[str, Any]:
        with self._data_lock:
            for key, value in values.items():
                if value is None:
                    self.system_settings.pop(key, None)
                else:
                    self.system_settings[key] = value
            self._persist_state()
            return dict(self.system_settings)

    def verify_connection(self) -> None:
        self.fs_root.stat()

    def reset(self) -> None:
        """Drop every record and the on-disk snapshot."""
        with self._data_lock:
            self.users.clear()
            self.identities.clear()
            self.sessions.clear()
            self.access_tokens.clear()
            self.provider_configs.clear()
            self.system_settings.clear()
            self._persist_state()

    # persistence
    def _state_path(self) -> Path:
        return self.fs_root / "state" / "memory_store.json"

    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize(u) for u in self.users.values()],
            "identities": [self._serialize(i) for i in self.identities.values()],
            "sessions": [self._serialize(s) for s in self.sessions.values()],
            "access_tokens": [self._serialize(t) for t in self.access_tokens.values()],
            "provider_configs": [
                self._serialize(c) for c in self.provider_configs.values()
            ],
            "system_settings": self.system_settings,
        }
        path = self._state_path()
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(state))
        tmp_path.replace(path)

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except json.JSONDecodeError as exc:
            self.logger.warning("memory_store_state_corrupt", path=str(path), error=str(exc))
            return False
        self.users = {
            row["id"]: self._deserialize(User, row) for row in data.get("users", [])
        }
        self.identities = {
            row["id"]: self._deserialize(UserIdentity, row)
            for row in data.get("identities", [])
        }
        self.sessions = {
            row["id"]: self._deserialize(UserSession, row)
            for row in data.get("sessions", [])
        }
        self.access_tokens = {
            row["id"]: self._deserialize(UserAccessToken, row)
            for row in data.get("access_tokens", [])
        }
        self.provider_configs = {
            row["provider_id"]: self._deserialize(OAuthProviderConfig, row)
            for row in data.get("provider_configs", [])
        }
        self.system_settings = dict(data.get("system_settings") or {})
        self.logger.info(
            "memory_store_state_loaded",
            users=len(self.users),
            sessions=len(self.sessions),
            provider_configs=len(self.provider_configs),
        )
        return True

    @staticmethod
    def _serialize_datetime(value: Optional[datetime]) -> Optional[str]:
        return value.isoformat() if value else None

    def _serialize(self, record: Any) -> dict:
        data = asdict(record)
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = self._serialize_datetime(value)
            elif isinstance(value, ProviderType):
                data[key] = value.value
        return data

    @staticmethod
    def _deserialize(cls, data: dict):
        known = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in data.items():
            if key not in known:
                continue
            if key in _DATETIME_FIELDS and isinstance(value, str):
                value = datetime.fromisoformat(value)
            elif key in {"provider_type", "type"} and value is not None:
                value = ProviderType(value)
            kwargs[key] = value
        return cls(**kwargs)


__all__ = ["MemoryStore"]

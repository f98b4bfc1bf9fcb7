from __future__ import annotations

import json
import uuid
from dataclasses import fields
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from zentik_auth.logging import get_logger
from zentik_auth.storage.errors import ConstraintViolation
from zentik_auth.storage.models import (
    OAuthProviderConfig,
    ProviderType,
    User,
    UserAccessToken,
    UserIdentity,
    UserSession,
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        username TEXT NOT NULL UNIQUE,
        password TEXT,
        has_password BOOLEAN NOT NULL DEFAULT FALSE,
        email_confirmed BOOLEAN NOT NULL DEFAULT FALSE,
        first_name TEXT,
        last_name TEXT,
        avatar TEXT,
        locale TEXT,
        reset_token TEXT,
        reset_token_requested_at TIMESTAMPTZ,
        email_confirmation_token TEXT,
        email_confirmation_token_requested_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_identity (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        provider_type TEXT NOT NULL,
        provider_user_id TEXT,
        email TEXT,
        avatar_url TEXT,
        metadata TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (user_id, provider_type)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_session (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        token_id TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        last_activity TIMESTAMPTZ NOT NULL DEFAULT now(),
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        device_name TEXT,
        operating_system TEXT,
        browser TEXT,
        ip_address TEXT,
        user_agent TEXT,
        login_provider TEXT,
        exchange_code TEXT,
        exchange_code_requested_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS user_session_token_id_idx ON user_session (token_id)",
    "CREATE INDEX IF NOT EXISTS user_session_exchange_code_idx ON user_session (exchange_code)",
    """
    CREATE TABLE IF NOT EXISTS user_access_token (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        name TEXT NOT NULL,
        token_hash TEXT NOT NULL,
        token TEXT,
        scopes JSONB NOT NULL DEFAULT '[]'::jsonb,
        expires_at TIMESTAMPTZ,
        last_used TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS oauth_provider (
        id UUID PRIMARY KEY,
        provider_id TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL,
        type TEXT NOT NULL,
        client_id TEXT NOT NULL DEFAULT '',
        client_secret TEXT NOT NULL DEFAULT '',
        callback_url TEXT,
        scopes JSONB NOT NULL DEFAULT '[]'::jsonb,
        is_enabled BOOLEAN NOT NULL DEFAULT TRUE,
        icon_url TEXT,
        color TEXT,
        text_color TEXT,
        authorization_url TEXT,
        token_url TEXT,
        user_info_url TEXT,
        profile_fields JSONB,
        team_id TEXT,
        key_id TEXT,
        private_key_path TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS system_setting (
        name TEXT PRIMARY KEY,
        value JSONB NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)

_JSON_COLUMNS = {"scopes", "profile_fields"}


def _row_to(cls, row: Optional[dict]):
    if not row:
        return None
    known = {f.name for f in fields(cls)}
    kwargs: Dict[str, Any] = {}
    for key, value in row.items():
        if key not in known:
            continue
        if key in {"id", "user_id"} and value is not None:
            value = str(value)
        elif key in {"provider_type", "type"} and value is not None:
            value = ProviderType(value)
        elif key in _JSON_COLUMNS and isinstance(value, str):
            value = json.loads(value)
        kwargs[key] = value
    return cls(**kwargs)


def _assignments(updates: Dict[str, Any], allowed: Sequence[str]) -> tuple[str, list]:
    """Build a ``SET`` clause from whitelisted column updates."""
    columns: list[str] = []
    values: list = []
    for key, value in updates.items():
        if key not in allowed:
            raise ValueError(f"unknown column {key}")
        columns.append(f"{key} = %s")
        if key in _JSON_COLUMNS and value is not None:
            value = json.dumps(value)
        elif isinstance(value, ProviderType):
            value = value.value
        values.append(value)
    columns.append("updated_at = now()")
    return ", ".join(columns), values


_USER_COLUMNS = tuple(f.name for f in fields(User) if f.name not in {"id", "created_at", "updated_at"})
_IDENTITY_COLUMNS = tuple(f.name for f in fields(UserIdentity) if f.name not in {"id", "user_id", "created_at", "updated_at"})
_SESSION_COLUMNS = tuple(f.name for f in fields(UserSession) if f.name not in {"id", "user_id", "created_at", "updated_at"})
_TOKEN_COLUMNS = tuple(f.name for f in fields(UserAccessToken) if f.name not in {"id", "user_id", "created_at", "updated_at"})
_PROVIDER_COLUMNS = tuple(f.name for f in fields(OAuthProviderConfig) if f.name not in {"created_at", "updated_at"})


class PostgresStore:
    """Postgres-backed credential store.

    Conditional single-statement updates (``UPDATE ... WHERE ... RETURNING``)
    carry the same atomicity guarantees the in-memory store gets from its lock.
    """

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready")

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

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
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, username, password, has_password, email_confirmed,
                                          first_name, last_name, avatar, locale)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        email,
                        username,
                        password,
                        has_password,
                        email_confirmed,
                        first_name,
                        last_name,
                        avatar,
                        locale,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = "username" if "username" in str(exc) else "email"
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return _row_to(User, row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return _row_to(User, row)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE lower(email) = lower(%s)", (email,)
            ).fetchone()
        return _row_to(User, row)

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE username = %s", (username,)
            ).fetchone()
        return _row_to(User, row)

    def find_user_by_reset_token(self, token: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE reset_token = %s", (token,)
            ).fetchone()
        return _row_to(User, row)

    def find_user_by_confirmation_token(self, token: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email_confirmation_token = %s", (token,)
            ).fetchone()
        return _row_to(User, row)

    def update_user(self, user_id: str, **updates: Any) -> Optional[User]:
        assignments, values = _assignments(updates, _USER_COLUMNS)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE app_user SET {assignments} WHERE id = %s RETURNING *",
                    (*values, user_id),
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = "username" if "username" in str(exc) else "email"
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return _row_to(User, row)

    def delete_user(self, user_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            return result.rowcount > 0

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO user_identity
                        (id, user_id, provider_type, provider_user_id, email, avatar_url, metadata)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        str(uuid.uuid4()),
                        user_id,
                        provider_type.value,
                        provider_user_id,
                        email,
                        avatar_url,
                        metadata,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "identity already linked",
                {"field": "provider_type", "provider_type": provider_type.value},
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("identity user missing", {"user_id": user_id})
        return _row_to(UserIdentity, row)

    def get_identity(self, identity_id: str) -> Optional[UserIdentity]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_identity WHERE id = %s", (identity_id,)
            ).fetchone()
        return _row_to(UserIdentity, row)

    def get_identity_for_user(
        self, user_id: str, provider_type: ProviderType | str
    ) -> Optional[UserIdentity]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_identity WHERE user_id = %s AND provider_type = %s",
                (user_id, ProviderType(provider_type).value),
            ).fetchone()
        return _row_to(UserIdentity, row)

    def get_identity_by_provider_email(
        self, provider_type: ProviderType | str, email: str
    ) -> Optional[UserIdentity]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM user_identity
                WHERE provider_type = %s AND email = %s
                ORDER BY created_at LIMIT 1
                """,
                (ProviderType(provider_type).value, email),
            ).fetchone()
        return _row_to(UserIdentity, row)

    def get_identity_by_provider_uid(
        self, provider_type: ProviderType | str, provider_user_id: str
    ) -> Optional[UserIdentity]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM user_identity
                WHERE provider_type = %s AND provider_user_id = %s
                ORDER BY created_at LIMIT 1
                """,
                (ProviderType(provider_type).value, provider_user_id),
            ).fetchone()
        return _row_to(UserIdentity, row)

    def list_identities(self, user_id: str) -> List[UserIdentity]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM user_identity WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [_row_to(UserIdentity, row) for row in rows]

    def update_identity(self, identity_id: str, **updates: Any) -> Optional[UserIdentity]:
        assignments, values = _assignments(updates, _IDENTITY_COLUMNS)
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE user_identity SET {assignments} WHERE id = %s RETURNING *",
                (*values, identity_id),
            ).fetchone()
        return _row_to(UserIdentity, row)

    def delete_identity(self, identity_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM user_identity WHERE id = %s", (identity_id,))
            return result.rowcount > 0

    # sessions
    def create_session(self, session: UserSession) -> UserSession:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO user_session (id, user_id, token_id, expires_at, last_activity, is_active,
                                              device_name, operating_system, browser, ip_address,
                                              user_agent, login_provider)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.token_id,
                        session.expires_at,
                        session.last_activity,
                        session.is_active,
                        session.device_name,
                        session.operating_system,
                        session.browser,
                        session.ip_address,
                        session.user_agent,
                        session.login_provider,
                    ),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": session.user_id})
        return _row_to(UserSession, row)

    def get_session(self, session_id: str) -> Optional[UserSession]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_session WHERE id = %s", (session_id,)
            ).fetchone()
        return _row_to(UserSession, row)

    def get_session_by_token_id(self, token_id: str) -> Optional[UserSession]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_session WHERE token_id = %s", (token_id,)
            ).fetchone()
        return _row_to(UserSession, row)

    def update_session(self, session_id: str, **updates: Any) -> Optional[UserSession]:
        assignments, values = _assignments(updates, _SESSION_COLUMNS)
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE user_session SET {assignments} WHERE id = %s RETURNING *",
                (*values, session_id),
            ).fetchone()
        return _row_to(UserSession, row)

    def rotate_session_token(
        self, session_id: str, expected_token_id: str, new_token_id: str, **updates: Any
    ) -> Optional[UserSession]:
        assignments, values = _assignments({"token_id": new_token_id, **updates}, _SESSION_COLUMNS)
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE user_session SET {assignments}
                WHERE id = %s AND token_id = %s AND is_active
                RETURNING *
                """,
                (*values, session_id, expected_token_id),
            ).fetchone()
        return _row_to(UserSession, row)

    def list_sessions(self, user_id: str, *, active_only: bool = True) -> List[UserSession]:
        query = "SELECT * FROM user_session WHERE user_id = %s"
        if active_only:
            query += " AND is_active"
        with self._connect() as conn:
            rows = conn.execute(query + " ORDER BY last_activity DESC", (user_id,)).fetchall()
        return [_row_to(UserSession, row) for row in rows]

    def get_latest_session_for_user(self, user_id: str) -> Optional[UserSession]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM user_session
                WHERE user_id = %s AND is_active
                ORDER BY created_at DESC LIMIT 1
                """,
                (user_id,),
            ).fetchone()
        return _row_to(UserSession, row)

    def deactivate_session(self, user_id: str, session_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE user_session SET is_active = FALSE, updated_at = now()
                WHERE id = %s AND user_id = %s AND is_active
                """,
                (session_id, user_id),
            )
            return result.rowcount > 0

    def deactivate_session_by_token_id(self, token_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE user_session SET is_active = FALSE, updated_at = now()
                WHERE token_id = %s AND is_active
                """,
                (token_id,),
            )
            return result.rowcount > 0

    def deactivate_sessions_except(self, user_id: str, token_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE user_session SET is_active = FALSE, updated_at = now()
                WHERE user_id = %s AND token_id <> %s AND is_active
                """,
                (user_id, token_id),
            )
            return result.rowcount

    def find_session_by_exchange_code(
        self, code: str, session_id: Optional[str] = None
    ) -> Optional[UserSession]:
        with self._connect() as conn:
            if session_id:
                row = conn.execute(
                    "SELECT * FROM user_session WHERE exchange_code = %s AND id = %s",
                    (code, session_id),
                ).fetchone()
            else:
                row = conn.execute(
                    "SELECT * FROM user_session WHERE exchange_code = %s LIMIT 1",
                    (code,),
                ).fetchone()
        return _row_to(UserSession, row)

    def clear_exchange_code_if_matches(self, session_id: str, code: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE user_session
                SET exchange_code = NULL, exchange_code_requested_at = NULL, updated_at = now()
                WHERE id = %s AND exchange_code = %s
                """,
                (session_id, code),
            )
            return result.rowcount > 0

    def delete_sessions_inactive_before(self, cutoff: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM user_session WHERE last_activity < %s", (cutoff,)
            )
            return result.rowcount

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM user_session WHERE expires_at <= %s", (now,))
            return result.rowcount

    # access tokens
    def create_access_token(self, token: UserAccessToken) -> UserAccessToken:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO user_access_token (id, user_id, name, token_hash, token, scopes, expires_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        token.id,
                        token.user_id,
                        token.name,
                        token.token_hash,
                        token.token,
                        json.dumps(list(token.scopes)),
                        token.expires_at,
                    ),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("token user missing", {"user_id": token.user_id})
        return _row_to(UserAccessToken, row)

    def get_access_token(self, token_id: str) -> Optional[UserAccessToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_access_token WHERE id = %s", (token_id,)
            ).fetchone()
        return _row_to(UserAccessToken, row)

    def list_access_tokens(self, user_id: str) -> List[UserAccessToken]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM user_access_token WHERE user_id = %s ORDER BY created_at DESC",
                (user_id,),
            ).fetchall()
        return [_row_to(UserAccessToken, row) for row in rows]

    def list_all_access_tokens(self) -> List[UserAccessToken]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM user_access_token").fetchall()
        return [_row_to(UserAccessToken, row) for row in rows]

    def update_access_token(self, token_id: str, **updates: Any) -> Optional[UserAccessToken]:
        assignments, values = _assignments(updates, _TOKEN_COLUMNS)
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE user_access_token SET {assignments} WHERE id = %s RETURNING *",
                (*values, token_id),
            ).fetchone()
        return _row_to(UserAccessToken, row)

    def delete_access_token(self, token_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM user_access_token WHERE id = %s", (token_id,))
            return result.rowcount > 0

    def delete_access_tokens_for_user(self, user_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM user_access_token WHERE user_id = %s", (user_id,)
            )
            return result.rowcount

    # oauth provider configuration
    def list_provider_configs(self, *, enabled_only: bool = False) -> List[OAuthProviderConfig]:
        query = "SELECT * FROM oauth_provider"
        if enabled_only:
            query += " WHERE is_enabled"
        with self._connect() as conn:
            rows = conn.execute(query + " ORDER BY provider_id").fetchall()
        return [_row_to(OAuthProviderConfig, row) for row in rows]

    def get_provider_config(self, provider_id: str) -> Optional[OAuthProviderConfig]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM oauth_provider WHERE provider_id = %s", (provider_id,)
            ).fetchone()
        return _row_to(OAuthProviderConfig, row)

    def upsert_provider_config(self, config: OAuthProviderConfig) -> OAuthProviderConfig:
        values = []
        for column in _PROVIDER_COLUMNS:
            value = getattr(config, column)
            if column in _JSON_COLUMNS and value is not None:
                value = json.dumps(value)
            elif isinstance(value, ProviderType):
                value = value.value
            values.append(value)
        placeholders = ", ".join(["%s"] * len(_PROVIDER_COLUMNS))
        updates = ", ".join(
            f"{column} = EXCLUDED.{column}"
            for column in _PROVIDER_COLUMNS
            if column not in {"id", "provider_id"}
        )
        with self._connect() as conn:
            row = conn.execute(
                f"""
                INSERT INTO oauth_provider ({", ".join(_PROVIDER_COLUMNS)})
                VALUES ({placeholders})
                ON CONFLICT (provider_id) DO UPDATE SET {updates}, updated_at = now()
                RETURNING *
                """,
                values,
            ).fetchone()
        return _row_to(OAuthProviderConfig, row)

    def delete_provider_config(self, provider_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM oauth_provider WHERE provider_id = %s", (provider_id,)
            )
            return result.rowcount > 0

    # runtime-mutable settings
    def get_system_settings(self) -> Dict[str, Any]:
        with self._connect() as conn:
            rows = conn.execute("SELECT name, value FROM system_setting").fetchall()
        return {row["name"]: row["value"] for row in rows}

    def set_system_settings(self, values: Dict[str, Any]) -> Dict[str, Any]:
        with self._connect() as conn:
            for name, value in values.items():
                if value is None:
                    conn.execute("DELETE FROM system_setting WHERE name = %s", (name,))
                    continue
                conn.execute(
                    """
                    INSERT INTO system_setting (name, value, updated_at)
                    VALUES (%s, %s, now())
                    ON CONFLICT (name) DO UPDATE SET value = EXCLUDED.value, updated_at = now()
                    """,
                    (name, json.dumps(value)),
                )
        return self.get_system_settings()


__all__ = ["PostgresStore"]

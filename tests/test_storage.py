import uuid
from contextlib import contextmanager
from datetime import timedelta

import pytest
from psycopg import errors

from zentik_auth.storage.errors import ConstraintViolation
from zentik_auth.storage.memory import MemoryStore
from zentik_auth.storage.models import (
    OAuthProviderConfig,
    ProviderType,
    User,
    UserAccessToken,
    UserSession,
    utcnow,
)
from zentik_auth.storage.postgres import (
    _SESSION_COLUMNS,
    _TOKEN_COLUMNS,
    _USER_COLUMNS,
    PostgresStore,
    _assignments,
    _row_to,
)


def _session(user_id, token_id="jti-1"):
    return UserSession.new(user_id, token_id, utcnow() + timedelta(days=7))


class TestMemoryStoreConstraints:
    """Unique keys the in-memory store enforces itself."""

    def test_duplicate_email_is_case_insensitive(self, memory_store):
        memory_store.create_user("ada@example.com", "ada")

        with pytest.raises(ConstraintViolation) as exc_info:
            memory_store.create_user("ADA@example.com", "other")
        assert exc_info.value.field == "email"

    def test_duplicate_username(self, memory_store):
        memory_store.create_user("ada@example.com", "ada")

        with pytest.raises(ConstraintViolation) as exc_info:
            memory_store.create_user("other@example.com", "ada")
        assert exc_info.value.field == "username"

    def test_one_identity_per_provider(self, memory_store):
        user = memory_store.create_user("ada@example.com", "ada")
        memory_store.create_identity(user.id, ProviderType.GITHUB, provider_user_id="1")

        with pytest.raises(ConstraintViolation):
            memory_store.create_identity(user.id, "GITHUB", provider_user_id="2")

    def test_identity_for_missing_user(self, memory_store):
        with pytest.raises(ConstraintViolation):
            memory_store.create_identity("nope", ProviderType.GOOGLE)


class TestMemoryStoreSessions:
    """Conditional session updates."""

    def test_rotate_requires_current_token_id(self, memory_store):
        user = memory_store.create_user("ada@example.com", "ada")
        session = memory_store.create_session(_session(user.id))

        assert memory_store.rotate_session_token(session.id, "stale", "jti-2") is None
        rotated = memory_store.rotate_session_token(session.id, "jti-1", "jti-2", ip_address="10.0.0.1")
        assert rotated.token_id == "jti-2"
        assert rotated.ip_address == "10.0.0.1"
        assert memory_store.rotate_session_token(session.id, "jti-1", "jti-3") is None

    def test_rotate_ignores_inactive_sessions(self, memory_store):
        user = memory_store.create_user("ada@example.com", "ada")
        session = memory_store.create_session(_session(user.id))
        memory_store.deactivate_session(user.id, session.id)

        assert memory_store.rotate_session_token(session.id, "jti-1", "jti-2") is None

    def test_exchange_code_is_consumed_once(self, memory_store):
        user = memory_store.create_user("ada@example.com", "ada")
        session = memory_store.create_session(_session(user.id))
        memory_store.update_session(session.id, exchange_code="abc", exchange_code_requested_at=utcnow())

        assert memory_store.find_session_by_exchange_code("abc", session.id).id == session.id
        assert memory_store.clear_exchange_code_if_matches(session.id, "wrong") is False
        assert memory_store.clear_exchange_code_if_matches(session.id, "abc") is True
        assert memory_store.clear_exchange_code_if_matches(session.id, "abc") is False
        assert memory_store.get_session(session.id).exchange_code_requested_at is None

    def test_deactivate_all_but_current(self, memory_store):
        user = memory_store.create_user("ada@example.com", "ada")
        for jti in ("a", "b", "c"):
            memory_store.create_session(_session(user.id, jti))

        assert memory_store.deactivate_sessions_except(user.id, "b") == 2
        assert [s.token_id for s in memory_store.list_sessions(user.id)] == ["b"]
        assert len(memory_store.list_sessions(user.id, active_only=False)) == 3

    def test_deleting_user_cascades(self, memory_store):
        user = memory_store.create_user("ada@example.com", "ada")
        memory_store.create_session(_session(user.id))
        memory_store.create_identity(user.id, ProviderType.DISCORD)

        assert memory_store.delete_user(user.id) is True
        assert memory_store.list_sessions(user.id, active_only=False) == []
        assert memory_store.list_identities(user.id) == []


class TestMemoryStorePersistence:
    """The JSON snapshot survives a restart."""

    def test_records_reload_from_disk(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        user = store.create_user("ada@example.com", "ada", has_password=True)
        session = store.create_session(_session(user.id))
        store.create_identity(user.id, ProviderType.GITHUB, provider_user_id="42")
        store.upsert_provider_config(
            OAuthProviderConfig.new("github", ProviderType.GITHUB, scopes=["read:user"])
        )
        store.set_system_settings({"jwt_access_token_expiration": "30m"})

        reloaded = MemoryStore(fs_root=str(tmp_path))

        assert reloaded.get_user(user.id).has_password is True
        restored = reloaded.get_session(session.id)
        assert restored.expires_at == session.expires_at
        assert restored.expires_at.tzinfo is not None
        identity = reloaded.get_identity_by_provider_uid(ProviderType.GITHUB, "42")
        assert identity.provider_type is ProviderType.GITHUB
        assert reloaded.get_provider_config("github").scopes == ["read:user"]
        assert reloaded.get_system_settings() == {"jwt_access_token_expiration": "30m"}

    def test_corrupt_snapshot_starts_empty(self, tmp_path):
        (tmp_path / "state").mkdir()
        (tmp_path / "state" / "memory_store.json").write_text("{not json")

        store = MemoryStore(fs_root=str(tmp_path))

        assert store.users == {}

    def test_reset_clears_snapshot(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        store.create_user("ada@example.com", "ada")
        store.reset()

        assert MemoryStore(fs_root=str(tmp_path)).users == {}


class FakeResult:
    def __init__(self, rows=None, rowcount=0):
        self.rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConnection:
    """Records statements and replays canned results in order."""

    def __init__(self, results):
        self.results = list(results)
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        outcome = self.results.pop(0) if self.results else FakeResult()
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class FakePool:
    def __init__(self, *results):
        self.conn = FakeConnection(results)

    @contextmanager
    def connection(self):
        yield self.conn


def _postgres(*results) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = FakePool(*results)
    return store


class TestPostgresHelpers:
    """Row mapping and update whitelisting, no database required."""

    def test_assignments_whitelist_columns(self):
        with pytest.raises(ValueError):
            _assignments({"id": "x"}, _USER_COLUMNS)

    def test_assignments_encode_json_and_enums(self):
        clause, values = _assignments({"name": "ci", "scopes": ["watch"]}, _TOKEN_COLUMNS)

        assert clause == "name = %s, scopes = %s, updated_at = now()"
        assert values == ["ci", '["watch"]']

    def test_row_to_normalizes_types(self):
        user_id = uuid.uuid4()
        row = {
            "id": uuid.uuid4(),
            "user_id": user_id,
            "name": "ci",
            "token_hash": "h",
            "scopes": '["watch", "admin"]',
            "unexpected": "ignored",
        }

        token = _row_to(UserAccessToken, row)

        assert token.user_id == str(user_id)
        assert token.scopes == ["watch", "admin"]
        assert _row_to(User, None) is None

    def test_row_to_provider_type(self):
        config = _row_to(
            OAuthProviderConfig,
            {
                "id": uuid.uuid4(),
                "name": "GitHub",
                "provider_id": "github",
                "type": "GITHUB",
                "client_id": "c",
                "client_secret": "s",
            },
        )

        assert config.type is ProviderType.GITHUB


class TestPostgresStatements:
    """Statements the store sends through its pool."""

    def test_rotate_is_conditional_on_token_and_activity(self):
        store = _postgres(FakeResult())

        assert store.rotate_session_token("sid", "old", "new") is None

        sql, params = store.pool.conn.statements[0]
        assert "WHERE id = %s AND token_id = %s AND is_active" in sql
        assert params == ("new", "sid", "old")

    def test_clear_exchange_code_reports_rowcount(self):
        store = _postgres(FakeResult(rowcount=1), FakeResult(rowcount=0))

        assert store.clear_exchange_code_if_matches("sid", "abc") is True
        assert store.clear_exchange_code_if_matches("sid", "abc") is False

    def test_unique_violation_maps_to_constraint(self):
        store = _postgres(errors.UniqueViolation('duplicate key value violates "app_user_username_key"'))

        with pytest.raises(ConstraintViolation) as exc_info:
            store.create_user("ada@example.com", "ada")
        assert exc_info.value.field == "username"

    def test_update_session_rejects_unknown_columns(self):
        store = _postgres()

        with pytest.raises(ValueError):
            store.update_session("sid", user_id="someone-else")
        assert "user_id" not in _SESSION_COLUMNS
        assert store.pool.conn.statements == []

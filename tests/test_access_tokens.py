"""Unit tests for opaque access tokens and scope authorization."""

from datetime import timedelta

import pytest

from zentik_auth.service.access_tokens import AccessTokenManager
from zentik_auth.service.errors import ForbiddenError, NotFoundError, ValidationError
from zentik_auth.service.scopes import (
    AccessTokenScope,
    ScopeRequirement,
    authorize_scopes,
    can_create_message_in_bucket,
    create_message_bucket_scope,
    has_scope,
    scopes_grant_full_access,
)
from zentik_auth.storage.models import utcnow


@pytest.fixture
def tokens(memory_store, hasher, settings):
    return AccessTokenManager(memory_store, hasher, settings)


@pytest.fixture
def user(memory_store):
    return memory_store.create_user("linus@example.com", "linus", email_confirmed=True)


class TestCreateAndValidate:
    """Tests for issuing and resolving access tokens."""

    async def test_created_token_resolves_to_owner(self, tokens, user):
        created = await tokens.create_token(user.id, "ci", ["watch"])

        assert created["token"].startswith("zat_")
        assert len(created["token"]) == len("zat_") + 64
        resolved = await tokens.validate_token(created["token"])
        assert resolved is not None
        owner, scopes = resolved
        assert owner.id == user.id
        assert scopes == ["watch"]

    async def test_plaintext_is_not_persisted_by_default(self, tokens, user, memory_store):
        created = await tokens.create_token(user.id, "ci")

        record = memory_store.get_access_token(created["id"])
        assert record.token is None
        assert created["token"] not in record.token_hash
        assert created["token_stored"] is False

    async def test_store_token_keeps_plaintext(self, tokens, user, memory_store):
        created = await tokens.create_token(user.id, "ci", store_token=True)

        assert memory_store.get_access_token(created["id"]).token == created["token"]

    async def test_validate_updates_last_used(self, tokens, user, memory_store):
        created = await tokens.create_token(user.id, "ci")

        await tokens.validate_token(created["token"])

        assert memory_store.get_access_token(created["id"]).last_used is not None

    async def test_wrong_prefix_or_secret_is_rejected(self, tokens, user):
        created = await tokens.create_token(user.id, "ci")
        secret = created["token"][len("zat_"):]

        assert await tokens.validate_token(secret) is None
        assert await tokens.validate_token("zat_" + "0" * 64) is None
        assert await tokens.validate_token("zat_") is None

    async def test_expired_token_is_rejected(self, tokens, user, memory_store):
        created = await tokens.create_token(user.id, "ci")
        memory_store.update_access_token(created["id"], expires_at=utcnow() - timedelta(seconds=1))

        assert await tokens.validate_token(created["token"]) is None

    async def test_expiry_must_be_in_the_future(self, tokens, user):
        with pytest.raises(ValidationError):
            await tokens.create_token(user.id, "ci", expires_at=utcnow() - timedelta(days=1))

    async def test_blank_name_is_rejected(self, tokens, user):
        with pytest.raises(ValidationError):
            await tokens.create_token(user.id, "   ")

    async def test_new_watch_token_replaces_previous(self, tokens, user, memory_store):
        first = await tokens.create_token(user.id, "watch-1", ["watch"])
        other = await tokens.create_token(user.id, "ci", [])

        second = await tokens.create_token(user.id, "watch-2", ["watch"])

        ids = {t.id for t in memory_store.list_access_tokens(user.id)}
        assert first["id"] not in ids
        assert {other["id"], second["id"]} == ids


class TestManagement:
    """Tests for listing, renaming and revoking."""

    async def test_list_never_exposes_hash_or_secret(self, tokens, user):
        await tokens.create_token(user.id, "ci", store_token=True)

        listed = tokens.list_user_tokens(user.id)

        assert len(listed) == 1
        assert "token_hash" not in listed[0]
        assert "token" not in listed[0]
        assert listed[0]["token_stored"] is True

    async def test_get_token_of_another_user_is_not_found(self, tokens, user, memory_store):
        created = await tokens.create_token(user.id, "ci")
        other = memory_store.create_user("eve@example.com", "eve")

        with pytest.raises(NotFoundError):
            tokens.get_token(created["id"], other.id)

    async def test_update_token_renames(self, tokens, user):
        created = await tokens.create_token(user.id, "ci")

        updated = tokens.update_token(user.id, created["id"], "  deploy  ")

        assert updated["name"] == "deploy"

    async def test_revoke_token(self, tokens, user):
        created = await tokens.create_token(user.id, "ci")

        assert tokens.revoke_token(user.id, created["id"]) is True
        assert await tokens.validate_token(created["token"]) is None
        with pytest.raises(NotFoundError):
            tokens.revoke_token(user.id, created["id"])

    async def test_revoke_all_tokens(self, tokens, user):
        await tokens.create_token(user.id, "a")
        await tokens.create_token(user.id, "b")

        assert tokens.revoke_all_tokens(user.id) is True
        assert tokens.list_user_tokens(user.id) == []
        assert tokens.revoke_all_tokens(user.id) is False


class TestBucketTokens:
    """Tests for bucket-scoped tokens."""

    async def test_bucket_token_is_stored_and_scoped(self, tokens, user):
        created = await tokens.create_token_for_bucket(user.id, "b-1", "publisher")

        assert created["scopes"] == ["message-bucket-creation:b-1"]
        assert created["token_stored"] is True

    async def test_bucket_listing_includes_unscoped_tokens(self, tokens, user):
        admin = await tokens.create_token(user.id, "admin", [])
        scoped = await tokens.create_token_for_bucket(user.id, "b-1", "publisher")
        await tokens.create_token_for_bucket(user.id, "b-2", "elsewhere")
        await tokens.create_token(user.id, "watcher", ["watch"])

        listed = {t["id"]: t for t in tokens.list_tokens_for_bucket(user.id, "b-1")}

        assert set(listed) == {admin["id"], scoped["id"]}
        assert listed[scoped["id"]]["token"] == scoped["token"]
        assert listed[admin["id"]]["token"] is None


class TestScopeHelpers:
    """Tests for the empty-means-full-access primitive."""

    @pytest.mark.parametrize("scopes", [None, []])
    def test_empty_scopes_grant_everything(self, scopes):
        assert scopes_grant_full_access(scopes)
        assert has_scope(scopes, "watch")
        assert can_create_message_in_bucket(scopes, "any-bucket")

    def test_scoped_token_matches_exactly(self):
        scopes = [create_message_bucket_scope("b-1")]

        assert can_create_message_in_bucket(scopes, "b-1")
        assert not can_create_message_in_bucket(scopes, "b-10")
        assert not has_scope(scopes, "watch")


class TestAuthorizeScopes:
    """Tests for per-endpoint scope checks."""

    bucket_requirement = ScopeRequirement.of(
        AccessTokenScope.MESSAGE_BUCKET_CREATION, bucket_param="bucketId"
    )

    def test_no_requirement_allows(self):
        authorize_scopes(None, ["watch"])
        authorize_scopes(ScopeRequirement(), ["watch"])

    def test_jwt_callers_are_never_restricted(self):
        authorize_scopes(self.bucket_requirement, None)

    def test_unscoped_token_is_allowed(self):
        authorize_scopes(self.bucket_requirement, [])

    def test_bucket_id_from_path_then_body_then_query(self):
        scopes = ["message-bucket-creation:b-1"]

        authorize_scopes(self.bucket_requirement, scopes, path_params={"bucketId": "b-1"})
        authorize_scopes(self.bucket_requirement, scopes, body={"bucketId": "b-1"})
        authorize_scopes(self.bucket_requirement, scopes, query={"bucketId": "b-1"})

    def test_path_param_wins_over_body(self):
        with pytest.raises(ForbiddenError):
            authorize_scopes(
                self.bucket_requirement,
                ["message-bucket-creation:b-1"],
                path_params={"bucketId": "b-2"},
                body={"bucketId": "b-1"},
            )

    def test_missing_bucket_id_is_forbidden(self):
        with pytest.raises(ForbiddenError):
            authorize_scopes(self.bucket_requirement, ["message-bucket-creation:b-1"])

    def test_watch_requires_literal_scope(self):
        requirement = ScopeRequirement.of(AccessTokenScope.WATCH)

        authorize_scopes(requirement, ["watch"])
        with pytest.raises(ForbiddenError):
            authorize_scopes(requirement, ["message-bucket-creation:b-1"])

    def test_unknown_requirement_is_forbidden(self):
        with pytest.raises(ForbiddenError):
            authorize_scopes(ScopeRequirement.of("admin"), ["watch"])

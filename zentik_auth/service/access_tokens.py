from __future__ import annotations

import secrets
import uuid
from datetime import datetime
from typing import Any, List, Optional, Sequence, Tuple

from zentik_auth.config import Settings
from zentik_auth.logging import get_logger
from zentik_auth.service.errors import NotFoundError, ValidationError
from zentik_auth.service.hashing import SecretHasher
from zentik_auth.service.scopes import (
    AccessTokenScope,
    can_create_message_in_bucket,
    create_message_bucket_scope,
)
from zentik_auth.storage.models import User, UserAccessToken, utcnow

logger = get_logger(__name__)


def _public_view(token: UserAccessToken, *, include_secret: bool = False) -> dict[str, Any]:
    view = {
        "id": token.id,
        "name": token.name,
        "scopes": list(token.scopes),
        "expires_at": token.expires_at,
        "last_used": token.last_used,
        "created_at": token.created_at,
        "is_expired": token.is_expired(),
        "token_stored": token.token is not None,
    }
    if include_secret:
        view["token"] = token.token
    return view


class AccessTokenManager:
    """Long-lived opaque bearer tokens, stored as argon2 hashes.

    The secret is ``<prefix><64 hex chars>``; only the part after the prefix
    is hashed. Because salted hashes cannot be looked up by value, validation
    verifies the presented secret against every non-expired token. That is a
    linear scan: fine for the handful of tokens users create, but the first
    place to add a derived lookup key if the table grows.
    """

    def __init__(self, store, hasher: SecretHasher, settings: Settings) -> None:
        self.store = store
        self.hasher = hasher
        self.settings = settings

    @property
    def prefix(self) -> str:
        return self.settings.access_token_prefix

    def _generate_secret(self) -> str:
        return f"{self.prefix}{secrets.token_hex(32)}"

    def _strip_prefix(self, token: str) -> Optional[str]:
        if not token or not token.startswith(self.prefix):
            return None
        raw = token[len(self.prefix):]
        return raw or None

    async def create_token(
        self,
        user_id: str,
        name: str,
        scopes: Optional[Sequence[str]] = None,
        expires_at: Optional[datetime] = None,
        *,
        store_token: bool = False,
    ) -> dict[str, Any]:
        """Create a token; the plaintext is returned once and persisted only on request."""
        if not name or not name.strip():
            raise ValidationError("Token name is required")
        if expires_at is not None and expires_at <= utcnow():
            raise ValidationError("Expiration must be in the future")
        scope_list = list(dict.fromkeys(scopes or []))

        if AccessTokenScope.WATCH.value in scope_list:
            self._delete_existing_watch_tokens(user_id)

        secret = self._generate_secret()
        digest = await self.hasher.hash_async(secret[len(self.prefix):])
        record = UserAccessToken(
            id=str(uuid.uuid4()),
            user_id=user_id,
            name=name.strip(),
            token_hash=digest,
            token=secret if store_token else None,
            scopes=scope_list,
            expires_at=expires_at,
        )
        created = self.store.create_access_token(record)
        logger.info(
            "access_token_created",
            user_id=user_id,
            token_id=created.id,
            scopes=scope_list,
            token_stored=store_token,
        )
        return {
            "token": secret,
            "id": created.id,
            "name": created.name,
            "scopes": list(created.scopes),
            "expires_at": created.expires_at,
            "created_at": created.created_at,
            "token_stored": created.token is not None,
        }

    def _delete_existing_watch_tokens(self, user_id: str) -> None:
        for existing in self.store.list_access_tokens(user_id):
            if AccessTokenScope.WATCH.value in (existing.scopes or []):
                self.store.delete_access_token(existing.id)
                logger.info("watch_token_replaced", user_id=user_id, token_id=existing.id)

    async def validate_token(self, token: str) -> Optional[Tuple[User, List[str]]]:
        """Return ``(user, scopes)`` for a live token, or None."""
        raw = self._strip_prefix(token)
        if not raw:
            return None
        now = utcnow()
        for candidate in self.store.list_all_access_tokens():
            if candidate.is_expired(now):
                continue
            if not await self.hasher.verify_async(candidate.token_hash, raw):
                continue
            user = self.store.get_user(candidate.user_id)
            if not user:
                logger.warning("access_token_owner_missing", token_id=candidate.id)
                return None
            self.store.update_access_token(candidate.id, last_used=now)
            return user, list(candidate.scopes or [])
        return None

    def list_user_tokens(self, user_id: str) -> List[dict[str, Any]]:
        return [_public_view(t) for t in self.store.list_access_tokens(user_id)]

    def get_token(self, token_id: str, user_id: str) -> dict[str, Any]:
        token = self.store.get_access_token(token_id)
        if not token or token.user_id != user_id:
            raise NotFoundError("Access token not found")
        return _public_view(token)

    def list_tokens_for_bucket(self, user_id: str, bucket_id: str) -> List[dict[str, Any]]:
        """Tokens able to post into ``bucket_id``, with stored plaintext where kept."""
        return [
            _public_view(t, include_secret=True)
            for t in self.store.list_access_tokens(user_id)
            if can_create_message_in_bucket(t.scopes, bucket_id)
        ]

    async def create_token_for_bucket(
        self,
        user_id: str,
        bucket_id: str,
        name: str,
        expires_at: Optional[datetime] = None,
    ) -> dict[str, Any]:
        return await self.create_token(
            user_id,
            name,
            [create_message_bucket_scope(bucket_id)],
            expires_at,
            store_token=True,
        )

    def update_token(self, user_id: str, token_id: str, name: str) -> dict[str, Any]:
        token = self.store.get_access_token(token_id)
        if not token or token.user_id != user_id:
            raise NotFoundError("Access token not found")
        if not name or not name.strip():
            raise ValidationError("Token name is required")
        updated = self.store.update_access_token(token_id, name=name.strip())
        return _public_view(updated)

    def revoke_token(self, user_id: str, token_id: str) -> bool:
        token = self.store.get_access_token(token_id)
        if not token or token.user_id != user_id:
            raise NotFoundError("Access token not found")
        self.store.delete_access_token(token_id)
        logger.info("access_token_revoked", user_id=user_id, token_id=token_id)
        return True

    def revoke_all_tokens(self, user_id: str) -> bool:
        count = self.store.delete_access_tokens_for_user(user_id)
        if count:
            logger.info("access_tokens_revoked_all", user_id=user_id, count=count)
        return count > 0


__all__ = ["AccessTokenManager"]

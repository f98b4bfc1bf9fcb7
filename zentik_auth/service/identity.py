from __future__ import annotations

import base64
import binascii
import json
import secrets
import string
from typing import Any, Dict, List, Optional

from zentik_auth.logging import get_logger
from zentik_auth.service.email import EmailService
from zentik_auth.service.errors import (
    AuthenticationError,
    BadRequestError,
    ConflictError,
    ForbiddenError,
    LastIdentityError,
    NotFoundError,
)
from zentik_auth.service.hashing import SecretHasher
from zentik_auth.service.profiles import NormalizedProfile
from zentik_auth.storage.errors import ConstraintViolation
from zentik_auth.storage.models import ProviderType, User, UserIdentity

logger = get_logger(__name__)

_HANDLE_ALPHABET = string.ascii_lowercase + string.digits


def _random_handle(length: int = 6) -> str:
    return "".join(secrets.choice(_HANDLE_ALPHABET) for _ in range(length))


def decode_unverified_claims(identity_token: str) -> Dict[str, Any]:
    """Payload segment of a JWS without checking its signature.

    Apple's mobile SDK hands the app a signed identity token; signature
    verification belongs to the provider SDK, so only the claims are read.
    """
    parts = str(identity_token or "").split(".")
    if len(parts) < 2:
        return {}
    segment = parts[1]
    padded = segment + "=" * (-len(segment) % 4)
    try:
        decoded = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")))
    except (binascii.Error, UnicodeError, ValueError) as exc:
        logger.warning("identity_token_decode_failed", error=str(exc))
        return {}
    return decoded if isinstance(decoded, dict) else {}


class IdentityLinker:
    """Maps external provider accounts onto users.

    ``(user_id, provider_type)`` is unique in the store; a duplicate insert
    racing with another request is read back as the existing link rather
    than surfaced as an error.
    """

    def __init__(self, store, hasher: SecretHasher, email: Optional[EmailService] = None) -> None:
        self.store = store
        self.hasher = hasher
        self.email = email

    # lookup
    def _find_existing_identity(
        self, provider_type: ProviderType, profile: NormalizedProfile
    ) -> Optional[UserIdentity]:
        if profile.id and profile.id != "unknown":
            identity = self.store.get_identity_by_provider_uid(provider_type, profile.id)
            if identity:
                return identity
        if profile.email:
            return self.store.get_identity_by_provider_email(provider_type, profile.email)
        return None

    async def find_or_create_user_from_provider(
        self,
        provider_type: ProviderType | str,
        profile: NormalizedProfile,
        current_user_id: Optional[str] = None,
        *,
        metadata: Optional[str] = None,
    ) -> User:
        provider_type = ProviderType(provider_type)
        existing = self._find_existing_identity(provider_type, profile)
        if existing:
            if current_user_id and existing.user_id != current_user_id:
                logger.warning(
                    "identity_conflict",
                    provider=provider_type.value,
                    owner_id=existing.user_id,
                    current_user_id=current_user_id,
                )
                raise ConflictError(
                    f"This {provider_type.value} account is already linked to another user"
                )
            owner = self.store.get_user(existing.user_id)
            if owner:
                self._refresh_identity(existing, profile, metadata)
                logger.info(
                    "identity_resolved",
                    provider=provider_type.value,
                    user_id=owner.id,
                )
                return owner
            logger.warning("identity_owner_missing", identity_id=existing.id)

        user = self._resolve_user(provider_type, profile, current_user_id)
        if user is None:
            user = await self._create_user(provider_type, profile)
        user = self._enrich_user(user, profile)
        self._ensure_identity(user, provider_type, profile, metadata)
        return user

    def _resolve_user(
        self,
        provider_type: ProviderType,
        profile: NormalizedProfile,
        current_user_id: Optional[str],
    ) -> Optional[User]:
        if current_user_id:
            user = self.store.get_user(current_user_id)
            if not user:
                logger.error("connect_user_missing", user_id=current_user_id)
                raise BadRequestError("Current user not found")
            return user
        if profile.email:
            user = self.store.get_user_by_email(profile.email)
            if user:
                logger.info("oauth_user_matched_by_email", user_id=user.id)
                return user
        if profile.username:
            user = self.store.get_user_by_username(profile.username)
            if user:
                logger.info("oauth_user_matched_by_username", user_id=user.id)
                return user
        return None

    async def _create_user(self, provider_type: ProviderType, profile: NormalizedProfile) -> User:
        label = provider_type.value.lower()
        username = profile.username or f"{label}_{_random_handle()}"
        email = profile.email or f"{username}@users.noreply.{label}.com"
        try:
            user = self.store.create_user(
                email,
                username,
                password=None,
                has_password=False,
                email_confirmed=True,
                first_name=profile.first_name,
                last_name=profile.last_name,
                avatar=profile.avatar,
                locale=profile.locale,
            )
        except ConstraintViolation as exc:
            logger.warning("oauth_user_create_conflict", field=exc.field)
            user = None
            if profile.email:
                user = self.store.get_user_by_email(profile.email)
            if not user and profile.username:
                user = self.store.get_user_by_username(profile.username)
            if not user:
                raise ConflictError("Account already exists") from exc
            return user

        logger.info("oauth_user_created", user_id=user.id, provider=provider_type.value)
        if self.email:
            sent = self.email.send_welcome_email(user.email, user.username, profile.locale)
            if not sent:
                logger.warning("welcome_email_failed", user_id=user.id)
        return user

    def _enrich_user(self, user: User, profile: NormalizedProfile) -> User:
        """Fill blanks from the provider profile; never overwrite what the user set."""
        updates: Dict[str, Any] = {}
        if profile.avatar and not user.avatar:
            updates["avatar"] = profile.avatar
        if profile.first_name and not user.first_name:
            updates["first_name"] = profile.first_name
        if profile.last_name and not user.last_name:
            updates["last_name"] = profile.last_name
        if profile.email and not user.email_confirmed:
            updates["email_confirmed"] = True
        if not updates:
            return user
        return self.store.update_user(user.id, **updates) or user

    def _refresh_identity(
        self,
        identity: UserIdentity,
        profile: NormalizedProfile,
        metadata: Optional[str],
    ) -> None:
        updates: Dict[str, Any] = {}
        if profile.avatar and identity.avatar_url != profile.avatar:
            updates["avatar_url"] = profile.avatar
        if profile.email and identity.email != profile.email:
            updates["email"] = profile.email
        if profile.id and profile.id != "unknown" and identity.provider_user_id != profile.id:
            updates["provider_user_id"] = profile.id
        if metadata is not None and identity.metadata != metadata:
            updates["metadata"] = metadata
        if updates:
            self.store.update_identity(identity.id, **updates)

    def _ensure_identity(
        self,
        user: User,
        provider_type: ProviderType,
        profile: NormalizedProfile,
        metadata: Optional[str],
    ) -> None:
        """Create or refresh the link row; failures here never fail the login."""
        provider_user_id = profile.id if profile.id and profile.id != "unknown" else None
        try:
            identity = self.store.get_identity_for_user(user.id, provider_type)
            if identity:
                self._refresh_identity(identity, profile, metadata)
                return
            created = self.store.create_identity(
                user.id,
                provider_type,
                provider_user_id=provider_user_id,
                email=profile.email,
                avatar_url=profile.avatar,
                metadata=metadata,
            )
            logger.info(
                "identity_linked",
                identity_id=created.id,
                user_id=user.id,
                provider=provider_type.value,
            )
        except ConstraintViolation:
            logger.info("identity_already_linked", user_id=user.id, provider=provider_type.value)
        except Exception as exc:
            logger.error(
                "identity_save_failed",
                user_id=user.id,
                provider=provider_type.value,
                error=str(exc),
            )

    # Apple mobile sign-in
    async def link_apple_identity_token(
        self,
        identity_token: str,
        payload: Optional[Dict[str, Any]] = None,
        current_user_id: Optional[str] = None,
    ) -> User:
        if not identity_token:
            raise BadRequestError("identityToken is required")
        claims = decode_unverified_claims(identity_token)
        subject = claims.get("sub")
        if not subject:
            raise BadRequestError("Unable to determine Apple subject")
        email = (payload or {}).get("email") or claims.get("email")
        profile = NormalizedProfile(
            id=str(subject),
            email=email,
            username=None if email else f"apple_{str(subject)[:10]}",
            first_name=(payload or {}).get("firstName"),
            last_name=(payload or {}).get("lastName"),
        )
        metadata = json.dumps({"payload": payload or None, "claims": claims}, default=str)
        return await self.find_or_create_user_from_provider(
            ProviderType.APPLE_SIGNIN, profile, current_user_id, metadata=metadata
        )

    # identity management
    def get_user_identities(self, user_id: str) -> List[UserIdentity]:
        return self.store.list_identities(user_id)

    def disconnect_identity(self, user_id: str, identity_id: str) -> None:
        identity = self.store.get_identity(identity_id)
        if not identity:
            raise NotFoundError("Identity not found")
        if identity.user_id != user_id:
            raise ForbiddenError("Cannot remove identity of another user")
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("User not found")
        remaining = len(self.store.list_identities(user_id)) - 1
        if not user.has_password and remaining <= 0:
            raise LastIdentityError()
        self.store.delete_identity(identity_id)
        logger.info("identity_disconnected", user_id=user_id, identity_id=identity_id)

    # password and profile
    async def change_password(self, user_id: str, current_password: str, new_password: str) -> None:
        user = self.store.get_user(user_id)
        if not user:
            raise AuthenticationError("User not found")
        if not user.password or not await self.hasher.verify_async(user.password, current_password):
            logger.info("password_change_rejected", user_id=user_id)
            raise AuthenticationError("Current password is incorrect")
        digest = await self.hasher.hash_async(new_password)
        self.store.update_user(user_id, password=digest, has_password=True)
        logger.info("password_changed", user_id=user_id)

    async def set_password(self, user_id: str, new_password: str) -> None:
        user = self.store.get_user(user_id)
        if not user:
            raise AuthenticationError("User not found")
        if user.has_password:
            raise BadRequestError("User already has a password. Use change-password instead.")
        digest = await self.hasher.hash_async(new_password)
        self.store.update_user(user_id, password=digest, has_password=True)
        logger.info("password_set", user_id=user_id)

    def update_profile(self, user_id: str, **fields: Any) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise AuthenticationError("User not found")
        allowed = {"first_name", "last_name", "avatar", "locale"}
        updates = {k: v for k, v in fields.items() if k in allowed and v is not None}
        if not updates:
            return user
        return self.store.update_user(user_id, **updates) or user


__all__ = ["IdentityLinker", "decode_unverified_claims"]

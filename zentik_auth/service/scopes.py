from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Mapping, Optional, Sequence

from zentik_auth.logging import get_logger
from zentik_auth.service.errors import ForbiddenError

logger = get_logger(__name__)


class AccessTokenScope(str, Enum):
    """Capabilities an opaque access token can be restricted to."""

    MESSAGE_BUCKET_CREATION = "message-bucket-creation"
    WATCH = "watch"


def scopes_grant_full_access(scopes: Optional[Sequence[str]]) -> bool:
    """An empty scope list is unrestricted (admin). Every check goes through here."""
    return not scopes


def has_scope(scopes: Optional[Sequence[str]], required: str) -> bool:
    """Exact-match scope check honoring the empty-means-everything rule."""
    if scopes_grant_full_access(scopes):
        return True
    return required in scopes


def create_message_bucket_scope(bucket_id: str) -> str:
    return f"{AccessTokenScope.MESSAGE_BUCKET_CREATION.value}:{bucket_id}"


def can_create_message_in_bucket(scopes: Optional[Sequence[str]], bucket_id: str) -> bool:
    return has_scope(scopes, create_message_bucket_scope(bucket_id))


def all_base_scopes() -> list[str]:
    return [scope.value for scope in AccessTokenScope]


@dataclass(frozen=True)
class ScopeRequirement:
    """Scopes an endpoint demands from opaque tokens.

    ``bucket_param`` names the request field holding the bucket id for
    ``message-bucket-creation`` checks; it is looked up in path params,
    then the JSON body, then the query string.
    """

    scopes: tuple[str, ...] = field(default_factory=tuple)
    bucket_param: Optional[str] = None

    @classmethod
    def of(cls, *scopes: AccessTokenScope | str, bucket_param: Optional[str] = None) -> "ScopeRequirement":
        return cls(
            scopes=tuple(s.value if isinstance(s, AccessTokenScope) else s for s in scopes),
            bucket_param=bucket_param,
        )


def _lookup_param(name: str, *sources: Optional[Mapping[str, Any]]) -> Optional[str]:
    for source in sources:
        if source and source.get(name):
            return str(source[name])
    return None


def authorize_scopes(
    requirement: Optional[ScopeRequirement],
    token_scopes: Optional[Iterable[str]],
    *,
    path_params: Optional[Mapping[str, Any]] = None,
    body: Optional[Mapping[str, Any]] = None,
    query: Optional[Mapping[str, Any]] = None,
) -> None:
    """Raise ``ForbiddenError`` unless the credential satisfies ``requirement``.

    ``token_scopes`` is None for JWT-authenticated calls: a signed-in account
    owner is never scope-restricted.
    """
    if requirement is None or not requirement.scopes:
        return
    if token_scopes is None:
        return
    scopes = list(token_scopes)
    if scopes_grant_full_access(scopes):
        return

    for required in requirement.scopes:
        if required == AccessTokenScope.MESSAGE_BUCKET_CREATION.value:
            if not requirement.bucket_param:
                logger.warning("scope_check_missing_bucket_param")
                raise ForbiddenError("Insufficient token scope")
            bucket_id = _lookup_param(requirement.bucket_param, path_params, body, query)
            if not bucket_id:
                raise ForbiddenError("Bucket id required for this token")
            if not can_create_message_in_bucket(scopes, bucket_id):
                logger.info("scope_denied", required=required, bucket_id=bucket_id)
                raise ForbiddenError("Insufficient token scope")
        elif required == AccessTokenScope.WATCH.value:
            if not has_scope(scopes, AccessTokenScope.WATCH.value):
                logger.info("scope_denied", required=required)
                raise ForbiddenError("Insufficient token scope")
        else:
            logger.warning("scope_unknown_requirement", required=required)
            raise ForbiddenError("Insufficient token scope")


__all__ = [
    "AccessTokenScope",
    "ScopeRequirement",
    "all_base_scopes",
    "authorize_scopes",
    "can_create_message_in_bucket",
    "create_message_bucket_scope",
    "has_scope",
    "scopes_grant_full_access",
]

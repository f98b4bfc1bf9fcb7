from __future__ import annotations

import dataclasses
from typing import Any, List

from zentik_auth.logging import get_logger
from zentik_auth.service.errors import ConflictError, NotFoundError, ValidationError
from zentik_auth.service.oauth_registry import ProviderRegistry
from zentik_auth.storage.models import OAuthProviderConfig, ProviderType

logger = get_logger(__name__)

_IMMUTABLE_FIELDS = {"id", "provider_id", "created_at", "updated_at"}
_EDITABLE_FIELDS = {
    f.name for f in dataclasses.fields(OAuthProviderConfig) if f.name not in _IMMUTABLE_FIELDS
}


class ProviderConfigService:
    """Writes provider configuration and keeps the live registry in step.

    Every create, update, toggle and delete goes through here so the
    registry sees the change immediately instead of at the next restart.
    """

    def __init__(self, store, registry: ProviderRegistry) -> None:
        self.store = store
        self.registry = registry

    def list_providers(self) -> List[OAuthProviderConfig]:
        return self.store.list_provider_configs()

    def get_provider(self, provider_id: str) -> OAuthProviderConfig:
        config = self.store.get_provider_config(provider_id)
        if not config:
            raise NotFoundError(f"OAuth provider '{provider_id}' not found")
        return config

    def create_provider(
        self, provider_id: str, type: ProviderType | str, **fields: Any
    ) -> OAuthProviderConfig:
        if self.store.get_provider_config(provider_id):
            raise ConflictError(f"OAuth provider '{provider_id}' already exists")
        _check_fields(fields)
        saved = self.store.upsert_provider_config(
            OAuthProviderConfig.new(provider_id, type, **fields)
        )
        logger.info("oauth_provider_config_created", provider_id=provider_id, type=saved.type.value)
        if saved.is_enabled:
            self.registry.register_provider(saved)
        return saved

    def update_provider(self, provider_id: str, **fields: Any) -> OAuthProviderConfig:
        current = self.get_provider(provider_id)
        _check_fields(fields)
        if "type" in fields:
            fields["type"] = ProviderType(fields["type"])
        saved = self.store.upsert_provider_config(dataclasses.replace(current, **fields))
        logger.info("oauth_provider_config_updated", provider_id=provider_id, fields=sorted(fields))
        if saved.is_enabled:
            self.registry.register_provider(saved)
        else:
            self.registry.unregister_provider(provider_id)
        return saved

    def toggle_provider(self, provider_id: str) -> OAuthProviderConfig:
        current = self.get_provider(provider_id)
        return self.update_provider(provider_id, is_enabled=not current.is_enabled)

    def delete_provider(self, provider_id: str) -> None:
        if not self.store.delete_provider_config(provider_id):
            raise NotFoundError(f"OAuth provider '{provider_id}' not found")
        logger.info("oauth_provider_config_deleted", provider_id=provider_id)
        self.registry.unregister_provider(provider_id)


def _check_fields(fields: dict) -> None:
    unknown = sorted(set(fields) - _EDITABLE_FIELDS)
    if unknown:
        raise ValidationError("Unknown provider fields", detail={"fields": unknown})


__all__ = ["ProviderConfigService"]

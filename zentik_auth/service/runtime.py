from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from zentik_auth.config import get_settings, reset_settings_cache
from zentik_auth.logging import get_logger
from zentik_auth.service.access_tokens import AccessTokenManager
from zentik_auth.service.auth import AuthService
from zentik_auth.service.email import EmailService
from zentik_auth.service.gateway import AuthGateway
from zentik_auth.service.hashing import SecretHasher
from zentik_auth.service.identity import IdentityLinker
from zentik_auth.service.oauth_registry import ProviderRegistry
from zentik_auth.service.provider_configs import ProviderConfigService
from zentik_auth.service.session_sweep import SessionSweeper
from zentik_auth.service.sessions import SessionManager
from zentik_auth.service.tokens import TokenIssuer
from zentik_auth.storage.memory import MemoryStore
from zentik_auth.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a DSN with ``***`` for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            if self.settings.use_memory_store:
                self.store = MemoryStore(fs_root=self.settings.shared_fs_root)
            else:
                if not self.settings.database_url:
                    raise RuntimeError("DATABASE_URL is required when USE_MEMORY_STORE is false")
                self.store = PostgresStore(self.settings.database_url)
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        for name in self.settings.unsafe_defaults():
            logger.warning("unsafe_default_secret", setting=name)

        self.hasher = SecretHasher()
        self.email = EmailService.from_settings(self.settings)
        self.issuer = TokenIssuer(self.settings, system_settings=self.store.get_system_settings)
        self.sessions = SessionManager(self.store, self.issuer, self.settings)
        self.access_tokens = AccessTokenManager(self.store, self.hasher, self.settings)
        self.linker = IdentityLinker(self.store, self.hasher, self.email)
        self.registry = ProviderRegistry(
            self.store, self.settings, self.issuer, self.linker, sessions=self.sessions
        )
        self.provider_configs = ProviderConfigService(self.store, self.registry)
        self.gateway = AuthGateway(
            self.store, self.settings, self.issuer, self.sessions, self.access_tokens
        )
        self.auth = AuthService(
            self.store,
            self.settings,
            self.hasher,
            self.sessions,
            self.linker,
            self.registry,
            self.email,
        )
        self.sweeper = SessionSweeper(
            self.sessions,
            retention_days=self.settings.session_retention_days,
            hour=self.settings.session_sweep_hour,
            offset_minutes=self.settings.session_sweep_offset_minutes,
            jitter_seconds=self.settings.session_sweep_jitter_seconds,
        )
        logger.info("runtime_init_completed", store_type=store_type)


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.store, PostgresStore):
            runtime.store.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        if isinstance(runtime.store, MemoryStore):
            runtime.store.reset()
        return runtime


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests"]

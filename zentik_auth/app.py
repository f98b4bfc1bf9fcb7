from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from zentik_auth.api.error_handling import register_exception_handlers
from zentik_auth.api.routes import router
from zentik_auth.config import Settings
from zentik_auth.logging import get_logger, set_correlation_id
from zentik_auth.service.runtime import get_runtime

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

_background_tasks: List[asyncio.Task] = []


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start provider registration and the session sweep; stop both on shutdown."""
    runtime = get_runtime()
    _background_tasks.append(
        asyncio.create_task(runtime.registry.initialize_providers_async(), name="oauth_registry_init")
    )
    if runtime.settings.test_mode:
        logger.info("session_sweep_disabled_in_test_mode")
    else:
        _background_tasks.append(
            asyncio.create_task(runtime.sweeper.run_forever(), name="session_sweep")
        )

    yield

    while _background_tasks:
        task = _background_tasks.pop()
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
    await runtime.sessions.cancel_pending_cleanups()
    if hasattr(runtime.store, "close"):
        runtime.store.close()
    logger.info("runtime_cleanup_complete")


app = FastAPI(title="Zentik Auth", version=__version__, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Echo ``X-Request-ID`` (or a fresh uuid4) and bind it for structured logging."""
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/v1/"):
        response.headers.setdefault("Cache-Control", "no-store")
    return response


register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Store reachability and OAuth registry state."""
    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    try:
        await asyncio.wait_for(
            asyncio.to_thread(runtime.store.verify_connection), HEALTH_CHECK_TIMEOUT_SECONDS
        )
        db_ok = True
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component="store", timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
        db_ok = False
    except Exception as exc:
        logger.error("health_check_store_failed", error=str(exc))
        db_ok = False
    checks["store"] = {
        "status": "healthy" if db_ok else "unhealthy",
        "type": "memory" if runtime.settings.use_memory_store else "postgres",
    }
    checks["oauth_registry"] = {
        "initialized": runtime.registry.is_initialized,
        "providers": runtime.registry.registered_provider_ids(),
    }

    return {
        "status": "healthy" if db_ok else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def create_app() -> FastAPI:
    return app

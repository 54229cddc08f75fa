from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from roastauth.api.error_handling import register_exception_handlers
from roastauth.api.routes import router
from roastauth.config import Settings
from roastauth.logging import bind_request_id, get_logger

logger = get_logger(__name__)

__version__ = "0.1.0"

_settings = Settings.from_env()

HEALTH_PROBE_TIMEOUT_SECONDS = 3
DEV_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:5173",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:5173",
]
RATE_LIMIT_HEADERS = ["X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset", "Retry-After"]
SECURITY_HEADERS = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none'",
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    from roastauth.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("auth_service_started", version=__version__, providers=runtime.oauth.available_providers())
    yield
    await runtime.close()
    logger.info("auth_service_stopped")


def _cors_origins(settings: Settings) -> List[str]:
    return settings.cors_allow_origins or DEV_ORIGINS


app = FastAPI(title="Roast Auth", version=__version__, lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(_settings),
    allow_credentials=_settings.cors_allow_credentials,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "session_id", "X-Request-ID"],
    expose_headers=["X-Request-ID", *RATE_LIMIT_HEADERS],
    max_age=3600,
)


@app.middleware("http")
async def request_context(request: Request, call_next):
    """Bind X-Request-ID to the request's logs and stamp the security headers."""
    request_id = bind_request_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    for name, value in SECURITY_HEADERS.items():
        response.headers.setdefault(name, value)
    path = request.url.path
    if path.startswith("/v1/") or path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    if _settings.enable_hsts and request.url.scheme == "https":
        response.headers.setdefault("Strict-Transport-Security", "max-age=63072000; includeSubDomains")
    return response


register_exception_handlers(app)
app.include_router(router)


async def _probe(component: str, check: Callable[[], Any]) -> bool:
    try:
        await asyncio.wait_for(asyncio.to_thread(check), HEALTH_PROBE_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.error("health_probe_timeout", component=component, timeout=HEALTH_PROBE_TIMEOUT_SECONDS)
        return False
    except Exception as exc:
        logger.error("health_probe_failed", component=component, error=str(exc))
        return False
    return True


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Cache connectivity and state directory, each probe bounded in time."""
    from roastauth.service.runtime import get_runtime

    runtime = get_runtime()
    cache_ok = await _probe("cache", runtime.cache.verify_connection)
    checks: Dict[str, Dict[str, Any]] = {
        "cache": {"status": "healthy" if cache_ok else "unhealthy", "type": type(runtime.cache).__name__},
    }

    fs_ok = True
    state_dir = runtime.store.fs_root
    if state_dir is None:
        checks["filesystem"] = {"status": "not_configured"}
    else:
        def _state_dir_present() -> None:
            if not state_dir.is_dir():
                raise FileNotFoundError(state_dir)

        fs_ok = await _probe("filesystem", _state_dir_present)
        checks["filesystem"] = {"status": "healthy" if fs_ok else "unhealthy"}

    return {
        "status": "healthy" if cache_ok and fs_ok else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

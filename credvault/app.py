from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from credvault.api.error_handling import register_exception_handlers
from credvault.api.routes import router
from credvault.config import get_settings
from credvault.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3

_SECURITY_HEADERS = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "no-referrer",
}
_HSTS = "max-age=63072000; includeSubDomains"


async def _purge_refresh_tokens_forever(interval_seconds: int) -> None:
    """Delete ledger rows past expiry plus grace, once per interval."""
    from credvault.service.runtime import get_runtime

    while True:
        try:
            await asyncio.to_thread(get_runtime().auth.purge_expired_refresh_tokens)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # pragma: no cover - retried next interval
            logger.warning("refresh_token_purge_failed", error_type=type(exc).__name__, error=str(exc))
        await asyncio.sleep(max(60, interval_seconds))


@asynccontextmanager
async def lifespan(app: FastAPI):
    from credvault.service.runtime import get_runtime

    purge: Optional[asyncio.Task] = None
    try:
        runtime = get_runtime()
    except Exception as exc:
        logger.error("startup_failed", error_type=type(exc).__name__, error=str(exc))
        raise
    purge = asyncio.create_task(
        _purge_refresh_tokens_forever(runtime.settings.refresh_token_gc_interval_seconds)
    )
    try:
        yield
    finally:
        purge.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await purge
        if runtime.cache is not None:
            await runtime.cache.close()
        logger.info("shutdown_complete")


app = FastAPI(title="Credvault", version=__version__, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    # refresh goes out as a cookie on cross-origin calls
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
    expose_headers=["X-Request-ID", "X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset"],
    max_age=3600,
)


@app.middleware("http")
async def request_context(request: Request, call_next):
    """Tag logs with X-Request-ID and harden every response."""
    request_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    for name, value in _SECURITY_HEADERS.items():
        response.headers.setdefault(name, value)
    # responses may carry tokens or account data
    response.headers.setdefault("Cache-Control", "no-store")
    if request.url.scheme == "https":
        response.headers.setdefault("Strict-Transport-Security", _HSTS)
    return response


register_exception_handlers(app)
app.include_router(router)


async def _probe(component: str, check: Callable[[], Any]) -> bool:
    try:
        await asyncio.wait_for(asyncio.to_thread(check), HEALTH_CHECK_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component=component, timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
        return False
    except Exception as exc:
        logger.error("health_check_failed", component=component, error=str(exc))
        return False
    return True


def _state(ok: bool) -> str:
    return "healthy" if ok else "unhealthy"


@app.get("/healthz")
async def health():
    from credvault.service.runtime import get_runtime

    runtime = get_runtime()
    store_ok = await _probe("database", runtime.store.verify_connection)
    checks: Dict[str, Dict[str, Any]] = {
        "database": {
            "status": _state(store_ok),
            "type": "memory" if runtime.settings.use_memory_store else "postgres",
        },
        "redis": {"status": "not_configured"},
    }
    cache_ok = True
    if runtime.cache is not None:
        cache_ok = await _probe("redis", runtime.cache.verify_connection)
        checks["redis"] = {"status": _state(cache_ok)}

    healthy = store_ok and cache_ok
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={
            "status": _state(healthy),
            "checks": checks,
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    )


def create_app() -> FastAPI:
    return app

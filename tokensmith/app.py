from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from tokensmith.api.error_handling import register_exception_handlers
from tokensmith.api.routes import router
from tokensmith.config import Settings
from tokensmith.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    from tokensmith.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("gateway_started", version=__version__)
    yield
    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="tokensmith gateway", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_origins:
        return _settings.cors_origins
    # Local dev hosts only; never a wildcard
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every log line of a request with a correlation ID.

    Taken from the X-Request-ID header when the client sends one, otherwise
    generated, and echoed back in the X-Request-ID response header.
    """
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("Cache-Control", "no-store")
    return response


register_exception_handlers(app)
app.include_router(router)


async def _run_bounded(label: str, func) -> bool:
    try:
        await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
        return True
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
    except Exception as exc:
        logger.error("health_check_failed", component=label, error=str(exc))
    return False


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report store and cache reachability.

    A cache outage is reported as degraded rather than unhealthy, since the
    service keeps working against the store alone.
    """
    from tokensmith.service.runtime import get_runtime

    runtime = get_runtime()
    store_ok = await _run_bounded("store", runtime.store.verify_connection)
    cache_ok = await runtime.cache.ping()
    return {
        "status": "healthy" if store_ok else "unhealthy",
        "checks": {
            "store": {"status": "healthy" if store_ok else "unhealthy"},
            "cache": {
                "status": "healthy" if cache_ok else "unhealthy",
                "type": type(runtime.cache).__name__,
                "degraded": not cache_ok,
            },
        },
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.get("/ping")
async def ping() -> Dict[str, str]:
    return {"status": "ok"}


def create_app() -> FastAPI:
    return app

"""HTTP surface of the auth core, consumed by ``HttpChannel``.

Runs separately from the gateway when ``AUTH_CORE_URL`` points at it:

    uvicorn tokensmith.core_app:app --port 8001
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI, Request

from tokensmith.api.error_handling import register_exception_handlers
from tokensmith.api.schemas import Envelope, RpcRequest
from tokensmith.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    from tokensmith.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("auth_core_started", operations=runtime.operations.names())
    yield
    try:
        await runtime.close()
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="tokensmith auth core", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request: Request, call_next):
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)


@app.post("/rpc/{name}", response_model=Envelope)
async def rpc(name: str, body: RpcRequest):
    """Dispatch one operation; failures come back as error envelopes."""
    from tokensmith.service.runtime import get_runtime

    result = await get_runtime().operations.dispatch(name, body.payload)
    return Envelope(status="ok", data=result)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    from tokensmith.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        runtime.store.verify_connection()
        store_ok = True
    except Exception as exc:
        logger.error("health_check_failed", component="store", error=str(exc))
        store_ok = False
    return {"status": "healthy" if store_ok else "unhealthy", "version": __version__}


@app.get("/.well-known/jwks.json")
async def jwks() -> Dict[str, Any]:
    from tokensmith.service.runtime import get_runtime

    return get_runtime().issuer.jwks()

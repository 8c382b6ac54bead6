"""Request/response channels from the gateway to the auth core.

Every request carries a deadline. Running out of time surfaces as
``UpstreamTimeoutError`` and nothing is retried here; retrying is the
caller's decision.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Optional, Protocol

import httpx

from tokensmith.logging import get_correlation_id, get_logger
from tokensmith.service.errors import (
    ServerError,
    ServiceError,
    UpstreamTimeoutError,
    error_for_status,
)
from tokensmith.service.operations import OperationTable

logger = get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0


class Channel(Protocol):
    async def request(self, operation: str, payload: Optional[dict] = None) -> Any: ...

    async def close(self) -> None: ...


class LocalChannel:
    """Dispatches to an in-process operation table under a deadline."""

    def __init__(self, table: OperationTable, *, timeout: float = DEFAULT_TIMEOUT_SECONDS):
        self.table = table
        self.timeout = timeout

    async def request(self, operation: str, payload: Optional[dict] = None) -> Any:
        try:
            return await asyncio.wait_for(
                self.table.dispatch(operation, payload), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            logger.error("upstream_timeout", operation=operation, timeout=self.timeout)
            raise UpstreamTimeoutError("upstream unavailable")
        except ServiceError:
            raise
        except Exception as exc:
            logger.exception(
                "upstream_failed",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise ServerError("internal server error") from exc

    async def close(self) -> None:
        return None


class HttpChannel:
    """Posts operations to a remote auth core at ``{base_url}/rpc/{operation}``."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    async def request(self, operation: str, payload: Optional[dict] = None) -> Any:
        try:
            response = await asyncio.wait_for(
                self._client.post(
                    f"/rpc/{operation}",
                    json={"payload": payload or {}},
                    headers=_forwarded_headers(),
                ),
                timeout=self.timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            logger.error("upstream_timeout", operation=operation, timeout=self.timeout)
            raise UpstreamTimeoutError("upstream unavailable") from exc
        except httpx.TransportError as exc:
            logger.error("upstream_unreachable", operation=operation, error=str(exc))
            raise UpstreamTimeoutError("upstream unavailable") from exc

        try:
            body: Any = response.json()
        except ValueError:
            body = response.text

        if response.is_success:
            if isinstance(body, dict) and body.get("status") == "ok":
                return body.get("data")
            return body

        error = coerce_remote_error(response.status_code, body)
        log_fn = logger.error if error.status_code >= 500 else logger.warning
        log_fn(
            "upstream_error",
            operation=operation,
            status_code=error.status_code,
            message=error.message,
        )
        raise error

    async def close(self) -> None:
        await self._client.aclose()


def _forwarded_headers() -> dict:
    cid = get_correlation_id()
    return {"X-Request-ID": cid} if cid else {}


def _parse_maybe_json(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    stripped = value.strip()
    if not (stripped.startswith("{") or stripped.startswith("[")):
        return value
    try:
        return json.loads(stripped)
    except json.JSONDecodeError:
        return value


def _message_text(raw: Any) -> Optional[str]:
    if raw is None:
        return None
    if isinstance(raw, list):
        return "; ".join(x if isinstance(x, str) else json.dumps(x) for x in raw)
    if isinstance(raw, str):
        return raw
    return json.dumps(raw)


def _valid_status(candidate: Any) -> bool:
    return (
        isinstance(candidate, int)
        and not isinstance(candidate, bool)
        and 100 <= candidate <= 599
    )


def coerce_remote_error(status_code: Any, body: Any) -> ServiceError:
    """Rebuild a typed failure from whatever a remote auth core sent back.

    Accepts the envelope shape (``{"error": {"code", "message", "details"}}``)
    as well as flat ``{"statusCode", "message", "error"}`` bodies, JSON text
    and plain strings. Statuses outside 100-599 become 500; list messages are
    joined with ``"; "``.
    """
    body = _parse_maybe_json(body)
    outer = body if isinstance(body, dict) else {}
    inner = outer.get("error") if isinstance(outer.get("error"), dict) else outer

    status = 500
    for candidate in (
        inner.get("statusCode"),
        inner.get("status"),
        outer.get("statusCode"),
        outer.get("status"),
        status_code,
    ):
        if _valid_status(candidate):
            status = candidate
            break

    raw_message = inner.get("message", outer.get("message"))
    if raw_message is None and isinstance(body, (str, list)):
        raw_message = body
    message = _message_text(raw_message) or "internal server error"

    code = inner.get("code") if isinstance(inner.get("code"), str) else None
    details = inner.get("details")
    return error_for_status(
        status,
        message,
        error_code=code,
        detail=details if isinstance(details, dict) else None,
    )

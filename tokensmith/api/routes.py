from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from structlog.contextvars import bind_contextvars

from tokensmith.api.schemas import (
    AccountListResponse,
    Envelope,
    LoginRequest,
    LogoutRequest,
    MeResponse,
    RefreshRequest,
    RegisterRequest,
    TokenPairResponse,
)
from tokensmith.service.gateway import client_subject
from tokensmith.service.runtime import get_runtime
from tokensmith.service.tokens import ACCESS

router = APIRouter()


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_principal(authorization: Optional[str] = Header(None)) -> Dict[str, Any]:
    """Verified access-token claims of the caller."""
    token = _bearer_token(authorization)
    if not token:
        raise _http_error("unauthorized", "missing bearer token", status_code=401)
    runtime = get_runtime()
    # InvalidTokenSignature / TokenExpired propagate as 401 envelopes
    claims = runtime.issuer.verify(token, ACCESS)
    bind_contextvars(account_id=claims.get("sub"))
    return claims


async def _enforce_ip_throttle(
    request: Request, principal: Optional[Dict[str, Any]] = None
) -> None:
    runtime = get_runtime()
    subject = client_subject(
        principal.get("sub") if principal else None,
        request.headers.get("X-Forwarded-For"),
        request.client.host if request.client else None,
    )
    await runtime.gateway.throttle(subject)


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request):
    """Create an account and return its first token pair.

    Raises:
        409: If the email is already registered
        429: If the same email registered within the cooldown, or the client is throttled
    """
    await _enforce_ip_throttle(request)
    runtime = get_runtime()
    pair = await runtime.gateway.register(body.email, body.password)
    return Envelope(status="ok", data=TokenPairResponse(**pair))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Authenticate with email and password.

    Raises:
        401: If credentials are invalid
        429: After repeated failed attempts for this email
    """
    await _enforce_ip_throttle(request)
    runtime = get_runtime()
    pair = await runtime.gateway.login(body.email, body.password)
    return Envelope(status="ok", data=TokenPairResponse(**pair))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: RefreshRequest, request: Request):
    await _enforce_ip_throttle(request)
    runtime = get_runtime()
    pair = await runtime.gateway.refresh(body.refresh_token)
    return Envelope(status="ok", data=TokenPairResponse(**pair))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    body: LogoutRequest,
    request: Request,
    principal: Dict[str, Any] = Depends(get_principal),
):
    await _enforce_ip_throttle(request, principal)
    # Only the account owner may revoke its refresh token
    if principal.get("sub") != body.account_id:
        raise _http_error("unauthorized", "cannot log out another account", status_code=401)
    runtime = get_runtime()
    result = await runtime.gateway.logout(body.account_id)
    return Envelope(status="ok", data=result)


@router.get("/user/me", response_model=Envelope, tags=["user"])
async def get_current_user(
    request: Request, principal: Dict[str, Any] = Depends(get_principal)
):
    await _enforce_ip_throttle(request, principal)
    runtime = get_runtime()
    me = await runtime.gateway.me(principal["sub"], principal.get("email"))
    return Envelope(status="ok", data=MeResponse(**me))


@router.get("/user/users", response_model=Envelope, tags=["user"])
async def list_users(
    request: Request, principal: Dict[str, Any] = Depends(get_principal)
):
    await _enforce_ip_throttle(request, principal)
    runtime = get_runtime()
    accounts = await runtime.gateway.list_accounts(principal["sub"])
    return Envelope(status="ok", data=AccountListResponse(items=accounts))

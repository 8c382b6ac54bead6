"""Operation table of the auth core: name → handler plus input-validation predicate.

Validation runs before the handler, so malformed input never reaches the
store or the cache.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from structlog.contextvars import bound_contextvars

from tokensmith.logging import get_logger
from tokensmith.service.auth import AuthCore
from tokensmith.service.errors import AuthenticationError, NotFoundError, ValidationError
from tokensmith.service.tokens import REFRESH

logger = get_logger(__name__)

REGISTER = "auth.register"
LOGIN = "auth.login"
REFRESH_TOKENS = "auth.refresh"
LOGOUT = "auth.logout"
LIST_ACCOUNTS = "auth.list_accounts"

MAX_EMAIL_LENGTH = 254
MAX_PASSWORD_LENGTH = 1024

Payload = Dict[str, Any]
Validator = Callable[[Payload], Optional[str]]
Handler = Callable[[Payload], Awaitable[Any]]


@dataclass(frozen=True)
class Operation:
    name: str
    handler: Handler
    validate: Validator


def require_fields(*fields: str) -> Validator:
    """Predicate rejecting payloads where any of ``fields`` is missing or blank."""

    def check(payload: Payload) -> Optional[str]:
        missing = [
            f for f in fields if not isinstance(payload.get(f), str) or not payload[f].strip()
        ]
        if not missing:
            return None
        verb = "is" if len(missing) == 1 else "are"
        return f"{' and '.join(missing)} {verb} required"

    return check


def _credentials_valid(payload: Payload) -> Optional[str]:
    problem = require_fields("email", "password")(payload)
    if problem:
        return problem
    email = payload["email"].strip()
    local, sep, domain = email.partition("@")
    if not sep or not local or not domain or len(email) > MAX_EMAIL_LENGTH:
        return "email is not a valid address"
    if len(payload["password"]) > MAX_PASSWORD_LENGTH:
        return "password is too long"
    return None


def _no_input(payload: Payload) -> Optional[str]:
    return None


class OperationTable:
    def __init__(self, operations: Iterable[Operation]) -> None:
        self._operations: Dict[str, Operation] = {op.name: op for op in operations}

    def names(self) -> List[str]:
        return sorted(self._operations)

    async def dispatch(self, name: str, payload: Optional[Payload] = None) -> Any:
        operation = self._operations.get(name)
        if operation is None:
            raise NotFoundError(f"unknown operation: {name}")
        if payload is None:
            payload = {}
        if not isinstance(payload, dict):
            raise ValidationError("payload must be an object")
        with bound_contextvars(operation=name):
            problem = operation.validate(payload)
            if problem:
                logger.info("operation_rejected", reason=problem)
                raise ValidationError(problem)
            return await operation.handler(payload)


def build_operation_table(core: AuthCore) -> OperationTable:
    async def register(payload: Payload) -> Payload:
        pair = await core.register(payload["email"], payload["password"])
        return pair.as_dict()

    async def login(payload: Payload) -> Payload:
        account = await core.validate_credentials(payload["email"], payload["password"])
        if account is None:
            raise AuthenticationError("invalid credentials")
        pair = await core.login(account.id, account.email)
        return pair.as_dict()

    async def refresh(payload: Payload) -> Payload:
        token = payload["refreshToken"]
        claims = core.issuer.verify(token, REFRESH)
        account_id, email = claims.get("sub"), claims.get("email")
        if not account_id or not email:
            raise AuthenticationError("invalid refresh token payload")
        pair = await core.refresh(account_id, email, token)
        return pair.as_dict()

    async def logout(payload: Payload) -> Payload:
        return await core.logout(payload["accountId"])

    async def list_accounts(payload: Payload) -> List[Payload]:
        return await core.list_accounts()

    return OperationTable(
        [
            Operation(REGISTER, register, _credentials_valid),
            Operation(LOGIN, login, require_fields("email", "password")),
            Operation(REFRESH_TOKENS, refresh, require_fields("refreshToken")),
            Operation(LOGOUT, logout, require_fields("accountId")),
            Operation(LIST_ACCOUNTS, list_accounts, _no_input),
        ]
    )

"""structlog setup for both tiers.

Request-scoped fields (``correlation_id``, ``operation``, ``account_id``) are
kept in ``structlog.contextvars`` and merged into every line. Credential
material never reaches the output: fields named after secrets are masked, and
JWTs or argon2 digests embedded in any other string field are replaced.
"""

from __future__ import annotations

import logging
import os
import re
import uuid
from typing import Any, Dict, Optional

import structlog
from structlog.contextvars import bind_contextvars, clear_contextvars, get_contextvars

_MASKED_FIELDS = ("password", "secret", "token", "digest", "authorization", "private_key")

_JWT = re.compile(r"eyJ[\w-]+\.[\w-]+\.[\w-]+")
_ARGON2_DIGEST = re.compile(r"\$argon2(?:id|i|d)\$\S+")
_DSN_CREDENTIALS = re.compile(r"(?i)\b(postgres(?:ql)?|rediss?)://[^\s/@]*@")


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Start a request's log context, generating an id when none is supplied.

    Bindings left over from a previous request in the same context are dropped.
    """
    cid = correlation_id or str(uuid.uuid4())
    clear_contextvars()
    bind_contextvars(correlation_id=cid)
    return cid


def get_correlation_id() -> Optional[str]:
    return get_contextvars().get("correlation_id")


def _mask(value: str) -> str:
    if len(value) <= 4:
        return "***"
    return value[:2] + "***" + value[-2:]


def _mask_email(value: str) -> str:
    local, at, domain = value.partition("@")
    if not at:
        return _mask(value)
    return f"{local[:1]}***@{domain}"


def _scrub(value: str) -> str:
    value = _JWT.sub("[jwt]", value)
    value = _ARGON2_DIGEST.sub("[digest]", value)
    return _DSN_CREDENTIALS.sub(r"\1://***@", value)


def _redact_credentials(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    for key, value in list(event_dict.items()):
        if not isinstance(value, str):
            continue
        lower_key = key.lower()
        if "email" in lower_key:
            event_dict[key] = _mask_email(value)
        elif any(field in lower_key for field in _MASKED_FIELDS):
            event_dict[key] = _mask(value)
        else:
            event_dict[key] = _scrub(value)
    return event_dict


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


def configure_logging(level: Optional[str] = None, json_output: Optional[bool] = None) -> None:
    """Configure structlog from LOG_LEVEL and LOG_JSON unless given explicitly."""
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    if json_output is None:
        json_output = _env_flag("LOG_JSON", "true")

    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _redact_credentials,
    ]
    if json_output:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level, logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


_CLIENT_UNSAFE = [
    re.compile(r"(?i)\b(select|insert\s+into|update|delete\s+from)\b[^;]{0,80}"),
    re.compile(r"(?i)\b(unique|foreign\s+key|check)\s+constraint\s+\S+"),
    re.compile(r"(?:/[\w.-]+){2,}"),
    re.compile(r"-----BEGIN [A-Z ]+-----[\s\S]*?(?:-----END [A-Z ]+-----|$)"),
    re.compile(r"(?i)traceback\s*\(most recent call last\)[\s\S]*"),
    _JWT,
    _ARGON2_DIGEST,
]


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Make an error message safe to return to a client.

    Removes SQL and constraint names, filesystem paths, key material, tokens,
    digests and stack traces, and caps the length at 500 characters.
    """
    if not error or not isinstance(error, str):
        return "An error occurred"

    result = _DSN_CREDENTIALS.sub(r"\1://***@", error)
    for pattern in _CLIENT_UNSAFE:
        result = pattern.sub(replacement, result)

    if len(result) > 500:
        result = result[:497] + "..."
    return result

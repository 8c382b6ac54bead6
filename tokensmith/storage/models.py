from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_email(email: str) -> str:
    return email.strip().lower()


@dataclass
class Account:
    id: str
    email: str
    password_digest: str
    refresh_digest: Optional[str] = None
    refresh_id: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def new(cls, email: str, password_digest: str) -> "Account":
        now = _utcnow()
        return cls(
            id=str(uuid.uuid4()),
            email=normalize_email(email),
            password_digest=password_digest,
            created_at=now,
            updated_at=now,
        )

    @property
    def has_refresh_state(self) -> bool:
        return bool(self.refresh_digest) and bool(self.refresh_id)


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    key_id: str
    token_type: str = "Bearer"

    def as_dict(self) -> Dict[str, Any]:
        return {
            "accessToken": self.access_token,
            "refreshToken": self.refresh_token,
            "tokenType": self.token_type,
            "expiresIn": self.expires_in,
            "kid": self.key_id,
        }


def public_account(account: Account) -> Dict[str, Any]:
    """Serializable view of an account without any credential material."""
    return {
        "id": account.id,
        "email": account.email,
        "created_at": account.created_at.isoformat(),
    }

"""Contract and helpers shared between the memory and postgres credential stores."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, List, Mapping, Optional, Protocol

from tokensmith.storage.models import Account


class CredentialStore(Protocol):
    """Durable per-account record with an optimistic-concurrency update primitive."""

    def find_by_email(self, email: str) -> Optional[Account]: ...

    def find_by_id(self, account_id: str) -> Optional[Account]: ...

    def create(self, email: str, password_digest: str) -> Account: ...

    def set_refresh_state(self, account_id: str, digest: str, jti: str) -> None: ...

    def clear_refresh_state(self, account_id: str) -> None: ...

    def rotate_refresh_if_matches(
        self,
        account_id: str,
        expected_digest: str,
        expected_jti: str,
        next_digest: str,
        next_jti: str,
    ) -> bool: ...

    def list_accounts(self) -> List[Account]: ...

    def verify_connection(self) -> None: ...


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def account_from_row(row: Mapping[str, Any]) -> Account:
    """Build an Account from a database row or a persisted JSON record."""
    created_at = row.get("created_at") or datetime.now(timezone.utc)
    updated_at = row.get("updated_at") or created_at
    if isinstance(created_at, str):
        created_at = datetime.fromisoformat(created_at)
    if isinstance(updated_at, str):
        updated_at = datetime.fromisoformat(updated_at)
    return Account(
        id=str(row["id"]),
        email=row["email"],
        password_digest=row["password_digest"],
        refresh_digest=row.get("refresh_digest"),
        refresh_id=row.get("refresh_jti"),
        created_at=_as_utc(created_at),
        updated_at=_as_utc(updated_at),
    )


def account_to_row(account: Account) -> dict:
    return {
        "id": account.id,
        "email": account.email,
        "password_digest": account.password_digest,
        "refresh_digest": account.refresh_digest,
        "refresh_jti": account.refresh_id,
        "created_at": account.created_at.isoformat(),
        "updated_at": account.updated_at.isoformat(),
    }

from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from tokensmith.logging import get_logger
from tokensmith.storage.common import account_from_row, account_to_row
from tokensmith.storage.errors import ConstraintViolation
from tokensmith.storage.models import Account, normalize_email


class MemoryCredentialStore:
    """In-process credential store, optionally persisted to a JSON file.

    All reads and writes run under one re-entrant lock, which is what makes
    ``rotate_refresh_if_matches`` a single atomic step for callers.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self._email_index: Dict[str, str] = {}
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "credential_store.json"

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {"accounts": [account_to_row(a) for a in self.accounts.values()]}
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist credential store state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {
            row["id"]: account_from_row(row) for row in data.get("accounts", [])
        }
        self._email_index = {a.email: a.id for a in self.accounts.values()}
        self.logger.info("credential_store_loaded", accounts=len(self.accounts))
        return True

    def verify_connection(self) -> None:
        return None

    def find_by_email(self, email: str) -> Optional[Account]:
        with self._data_lock:
            account_id = self._email_index.get(normalize_email(email))
            account = self.accounts.get(account_id) if account_id else None
            return replace(account) if account else None

    def find_by_id(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return replace(account) if account else None

    def create(self, email: str, password_digest: str) -> Account:
        with self._data_lock:
            normalized = normalize_email(email)
            if normalized in self._email_index:
                raise ConstraintViolation("email already exists", {"field": "email"})
            account = Account.new(normalized, password_digest)
            self.accounts[account.id] = account
            self._email_index[account.email] = account.id
            self._persist_state()
            return replace(account)

    def set_refresh_state(self, account_id: str, digest: str, jti: str) -> None:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return
            account.refresh_digest = digest
            account.refresh_id = jti
            account.updated_at = datetime.now(timezone.utc)
            self._persist_state()

    def clear_refresh_state(self, account_id: str) -> None:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return
            account.refresh_digest = None
            account.refresh_id = None
            account.updated_at = datetime.now(timezone.utc)
            self._persist_state()

    def rotate_refresh_if_matches(
        self,
        account_id: str,
        expected_digest: str,
        expected_jti: str,
        next_digest: str,
        next_jti: str,
    ) -> bool:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return False
            if (
                account.refresh_digest != expected_digest
                or account.refresh_id != expected_jti
            ):
                return False
            account.refresh_digest = next_digest
            account.refresh_id = next_jti
            account.updated_at = datetime.now(timezone.utc)
            self._persist_state()
            return True

    def list_accounts(self) -> List[Account]:
        with self._data_lock:
            return [
                replace(a) for a in sorted(self.accounts.values(), key=lambda a: a.created_at)
            ]

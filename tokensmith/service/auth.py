from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import List, Optional

from tokensmith.config import Settings
from tokensmith.logging import get_logger
from tokensmith.service.errors import ConflictError
from tokensmith.service.hashing import Argon2Hasher, DigestHasher
from tokensmith.service.rotation import RotationCoordinator, mint_token_pair
from tokensmith.service.tokens import TokenIssuer
from tokensmith.storage.common import CredentialStore
from tokensmith.storage.errors import ConstraintViolation
from tokensmith.storage.models import Account, TokenPair, normalize_email, public_account
from tokensmith.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class AuthCore:
    """Register, login, logout and refresh over the credential store, cache and issuer."""

    def __init__(
        self,
        store: CredentialStore,
        cache: RedisCache,
        issuer: TokenIssuer,
        settings: Settings,
        *,
        hasher: Optional[DigestHasher] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.issuer = issuer
        self.settings = settings
        self.hasher: DigestHasher = hasher or Argon2Hasher()
        self.rotation = RotationCoordinator(store, issuer, cache, self.hasher)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def register(self, email: str, password: str) -> TokenPair:
        normalized = normalize_email(email)
        if await asyncio.to_thread(self.store.find_by_email, normalized):
            raise ConflictError("email already exists", detail={"field": "email"})
        digest = await asyncio.to_thread(self.hasher.hash, password)
        try:
            account = await asyncio.to_thread(self.store.create, normalized, digest)
        except ConstraintViolation as exc:
            # lost a race with a concurrent registration of the same address
            raise ConflictError(exc.message, detail=exc.detail) from exc
        await self.cache.cache_account(account, self.settings.account_cache_ttl_seconds)
        await self.cache.cache_session(
            account.id, account.email, self._now(), self.settings.session_ttl_seconds
        )
        logger.info("account_registered", account_id=account.id)
        return await self.issue_token_pair(account.id, account.email)

    async def validate_credentials(self, email: str, password: str) -> Optional[Account]:
        """Return the account when the password matches, else None.

        The account is looked up in the cache first and cached on a miss.
        """
        normalized = normalize_email(email)
        account = await self.cache.get_cached_account_by_email(normalized)
        if account is None:
            account = await asyncio.to_thread(self.store.find_by_email, normalized)
            if account is None:
                return None
            await self.cache.cache_account(account, self.settings.account_cache_ttl_seconds)
        if not await asyncio.to_thread(self.hasher.compare, password, account.password_digest):
            logger.info("credentials_rejected", account_id=account.id)
            return None
        return account

    async def login(self, account_id: str, email: str) -> TokenPair:
        await self.cache.cache_session(
            account_id, email, self._now(), self.settings.session_ttl_seconds
        )
        pair = await self.issue_token_pair(account_id, email)
        logger.info("login_succeeded", account_id=account_id)
        return pair

    async def issue_token_pair(self, account_id: str, email: str) -> TokenPair:
        """Mint a pair and make its refresh half the only valid one for the account.

        Overwrites stored refresh state unconditionally; used for register and
        login, never for rotation.
        """
        minted = await asyncio.to_thread(
            mint_token_pair, self.issuer, self.hasher, account_id, email
        )
        await asyncio.to_thread(
            self.store.set_refresh_state, account_id, minted.refresh_digest, minted.refresh_jti
        )
        await self.cache.cache_refresh_metadata(
            account_id, minted.refresh_jti, self._now(), self.issuer.refresh_ttl_seconds
        )
        return minted.pair

    async def refresh(self, account_id: str, email: str, refresh_token: str) -> TokenPair:
        return await self.rotation.refresh(account_id, email, refresh_token)

    async def logout(self, account_id: str) -> dict:
        # Read what is about to be revoked before anything is deleted
        metadata = await self.cache.get_refresh_metadata(account_id)
        account = await asyncio.to_thread(self.store.find_by_id, account_id)
        jti = (metadata or {}).get("jti") or (account.refresh_id if account else None)

        await asyncio.to_thread(self.store.clear_refresh_state, account_id)
        await self.cache.delete(f"session:{account_id}", f"refresh:{account_id}")
        await self.cache.evict_account(account_id, account.email if account else None)
        if jti:
            await self.cache.blacklist_refresh(jti, self.issuer.refresh_ttl_seconds)
        logger.info("logout_completed", account_id=account_id, revoked=bool(jti))
        return {"success": True}

    async def is_active(self, account_id: str) -> bool:
        """Advisory liveness from the session cache; not a security control."""
        return await self.cache.has_session(account_id)

    async def list_accounts(self) -> List[dict]:
        accounts = await asyncio.to_thread(self.store.list_accounts)
        return [public_account(a) for a in accounts]

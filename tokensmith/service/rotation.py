from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict

from tokensmith.logging import get_logger
from tokensmith.service.errors import AuthenticationError
from tokensmith.service.hashing import DigestHasher
from tokensmith.service.tokens import TokenIssuer
from tokensmith.storage.common import CredentialStore
from tokensmith.storage.models import TokenPair
from tokensmith.storage.redis_cache import RedisCache

logger = get_logger(__name__)


@dataclass
class MintedPair:
    pair: TokenPair
    refresh_jti: str
    refresh_digest: str


def mint_token_pair(
    issuer: TokenIssuer, hasher: DigestHasher, account_id: str, email: str
) -> MintedPair:
    """Sign a fresh access/refresh pair and digest the refresh half for storage."""
    access_token = issuer.sign_access(account_id, email)
    refresh_token, jti = issuer.sign_refresh(account_id, email)
    pair = TokenPair(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_in=issuer.access_ttl_seconds,
        key_id=issuer.access_kid,
    )
    return MintedPair(pair=pair, refresh_jti=jti, refresh_digest=hasher.hash(refresh_token))


class RotationCoordinator:
    """Exchanges a refresh token for a new pair, at most once per stored (digest, jti).

    The cheap checks (stored state, jti, blacklist, digest) reject without
    mutating anything. The store's conditional update is the only step that
    decides a race between concurrent callers.
    """

    def __init__(
        self,
        store: CredentialStore,
        issuer: TokenIssuer,
        cache: RedisCache,
        hasher: DigestHasher,
    ) -> None:
        self.store = store
        self.issuer = issuer
        self.cache = cache
        self.hasher = hasher

    def _reject(self, account_id: str, reason: str, message: str) -> AuthenticationError:
        logger.warning("refresh_rejected", account_id=account_id, reason=reason)
        return AuthenticationError(message, detail={"reason": reason})

    def _remaining_lifetime(self, claims: Dict[str, Any]) -> int:
        exp = claims.get("exp")
        if isinstance(exp, (int, float)):
            return max(int(exp - time.time()), 1)
        return self.issuer.refresh_ttl_seconds

    async def refresh(
        self, account_id: str, email: str, provided_refresh_token: str
    ) -> TokenPair:
        account = await asyncio.to_thread(self.store.find_by_id, account_id)
        if not account or not account.has_refresh_state:
            raise self._reject(account_id, "no_refresh_state", "no refresh token stored")

        claims = self.issuer.decode_unverified(provided_refresh_token)
        jti = claims.get("jti")
        if not jti or jti != account.refresh_id:
            raise self._reject(account_id, "jti_mismatch", "refresh token mismatch")

        if await self.cache.is_refresh_blacklisted(jti):
            raise self._reject(account_id, "blacklisted", "refresh token has been revoked")

        if not await asyncio.to_thread(
            self.hasher.compare, provided_refresh_token, account.refresh_digest
        ):
            raise self._reject(account_id, "digest_mismatch", "invalid refresh token")

        minted = await asyncio.to_thread(
            mint_token_pair, self.issuer, self.hasher, account_id, email
        )
        swapped = await asyncio.to_thread(
            self.store.rotate_refresh_if_matches,
            account_id,
            account.refresh_digest,
            account.refresh_id,
            minted.refresh_digest,
            minted.refresh_jti,
        )
        if not swapped:
            raise self._reject(
                account_id, "lost_race", "concurrent refresh detected; please retry"
            )

        await self.cache.blacklist_refresh(jti, self._remaining_lifetime(claims))
        await self.cache.cache_refresh_metadata(
            account_id,
            minted.refresh_jti,
            datetime.now(timezone.utc),
            self.issuer.refresh_ttl_seconds,
        )
        logger.info("refresh_rotated", account_id=account_id)
        return minted.pair

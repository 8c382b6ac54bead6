from __future__ import annotations

from typing import Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from tokensmith.logging import get_logger

logger = get_logger(__name__)


class DigestHasher(Protocol):
    def hash(self, plaintext: str) -> str: ...

    def compare(self, plaintext: str, digest: str) -> bool: ...


class Argon2Hasher:
    """argon2id digests for passwords and refresh tokens.

    Refresh tokens are several hundred bytes long; argon2 digests the whole
    input, so two tokens sharing a prefix never compare equal.
    """

    def __init__(self, *, time_cost: int | None = None, memory_cost: int | None = None) -> None:
        kwargs = {}
        if time_cost is not None:
            kwargs["time_cost"] = time_cost
        if memory_cost is not None:
            kwargs["memory_cost"] = memory_cost
        self._hasher = PasswordHasher(type=Type.ID, **kwargs)

    def hash(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def compare(self, plaintext: str, digest: str) -> bool:
        if not digest:
            return False
        try:
            return self._hasher.verify(digest, plaintext)
        except VerificationError:
            return False
        except InvalidHash:
            logger.warning("digest_format_invalid")
            return False

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import jwt as pyjwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm
from jwt.exceptions import ExpiredSignatureError, InvalidTokenError

from tokensmith.config import Settings
from tokensmith.logging import get_logger
from tokensmith.service.errors import InvalidTokenSignature, TokenExpired

logger = get_logger(__name__)

ALGORITHM = "RS256"
ACCESS = "access"
REFRESH = "refresh"


@dataclass
class SigningKey:
    """One active asymmetric key for a token class."""

    kid: str
    private_key: Optional[rsa.RSAPrivateKey]
    public_key: rsa.RSAPublicKey
    ttl_seconds: int


def generate_private_key(key_size: int = 2048) -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=key_size)


def private_key_to_pem(private_key: rsa.RSAPrivateKey) -> bytes:
    return private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def public_key_to_pem(public_key: rsa.RSAPublicKey) -> bytes:
    return public_key.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )


def _pem_bytes(material: str | bytes) -> bytes:
    if isinstance(material, bytes):
        return material
    # Single-line env values carry escaped newlines
    return material.replace("\\n", "\n").encode()


def load_private_key(material: str | bytes) -> rsa.RSAPrivateKey:
    key = serialization.load_pem_private_key(_pem_bytes(material), password=None)
    if not isinstance(key, rsa.RSAPrivateKey):
        raise ValueError("signing key must be an RSA private key")
    return key


def load_public_key(material: str | bytes) -> rsa.RSAPublicKey:
    key = serialization.load_pem_public_key(_pem_bytes(material))
    if not isinstance(key, rsa.RSAPublicKey):
        raise ValueError("verification key must be an RSA public key")
    return key


def _resolve_signing_key(
    token_class: str,
    *,
    kid: str,
    ttl_seconds: int,
    private_pem: Optional[str],
    private_path: Optional[str],
    public_path: Optional[str],
    allow_ephemeral: bool,
) -> SigningKey:
    private_key: Optional[rsa.RSAPrivateKey] = None
    if private_pem:
        private_key = load_private_key(private_pem)
    elif private_path:
        private_key = load_private_key(Path(private_path).read_bytes())
    elif public_path:
        # Verification-only deployments hold just the public half
        logger.info("signing_key_verify_only", key_class=token_class, kid=kid)
    elif allow_ephemeral:
        logger.warning("signing_key_ephemeral", key_class=token_class, kid=kid)
        private_key = generate_private_key()
    else:
        raise RuntimeError(
            f"{token_class} signing key is not configured; set JWT_{token_class.upper()}_PRIVATE_KEY_PATH"
        )
    if public_path:
        public_key = load_public_key(Path(public_path).read_bytes())
    else:
        assert private_key is not None
        public_key = private_key.public_key()
    return SigningKey(
        kid=kid, private_key=private_key, public_key=public_key, ttl_seconds=ttl_seconds
    )


class TokenIssuer:
    """Signs and verifies access and refresh tokens with per-class RS256 keys.

    The key id of each class is embedded in the token header, so verifiers can
    hold only the public halves (see ``jwks``).
    """

    def __init__(
        self,
        access: SigningKey,
        refresh: SigningKey,
        *,
        leeway_seconds: int = 0,
    ) -> None:
        self._keys: Dict[str, SigningKey] = {ACCESS: access, REFRESH: refresh}
        self.leeway_seconds = leeway_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenIssuer":
        access = _resolve_signing_key(
            ACCESS,
            kid=settings.access_key_id,
            ttl_seconds=settings.access_token_ttl_seconds,
            private_pem=settings.access_private_key,
            private_path=settings.access_private_key_path,
            public_path=settings.access_public_key_path,
            allow_ephemeral=settings.test_mode,
        )
        refresh = _resolve_signing_key(
            REFRESH,
            kid=settings.refresh_key_id,
            ttl_seconds=settings.refresh_token_ttl_seconds,
            private_pem=settings.refresh_private_key,
            private_path=settings.refresh_private_key_path,
            public_path=settings.refresh_public_key_path,
            allow_ephemeral=settings.test_mode,
        )
        return cls(access, refresh)

    def key_for(self, token_class: str) -> SigningKey:
        try:
            return self._keys[token_class]
        except KeyError:
            raise ValueError(f"unknown token class: {token_class}") from None

    @property
    def access_ttl_seconds(self) -> int:
        return self._keys[ACCESS].ttl_seconds

    @property
    def refresh_ttl_seconds(self) -> int:
        return self._keys[REFRESH].ttl_seconds

    @property
    def access_kid(self) -> str:
        return self._keys[ACCESS].kid

    def _sign(self, token_class: str, claims: Dict[str, Any]) -> str:
        key = self._keys[token_class]
        if key.private_key is None:
            raise RuntimeError(f"{token_class} key {key.kid} is verification-only")
        now = datetime.now(timezone.utc)
        payload = {
            **claims,
            "iat": now,
            "exp": now + timedelta(seconds=key.ttl_seconds),
        }
        return pyjwt.encode(
            payload, key.private_key, algorithm=ALGORITHM, headers={"kid": key.kid}
        )

    def sign_access(self, account_id: str, email: str) -> str:
        return self._sign(ACCESS, {"sub": account_id, "email": email})

    def sign_refresh(self, account_id: str, email: str) -> Tuple[str, str]:
        jti = str(uuid.uuid4())
        token = self._sign(REFRESH, {"sub": account_id, "email": email, "jti": jti})
        return token, jti

    def decode_unverified(self, token: str) -> Dict[str, Any]:
        """Read claims without checking the signature. Only for cheap pre-checks."""
        try:
            payload = pyjwt.decode(token, options={"verify_signature": False})
        except InvalidTokenError:
            return {}
        return payload if isinstance(payload, dict) else {}

    def verify(self, token: str, token_class: str) -> Dict[str, Any]:
        """Verify signature, key id and expiry of a token of the given class.

        Raises:
            TokenExpired: the token is past its ``exp``
            InvalidTokenSignature: anything else is wrong with the token
        """
        key = self.key_for(token_class)
        try:
            header = pyjwt.get_unverified_header(token)
        except InvalidTokenError:
            raise InvalidTokenSignature(f"invalid {token_class} token")
        if header.get("kid") != key.kid:
            logger.warning(
                "token_kid_mismatch",
                key_class=token_class,
                kid=header.get("kid"),
                expected_kid=key.kid,
            )
            raise InvalidTokenSignature(f"invalid {token_class} token")
        try:
            return pyjwt.decode(
                token,
                key.public_key,
                algorithms=[ALGORITHM],
                options={"require": ["exp", "sub"]},
                leeway=self.leeway_seconds,
            )
        except ExpiredSignatureError:
            raise TokenExpired(f"{token_class} token expired")
        except InvalidTokenError:
            raise InvalidTokenSignature(f"invalid {token_class} token")

    def jwks(self) -> Dict[str, Any]:
        """Public verification keys of both classes as a JWK set."""
        keys = []
        for key in self._keys.values():
            jwk = json.loads(RSAAlgorithm.to_jwk(key.public_key))
            jwk.update({"kid": key.kid, "use": "sig", "alg": ALGORITHM})
            keys.append(jwk)
        return {"keys": keys}

"""RSA signing keys for access tokens and their published JWKS form."""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

from .config import Settings
from .errors import ValidationError
from .storage import write_private_bytes


logger = logging.getLogger(__name__)

SIGNING_ALGORITHM = "RS256"
RSA_KEY_SIZE = 2048


def compute_key_id(public_pem: bytes) -> str:
    """Key id: first 16 characters of base64url(SHA-256(SPKI PEM))."""
    digest = hashlib.sha256(public_pem).digest()
    return base64.urlsafe_b64encode(digest).decode().rstrip("=")[:16]


@dataclass
class SigningKeys:
    private_key: rsa.RSAPrivateKey

    @property
    def public_key(self) -> rsa.RSAPublicKey:
        return self.private_key.public_key()

    @property
    def private_pem(self) -> bytes:
        return self.private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )

    @property
    def public_pem(self) -> bytes:
        return self.public_key.public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )

    @property
    def kid(self) -> str:
        return compute_key_id(self.public_pem)

    def jwk(self) -> dict[str, Any]:
        jwk = json.loads(RSAAlgorithm.to_jwk(self.public_key))
        jwk.update({"kid": self.kid, "use": "sig", "alg": SIGNING_ALGORITHM})
        return jwk

    def jwks(self) -> dict[str, Any]:
        return {"keys": [self.jwk()]}

    @classmethod
    def generate(cls) -> "SigningKeys":
        return cls(rsa.generate_private_key(public_exponent=65537, key_size=RSA_KEY_SIZE))

    @classmethod
    def from_pem(cls, pem: bytes) -> "SigningKeys":
        try:
            key = serialization.load_pem_private_key(pem, password=None)
        except ValueError as exc:
            raise ValidationError(f"Invalid RSA private key: {exc}") from exc
        if not isinstance(key, rsa.RSAPrivateKey):
            raise ValidationError("Signing key must be an RSA private key")
        return cls(key)


def _decode_b64_pem(value: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValidationError("Signing key must be base64-encoded PEM") from exc


def load_signing_keys(settings: Settings, key_path: Optional[Path] = None) -> SigningKeys:
    """
    Load the signing key from the environment, then the key file, else generate one.

    A generated key is persisted when a key path is configured; otherwise it
    lives only for this process and issued tokens stop verifying on restart
    (legacy HS256 tokens are unaffected).
    """
    if settings.rsa_private_key_pem_b64:
        return SigningKeys.from_pem(_decode_b64_pem(settings.rsa_private_key_pem_b64))

    path = key_path or settings.key_path
    if path is not None and path.exists() and path.stat().st_size > 0:
        return SigningKeys.from_pem(path.read_bytes())

    keys = SigningKeys.generate()
    if path is not None:
        write_private_bytes(path, keys.private_pem)
        logger.info("Generated RSA signing key %s at %s", keys.kid, path)
    else:
        logger.warning(
            "No RSA signing key configured; using an ephemeral key (kid=%s). "
            "Tokens will not survive a restart.",
            keys.kid,
        )
    return keys

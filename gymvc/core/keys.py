# gymvc/core/keys.py
from __future__ import annotations

from pathlib import Path
import base64
import logging

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from gymvc.core.errors import KeyMaterialError

logger = logging.getLogger(__name__)


def _b64url(raw: bytes) -> str:
    """base64url sin padding (formato JWK)."""
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def _raw_public_bytes(pub: Ed25519PublicKey) -> bytes:
    return pub.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )


def ed25519_jwk(pub: Ed25519PublicKey) -> dict:
    return {"kty": "OKP", "crv": "Ed25519", "x": _b64url(_raw_public_bytes(pub))}


class KeyMaterial:
    """
    Par de claves Ed25519 del emisor.

    Se construye una sola vez al arrancar el proceso y se pasa explícitamente
    al emisor y al verificador. Sólo expone ``sign`` y la clave pública.
    """

    __slots__ = ("_private_key", "_public_key", "kid")

    def __init__(self, private_key: Ed25519PrivateKey, kid: str):
        self._private_key = private_key
        self._public_key = private_key.public_key()
        self.kid = kid

    def __setattr__(self, name, value):
        if hasattr(self, name):
            raise AttributeError("KeyMaterial is immutable")
        super().__setattr__(name, value)

    @classmethod
    def load(cls, priv_path: str | Path, pub_path: str | Path, issuer_did: str) -> "KeyMaterial":
        """Carga las PEM; cualquier problema es fatal (fail fast)."""
        try:
            private_key = serialization.load_pem_private_key(
                Path(priv_path).read_bytes(), password=None
            )
            public_key = serialization.load_pem_public_key(Path(pub_path).read_bytes())
        except FileNotFoundError as e:
            raise KeyMaterialError(f"issuer key file missing: {e.filename}") from e
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            raise KeyMaterialError(f"issuer key file malformed: {e}") from e

        if not isinstance(private_key, Ed25519PrivateKey) or not isinstance(public_key, Ed25519PublicKey):
            raise KeyMaterialError("issuer keys must be Ed25519")
        if _raw_public_bytes(private_key.public_key()) != _raw_public_bytes(public_key):
            raise KeyMaterialError("issuer public key does not match private key")

        km = cls(private_key, kid=f"{issuer_did}#key-1")
        logger.info("issuer key material loaded kid=%s", km.kid)
        return km

    def sign(self, data: bytes) -> bytes:
        return self._private_key.sign(data)

    def public_key(self) -> Ed25519PublicKey:
        return self._public_key

    def public_jwk(self) -> dict:
        return {**ed25519_jwk(self._public_key), "kid": self.kid}

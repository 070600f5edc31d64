# gymvc/core/crypto.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any
import json
import logging

from jwt import api_jws
from jwt import InvalidTokenError
from jwt.utils import base64url_encode
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

from gymvc.core.errors import SignatureInvalid, SigningError
from gymvc.core.keys import KeyMaterial

logger = logging.getLogger(__name__)

JWS_ALG = "EdDSA"
VC_CONTEXT = [
    "https://www.w3.org/2018/credentials/v1",
    "https://cmcglobal.fitness/credentials/v1",
]


def canonicalize(obj: Any) -> bytes:
    """
    JSON canónico para firmar y verificar:
    - sort_keys=True: orden de claves estable
    - separators=(',', ':'): sin espacios
    - ensure_ascii=False y luego UTF-8
    - allow_nan=False: NaN e Infinity no son JSON, ValueError
    """
    return json.dumps(
        obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False, allow_nan=False
    ).encode("utf-8")


def _iso(ts: datetime) -> str:
    return ts.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def build_vc_payload(
    *,
    credential_id: str,
    issuer_did: str,
    subject: dict,
    credential_types: list[str],
    valid_from: datetime,
    valid_until: datetime,
    issued_at: datetime,
) -> dict:
    return {
        "iss": issuer_did,
        "sub": subject["id"],
        "jti": f"urn:uuid:{credential_id}",
        "iat": int(issued_at.timestamp()),
        "nbf": int(valid_from.timestamp()),
        "exp": int(valid_until.timestamp()),
        "vc": {
            "@context": VC_CONTEXT,
            "id": f"urn:uuid:{credential_id}",
            "type": credential_types,
            "issuer": {"id": issuer_did},
            "issuanceDate": _iso(issued_at),
            "expirationDate": _iso(valid_until),
            "credentialSubject": subject,
        },
    }


def sign_vc(payload: dict, keys: KeyMaterial) -> str:
    """Serializa header y payload de forma canónica y firma header.payload (JWS compacto)."""
    header = {"alg": JWS_ALG, "kid": keys.kid, "typ": "JWT"}
    try:
        signing_input = base64url_encode(canonicalize(header)) + b"." + base64url_encode(canonicalize(payload))
    except (TypeError, ValueError) as e:
        raise SigningError(f"payload is not serializable as JSON: {e}") from e
    try:
        signature = keys.sign(signing_input)
    except Exception as e:
        raise SigningError(f"ed25519 sign failed: {e}") from e
    return (signing_input + b"." + base64url_encode(signature)).decode("ascii")


@dataclass(frozen=True)
class VerifiedToken:
    header: dict
    payload: dict

    @property
    def credential_id(self) -> str:
        jti = self.payload.get("jti", "")
        return jti.removeprefix("urn:uuid:")

    @property
    def subject(self) -> dict:
        return self.payload.get("vc", {}).get("credentialSubject", {})

    @property
    def not_before(self) -> datetime:
        return datetime.fromtimestamp(self.payload["nbf"], tz=timezone.utc)

    @property
    def not_after(self) -> datetime:
        return datetime.fromtimestamp(self.payload["exp"], tz=timezone.utc)


def verify_signature(token: str, public_key: Ed25519PublicKey) -> VerifiedToken:
    """
    Única rutina de verificación de firma, compartida por el camino online
    (check-in) y el offline (pegar un token). No consulta la BD.

    Lanza SignatureInvalid ante cualquier fallo estructural o de firma; el
    motivo concreto sólo va al log.
    """
    try:
        if not isinstance(token, str) or token.count(".") != 2:
            raise SignatureInvalid("token must have exactly three segments")
        header_seg, payload_seg, sig_seg = token.encode("ascii").split(b".")

        decoded = api_jws.decode_complete(token, key=public_key, algorithms=[JWS_ALG])
        header, payload_bytes, signature = decoded["header"], decoded["payload"], decoded["signature"]

        # base64url admite bits de relleno arbitrarios: exigimos la codificación canónica
        if base64url_encode(signature) != sig_seg:
            raise SignatureInvalid("non-canonical signature segment")
        if base64url_encode(canonicalize(header)) != header_seg:
            raise SignatureInvalid("non-canonical header segment")

        payload = json.loads(payload_bytes)
        if not isinstance(payload, dict):
            raise SignatureInvalid("payload is not a JSON object")
        if canonicalize(payload) != payload_bytes or base64url_encode(payload_bytes) != payload_seg:
            raise SignatureInvalid("non-canonical payload segment")
        for claim in ("iss", "jti", "nbf", "exp", "vc"):
            if claim not in payload:
                raise SignatureInvalid(f"missing claim: {claim}")
        if not isinstance(payload["nbf"], int) or not isinstance(payload["exp"], int):
            raise SignatureInvalid("nbf/exp must be integers")

        return VerifiedToken(header=header, payload=payload)

    except SignatureInvalid as e:
        logger.warning("signature check failed: %s", e.detail)
        raise
    except (InvalidTokenError, ValueError, UnicodeError) as e:
        logger.warning("signature check failed: %s: %s", type(e).__name__, e)
        raise SignatureInvalid(f"{type(e).__name__}: {e}") from e


def verify_offline(token: str, public_key: Ed25519PublicKey, now: datetime | None = None) -> dict:
    """
    Verificación sin red: sólo clave pública. Firma + ventana de validez,
    sin estado de revocación ni límites de uso.
    """
    try:
        verified = verify_signature(token, public_key)
    except SignatureInvalid as e:
        return {"valid": False, "payload": None, "header": None, "error": e.public_message}

    now = now or datetime.now(timezone.utc)
    error = None
    if now < verified.not_before:
        error = "Credential is not yet valid"
    elif now > verified.not_after:
        error = "Credential has expired"
    return {
        "valid": error is None,
        "payload": verified.payload,
        "header": verified.header,
        "error": error,
    }

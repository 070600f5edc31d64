# gymvc/core/errors.py
"""
Taxonomía de errores del núcleo de credenciales.

Cada error lleva un ``code`` estable (lo que ve el cliente del check-in) y un
``public_message`` que nunca incluye detalles internos. El detalle completo
va al log del servidor.
"""


class CredentialError(Exception):
    code = "error"
    public_message = "Credential could not be processed"

    def __init__(self, detail: str | None = None):
        super().__init__(detail or self.public_message)
        self.detail = detail or self.public_message


class SignatureInvalid(CredentialError):
    code = "signature_invalid"
    # genérico a propósito: no decimos qué parte del token falló
    public_message = "Credential signature is not valid"


class NotFound(CredentialError):
    code = "not_found"
    public_message = "Not found"


class Expired(CredentialError):
    code = "expired"
    public_message = "Expired"


class Revoked(CredentialError):
    code = "revoked"
    public_message = "Credential has been revoked"


class UsageExceeded(CredentialError):
    code = "usage_exceeded"
    public_message = "Monthly usage limit reached"


class StoreUnavailable(CredentialError):
    code = "store_unavailable"
    public_message = "Credential store is unavailable, please scan again"


class InvalidClaims(CredentialError):
    code = "invalid_claims"
    public_message = "Credential data is not valid"


class SigningError(CredentialError):
    code = "signing_failed"
    public_message = "Credential could not be signed"


class KeyMaterialError(RuntimeError):
    """Claves del emisor ausentes o corruptas: el proceso no debe arrancar."""

# gymvc/services/issuer.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable
import logging
import uuid

from pydantic import ValidationError

from gymvc.core.claims import SubjectClaims
from gymvc.core.crypto import build_vc_payload, sign_vc, verify_signature
from gymvc.core.errors import InvalidClaims, NotFound
from gymvc.core.keys import KeyMaterial
from gymvc.db.models import Credential, utcnow
from gymvc.services.store import CredentialStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IssuedCredential:
    id: str
    signed_token: str
    claims: SubjectClaims
    credential_types: list[str]
    status: str
    valid_from: datetime
    valid_until: datetime
    issued_at: datetime


def _as_claims(subject_claims: SubjectClaims | dict) -> SubjectClaims:
    if isinstance(subject_claims, SubjectClaims):
        return subject_claims
    try:
        return SubjectClaims.model_validate(subject_claims)
    except ValidationError as e:
        raise InvalidClaims(str(e)) from e


class CredentialIssuer:
    def __init__(
        self,
        keys: KeyMaterial,
        store: CredentialStore,
        *,
        issuer_did: str,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.keys = keys
        self.store = store
        self.issuer_did = issuer_did
        self.clock = clock

    async def issue(
        self,
        subject_claims: SubjectClaims | dict,
        valid_from: datetime,
        valid_until: datetime,
    ) -> IssuedCredential:
        # se valida todo antes de firmar
        claims = _as_claims(subject_claims)
        if valid_from.tzinfo is None or valid_until.tzinfo is None:
            raise InvalidClaims("validity timestamps must be timezone-aware")
        # nbf/exp van en segundos enteros: la BD guarda exactamente lo firmado
        valid_from = valid_from.replace(microsecond=0)
        valid_until = valid_until.replace(microsecond=0)
        if valid_from >= valid_until:
            raise InvalidClaims("validFrom must be earlier than validUntil")

        credential_id = str(uuid.uuid4())
        issued_at = self.clock().replace(microsecond=0)
        types = claims.credential_types()
        payload = build_vc_payload(
            credential_id=credential_id,
            issuer_did=self.issuer_did,
            subject=claims.to_payload(),
            credential_types=types,
            valid_from=valid_from,
            valid_until=valid_until,
            issued_at=issued_at,
        )
        # un fallo de firma se propaga (SigningError): reintentar duplicaría la emisión
        token = sign_vc(payload, self.keys)

        await self.store.save(
            Credential(
                id=credential_id,
                signed_token=token,
                holder_did=claims.holder_did,
                holder_name=claims.holder_name,
                benefit_id=claims.benefit.benefit_id,
                benefit_name=claims.benefit.name,
                membership_id=claims.membership_id,
                status="active",
                valid_from=valid_from,
                valid_until=valid_until,
                issued_at=issued_at,
            )
        )
        logger.info(
            "issued credential %s holder=%s benefit=%s types=%s",
            credential_id, claims.holder_did, claims.benefit.benefit_id, types,
        )
        return IssuedCredential(
            id=credential_id,
            signed_token=token,
            claims=claims,
            credential_types=types,
            status="active",
            valid_from=valid_from,
            valid_until=valid_until,
            issued_at=issued_at,
        )

    async def reissue(
        self,
        credential_id: str,
        *,
        updates: dict | None = None,
        valid_from: datetime | None = None,
        valid_until: datetime | None = None,
    ) -> IssuedCredential:
        """
        Nueva credencial (id nuevo) a partir de una existente. La original no
        se toca; si hay que invalidarla, se revoca aparte.
        """
        existing = await self.store.get(credential_id)
        if existing is None:
            raise NotFound(f"credential {credential_id} not found")
        verified = verify_signature(existing.signed_token, self.keys.public_key())
        subject = {**verified.subject, **(updates or {})}
        return await self.issue(
            subject,
            valid_from or existing.valid_from,
            valid_until or existing.valid_until,
        )

    async def revoke(self, credential_id: str, reason: str | None = None) -> Credential:
        cred = await self.store.set_status(credential_id, "revoked", reason)
        logger.info("revoked credential %s reason=%r", credential_id, reason)
        return cred

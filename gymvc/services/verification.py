# gymvc/services/verification.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable
import asyncio
import logging

from gymvc.core.crypto import VerifiedToken, verify_offline, verify_signature
from gymvc.core.errors import (
    CredentialError,
    Expired,
    NotFound,
    Revoked,
    SignatureInvalid,
    UsageExceeded,
)
from gymvc.core.keys import KeyMaterial
from gymvc.db.models import utcnow
from gymvc.services.store import CredentialStore, UsageEvent, UsageLog
from gymvc.services.tokens import TokenBroker, TokenKind

logger = logging.getLogger(__name__)


class Decision(str, Enum):
    VALID = "valid"
    REVOKED = "revoked"
    EXPIRED = "expired"
    SIGNATURE_INVALID = "signature_invalid"
    USAGE_EXCEEDED = "usage_exceeded"
    NOT_FOUND = "not_found"


DECISION_MESSAGES = {
    Decision.REVOKED: Revoked.public_message,
    Decision.EXPIRED: "Credential has expired",
    Decision.SIGNATURE_INVALID: SignatureInvalid.public_message,
    Decision.USAGE_EXCEEDED: UsageExceeded.public_message,
    Decision.NOT_FOUND: "Credential not found",
}


class BundlePolicy(str, Enum):
    # todas las credenciales del QR válidas, o no entra nadie
    ALL_OR_NOTHING = "all_or_nothing"
    # entra con las válidas; falla sólo si no queda ninguna
    BEST_EFFORT = "best_effort"


@dataclass(frozen=True)
class CredentialCheck:
    credential_id: str
    decision: Decision
    claims: dict | None = None
    valid_until: datetime | None = None
    uses_this_month: int | None = None
    max_uses_per_month: int | None = None

    @property
    def valid(self) -> bool:
        return self.decision is Decision.VALID

    @property
    def uses_remaining(self) -> int | None:
        if self.max_uses_per_month is None or self.uses_this_month is None:
            return None
        return max(0, self.max_uses_per_month - self.uses_this_month)

    @property
    def reason(self) -> str | None:
        if self.valid:
            return None
        return DECISION_MESSAGES[self.decision]


@dataclass
class CheckInResult:
    success: bool
    reason: str | None = None
    code: str | None = None
    checks: list[CredentialCheck] = field(default_factory=list)
    admitted: list[CredentialCheck] = field(default_factory=list)

    @classmethod
    def failure(cls, code: str, reason: str, checks: list[CredentialCheck] | None = None) -> "CheckInResult":
        return cls(success=False, reason=reason, code=code, checks=checks or [])

    def to_response(self) -> dict:
        if not self.success:
            return {"success": False, "reason": self.reason, "code": self.code}
        primary = self.admitted[0]
        benefit = (primary.claims or {}).get("benefit", {})
        return {
            "success": True,
            "data": {
                "credentials": [
                    {
                        "id": c.credential_id,
                        "decision": c.decision.value,
                        "benefitName": (c.claims or {}).get("benefit", {}).get("name"),
                        "expiryDate": c.valid_until.isoformat() if c.valid_until else None,
                        "usesRemaining": c.uses_remaining,
                        "credentialSubject": c.claims,
                    }
                    for c in self.checks
                ],
                "benefitName": benefit.get("name"),
                "userName": (primary.claims or {}).get("holderName"),
                "expiryDate": primary.valid_until.isoformat() if primary.valid_until else None,
                "usesRemaining": primary.uses_remaining,
            },
        }


class VerificationEngine:
    def __init__(
        self,
        keys: KeyMaterial,
        store: CredentialStore,
        usage_log: UsageLog,
        broker: TokenBroker,
        *,
        issuer_did: str,
        policy: BundlePolicy = BundlePolicy.ALL_OR_NOTHING,
        deadline_seconds: float = 3.0,
        single_use: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.public_key = keys.public_key()
        self.store = store
        self.usage_log = usage_log
        self.broker = broker
        self.issuer_did = issuer_did
        self.policy = policy
        self.deadline_seconds = deadline_seconds
        self.single_use = single_use
        self.clock = clock

    def verify_signature(self, signed_token: str) -> VerifiedToken:
        return verify_signature(signed_token, self.public_key)

    def verify_offline(self, signed_token: str) -> dict:
        return verify_offline(signed_token, self.public_key, now=self.clock())

    async def verify_credential(self, credential_id: str) -> CredentialCheck:
        """
        Orden fijo: existe -> firma -> revocada -> ventana de validez -> límite
        mensual. Un token falsificado nunca llega a las comprobaciones de negocio.
        """
        record = await self.store.get(credential_id)
        if record is None:
            return CredentialCheck(credential_id, Decision.NOT_FOUND)

        try:
            verified = self.verify_signature(record.signed_token)
        except SignatureInvalid:
            logger.warning("stored credential %s failed signature check", credential_id)
            return CredentialCheck(credential_id, Decision.SIGNATURE_INVALID)
        if verified.credential_id != credential_id or verified.payload.get("iss") != self.issuer_did:
            logger.warning(
                "credential %s token mismatch jti=%s iss=%s",
                credential_id, verified.payload.get("jti"), verified.payload.get("iss"),
            )
            return CredentialCheck(credential_id, Decision.SIGNATURE_INVALID)

        claims = verified.subject
        benefit = claims.get("benefit", {})
        cap = benefit.get("maxUsesPerMonth")
        base = dict(claims=claims, valid_until=verified.not_after, max_uses_per_month=cap)

        if record.status == "revoked":
            return CredentialCheck(credential_id, Decision.REVOKED, **base)

        now = self.clock()
        if not (verified.not_before <= now <= verified.not_after):
            return CredentialCheck(credential_id, Decision.EXPIRED, **base)

        used = None
        if cap is not None:
            used = await self.usage_log.count_this_month(benefit.get("benefitId"), claims.get("id"), now)
            if used >= cap:
                return CredentialCheck(credential_id, Decision.USAGE_EXCEEDED, uses_this_month=used, **base)

        return CredentialCheck(credential_id, Decision.VALID, uses_this_month=used, **base)

    async def _validate(self, token_value: str) -> list[CredentialCheck]:
        ids = await self.broker.resolve(token_value, kind=TokenKind.CHECKIN)
        return list(await asyncio.gather(*(self.verify_credential(i) for i in ids)))

    async def check_in(self, token_value: str) -> CheckInResult:
        """
        Todo el escaneo (resolver, verificar, contar) cabe en el plazo
        ``deadline_seconds``. Si se agota, el resultado es un fallo y la
        transacción de uso, si estaba abierta, se cancela sin confirmar.
        """
        try:
            return await asyncio.wait_for(self._check_in(token_value), self.deadline_seconds)
        except asyncio.TimeoutError:
            logger.warning("check-in exceeded %.1fs deadline", self.deadline_seconds)
            return CheckInResult.failure("timeout", "Check-in timed out, please scan again")

    async def _check_in(self, token_value: str) -> CheckInResult:
        try:
            checks = await self._validate(token_value)
        except (NotFound, Expired) as e:
            logger.info("check-in rejected: token %s", e.code)
            return CheckInResult.failure(e.code, "Invalid or expired token")
        except CredentialError as e:
            logger.warning("check-in failed: %s", e.detail)
            return CheckInResult.failure(e.code, e.public_message)

        if self.policy is BundlePolicy.ALL_OR_NOTHING:
            rejected = [c for c in checks if not c.valid]
            admitted = [] if rejected else checks
        else:
            admitted = [c for c in checks if c.valid]
            rejected = [c for c in checks if not c.valid]
        if not admitted:
            first = rejected[0]
            logger.info("check-in denied: credential %s %s", first.credential_id, first.decision.value)
            return CheckInResult.failure(first.decision.value, first.reason, checks)

        # último paso, tras todas las comprobaciones: incremento atómico de usos
        # y, en modo de un solo uso, consumo del token en la misma transacción
        now = self.clock()
        events = [
            UsageEvent(
                credential_id=c.credential_id,
                benefit_id=c.claims["benefit"]["benefitId"],
                holder_did=c.claims["id"],
                max_uses_per_month=c.max_uses_per_month,
                token=token_value,
            )
            for c in admitted
        ]
        try:
            counts = await self.usage_log.record(
                events, now, consume_token=token_value if self.single_use else None
            )
        except Expired as e:
            logger.info("check-in rejected at usage gate: %s", e.detail)
            return CheckInResult.failure(e.code, "Invalid or expired token", checks)
        except CredentialError as e:
            logger.info("check-in denied at usage gate: %s", e.detail)
            return CheckInResult.failure(e.code, e.public_message, checks)

        admitted_ids = {c.credential_id for c in admitted}
        updated = [
            CredentialCheck(
                c.credential_id,
                c.decision,
                claims=c.claims,
                valid_until=c.valid_until,
                uses_this_month=counts.get(c.credential_id, c.uses_this_month),
                max_uses_per_month=c.max_uses_per_month,
            )
            if c.credential_id in admitted_ids
            else c
            for c in checks
        ]
        result = CheckInResult(
            success=True,
            checks=updated,
            admitted=[c for c in updated if c.credential_id in admitted_ids],
        )
        logger.info("check-in admitted %d credential(s)", len(result.admitted))
        return result

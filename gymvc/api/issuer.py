# gymvc/api/issuer.py
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from datetime import datetime, timedelta, timezone

from gymvc.api.deps import Services, get_services, http_error
from gymvc.core.claims import Benefit, GymInfo, SubjectClaims
from gymvc.core.config import settings
from gymvc.core.errors import CredentialError
from gymvc.services.issuer import IssuedCredential
from gymvc.services.store import effective_status

router = APIRouter()

DID_CONTEXTS = [
    "https://www.w3.org/ns/did/v1",
    "https://w3id.org/security/suites/ed25519-2020/v1",
]


def _window(valid_from: datetime | None, valid_until: datetime | None, exp_days: int):
    start = valid_from or datetime.now(timezone.utc)
    end = valid_until or start + timedelta(days=exp_days)
    return start, end


def _with_gym(claims: SubjectClaims) -> SubjectClaims:
    if claims.gym is not None:
        return claims
    return claims.model_copy(update={"gym": GymInfo(name=settings.gym_name, location=settings.gym_location)})


def _issued_out(c: IssuedCredential) -> dict:
    return {
        "id": c.id,
        "token": c.signed_token,
        "status": c.status,
        "types": c.credential_types,
        "validFrom": c.valid_from.isoformat(),
        "validUntil": c.valid_until.isoformat(),
    }


class IssueInput(BaseModel):
    subject: SubjectClaims
    validFrom: datetime | None = None
    validUntil: datetime | None = None
    expDays: int = 365


@router.post("/issue")
async def issue_credential(body: IssueInput, svc: Services = Depends(get_services)):
    start, end = _window(body.validFrom, body.validUntil, body.expDays)
    try:
        issued = await svc.issuer.issue(_with_gym(body.subject), start, end)
    except CredentialError as e:
        raise http_error(e)
    return _issued_out(issued)


class MembershipInput(BaseModel):
    holderDid: str
    holderName: str
    membershipId: str
    plan: str | None = None
    benefits: list[Benefit] = Field(min_length=1)
    validFrom: datetime | None = None
    validUntil: datetime | None = None
    expDays: int = 365


@router.post("/memberships")
async def issue_membership(body: MembershipInput, svc: Services = Depends(get_services)):
    """Una credencial por beneficio + un token de check-in para todo el paquete."""
    start, end = _window(body.validFrom, body.validUntil, body.expDays)
    issued = []
    try:
        for benefit in body.benefits:
            claims = SubjectClaims(
                holder_did=body.holderDid,
                holder_name=body.holderName,
                membership_id=body.membershipId,
                membership_plan=body.plan,
                benefit=benefit,
            )
            issued.append(await svc.issuer.issue(_with_gym(claims), start, end))
        minted = await svc.broker.mint([c.id for c in issued])
    except CredentialError as e:
        raise http_error(e)
    return {
        "membershipId": body.membershipId,
        "credentials": [_issued_out(c) | {"benefitName": c.claims.benefit.name} for c in issued],
        "checkinToken": {
            "token": minted.token,
            "expiresAt": minted.expires_at.isoformat(),
            "ttlSeconds": minted.ttl_seconds(minted.created_at),
        },
    }


class ReissueInput(BaseModel):
    credentialId: str
    updates: dict | None = None
    validUntil: datetime | None = None


@router.post("/reissue")
async def reissue_credential(body: ReissueInput, svc: Services = Depends(get_services)):
    try:
        issued = await svc.issuer.reissue(body.credentialId, updates=body.updates, valid_until=body.validUntil)
    except CredentialError as e:
        raise http_error(e)
    return _issued_out(issued) | {"previousId": body.credentialId}


class RevokeInput(BaseModel):
    credentialId: str
    reason: str | None = None


@router.post("/revoke")
async def revoke_credential(body: RevokeInput, svc: Services = Depends(get_services)):
    try:
        await svc.issuer.revoke(body.credentialId, body.reason)
    except CredentialError as e:
        raise http_error(e)
    return {"ok": True, "id": body.credentialId, "status": "revoked"}


@router.get("/list")
async def list_issuer(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    holderDid: str | None = None,
    membershipId: str | None = None,
    svc: Services = Depends(get_services),
):
    try:
        rows, total = await svc.store.list_page(
            page=page, limit=limit, holder_did=holderDid, membership_id=membershipId
        )
    except CredentialError as e:
        raise http_error(e)
    now = datetime.now(timezone.utc)
    return {
        "credentials": [
            {
                "id": r.id,
                "holderDid": r.holder_did,
                "holderName": r.holder_name,
                "benefitName": r.benefit_name,
                "membershipId": r.membership_id,
                "status": effective_status(r, now),
                "validUntil": r.valid_until.isoformat(),
                "issuedAt": r.issued_at.isoformat(),
            }
            for r in rows
        ],
        "pagination": {"page": page, "limit": limit, "total": total, "totalPages": -(-total // limit)},
    }


@router.get("/detail")
async def detail_issuer(id: str = Query(...), svc: Services = Depends(get_services)):
    try:
        r = await svc.store.get(id)
    except CredentialError as e:
        raise http_error(e)
    if not r:
        raise HTTPException(status_code=404, detail="credential not found")
    return {
        "id": r.id,
        "status": effective_status(r, datetime.now(timezone.utc)),
        "revocationReason": r.revocation_reason,
        "validFrom": r.valid_from.isoformat(),
        "validUntil": r.valid_until.isoformat(),
        "issuedAt": r.issued_at.isoformat(),
        "jwt": r.signed_token,
    }


@router.get("/stats")
async def storage_stats(svc: Services = Depends(get_services)):
    try:
        return await svc.store.stats(datetime.now(timezone.utc))
    except CredentialError as e:
        raise http_error(e)


@router.post("/tokens/purge")
async def purge_tokens(svc: Services = Depends(get_services)):
    try:
        return {"purged": await svc.broker.purge_expired()}
    except CredentialError as e:
        raise http_error(e)


@router.get("/did.json")
async def did_document(svc: Services = Depends(get_services)):
    did = settings.issuer_did
    jwk = svc.keys.public_jwk()
    return {
        "@context": DID_CONTEXTS,
        "id": did,
        "verificationMethod": [{
            "id": jwk["kid"],
            "type": "Ed25519VerificationKey2020",
            "controller": did,
            "publicKeyJwk": {k: v for k, v in jwk.items() if k != "kid"},
        }],
        "assertionMethod": [jwk["kid"]],
        "authentication": [jwk["kid"]],
        "service": [{
            "id": f"{did}#credential-issuer",
            "type": "CredentialIssuerService",
            "serviceEndpoint": f"{settings.public_base_url.rstrip('/')}/issuer",
        }],
    }

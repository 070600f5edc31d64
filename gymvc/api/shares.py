from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from gymvc.api.deps import Services, get_services, http_error
from gymvc.core.errors import CredentialError

router = APIRouter()


class ShareInput(BaseModel):
    credentialId: str
    expiresInHours: float | None = None


@router.post("", status_code=201)
async def create_share(body: ShareInput, svc: Services = Depends(get_services)):
    try:
        share = await svc.shares.create_share(body.credentialId, body.expiresInHours)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except CredentialError as e:
        raise http_error(e)
    return share | {"expiresAt": share["expiresAt"].isoformat()}


@router.get("/stats/overview")
async def share_stats(svc: Services = Depends(get_services)):
    try:
        return await svc.shares.stats()
    except CredentialError as e:
        raise http_error(e)


@router.get("/credential/{credential_id}")
async def shares_for_credential(credential_id: str, svc: Services = Depends(get_services)):
    try:
        shares = await svc.shares.list_shares(credential_id)
    except CredentialError as e:
        raise http_error(e)
    return [
        {"token": s.token, "expiresAt": s.expires_at.isoformat(), "createdAt": s.created_at.isoformat()}
        for s in shares
    ]


@router.get("/{token}")
async def get_shared_credential(token: str, svc: Services = Depends(get_services)):
    # el enlace vivo resuelve siempre; el estado de la credencial va aparte
    try:
        credential_id = await svc.shares.resolve_share(token)
        check = await svc.verifier.verify_credential(credential_id)
        record = await svc.store.get(credential_id)
    except CredentialError as e:
        raise http_error(e)
    return {
        "credentialId": credential_id,
        "jwt": record.signed_token if record else None,
        "valid": check.valid,
        "decision": check.decision.value,
        "reason": check.reason,
        "credentialSubject": check.claims,
    }


@router.delete("/{token}")
async def revoke_share(token: str, svc: Services = Depends(get_services)):
    try:
        revoked = await svc.shares.revoke_share(token)
    except CredentialError as e:
        raise http_error(e)
    if not revoked:
        raise HTTPException(status_code=404, detail="share not found")
    return {"ok": True}

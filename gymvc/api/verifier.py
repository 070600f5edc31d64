from fastapi import APIRouter, Depends
from pydantic import BaseModel

from gymvc.api.deps import Services, get_services, http_error
from gymvc.core.errors import CredentialError

router = APIRouter()


class VerifyInput(BaseModel):
    token: str


@router.post("/verify")
async def verify_token(body: VerifyInput, svc: Services = Depends(get_services)):
    # sólo clave pública: ni BD ni límites de uso (misma rutina que el check-in)
    return svc.verifier.verify_offline(body.token)


@router.get("/credentials/{credential_id}")
async def verify_stored(credential_id: str, svc: Services = Depends(get_services)):
    try:
        check = await svc.verifier.verify_credential(credential_id)
    except CredentialError as e:
        raise http_error(e)
    return {
        "credentialId": credential_id,
        "valid": check.valid,
        "decision": check.decision.value,
        "reason": check.reason,
        "claims": check.claims,
        "validUntil": check.valid_until.isoformat() if check.valid_until else None,
        "usesRemaining": check.uses_remaining,
    }

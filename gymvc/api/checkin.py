from fastapi import APIRouter, Depends
from pydantic import BaseModel

from gymvc.api.deps import Services, get_services

router = APIRouter()


class CheckinInput(BaseModel):
    token: str


@router.post("/checkin")
async def check_in(body: CheckinInput, svc: Services = Depends(get_services)):
    # todo fallo (token, firma, revocada, límite, BD) llega aquí como success=False + motivo
    result = await svc.verifier.check_in(body.token)
    return result.to_response()

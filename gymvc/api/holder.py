from datetime import datetime, timezone
from io import BytesIO

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field
import qrcode

from gymvc.api.deps import Services, get_services, http_error
from gymvc.core.errors import CredentialError
from gymvc.services.tokens import TokenKind

router = APIRouter()


class CheckinTokenInput(BaseModel):
    credentialIds: list[str] = Field(min_length=1)


@router.post("/checkin-token", status_code=201)
async def create_checkin_token(body: CheckinTokenInput, svc: Services = Depends(get_services)):
    """Token de 60 s para el QR del cliente; se descarta al caducar."""
    try:
        for cid in body.credentialIds:
            if await svc.store.get(cid) is None:
                raise HTTPException(status_code=404, detail=f"credential {cid} not found")
        minted = await svc.broker.mint(body.credentialIds, TokenKind.CHECKIN)
    except CredentialError as e:
        raise http_error(e)
    return {
        "token": minted.token,
        "expiresAt": minted.expires_at.isoformat(),
        "ttlSeconds": minted.ttl_seconds(minted.created_at),
        "qrUrl": f"/holder/qr/{minted.token}",
    }


@router.get("/qr/{token}")
async def qr_for_token(token: str, svc: Services = Depends(get_services)):
    try:
        minted = await svc.broker.get(token)
    except CredentialError as e:
        raise http_error(e)
    # check-in: el QR lleva sólo el token; share: la URL pública del enlace
    data = minted.token if minted.kind is TokenKind.CHECKIN else svc.shares.share_url(minted.token)
    img = qrcode.make(data)
    buf = BytesIO(); img.save(buf, format="PNG"); buf.seek(0)
    return StreamingResponse(buf, media_type="image/png")


@router.get("/credentials/{credential_id}/checkins")
async def checkin_history(credential_id: str, month_only: bool = False, svc: Services = Depends(get_services)):
    since = None
    if month_only:
        since = datetime.now(timezone.utc).replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    try:
        events = await svc.usage.history(credential_id, since=since)
    except CredentialError as e:
        raise http_error(e)
    return [{"checkedInAt": ev.checked_in_at.isoformat(), "benefitId": ev.benefit_id} for ev in events]

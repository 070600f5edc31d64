# gymvc/services/sharing.py
from __future__ import annotations

from datetime import timedelta
import logging

from gymvc.core.errors import NotFound
from gymvc.services.store import CredentialStore
from gymvc.services.tokens import MintedToken, TokenBroker, TokenKind

logger = logging.getLogger(__name__)


class ShareLinkService:
    """
    Enlaces para compartir una credencial: token de referencia de tipo
    "share" con TTL en horas.

    La validez del enlace y la de la credencial son independientes: un enlace
    vivo a una credencial revocada resuelve, y es la verificación posterior
    la que dice "revoked".
    """

    def __init__(
        self,
        broker: TokenBroker,
        store: CredentialStore,
        *,
        default_hours: float = 24,
        max_hours: float = 720,
        base_url: str = "",
    ):
        self.broker = broker
        self.store = store
        self.default_hours = default_hours
        self.max_hours = max_hours
        self.base_url = base_url.rstrip("/")

    def share_url(self, token: str) -> str:
        return f"{self.base_url}/shares/{token}"

    async def create_share(self, credential_id: str, expires_in_hours: float | None = None) -> dict:
        hours = self.default_hours if expires_in_hours is None else expires_in_hours
        if not 0 < hours <= self.max_hours:
            raise ValueError(f"expiresInHours must be in (0, {self.max_hours}]")
        if await self.store.get(credential_id) is None:
            raise NotFound(f"credential {credential_id} not found")

        minted = await self.broker.mint([credential_id], TokenKind.SHARE, ttl=timedelta(hours=hours))
        logger.info("share created for credential %s, %.1fh", credential_id, hours)
        return {
            "token": minted.token,
            "expiresAt": minted.expires_at,
            "shareUrl": self.share_url(minted.token),
        }

    async def resolve_share(self, token: str) -> str:
        (credential_id,) = await self.broker.resolve(token, kind=TokenKind.SHARE)
        return credential_id

    async def list_shares(self, credential_id: str) -> list[MintedToken]:
        return await self.broker.list_live(credential_id, TokenKind.SHARE)

    async def revoke_share(self, token: str) -> bool:
        revoked = await self.broker.revoke(token, kind=TokenKind.SHARE)
        if revoked:
            logger.info("share %s… revoked", token[:6])
        return revoked

    async def stats(self) -> dict:
        return await self.broker.stats(TokenKind.SHARE)

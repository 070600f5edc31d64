# gymvc/services/tokens.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable
import json
import logging
import secrets

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError

from gymvc.core.errors import Expired, NotFound
from gymvc.db.models import ReferenceToken, utcnow
from gymvc.services.store import SqlStore

logger = logging.getLogger(__name__)

MINT_ATTEMPTS = 3


class TokenKind(str, Enum):
    CHECKIN = "checkin"
    SHARE = "share"


def new_token_value(kind: TokenKind) -> str:
    """
    checkin: 16 caracteres hex (64 bits). Corto para que el QR sea denso y
    legible; lo protege el TTL de 60 s, no sólo la entropía.
    share: 32 caracteres base64url (192 bits), vive horas o días.
    """
    if kind is TokenKind.CHECKIN:
        return secrets.token_hex(8)
    return secrets.token_urlsafe(24)


@dataclass(frozen=True)
class MintedToken:
    token: str
    kind: TokenKind
    credential_ids: tuple[str, ...]
    created_at: datetime
    expires_at: datetime
    consumed_at: datetime | None = None

    @classmethod
    def from_row(cls, row: ReferenceToken) -> "MintedToken":
        return cls(
            token=row.token,
            kind=TokenKind(row.kind),
            credential_ids=tuple(json.loads(row.credential_ids)),
            created_at=row.created_at,
            expires_at=row.expires_at,
            consumed_at=row.consumed_at,
        )

    def ttl_seconds(self, now: datetime) -> int:
        return max(0, int((self.expires_at - now).total_seconds()))


class TokenBroker(SqlStore):
    """
    Tokens de referencia opacos -> lista de ids de credencial.

    La caducidad se evalúa al leer (now > expires_at), nunca borrando filas:
    una fila vieja puede quedarse para auditoría pero no vuelve a resolver.
    """

    def __init__(
        self,
        session_factory,
        *,
        checkin_ttl: timedelta = timedelta(seconds=60),
        timeout: float = 5.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        super().__init__(session_factory, timeout=timeout)
        self.checkin_ttl = checkin_ttl
        self.clock = clock

    async def mint(
        self,
        credential_ids: list[str],
        kind: TokenKind = TokenKind.CHECKIN,
        ttl: timedelta | None = None,
    ) -> MintedToken:
        ids = list(dict.fromkeys(credential_ids))  # conjunto ordenado
        if not ids:
            raise ValueError("at least one credential id is required")
        if kind is TokenKind.SHARE and len(ids) != 1:
            raise ValueError("a share token references exactly one credential")
        if ttl is None:
            if kind is TokenKind.SHARE:
                raise ValueError("share tokens need an explicit ttl")
            ttl = self.checkin_ttl
        if ttl <= timedelta(0):
            raise ValueError("ttl must be positive")

        async def _mint():
            for _ in range(MINT_ATTEMPTS):
                now = self.clock()
                row = ReferenceToken(
                    token=new_token_value(kind),
                    kind=kind.value,
                    credential_ids=json.dumps(ids),
                    primary_credential_id=ids[0],
                    created_at=now,
                    expires_at=now + ttl,
                )
                async with self.session_factory() as s:
                    s.add(row)
                    try:
                        # commit antes de devolver: un resolve inmediato ya lo ve
                        await s.commit()
                    except IntegrityError:
                        await s.rollback()
                        logger.warning("token collision on mint, drawing a new value")
                        continue
                return MintedToken.from_row(row)
            raise RuntimeError("could not mint a unique token")

        minted = await self._run("tokens.mint", _mint)
        logger.info(
            "minted %s token for %d credential(s), expires %s",
            kind.value, len(ids), minted.expires_at.isoformat(),
        )
        return minted

    async def _load(self, token_value: str) -> ReferenceToken | None:
        async def _get():
            async with self.session_factory() as s:
                return await s.get(ReferenceToken, token_value)

        return await self._run("tokens.get", _get)

    def _check_live(self, row: ReferenceToken | None, kind: TokenKind | None) -> MintedToken:
        if row is None or (kind is not None and row.kind != kind.value):
            raise NotFound("token not found")
        minted = MintedToken.from_row(row)
        if self.clock() > minted.expires_at:
            raise Expired("token expired")
        if minted.consumed_at is not None:
            raise Expired("token already used")
        return minted

    async def resolve(self, token_value: str, kind: TokenKind | None = None) -> list[str]:
        """
        Idempotente y multi-uso dentro del TTL. Una sola fila confirmada: los
        ids y la caducidad se leen juntos, sin lecturas a medias.

        Un token consumido en modo de un solo uso (ver UsageLog.record) ya no
        resuelve.
        """
        minted = self._check_live(await self._load(token_value), kind)
        return list(minted.credential_ids)

    async def get(self, token_value: str, kind: TokenKind | None = None) -> MintedToken:
        return self._check_live(await self._load(token_value), kind)

    async def revoke(self, token_value: str, kind: TokenKind | None = None) -> bool:
        async def _delete():
            q = delete(ReferenceToken).where(ReferenceToken.token == token_value)
            if kind is not None:
                q = q.where(ReferenceToken.kind == kind.value)
            async with self.session_factory() as s:
                res = await s.execute(q)
                await s.commit()
                return res.rowcount > 0

        return await self._run("tokens.revoke", _delete)

    async def list_live(self, credential_id: str, kind: TokenKind) -> list[MintedToken]:
        async def _list():
            q = (
                select(ReferenceToken)
                .where(
                    ReferenceToken.primary_credential_id == credential_id,
                    ReferenceToken.kind == kind.value,
                    ReferenceToken.expires_at >= self.clock(),
                )
                .order_by(ReferenceToken.created_at.desc())
            )
            async with self.session_factory() as s:
                return [MintedToken.from_row(r) for r in (await s.execute(q)).scalars().all()]

        return await self._run("tokens.list", _list)

    async def purge_expired(self) -> int:
        """Limpieza opcional: la validez nunca depende de que esto se ejecute."""

        async def _purge():
            async with self.session_factory() as s:
                res = await s.execute(delete(ReferenceToken).where(ReferenceToken.expires_at < self.clock()))
                await s.commit()
                return res.rowcount or 0

        purged = await self._run("tokens.purge", _purge)
        logger.info("purged %d expired reference tokens", purged)
        return purged

    async def stats(self, kind: TokenKind, horizon: timedelta = timedelta(hours=24)) -> dict:
        async def _stats():
            now = self.clock()
            base = select(func.count(ReferenceToken.token)).where(ReferenceToken.kind == kind.value)
            async with self.session_factory() as s:
                active = (await s.execute(base.where(ReferenceToken.expires_at >= now))).scalar_one()
                expired = (await s.execute(base.where(ReferenceToken.expires_at < now))).scalar_one()
                expiring = (
                    await s.execute(
                        base.where(ReferenceToken.expires_at >= now, ReferenceToken.expires_at <= now + horizon)
                    )
                ).scalar_one()
            return {"totalActive": active, "totalExpired": expired, "expiringSoon": expiring}

        return await self._run("tokens.stats", _stats)

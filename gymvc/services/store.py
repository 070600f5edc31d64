# gymvc/services/store.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, TypeVar
import asyncio
import logging

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from gymvc.core.errors import Expired, NotFound, Revoked, StoreUnavailable, UsageExceeded
from gymvc.db.models import CheckinEvent, Credential, ReferenceToken, UsageCounter, utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")


def month_period(now: datetime) -> str:
    return now.strftime("%Y-%m")


class SqlStore:
    """Base común: toda llamada a la BD tiene un timeout acotado."""

    def __init__(self, session_factory: async_sessionmaker, *, timeout: float = 5.0):
        self.session_factory = session_factory
        self.timeout = timeout

    async def _run(self, op: str, fn: Callable[[], Awaitable[T]]) -> T:
        try:
            return await asyncio.wait_for(fn(), self.timeout)
        except asyncio.TimeoutError as e:
            logger.error("store op %s timed out after %.1fs", op, self.timeout)
            raise StoreUnavailable(f"{op} timed out") from e
        except SQLAlchemyError as e:
            logger.error("store op %s failed: %s", op, e)
            raise StoreUnavailable(f"{op} failed: {type(e).__name__}") from e


def effective_status(cred: Credential, now: datetime) -> str:
    if cred.status == "revoked":
        return "revoked"
    if now > cred.valid_until:
        return "expired"
    return "active"


class CredentialStore(SqlStore):
    async def get(self, credential_id: str) -> Credential | None:
        async def _get():
            async with self.session_factory() as s:
                return await s.get(Credential, credential_id)

        return await self._run("credentials.get", _get)

    async def save(self, cred: Credential) -> None:
        async def _save():
            async with self.session_factory() as s:
                s.add(cred)
                await s.commit()

        await self._run("credentials.save", _save)

    async def set_status(self, credential_id: str, status: str, reason: str | None = None) -> Credential:
        """Única mutación permitida: active -> revoked (irreversible)."""
        if status != "revoked":
            raise ValueError("only 'revoked' can be set explicitly")

        async def _set():
            async with self.session_factory() as s:
                cred = await s.get(Credential, credential_id)
                if cred is None:
                    raise NotFound(f"credential {credential_id} not found")
                if cred.status == "revoked":
                    raise Revoked(f"credential {credential_id} already revoked")
                cred.status = "revoked"
                cred.revocation_reason = reason
                cred.revoked_at = utcnow()
                await s.commit()
                return cred

        return await self._run("credentials.set_status", _set)

    async def list_page(
        self,
        *,
        page: int = 1,
        limit: int = 20,
        holder_did: str | None = None,
        membership_id: str | None = None,
    ) -> tuple[list[Credential], int]:
        async def _list():
            q = select(Credential)
            if holder_did:
                q = q.where(Credential.holder_did == holder_did)
            if membership_id:
                q = q.where(Credential.membership_id == membership_id)
            async with self.session_factory() as s:
                total = (await s.execute(select(func.count()).select_from(q.subquery()))).scalar_one()
                rows = (
                    await s.execute(
                        q.order_by(Credential.issued_at.desc()).offset((page - 1) * limit).limit(limit)
                    )
                ).scalars().all()
                return list(rows), total

        return await self._run("credentials.list", _list)

    async def stats(self, now: datetime) -> dict:
        async def _stats():
            async with self.session_factory() as s:
                total = (await s.execute(select(func.count(Credential.id)))).scalar_one()
                revoked = (
                    await s.execute(select(func.count(Credential.id)).where(Credential.status == "revoked"))
                ).scalar_one()
                expired = (
                    await s.execute(
                        select(func.count(Credential.id)).where(
                            Credential.status != "revoked", Credential.valid_until < now
                        )
                    )
                ).scalar_one()
            return {"total": total, "active": total - revoked - expired, "revoked": revoked, "expired": expired}

        return await self._run("credentials.stats", _stats)


@dataclass(frozen=True)
class UsageEvent:
    credential_id: str
    benefit_id: str
    holder_did: str
    max_uses_per_month: int | None
    token: str


class UsageLog(SqlStore):
    """
    Registro de check-ins y contador mensual por (beneficio, titular).

    El contador se incrementa con un UPDATE condicional (count < cap) en una
    sola sentencia: dos escaneos simultáneos nunca pasan ambos el límite.
    """

    async def count_this_month(self, benefit_id: str, holder_did: str, now: datetime) -> int:
        async def _count():
            async with self.session_factory() as s:
                row = await s.get(UsageCounter, (benefit_id, holder_did, month_period(now)))
                return row.count if row else 0

        return await self._run("usage.count", _count)

    async def _ensure_counter(self, benefit_id: str, holder_did: str, period: str) -> None:
        async with self.session_factory() as s:
            if await s.get(UsageCounter, (benefit_id, holder_did, period)) is not None:
                return
            s.add(UsageCounter(benefit_id=benefit_id, holder_did=holder_did, period=period, count=0))
            try:
                await s.commit()
            except IntegrityError:
                # otro check-in creó la fila a la vez
                await s.rollback()

    async def record(
        self,
        events: list[UsageEvent],
        now: datetime,
        *,
        consume_token: str | None = None,
    ) -> dict[str, int]:
        """
        Registra los check-ins de un mismo escaneo en UNA transacción.

        Devuelve {credential_id: usos del mes tras el incremento} para los
        beneficios con límite. Si alguno ya está en el límite se hace rollback
        de todo y se lanza UsageExceeded.

        Cada (beneficio, titular) cuenta una sola vez por escaneo, aunque el
        paquete traiga varias credenciales del mismo beneficio.

        Con ``consume_token`` el token de check-in se marca como usado en la
        misma transacción: o se consume y se cuenta, o ninguna de las dos.
        """
        period = month_period(now)

        async def _record():
            for ev in events:
                if ev.max_uses_per_month is not None:
                    await self._ensure_counter(ev.benefit_id, ev.holder_did, period)

            counts: dict[str, int] = {}
            seen: dict[tuple[str, str], int] = {}
            async with self.session_factory() as s:
                if consume_token is not None:
                    res = await s.execute(
                        update(ReferenceToken)
                        .where(
                            ReferenceToken.token == consume_token,
                            ReferenceToken.consumed_at.is_(None),
                            ReferenceToken.expires_at >= now,
                        )
                        .values(consumed_at=now)
                        .execution_options(synchronize_session=False)
                    )
                    if res.rowcount != 1:
                        await s.rollback()
                        raise Expired("token already used or expired")

                for ev in events:
                    pair = (ev.benefit_id, ev.holder_did)
                    if ev.max_uses_per_month is not None and pair in seen:
                        counts[ev.credential_id] = seen[pair]
                    elif ev.max_uses_per_month is not None:
                        key = (
                            UsageCounter.benefit_id == ev.benefit_id,
                            UsageCounter.holder_did == ev.holder_did,
                            UsageCounter.period == period,
                        )
                        res = await s.execute(
                            update(UsageCounter)
                            .where(*key, UsageCounter.count < ev.max_uses_per_month)
                            .values(count=UsageCounter.count + 1)
                            .execution_options(synchronize_session=False)
                        )
                        if res.rowcount != 1:
                            await s.rollback()
                            raise UsageExceeded(
                                f"benefit {ev.benefit_id} reached {ev.max_uses_per_month} uses in {period}"
                            )
                        seen[pair] = counts[ev.credential_id] = (
                            await s.execute(select(UsageCounter.count).where(*key))
                        ).scalar_one()
                    s.add(
                        CheckinEvent(
                            credential_id=ev.credential_id,
                            benefit_id=ev.benefit_id,
                            holder_did=ev.holder_did,
                            period=period,
                            token=ev.token,
                            checked_in_at=now,
                        )
                    )
                await s.commit()
            return counts

        return await self._run("usage.record", _record)

    async def history(self, credential_id: str, *, since: datetime | None = None) -> list[CheckinEvent]:
        async def _history():
            q = select(CheckinEvent).where(CheckinEvent.credential_id == credential_id)
            if since is not None:
                q = q.where(CheckinEvent.checked_in_at >= since)
            async with self.session_factory() as s:
                return list((await s.execute(q.order_by(CheckinEvent.checked_in_at.desc()))).scalars().all())

        return await self._run("usage.history", _history)

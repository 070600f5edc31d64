# gymvc/api/deps.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from fastapi import HTTPException, Request
from sqlalchemy.ext.asyncio import async_sessionmaker

from gymvc.core.config import Settings
from gymvc.core.errors import (
    CredentialError,
    Expired,
    InvalidClaims,
    NotFound,
    Revoked,
    SignatureInvalid,
    StoreUnavailable,
    UsageExceeded,
)
from gymvc.core.keys import KeyMaterial
from gymvc.db.models import utcnow
from gymvc.services.issuer import CredentialIssuer
from gymvc.services.sharing import ShareLinkService
from gymvc.services.store import CredentialStore, UsageLog
from gymvc.services.tokens import TokenBroker
from gymvc.services.verification import BundlePolicy, VerificationEngine


@dataclass
class Services:
    keys: KeyMaterial
    store: CredentialStore
    usage: UsageLog
    broker: TokenBroker
    issuer: CredentialIssuer
    verifier: VerificationEngine
    shares: ShareLinkService


def build_services(
    settings: Settings,
    session_factory: async_sessionmaker,
    keys: KeyMaterial,
    *,
    clock: Callable[[], datetime] = utcnow,
) -> Services:
    timeout = settings.store_timeout_seconds
    store = CredentialStore(session_factory, timeout=timeout)
    usage = UsageLog(session_factory, timeout=timeout)
    broker = TokenBroker(
        session_factory,
        checkin_ttl=timedelta(seconds=settings.checkin_token_ttl_seconds),
        timeout=timeout,
        clock=clock,
    )
    return Services(
        keys=keys,
        store=store,
        usage=usage,
        broker=broker,
        issuer=CredentialIssuer(keys, store, issuer_did=settings.issuer_did, clock=clock),
        verifier=VerificationEngine(
            keys,
            store,
            usage,
            broker,
            issuer_did=settings.issuer_did,
            policy=BundlePolicy(settings.bundle_policy),
            deadline_seconds=settings.checkin_deadline_seconds,
            single_use=settings.checkin_single_use,
            clock=clock,
        ),
        shares=ShareLinkService(
            broker,
            store,
            default_hours=settings.share_default_hours,
            max_hours=settings.share_max_hours,
            base_url=settings.public_base_url,
        ),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


_STATUS = {
    NotFound: 404,
    Expired: 410,
    Revoked: 409,
    UsageExceeded: 409,
    InvalidClaims: 422,
    SignatureInvalid: 422,
    StoreUnavailable: 503,
}


def http_error(e: CredentialError) -> HTTPException:
    status = next((code for cls, code in _STATUS.items() if isinstance(e, cls)), 500)
    return HTTPException(status_code=status, detail=e.public_message)

# gymvc/main.py
import logging

from fastapi import FastAPI
from contextlib import asynccontextmanager

from gymvc.api.issuer import router as issuer_router
from gymvc.api.verifier import router as verifier_router
from gymvc.api.holder import router as holder_router
from gymvc.api.shares import router as shares_router
from gymvc.api.checkin import router as checkin_router
from gymvc.api.deps import build_services

from gymvc.core.config import settings
from gymvc.core.keys import KeyMaterial
from gymvc.db.session import create_schema, make_engine, make_sessionmaker

logger = logging.getLogger("gymvc")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # === STARTUP ===
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    # sin claves válidas no se sirve nada (KeyMaterialError aborta el arranque)
    keys = KeyMaterial.load(settings.priv_key_path, settings.pub_key_path, settings.issuer_did)

    engine = make_engine(settings.db_url)
    await create_schema(engine)
    app.state.services = build_services(settings, make_sessionmaker(engine), keys)
    logger.info("gymvc ready issuer=%s policy=%s", settings.issuer_did, settings.bundle_policy)
    yield
    # === SHUTDOWN ===
    await engine.dispose()


app = FastAPI(title="GymVC credentials", lifespan=lifespan)

app.include_router(issuer_router, prefix="/issuer", tags=["issuer"])
app.include_router(verifier_router, prefix="/verifier", tags=["verifier"])
app.include_router(holder_router,   prefix="/holder",   tags=["holder"])
app.include_router(shares_router,   prefix="/shares",   tags=["shares"])
app.include_router(checkin_router,  tags=["checkin"])


@app.get("/")
def root():
    return {"ok": True}

# tests/conftest.py
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

# --- Asegurar que podemos importar 'gymvc' desde la raíz del repo ---
ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# --- Generación de claves efímeras (Ed25519) ---
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

ISSUER_DID = "did:web:gym.test"
HOLDER_DID = "did:key:z6MkholderTest"


def _generate_ephemeral_keys(keys_dir: Path) -> tuple[Path, Path]:
    keys_dir.mkdir(parents=True, exist_ok=True)

    private_key = Ed25519PrivateKey.generate()
    pem_priv = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    (keys_dir / "issuer_private.pem").write_bytes(pem_priv)

    pem_pub = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    (keys_dir / "issuer_public.pem").write_bytes(pem_pub)

    return (keys_dir / "issuer_private.pem"), (keys_dir / "issuer_public.pem")


def _prepare_test_env() -> None:
    tmp = (ROOT / ".pytest_tmp").absolute()
    tmp.mkdir(exist_ok=True)

    # BD SQLite temporal para las pruebas HTTP
    db_path = tmp / "test.sqlite3"
    for suffix in ("", "-wal", "-shm"):
        Path(f"{db_path}{suffix}").unlink(missing_ok=True)
    os.environ["DB_URL"] = f"sqlite+aiosqlite:///{db_path.as_posix()}"

    # Variables mínimas para que Settings funcione sin .env
    os.environ["ISSUER_DID"] = ISSUER_DID
    os.environ["STORE_TIMEOUT_SECONDS"] = "60"
    os.environ["CHECKIN_DEADLINE_SECONDS"] = "30"

    priv_path, pub_path = _generate_ephemeral_keys(tmp)
    os.environ["ISSUER_PRIVATE_KEY_PATH"] = priv_path.as_posix()
    os.environ["ISSUER_PUBLIC_KEY_PATH"] = pub_path.as_posix()


# antes de que ningún módulo de test importe gymvc.core.config
_prepare_test_env()


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 10, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture(scope="session")
def keys():
    from gymvc.core.config import settings
    from gymvc.core.keys import KeyMaterial
    return KeyMaterial.load(settings.priv_key_path, settings.pub_key_path, settings.issuer_did)


@pytest.fixture
def test_settings():
    from gymvc.core.config import settings
    return settings.model_copy()


@pytest.fixture
async def services(tmp_path, keys, clock, test_settings):
    """
    Servicios contra una BD SQLite nueva por test, con reloj controlado.
    El engine se crea dentro del event loop del test.
    """
    from gymvc.api.deps import build_services
    from gymvc.db.session import create_schema, make_engine, make_sessionmaker

    engine = make_engine(f"sqlite+aiosqlite:///{(tmp_path / 'svc.sqlite3').as_posix()}")
    await create_schema(engine)
    svc = build_services(test_settings, make_sessionmaker(engine), keys, clock=clock)
    yield svc
    await engine.dispose()


def subject_payload(benefit: dict | None = None, **overrides) -> dict:
    data = {
        "id": HOLDER_DID,
        "holderName": "Laura Gómez",
        "membershipId": "mem-001",
        "membershipPlan": "Premium",
        "benefit": benefit or {
            "kind": "gym_floor",
            "benefitId": "ben-gym",
            "name": "Gym Floor Access",
            "areas": ["cardio", "weights"],
        },
        "gym": {"name": "CMC Global Fitness Center", "location": "Madrid"},
    }
    data.update(overrides)
    return data


@pytest.fixture(scope="session")
def client():
    """
    Cliente de pruebas con entorno efímero:
    - BD sqlite en .pytest_tmp/test.sqlite3
    - Claves Ed25519 generadas al vuelo en .pytest_tmp/
    """
    from gymvc.main import app
    # Con 'with' forzamos lifespan: claves, tablas y servicios en startup
    with TestClient(app) as c:
        yield c

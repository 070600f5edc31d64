# tests/test_flow.py
import re
import uuid
from datetime import datetime, timedelta, timezone

from conftest import HOLDER_DID, ISSUER_DID, subject_payload

POOL = {"kind": "aquatic", "benefitId": "ben-pool", "name": "Swimming Pool", "maxUsesPerMonth": 8}
GYM = {"kind": "gym_floor", "benefitId": "ben-gym", "name": "Gym Floor Access"}


def _issue(client, **extra):
    r = client.post("/issuer/issue", json={"subject": subject_payload(), "expDays": 30, **extra})
    assert r.status_code == 200, r.text
    return r.json()


def _membership(client, benefits=(GYM, POOL), holder=HOLDER_DID):
    r = client.post("/issuer/memberships", json={
        "holderDid": holder,
        "holderName": "Laura Gómez",
        "membershipId": f"mem-{uuid.uuid4().hex[:8]}",
        "plan": "Premium",
        "benefits": list(benefits),
    })
    assert r.status_code == 200, r.text
    return r.json()


def test_issue_and_verify_token_valid(client):
    # 1) Emitir
    data = _issue(client)
    assert data["status"] == "active"
    assert data["types"][-1] == "GymFloorAccessCredential"

    # 2) Verificar por token (offline, sólo clave pública)
    res = client.post("/verifier/verify", json={"token": data["token"]})
    assert res.status_code == 200
    out = res.json()
    assert out["valid"] is True
    assert out["payload"]["iss"] == ISSUER_DID
    assert out["payload"]["sub"] == HOLDER_DID

    # 3) Verificar por id contra la BD
    res = client.get(f"/verifier/credentials/{data['id']}")
    assert res.status_code == 200
    assert res.json()["decision"] == "valid"


def test_revoke_then_invalid(client):
    data = _issue(client)

    r = client.post("/issuer/revoke", json={"credentialId": data["id"], "reason": "test"})
    assert r.status_code == 200
    assert r.json()["status"] == "revoked"

    # Verificación contra la BD debe fallar
    r = client.get(f"/verifier/credentials/{data['id']}")
    out = r.json()
    assert out["valid"] is False
    assert out["decision"] == "revoked"

    # Offline no conoce la revocación: la firma sigue siendo buena
    r = client.post("/verifier/verify", json={"token": data["token"]})
    assert r.json()["valid"] is True

    # Revocar dos veces no es un no-op silencioso
    r = client.post("/issuer/revoke", json={"credentialId": data["id"]})
    assert r.status_code == 409

    r = client.get(f"/issuer/detail?id={data['id']}")
    assert r.json()["status"] == "revoked"
    assert r.json()["revocationReason"] == "test"


def test_tampered_token_invalid(client):
    token = _issue(client)["token"]

    # "romper" el payload del JWT (sin resignar)
    p = token.split(".")
    tampered = f"{p[0]}.{p[1][:-1]}A.{p[2]}"

    r = client.post("/verifier/verify", json={"token": tampered})
    assert r.status_code == 200
    out = r.json()
    assert out["valid"] is False
    assert out["payload"] is None
    assert out["error"] == "Credential signature is not valid"


def test_expired_credential_invalid(client):
    now = datetime.now(timezone.utc)
    data = _issue(
        client,
        validFrom=(now - timedelta(days=2)).isoformat(),
        validUntil=(now - timedelta(days=1)).isoformat(),
    )

    r = client.post("/verifier/verify", json={"token": data["token"]})
    out = r.json()
    assert out["valid"] is False
    assert out["error"] == "Credential has expired"

    r = client.get(f"/verifier/credentials/{data['id']}")
    assert r.json()["decision"] == "expired"


def test_invalid_input_is_rejected(client):
    # ventana vacía
    r = client.post("/issuer/issue", json={"subject": subject_payload(), "expDays": -1})
    assert r.status_code == 422
    # DID mal formado
    r = client.post("/issuer/issue", json={"subject": subject_payload(id="member-123")})
    assert r.status_code == 422
    r = client.get("/verifier/credentials/does-not-exist")
    assert r.json()["decision"] == "not_found"


def test_membership_checkin_flow(client):
    # titular propio: el contador mensual es por (beneficio, titular)
    m = _membership(client, holder=f"did:key:z{uuid.uuid4().hex}")
    assert len(m["credentials"]) == 2
    token = m["checkinToken"]["token"]
    assert re.fullmatch(r"[0-9a-f]{16}", token)
    assert m["checkinToken"]["ttlSeconds"] == 60

    # QR del token (sólo lleva el token)
    r = client.get(f"/holder/qr/{token}")
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("image/png")

    # Escaneo
    r = client.post("/checkin", json={"token": token})
    assert r.status_code == 200
    out = r.json()
    assert out["success"] is True
    assert out["data"]["userName"] == "Laura Gómez"
    assert [c["decision"] for c in out["data"]["credentials"]] == ["valid", "valid"]
    pool_id = m["credentials"][1]["id"]
    pool = next(c for c in out["data"]["credentials"] if c["id"] == pool_id)
    assert pool["usesRemaining"] == 7

    # Dentro del TTL el mismo QR se puede volver a escanear
    r = client.post("/checkin", json={"token": token})
    assert r.json()["success"] is True

    r = client.get(f"/holder/credentials/{pool_id}/checkins")
    assert len(r.json()) == 2


def test_checkin_with_revoked_benefit_denies_bundle(client):
    m = _membership(client)
    client.post("/issuer/revoke", json={"credentialId": m["credentials"][0]["id"]})

    r = client.post("/checkin", json={"token": m["checkinToken"]["token"]})
    out = r.json()
    assert out == {"success": False, "reason": "Credential has been revoked", "code": "revoked"}


def test_checkin_unknown_token(client):
    r = client.post("/checkin", json={"token": "0123456789abcdef"})
    assert r.json()["success"] is False
    assert r.json()["reason"] == "Invalid or expired token"


def test_holder_mints_fresh_checkin_token(client):
    m = _membership(client)
    ids = [c["id"] for c in m["credentials"]]

    r = client.post("/holder/checkin-token", json={"credentialIds": ids})
    assert r.status_code == 201
    fresh = r.json()
    assert fresh["token"] != m["checkinToken"]["token"]
    assert fresh["qrUrl"] == f"/holder/qr/{fresh['token']}"

    r = client.post("/holder/checkin-token", json={"credentialIds": ["missing"]})
    assert r.status_code == 404
    r = client.get("/holder/qr/ffffffffffffffff")
    assert r.status_code == 404


def test_share_endpoints(client):
    cred = _issue(client)

    r = client.post("/shares", json={"credentialId": cred["id"], "expiresInHours": 2})
    assert r.status_code == 201
    share = r.json()
    assert share["shareUrl"].endswith(f"/shares/{share['token']}")

    r = client.get(f"/shares/{share['token']}")
    assert r.status_code == 200
    out = r.json()
    assert out["credentialId"] == cred["id"]
    assert out["valid"] is True
    assert out["jwt"] == cred["token"]

    r = client.get(f"/holder/qr/{share['token']}")
    assert r.headers["content-type"].startswith("image/png")

    r = client.get(f"/shares/credential/{cred['id']}")
    assert [s["token"] for s in r.json()] == [share["token"]]
    assert client.get("/shares/stats/overview").json()["totalActive"] >= 1

    # revocar la credencial: el enlace resuelve pero informa "revoked"
    client.post("/issuer/revoke", json={"credentialId": cred["id"]})
    out = client.get(f"/shares/{share['token']}").json()
    assert out["valid"] is False and out["decision"] == "revoked"

    assert client.delete(f"/shares/{share['token']}").status_code == 200
    assert client.get(f"/shares/{share['token']}").status_code == 404
    assert client.delete(f"/shares/{share['token']}").status_code == 404

    r = client.post("/shares", json={"credentialId": cred["id"], "expiresInHours": 0})
    assert r.status_code == 422
    r = client.post("/shares", json={"credentialId": "missing"})
    assert r.status_code == 404


def test_issuer_admin_views(client):
    m = _membership(client, benefits=(GYM,))
    membership_id = m["membershipId"]

    r = client.get(f"/issuer/list?membershipId={membership_id}")
    body = r.json()
    assert body["pagination"]["total"] == 1
    assert body["credentials"][0]["status"] == "active"

    cid = body["credentials"][0]["id"]
    r = client.post("/issuer/reissue", json={"credentialId": cid, "updates": {"membershipPlan": "Basic"}})
    assert r.status_code == 200
    assert r.json()["previousId"] == cid
    assert r.json()["id"] != cid

    stats = client.get("/issuer/stats").json()
    assert stats["total"] == stats["active"] + stats["revoked"] + stats["expired"]

    r = client.post("/issuer/tokens/purge")
    assert r.status_code == 200
    assert isinstance(r.json()["purged"], int)

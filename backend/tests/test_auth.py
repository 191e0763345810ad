from issuance import models
from issuance.core.security import get_password_hash


def test_login_and_me_roundtrip(client, make_user, db_session):
    make_user(
        role=models.RoleName.financeiro,
        email="fin@test.com",
        hashed_password=get_password_hash("s3nha"),
    )

    resp = client.post("/api/auth/token", data={"username": "fin@test.com", "password": "s3nha"})
    assert resp.status_code == 200, resp.text
    token = resp.json()["access_token"]

    me = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert me.status_code == 200
    assert me.json()["email"] == "fin@test.com"
    assert me.json()["role"] == "financeiro"

    actions = [row.action for row in db_session.query(models.AuditLog).all()]
    assert actions == ["auth.login_success"]


def test_wrong_password_is_rejected_and_audited(client, make_user, db_session):
    make_user(email="x@test.com", hashed_password=get_password_hash("right"))

    resp = client.post("/api/auth/token", data={"username": "x@test.com", "password": "wrong"})
    assert resp.status_code == 401

    log = db_session.query(models.AuditLog).one()
    assert log.action == "auth.login_failed"


def test_inactive_user_cannot_log_in(client, make_user):
    make_user(email="gone@test.com", hashed_password=get_password_hash("pw"), active=False)

    resp = client.post("/api/auth/token", data={"username": "gone@test.com", "password": "pw"})
    assert resp.status_code == 403


def test_protected_routes_need_a_token(client):
    assert client.get("/api/contracts").status_code == 401
    assert client.get("/api/contracts", headers={"Authorization": "Bearer garbage"}).status_code == 401


def test_healthcheck(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"

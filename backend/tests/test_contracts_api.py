import pytest

from issuance import models


@pytest.fixture
def issuer(make_user, login_as):
    user = make_user(role=models.RoleName.comercial)
    login_as(user)
    return user


def _create(client, client_id, services, **extra):
    body = {
        "client_id": client_id,
        "kind": "one_off",
        "line_items": [{"service_id": s.id, "unit_value": 400.0} for s in services],
        "payment_methods": [
            {"payment_method": "Boleto", "value_type": "percentage", "percentage": 100}
        ],
        "installment_count": 2,
        "first_installment_date": "2026-11-10",
    }
    body.update(extra)
    resp = client.post("/api/contracts", json=body)
    assert resp.status_code == 201, resp.text
    return resp.json()


def test_create_and_read_contract(client, issuer, make_client, make_service):
    a, b = make_service(), make_service()
    data = _create(client, make_client().id, [a, b, a])

    assert data["contract_number"].startswith("TOP-")
    assert data["status"] == "active"
    assert data["total_value"] == 1200.0
    assert data["installment_value"] == 600.0
    assert [i["amount"] for i in data["installments"]] == [600.0, 600.0]
    assert {li["service_id"]: li["quantity"] for li in data["line_items"]} == {a.id: 2, b.id: 1}

    fetched = client.get(f"/api/contracts/{data['id']}")
    assert fetched.status_code == 200
    assert fetched.json()["contract_number"] == data["contract_number"]

    listed = client.get("/api/contracts")
    assert [c["id"] for c in listed.json()] == [data["id"]]


def test_operational_users_cannot_issue(client, make_user, login_as, make_client, make_service):
    login_as(make_user(role=models.RoleName.operacional))
    resp = client.post(
        "/api/contracts",
        json={
            "client_id": make_client().id,
            "kind": "one_off",
            "line_items": [{"service_id": make_service().id, "unit_value": 1}],
        },
    )
    assert resp.status_code == 403


def test_unassigned_users_cannot_see_the_contract(client, issuer, make_user, login_as, make_client, make_service):
    data = _create(client, make_client().id, [make_service()])

    login_as(make_user(role=models.RoleName.financeiro))
    assert client.get(f"/api/contracts/{data['id']}").status_code == 403
    assert client.get("/api/contracts").json() == []

    login_as(make_user(role=models.RoleName.admin))
    assert client.get(f"/api/contracts/{data['id']}").status_code == 200


def test_viewers_read_but_cannot_write(client, issuer, make_user, login_as, make_client, make_service):
    viewer = make_user()
    data = _create(client, make_client().id, [make_service()], assigned_user_ids=[viewer.id])

    login_as(viewer)
    assert client.get(f"/api/contracts/{data['id']}").status_code == 200
    resp = client.put(f"/api/contracts/{data['id']}", json={"notes": "tentativa"})
    assert resp.status_code == 403


def test_domain_errors_carry_code_and_request_id(client, issuer, make_client, make_service):
    resp = client.post(
        "/api/contracts",
        json={
            "client_id": make_client().id,
            "kind": "one_off",
            "line_items": [{"service_id": make_service().id, "unit_value": 100}],
            "payment_methods": [{"payment_method": "PIX", "value_type": "percentage", "percentage": 50}],
        },
        headers={"x-request-id": "req-123"},
    )
    assert resp.status_code == 400
    body = resp.json()
    assert body["code"] == "VALIDATION_ERROR"
    assert body["request_id"] == "req-123"

    missing = client.get("/api/contracts/999999")
    assert missing.status_code == 404
    assert missing.json()["code"] == "NOT_FOUND"


def test_update_replaces_payment_methods_and_schedule(client, issuer, make_client, make_service):
    s = make_service()
    data = _create(client, make_client().id, [s])

    resp = client.put(
        f"/api/contracts/{data['id']}",
        json={
            "installment_count": 4,
            "payment_methods": [
                {"payment_method": "PIX", "value_type": "fixed_value", "fixed_value": 100},
                {"payment_method": "Pix Parcelado", "value_type": "fixed_value", "fixed_value": 300},
            ],
        },
    )
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert [m["payment_method"] for m in body["payment_methods"]] == ["PIX", "Pix Parcelado"]
    assert [i["amount"] for i in body["installments"]] == [100.0, 100.0, 100.0, 100.0]
    assert body["installment_count"] == 4


def test_status_changes_and_cancellation(client, issuer, make_client, make_service):
    data = _create(client, make_client().id, [make_service()])

    suspended = client.patch(f"/api/contracts/{data['id']}/status", json={"status": "suspended"})
    assert suspended.status_code == 200
    assert suspended.json()["status"] == "suspended"

    cancelled = client.delete(f"/api/contracts/{data['id']}")
    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "cancelled"

    reopen = client.patch(f"/api/contracts/{data['id']}/status", json={"status": "active"})
    assert reopen.status_code == 409
    assert reopen.json()["code"] == "INVALID_STATE"


def test_installment_payment_and_summary(client, issuer, make_client, make_service):
    data = _create(client, make_client().id, [make_service()])
    first = data["installments"][0]

    paid = client.patch(
        f"/api/installments/{first['id']}/status",
        json={"status": "paid", "paid_date": "2026-11-09"},
    )
    assert paid.status_code == 200, paid.text
    assert paid.json()["paid_amount"] == 200.0

    summary = client.get(f"/api/contracts/{data['id']}/installments/summary").json()
    assert summary["paid_count"] == 1
    assert summary["pending_amount"] == 200.0


def test_regenerate_schedule(client, issuer, make_client, make_service):
    data = _create(client, make_client().id, [make_service()])

    resp = client.post(
        f"/api/contracts/{data['id']}/installments/schedule",
        json={"installment_count": 3, "first_due_date": "2027-01-05", "interval_days": 15},
    )
    assert resp.status_code == 200, resp.text
    rows = resp.json()
    assert [r["due_date"] for r in rows] == ["2027-01-05", "2027-01-20", "2027-02-04"]
    assert round(sum(r["amount"] for r in rows), 2) == 400.0


def test_line_item_status(client, issuer, make_client, make_service):
    data = _create(client, make_client().id, [make_service()])
    line_item = data["line_items"][0]

    resp = client.patch(
        f"/api/contracts/{data['id']}/line-items/{line_item['id']}/status",
        json={"status": "in_progress"},
    )
    assert resp.status_code == 200
    assert resp.json()["status"] == "in_progress"


def test_assignment_endpoints_guard_the_last_owner(client, issuer, make_user, make_client, make_service):
    data = _create(client, make_client().id, [make_service()])
    colleague = make_user()

    added = client.post(
        f"/api/contracts/{data['id']}/assignments", json={"user_id": colleague.id, "role": "editor"}
    )
    assert added.status_code == 201, added.text

    orphaning = client.delete(f"/api/contracts/{data['id']}/assignments/{issuer.id}")
    assert orphaning.status_code == 409
    assert orphaning.json()["code"] == "CONFLICT"

    promoted = client.patch(
        f"/api/contracts/{data['id']}/assignments/{colleague.id}", json={"role": "owner"}
    )
    assert promoted.status_code == 200
    assert client.delete(f"/api/contracts/{data['id']}/assignments/{issuer.id}").status_code == 200

    listed = client.get(f"/api/contracts/{data['id']}/assignments")
    assert listed.status_code == 403


def test_hard_delete_is_admin_only(client, issuer, make_user, login_as, make_client, make_service):
    data = _create(client, make_client().id, [make_service()])
    assert client.delete(f"/api/contracts/{data['id']}/hard").status_code == 403

    login_as(make_user(role=models.RoleName.admin))
    assert client.delete(f"/api/contracts/{data['id']}/hard").status_code == 204
    assert client.get(f"/api/contracts/{data['id']}").status_code == 404

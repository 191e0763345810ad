from datetime import date, timedelta

import pytest

from issuance import models


@pytest.fixture
def seller(make_user, login_as):
    user = make_user(role=models.RoleName.comercial)
    login_as(user)
    return user


def _create(client, client_id, service_ids, **extra):
    body = {
        "client_id": client_id,
        "kind": "individual",
        "line_items": [{"service_id": s, "unit_value": 250.0} for s in service_ids],
    }
    body.update(extra)
    resp = client.post("/api/proposals", json=body)
    assert resp.status_code == 201, resp.text
    return resp.json()


def test_create_consolidates_and_numbers(client, seller, make_client, make_service):
    a, b = make_service(name="Auditoria"), make_service()
    data = _create(client, make_client().id, [a.id, a.id, b.id])

    assert data["proposal_number"].startswith("PROP-")
    assert data["status"] == "draft"
    assert data["total_value"] == 750.0
    assert data["max_installments"] == 12
    assert data["valid_until"] is not None
    first = data["line_items"][0]
    assert (first["service_name"], first["quantity"], first["position"]) == ("Auditoria", 2, 1)

    second = _create(client, make_client().id, [b.id])
    assert second["proposal_number"] != data["proposal_number"]


def test_fixed_global_value_sets_the_total(client, seller, make_client, make_service):
    data = _create(
        client,
        make_client().id,
        [make_service().id],
        use_fixed_global_value=True,
        fixed_global_value=9999.9,
    )
    assert data["total_value"] == 9999.9


def test_invalid_commercial_terms(client, seller, make_client, make_service):
    service_id = make_service().id
    no_value = client.post(
        "/api/proposals",
        json={
            "client_id": make_client().id,
            "kind": "one_off",
            "line_items": [{"service_id": service_id}],
            "use_fixed_global_value": True,
        },
    )
    assert no_value.status_code == 400

    too_many = client.post(
        "/api/proposals",
        json={
            "client_id": make_client().id,
            "kind": "one_off",
            "line_items": [{"service_id": service_id}],
            "max_installments": 19,
        },
    )
    assert too_many.status_code == 400

    only_empty = client.post(
        "/api/proposals",
        json={"client_id": make_client().id, "kind": "one_off", "line_items": [{"unit_value": 5}]},
    )
    assert only_empty.status_code == 400


def test_update_replaces_line_items_until_signed(client, seller, make_client, make_service):
    a, b = make_service(), make_service()
    data = _create(client, make_client().id, [a.id])

    resp = client.put(
        f"/api/proposals/{data['id']}",
        json={"line_items": [{"service_id": b.id, "unit_value": 80}], "notes": "revisada"},
    )
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert [li["service_id"] for li in body["line_items"]] == [b.id]
    assert body["total_value"] == 80.0
    assert body["notes"] == "revisada"

    client.post(f"/api/proposals/{data['id']}/send")
    token = body["public_token"]
    signed = client.put(
        f"/api/public/proposals/{token}/sign",
        json={"signer_name": "Ana", "payment_policy": "pay_later", "payment_method": "PIX"},
    )
    assert signed.status_code == 200, signed.text

    locked = client.put(f"/api/proposals/{data['id']}", json={"notes": "tarde demais"})
    assert locked.status_code == 409


def test_sending_twice_is_a_state_error(client, seller, make_client, make_service):
    data = _create(client, make_client().id, [make_service().id])
    assert client.post(f"/api/proposals/{data['id']}/send").status_code == 200
    again = client.post(f"/api/proposals/{data['id']}/send")
    assert again.status_code == 409
    assert again.json()["context"]["current_status"] == "sent"


def test_regenerated_token_invalidates_the_old_link(client, seller, make_client, make_service):
    data = _create(client, make_client().id, [make_service().id])
    sent = client.post(f"/api/proposals/{data['id']}/send").json()
    old_token = sent["proposal"]["public_token"]

    fresh = client.post(f"/api/proposals/{data['id']}/regenerate-token")
    assert fresh.status_code == 200
    new_token = fresh.json()["proposal"]["public_token"]

    assert new_token != old_token
    assert client.get(f"/api/public/proposals/{old_token}").status_code == 404
    assert client.get(f"/api/public/proposals/{new_token}").status_code == 200


def test_duplicate_creates_a_fresh_draft(client, seller, make_client, make_service):
    a = make_service()
    data = _create(client, make_client().id, [a.id, a.id], pay_now_discount_value=50)
    client.post(f"/api/proposals/{data['id']}/send")

    resp = client.post(f"/api/proposals/{data['id']}/duplicate")
    assert resp.status_code == 201, resp.text
    copy = resp.json()
    assert copy["status"] == "draft"
    assert copy["proposal_number"] != data["proposal_number"]
    assert copy["public_token"] != data["public_token"]
    assert copy["total_value"] == data["total_value"]
    assert copy["pay_now_discount_value"] == 50
    assert copy["line_items"][0]["quantity"] == 2


def test_delete_cascades_but_converted_proposals_stay(client, seller, make_client, make_service, db_session):
    data = _create(client, make_client().id, [make_service().id])
    assert client.delete(f"/api/proposals/{data['id']}").status_code == 204
    assert client.get(f"/api/proposals/{data['id']}").status_code == 404
    assert db_session.query(models.ProposalLineItem).count() == 0

    other = _create(client, make_client().id, [make_service().id])
    sent = client.post(f"/api/proposals/{other['id']}/send").json()
    client.put(
        f"/api/public/proposals/{sent['proposal']['public_token']}/sign",
        json={"signer_name": "Ana", "payment_policy": "pay_now", "payment_method": "PIX"},
    )
    assert client.post(f"/api/proposals/{other['id']}/convert", json={}).status_code == 201
    assert client.delete(f"/api/proposals/{other['id']}").status_code == 409


def test_reading_a_stale_proposal_expires_it(client, seller, make_client, make_service, db_session):
    data = _create(client, make_client().id, [make_service().id])
    client.post(f"/api/proposals/{data['id']}/send")
    row = db_session.get(models.Proposal, data["id"])
    row.valid_until = date.today() - timedelta(days=3)
    db_session.commit()

    resp = client.get(f"/api/proposals/{data['id']}")
    assert resp.json()["status"] == "expired"


def test_expire_sweep_is_admin_only(client, seller, make_user, login_as, make_client, make_service, db_session):
    data = _create(client, make_client().id, [make_service().id])
    client.post(f"/api/proposals/{data['id']}/send")
    row = db_session.get(models.Proposal, data["id"])
    row.valid_until = date.today() - timedelta(days=3)
    db_session.commit()

    assert client.post("/api/proposals/expire-sweep").status_code == 403

    login_as(make_user(role=models.RoleName.admin))
    resp = client.post("/api/proposals/expire-sweep")
    assert resp.status_code == 200
    assert resp.json() == {"expired": 1}


def test_list_filters_by_status(client, seller, make_client, make_service):
    first = _create(client, make_client().id, [make_service().id])
    _create(client, make_client().id, [make_service().id])
    client.post(f"/api/proposals/{first['id']}/send")

    sent = client.get("/api/proposals", params={"status": "sent"}).json()
    assert [p["id"] for p in sent] == [first["id"]]
    assert len(client.get("/api/proposals").json()) == 2

from datetime import date, timedelta

import pytest

from issuance import models
from issuance.models.domain import ProposalStatus


@pytest.fixture
def seller(make_user, login_as):
    user = make_user(role=models.RoleName.comercial)
    login_as(user)
    return user


@pytest.fixture
def catalog(make_service):
    return make_service(), make_service()


def _create_and_send(client, client_id, services, **extra):
    body = {
        "client_id": client_id,
        "kind": "full_scope",
        "line_items": [
            {"service_id": services[0].id, "unit_value": 600.0},
            {"service_id": services[1].id, "unit_value": 400.0},
        ],
        "pay_now_discount_percentage": 6,
        "max_installments": 6,
    }
    body.update(extra)
    created = client.post("/api/proposals", json=body)
    assert created.status_code == 201, created.text
    sent = client.post(f"/api/proposals/{created.json()['id']}/send")
    assert sent.status_code == 200, sent.text
    link = sent.json()
    assert link["public_url"].endswith(f"/proposta/{link['proposal']['public_token']}")
    return link["proposal"]


def _sign_body(**overrides):
    body = {
        "signer_name": "Maria Cliente",
        "signer_email": "maria@cliente.com",
        "payment_policy": "pay_now",
        "payment_method": "PIX",
        "installments": 1,
    }
    body.update(overrides)
    return body


def test_view_hides_internal_identifiers_and_previews_discounts(client, seller, make_client, catalog):
    proposal = _create_and_send(client, make_client(name="ACME").id, catalog)

    resp = client.get(f"/api/public/proposals/{proposal['public_token']}")
    assert resp.status_code == 200, resp.text
    data = resp.json()

    assert data["proposal_number"] == proposal["proposal_number"]
    assert data["client_name"] == "ACME"
    assert "id" not in data
    assert "client_id" not in data
    assert "public_token" not in data
    assert [li["position"] for li in data["line_items"]] == [1, 2]
    assert data["pay_now_preview"]["payable"] == 940.0
    assert data["pay_later_preview"]["payable"] == 1000.0


def test_full_acceptance_signs_with_discount(client, seller, make_client, catalog):
    proposal = _create_and_send(client, make_client().id, catalog)

    resp = client.put(f"/api/public/proposals/{proposal['public_token']}/sign", json=_sign_body())
    assert resp.status_code == 200, resp.text
    data = resp.json()

    assert data["status"] == "signed"
    assert data["total_value"] == 940.0
    assert data["installment_count"] == 1
    assert data["pay_now_preview"] is None


def test_partial_acceptance_becomes_a_counterproposal_without_discount(
    client, seller, make_client, catalog
):
    proposal = _create_and_send(client, make_client().id, catalog)
    token = proposal["public_token"]

    sel = client.put(
        f"/api/public/proposals/{token}/select-services",
        json={"selections": [{"position": 2, "selected": False, "client_notes": "depois"}]},
    )
    assert sel.status_code == 200, sel.text
    assert sel.json()["pay_now_preview"]["payable"] == 600.0

    resp = client.put(
        f"/api/public/proposals/{token}/sign",
        json=_sign_body(payment_method="Boleto", installments=3),
    )
    assert resp.status_code == 200, resp.text
    data = resp.json()
    assert data["status"] == "counterproposal"
    assert data["total_value"] == 600.0
    assert data["installment_value"] == 200.0


def test_installments_beyond_the_proposal_limit_are_invalid(client, seller, make_client, catalog):
    proposal = _create_and_send(client, make_client().id, catalog)

    resp = client.put(
        f"/api/public/proposals/{proposal['public_token']}/sign",
        json=_sign_body(payment_method="Boleto", installments=7),
    )
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Invalid input"


def test_installments_need_an_installable_method(client, seller, make_client, catalog):
    proposal = _create_and_send(client, make_client().id, catalog)

    resp = client.put(
        f"/api/public/proposals/{proposal['public_token']}/sign",
        json=_sign_body(payment_method="PIX", installments=2),
    )
    assert resp.status_code == 400


def test_one_token_never_touches_another_proposal(client, seller, make_client, catalog, db_session):
    first = _create_and_send(client, make_client().id, catalog)
    second = _create_and_send(client, make_client().id, catalog)

    client.put(
        f"/api/public/proposals/{first['public_token']}/select-services",
        json={"selections": [{"position": 1, "selected": False}]},
    )

    items = (
        db_session.query(models.ProposalLineItem)
        .filter(models.ProposalLineItem.proposal_id == second["id"])
        .all()
    )
    assert all(li.selected is None for li in items)


def test_processed_proposal_rejects_further_writes(client, seller, make_client, catalog):
    proposal = _create_and_send(client, make_client().id, catalog)
    token = proposal["public_token"]
    assert client.put(f"/api/public/proposals/{token}/sign", json=_sign_body()).status_code == 200

    converted = client.post(f"/api/proposals/{proposal['id']}/convert", json={})
    assert converted.status_code == 201, converted.text

    again = client.put(f"/api/public/proposals/{token}/sign", json=_sign_body())
    assert again.status_code == 409
    assert again.json()["detail"] == "Proposal already processed"

    reject = client.put(f"/api/public/proposals/{token}/reject", json={"reason": "mudei de ideia"})
    assert reject.status_code == 409

    view = client.get(f"/api/public/proposals/{token}")
    assert view.status_code == 404
    assert view.json()["detail"] == "Proposal not found or expired"


def test_reject_records_the_reason(client, seller, make_client, catalog, db_session):
    proposal = _create_and_send(client, make_client().id, catalog)

    resp = client.put(
        f"/api/public/proposals/{proposal['public_token']}/reject", json={"reason": "caro demais"}
    )
    assert resp.status_code == 200, resp.text
    assert resp.json()["status"] == "rejected"

    row = db_session.get(models.Proposal, proposal["id"])
    assert row.rejection_reason == "caro demais"
    assert row.rejected_at is not None


def test_malformed_token_is_invalid_input(client):
    resp = client.get("/api/public/proposals/not-a-token")
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Invalid input"


def test_unknown_token_is_not_found(client):
    resp = client.get("/api/public/proposals/prop_" + "0" * 48)
    assert resp.status_code == 404
    assert resp.json()["detail"] == "Proposal not found or expired"


def test_draft_is_not_published(client, seller, make_client, catalog, db_session):
    created = client.post(
        "/api/proposals",
        json={
            "client_id": make_client().id,
            "kind": "one_off",
            "line_items": [{"service_id": catalog[0].id, "unit_value": 10}],
        },
    )
    token = db_session.get(models.Proposal, created.json()["id"]).public_token

    assert client.get(f"/api/public/proposals/{token}").status_code == 404


def test_expired_proposal_reads_as_not_found(client, seller, make_client, catalog, db_session):
    proposal = _create_and_send(client, make_client().id, catalog)
    row = db_session.get(models.Proposal, proposal["id"])
    row.valid_until = date.today() - timedelta(days=1)
    db_session.commit()

    sign = client.put(f"/api/public/proposals/{proposal['public_token']}/sign", json=_sign_body())
    assert sign.status_code == 404
    assert sign.json()["detail"] == "Proposal not found or expired"

    db_session.expire_all()
    assert db_session.get(models.Proposal, proposal["id"]).status == ProposalStatus.expired


def test_expired_proposal_is_not_viewable(client, seller, make_client, catalog, db_session):
    proposal = _create_and_send(client, make_client().id, catalog)
    row = db_session.get(models.Proposal, proposal["id"])
    row.valid_until = date.today() - timedelta(days=1)
    db_session.commit()

    view = client.get(f"/api/public/proposals/{proposal['public_token']}")
    assert view.status_code == 404
    assert view.json()["detail"] == "Proposal not found or expired"
    assert db_session.query(models.ProposalAccessLog).count() == 0

    db_session.expire_all()
    assert db_session.get(models.Proposal, proposal["id"]).status == ProposalStatus.expired


def test_views_are_logged(client, seller, make_client, catalog, db_session):
    proposal = _create_and_send(client, make_client().id, catalog)

    client.get(
        f"/api/public/proposals/{proposal['public_token']}",
        headers={"user-agent": "pytest-browser", "x-forwarded-for": "203.0.113.9, 10.0.0.1"},
    )

    log = db_session.query(models.ProposalAccessLog).one()
    assert log.action == "view"
    assert log.ip_address == "203.0.113.9"
    assert log.user_agent == "pytest-browser"

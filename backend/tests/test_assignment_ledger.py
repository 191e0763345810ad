import pytest

from issuance import models
from issuance.core.exceptions import ConflictError, NotFoundError, ValidationError
from issuance.models.domain import AssignmentRole
from issuance.services import assignment_ledger as ledger
from issuance.services.assignment_ledger import OwnerFallbackPolicy


@pytest.fixture
def contract(db_session, make_client):
    row = models.Contract(
        contract_number="TOP-2026-0001",
        client_id=make_client().id,
        kind=models.ContractKind.full_scope,
        total_value=100.0,
        installment_count=1,
    )
    db_session.add(row)
    db_session.commit()
    db_session.refresh(row)
    return row


def _roles(db, contract_id):
    return {a.user_id: a.role for a in ledger.active_assignments(db, contract_id)}


def test_seed_makes_issuer_owner_and_others_viewers(db_session, contract, make_user):
    owner, a, b = make_user(), make_user(), make_user()

    ledger.seed_assignments(
        db_session, contract_id=contract.id, owner_id=owner.id, viewer_ids=[a.id, b.id, a.id, owner.id]
    )
    db_session.commit()

    assert _roles(db_session, contract.id) == {
        owner.id: AssignmentRole.owner,
        a.id: AssignmentRole.viewer,
        b.id: AssignmentRole.viewer,
    }


def test_removing_the_last_owner_is_rejected_by_default(db_session, contract, make_user):
    owner = make_user()
    ledger.seed_assignments(db_session, contract_id=contract.id, owner_id=owner.id)
    db_session.commit()

    with pytest.raises(ConflictError):
        ledger.remove_user(
            db_session, contract_id=contract.id, user_id=owner.id, initiator_id=owner.id
        )


def test_promote_initiator_keeps_an_owner(db_session, contract, make_user):
    owner, editor = make_user(), make_user()
    ledger.seed_assignments(db_session, contract_id=contract.id, owner_id=owner.id)
    ledger.assign_user(
        db_session, contract_id=contract.id, user_id=editor.id, role=AssignmentRole.editor, assigned_by=owner.id
    )
    db_session.commit()

    ledger.remove_user(
        db_session,
        contract_id=contract.id,
        user_id=owner.id,
        initiator_id=editor.id,
        policy=OwnerFallbackPolicy.promote_initiator,
    )
    db_session.commit()

    assert _roles(db_session, contract.id) == {editor.id: AssignmentRole.owner}


def test_owner_cannot_demote_themselves_when_alone(db_session, contract, make_user):
    owner = make_user()
    ledger.seed_assignments(db_session, contract_id=contract.id, owner_id=owner.id)
    db_session.commit()

    with pytest.raises(ConflictError):
        ledger.change_role(
            db_session,
            contract_id=contract.id,
            user_id=owner.id,
            role=AssignmentRole.viewer,
            initiator_id=owner.id,
            policy=OwnerFallbackPolicy.promote_initiator,
        )


def test_second_owner_allows_demotion(db_session, contract, make_user):
    first, second = make_user(), make_user()
    ledger.seed_assignments(db_session, contract_id=contract.id, owner_id=first.id)
    ledger.assign_user(
        db_session, contract_id=contract.id, user_id=second.id, role=AssignmentRole.owner, assigned_by=first.id
    )
    db_session.commit()

    ledger.change_role(
        db_session, contract_id=contract.id, user_id=first.id, role=AssignmentRole.editor, initiator_id=first.id
    )
    db_session.commit()

    assert ledger.active_owner_ids(db_session, contract.id) == {second.id}


def test_readding_a_removed_user_reactivates_the_same_row(db_session, contract, make_user):
    owner, viewer = make_user(), make_user()
    ledger.seed_assignments(db_session, contract_id=contract.id, owner_id=owner.id, viewer_ids=[viewer.id])
    db_session.commit()
    original = ledger.remove_user(
        db_session, contract_id=contract.id, user_id=viewer.id, initiator_id=owner.id
    )
    db_session.commit()
    original_id = original.id

    again = ledger.assign_user(
        db_session, contract_id=contract.id, user_id=viewer.id, role=AssignmentRole.editor, assigned_by=owner.id
    )
    db_session.commit()

    assert again.id == original_id
    assert again.active
    assert again.role == AssignmentRole.editor
    assert db_session.query(models.ContractAssignment).filter_by(contract_id=contract.id).count() == 2


def test_removing_an_unknown_assignment_is_not_found(db_session, contract, make_user):
    owner, stranger = make_user(), make_user()
    ledger.seed_assignments(db_session, contract_id=contract.id, owner_id=owner.id)
    db_session.commit()

    with pytest.raises(NotFoundError):
        ledger.remove_user(db_session, contract_id=contract.id, user_id=stranger.id, initiator_id=owner.id)


def test_sync_adds_viewers_and_deactivates_the_missing(db_session, contract, make_user):
    owner, old, new = make_user(), make_user(), make_user()
    ledger.seed_assignments(db_session, contract_id=contract.id, owner_id=owner.id, viewer_ids=[old.id])
    db_session.commit()

    ledger.sync_assignments(
        db_session, contract_id=contract.id, user_ids=[owner.id, new.id], initiator_id=owner.id
    )
    db_session.commit()

    assert _roles(db_session, contract.id) == {
        owner.id: AssignmentRole.owner,
        new.id: AssignmentRole.viewer,
    }


def test_sync_with_an_empty_list_changes_nothing(db_session, contract, make_user):
    owner, viewer = make_user(), make_user()
    ledger.seed_assignments(db_session, contract_id=contract.id, owner_id=owner.id, viewer_ids=[viewer.id])
    db_session.commit()

    ledger.sync_assignments(db_session, contract_id=contract.id, user_ids=[], initiator_id=owner.id)

    assert set(_roles(db_session, contract.id)) == {owner.id, viewer.id}


def test_sync_dropping_every_owner_follows_the_policy(db_session, contract, make_user):
    owner, editor = make_user(), make_user()
    ledger.seed_assignments(db_session, contract_id=contract.id, owner_id=owner.id, viewer_ids=[editor.id])
    db_session.commit()

    with pytest.raises(ConflictError):
        ledger.sync_assignments(
            db_session, contract_id=contract.id, user_ids=[editor.id], initiator_id=editor.id
        )
    db_session.rollback()

    ledger.sync_assignments(
        db_session,
        contract_id=contract.id,
        user_ids=[editor.id],
        initiator_id=editor.id,
        policy=OwnerFallbackPolicy.promote_initiator,
    )
    db_session.commit()

    assert _roles(db_session, contract.id) == {editor.id: AssignmentRole.owner}


def test_sync_rejects_unknown_users(db_session, contract, make_user):
    owner = make_user()
    ledger.seed_assignments(db_session, contract_id=contract.id, owner_id=owner.id)
    db_session.commit()

    with pytest.raises(ValidationError):
        ledger.sync_assignments(
            db_session, contract_id=contract.id, user_ids=[owner.id, 99999], initiator_id=owner.id
        )

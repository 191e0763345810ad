"""Who may work on a contract, and with which role.

Entries are never hard-deleted: removal flips ``active`` off and re-adding the
same user reactivates the row. Once a contract has any assignment it must keep
at least one active owner; what happens when a request would break that is an
explicit ``OwnerFallbackPolicy`` chosen by the caller.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Iterable

from sqlalchemy.orm import Session

from issuance import models
from issuance.core.exceptions import ConflictError, NotFoundError, ValidationError
from issuance.models.domain import AssignmentRole

logger = logging.getLogger("issuance.assignments")


class OwnerFallbackPolicy(str, Enum):
    reject = "reject"
    promote_initiator = "promote_initiator"


def _entry(db: Session, contract_id: int, user_id: int) -> models.ContractAssignment | None:
    return (
        db.query(models.ContractAssignment)
        .filter(models.ContractAssignment.contract_id == int(contract_id))
        .filter(models.ContractAssignment.user_id == int(user_id))
        .first()
    )


def active_assignments(db: Session, contract_id: int) -> list[models.ContractAssignment]:
    return (
        db.query(models.ContractAssignment)
        .filter(models.ContractAssignment.contract_id == int(contract_id))
        .filter(models.ContractAssignment.active.is_(True))
        .order_by(models.ContractAssignment.id.asc())
        .all()
    )


def active_owner_ids(db: Session, contract_id: int) -> set[int]:
    return {
        a.user_id for a in active_assignments(db, contract_id) if a.role == AssignmentRole.owner
    }


def user_role(db: Session, contract_id: int, user_id: int) -> AssignmentRole | None:
    entry = _entry(db, contract_id, user_id)
    if entry is None or not entry.active:
        return None
    return entry.role


def assign_user(
    db: Session,
    *,
    contract_id: int,
    user_id: int,
    role: AssignmentRole,
    assigned_by: int | None,
) -> models.ContractAssignment:
    """Add a user, or reactivate / re-role an existing entry for the same pair."""

    if db.get(models.User, int(user_id)) is None:
        raise NotFoundError("User", user_id)

    entry = _entry(db, contract_id, user_id)
    if entry is not None:
        if entry.active and entry.role == AssignmentRole.owner and role != AssignmentRole.owner:
            _ensure_other_owner(db, contract_id, user_id)
        entry.role = role
        entry.active = True
        entry.assigned_by = assigned_by
        db.flush()
        return entry

    entry = models.ContractAssignment(
        contract_id=int(contract_id),
        user_id=int(user_id),
        role=role,
        active=True,
        assigned_by=assigned_by,
    )
    db.add(entry)
    db.flush()
    return entry


def _ensure_other_owner(db: Session, contract_id: int, leaving_user_id: int) -> None:
    if active_owner_ids(db, contract_id) - {int(leaving_user_id)}:
        return
    raise ConflictError(
        "Contract must keep at least one active owner",
        contract_id=int(contract_id),
        user_id=int(leaving_user_id),
    )


def _promote(db: Session, contract_id: int, initiator_id: int) -> None:
    logger.info(
        "assignment_owner_promoted",
        extra={"contract_id": int(contract_id), "user_id": int(initiator_id)},
    )
    assign_user(
        db,
        contract_id=contract_id,
        user_id=initiator_id,
        role=AssignmentRole.owner,
        assigned_by=initiator_id,
    )


def _resolve_orphaning(
    db: Session,
    *,
    contract_id: int,
    leaving_user_ids: set[int],
    initiator_id: int,
    policy: OwnerFallbackPolicy,
) -> None:
    if active_owner_ids(db, contract_id) - leaving_user_ids:
        return
    if policy == OwnerFallbackPolicy.promote_initiator and int(initiator_id) not in leaving_user_ids:
        _promote(db, contract_id, initiator_id)
        return
    raise ConflictError(
        "Contract must keep at least one active owner",
        contract_id=int(contract_id),
    )


def remove_user(
    db: Session,
    *,
    contract_id: int,
    user_id: int,
    initiator_id: int,
    policy: OwnerFallbackPolicy = OwnerFallbackPolicy.reject,
) -> models.ContractAssignment:
    entry = _entry(db, contract_id, user_id)
    if entry is None or not entry.active:
        raise NotFoundError("Assignment", user_id)

    if entry.role == AssignmentRole.owner:
        _resolve_orphaning(
            db,
            contract_id=contract_id,
            leaving_user_ids={int(user_id)},
            initiator_id=initiator_id,
            policy=policy,
        )

    entry.active = False
    db.flush()
    return entry


def change_role(
    db: Session,
    *,
    contract_id: int,
    user_id: int,
    role: AssignmentRole,
    initiator_id: int,
    policy: OwnerFallbackPolicy = OwnerFallbackPolicy.reject,
) -> models.ContractAssignment:
    entry = _entry(db, contract_id, user_id)
    if entry is None or not entry.active:
        raise NotFoundError("Assignment", user_id)

    if entry.role == AssignmentRole.owner and role != AssignmentRole.owner:
        _resolve_orphaning(
            db,
            contract_id=contract_id,
            leaving_user_ids={int(user_id)},
            initiator_id=initiator_id,
            policy=policy,
        )

    entry.role = role
    db.flush()
    return entry


def seed_assignments(
    db: Session,
    *,
    contract_id: int,
    owner_id: int,
    viewer_ids: Iterable[int] = (),
) -> list[models.ContractAssignment]:
    """Initial team of a freshly issued contract: the issuer owns it, the rest view it."""

    entries = [
        assign_user(
            db,
            contract_id=contract_id,
            user_id=owner_id,
            role=AssignmentRole.owner,
            assigned_by=owner_id,
        )
    ]
    for user_id in dict.fromkeys(int(u) for u in viewer_ids):
        if user_id == int(owner_id):
            continue
        entries.append(
            assign_user(
                db,
                contract_id=contract_id,
                user_id=user_id,
                role=AssignmentRole.viewer,
                assigned_by=owner_id,
            )
        )
    return entries


def sync_assignments(
    db: Session,
    *,
    contract_id: int,
    user_ids: Iterable[int],
    initiator_id: int,
    policy: OwnerFallbackPolicy = OwnerFallbackPolicy.reject,
) -> list[models.ContractAssignment]:
    """Make the active set equal ``user_ids``.

    Users already on the contract keep their role, newcomers join as viewers,
    and everyone missing from the list is deactivated. An empty list is a
    no-op so that clients omitting the field never wipe the team.
    """

    wanted = list(dict.fromkeys(int(u) for u in user_ids))
    if not wanted:
        return active_assignments(db, contract_id)

    current = {a.user_id: a for a in active_assignments(db, contract_id)}
    leaving = set(current) - set(wanted)
    joining = [u for u in wanted if u not in current]

    for user_id in joining:
        if db.get(models.User, user_id) is None:
            raise ValidationError(f"Unknown user {user_id}")

    if not active_owner_ids(db, contract_id) - leaving:
        if policy == OwnerFallbackPolicy.promote_initiator and int(initiator_id) in wanted:
            # The initiator stays on the contract and takes ownership.
            if int(initiator_id) in joining:
                joining.remove(int(initiator_id))
            _promote(db, contract_id, initiator_id)
        else:
            raise ConflictError(
                "Contract must keep at least one active owner",
                contract_id=int(contract_id),
            )

    for user_id in joining:
        assign_user(
            db,
            contract_id=contract_id,
            user_id=user_id,
            role=AssignmentRole.viewer,
            assigned_by=initiator_id,
        )

    for user_id in leaving:
        current[user_id].active = False
    db.flush()

    return active_assignments(db, contract_id)

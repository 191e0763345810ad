from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Any, Iterable

from sqlalchemy.orm import Session

from issuance import models
from issuance.core.exceptions import StateError
from issuance.models.domain import ProposalStatus

ALLOWED_TRANSITIONS: dict[ProposalStatus, frozenset[ProposalStatus]] = {
    ProposalStatus.draft: frozenset({ProposalStatus.sent}),
    ProposalStatus.sent: frozenset(
        {
            ProposalStatus.signed,
            ProposalStatus.counterproposal,
            ProposalStatus.rejected,
            ProposalStatus.expired,
        }
    ),
    ProposalStatus.signed: frozenset({ProposalStatus.converted}),
    ProposalStatus.counterproposal: frozenset({ProposalStatus.converted}),
    ProposalStatus.rejected: frozenset(),
    ProposalStatus.expired: frozenset(),
    ProposalStatus.converted: frozenset(),
}

# Internal users may still edit the commercial content in these states.
EDITABLE_STATUSES = frozenset({ProposalStatus.draft, ProposalStatus.sent})
CONVERTIBLE_STATUSES = frozenset({ProposalStatus.signed, ProposalStatus.counterproposal})
TERMINAL_PUBLIC_STATUSES = frozenset(
    {ProposalStatus.expired, ProposalStatus.rejected, ProposalStatus.converted}
)


@dataclass(frozen=True)
class TransitionResult:
    updated: bool
    rowcount: int


def is_past_validity(proposal: Any, today: date | None = None) -> bool:
    valid_until = getattr(proposal, "valid_until", None)
    if valid_until is None:
        return False
    return (today or date.today()) > valid_until


def effective_status(proposal: Any, today: date | None = None) -> ProposalStatus:
    """Status as readers must see it: a ``sent`` proposal past its validity is expired."""

    status = ProposalStatus(proposal.status)
    if status == ProposalStatus.sent and is_past_validity(proposal, today):
        return ProposalStatus.expired
    return status


def assert_transition(
    current: ProposalStatus, to_status: ProposalStatus, *, action: str | None = None
) -> None:
    if to_status in ALLOWED_TRANSITIONS.get(current, frozenset()):
        return
    label = action or f"move to {to_status.value}"
    raise StateError(
        f"Cannot {label} a proposal in status {current.value}",
        current_status=current.value,
    )


def atomic_transition_proposal_status(
    *,
    db: Session,
    proposal_id: int,
    to_status: ProposalStatus,
    allowed_from: Iterable[ProposalStatus],
    updates: dict[str, Any] | None = None,
) -> TransitionResult:
    """Apply a proposal status transition with an atomic DB guard.

    A single conditional UPDATE keeps out-of-order transitions from being
    persisted under concurrency:

        UPDATE proposals
        SET status = :to_status, ...
        WHERE id = :proposal_id AND status IN (:allowed_from)

    Callers control commit/rollback.
    """

    update_values: dict[str, Any] = {"status": to_status}
    if updates:
        update_values.update(updates)

    rowcount = (
        db.query(models.Proposal)
        .filter(models.Proposal.id == int(proposal_id))
        .filter(models.Proposal.status.in_(set(allowed_from)))
        .update(update_values, synchronize_session=False)
    )

    return TransitionResult(updated=rowcount > 0, rowcount=int(rowcount or 0))


def transition(
    db: Session,
    proposal: models.Proposal,
    to_status: ProposalStatus,
    *,
    updates: dict[str, Any] | None = None,
    action: str | None = None,
) -> models.Proposal:
    """Validate against the transition table, then persist through the atomic guard.

    A lost race (the row changed status since it was read) surfaces as
    ``StateError`` with the status found afterwards.
    """

    current = ProposalStatus(proposal.status)
    assert_transition(current, to_status, action=action)
    db.flush()

    result = atomic_transition_proposal_status(
        db=db,
        proposal_id=proposal.id,
        to_status=to_status,
        allowed_from={current},
        updates=updates,
    )
    db.expire(proposal)
    if not result.updated:
        db.refresh(proposal)
        raise StateError(
            f"Proposal changed status concurrently; now {ProposalStatus(proposal.status).value}",
            current_status=ProposalStatus(proposal.status).value,
        )
    return proposal


def expire_if_due(db: Session, proposal: models.Proposal, today: date | None = None) -> bool:
    """Persist a lazily computed expiry. Returns True when the row was changed."""

    if ProposalStatus(proposal.status) != ProposalStatus.sent or not is_past_validity(proposal, today):
        return False
    db.flush()
    result = atomic_transition_proposal_status(
        db=db,
        proposal_id=proposal.id,
        to_status=ProposalStatus.expired,
        allowed_from={ProposalStatus.sent},
    )
    db.expire(proposal)
    return result.updated


def expire_stale_proposals(db: Session, *, today: date | None = None) -> int:
    today = today or date.today()
    rowcount = (
        db.query(models.Proposal)
        .filter(models.Proposal.status == ProposalStatus.sent)
        .filter(models.Proposal.valid_until.is_not(None))
        .filter(models.Proposal.valid_until < today)
        .update({"status": ProposalStatus.expired}, synchronize_session=False)
    )
    return int(rowcount or 0)

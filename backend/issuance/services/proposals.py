from __future__ import annotations

import logging
import re
import secrets
import time
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from issuance import models
from issuance.config import settings
from issuance.core.exceptions import NotFoundError, StateError, ValidationError
from issuance.models.domain import PaymentPolicy, ProposalStatus
from issuance.schemas.proposals import (
    ProposalCreate,
    ProposalUpdate,
    RejectProposalRequest,
    ServiceSelection,
    SignProposalRequest,
)
from issuance.services import directory, document_numbering, notifications, payment_terms
from issuance.services import proposal_transitions as transitions
from issuance.services.line_items import consolidate_line_items
from issuance.services.valuation import (
    DiscountConfig,
    DiscountRule,
    evaluate_proposal,
    installment_value,
    validate_discount_config,
)

logger = logging.getLogger("issuance.proposals")

TOKEN_PREFIX = "prop_"
_TOKEN_RE = re.compile(r"^prop_[a-f0-9]{32,}$")

_DISCOUNT_FIELDS = (
    "pay_now_discount_percentage",
    "pay_now_discount_value",
    "pay_later_discount_percentage",
    "pay_later_discount_value",
)
_REQUIRED_FIELDS = frozenset({"kind", "use_fixed_global_value", "max_installments"})


def generate_public_token() -> str:
    return TOKEN_PREFIX + secrets.token_hex(24)


def is_valid_public_token(token: str | None) -> bool:
    return bool(token) and _TOKEN_RE.fullmatch(str(token)) is not None


def public_url(proposal: models.Proposal) -> str:
    return f"{settings.public_base_url.rstrip('/')}/proposta/{proposal.public_token}"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _discounts(source: Any) -> DiscountConfig:
    return DiscountConfig(
        pay_now=DiscountRule(
            percentage=getattr(source, "pay_now_discount_percentage", None),
            value=getattr(source, "pay_now_discount_value", None),
        ),
        pay_later=DiscountRule(
            percentage=getattr(source, "pay_later_discount_percentage", None),
            value=getattr(source, "pay_later_discount_value", None),
        ),
    )


def _check_commercial_terms(proposal: models.Proposal) -> None:
    validate_discount_config(_discounts(proposal))
    if proposal.use_fixed_global_value and proposal.fixed_global_value is None:
        raise ValidationError("fixed_global_value is required when use_fixed_global_value is set")
    if int(proposal.max_installments) > settings.max_installments_cap:
        raise ValidationError(
            f"max_installments cannot exceed {settings.max_installments_cap}"
        )


def _recompute_total(proposal: models.Proposal) -> None:
    if proposal.use_fixed_global_value:
        proposal.total_value = round(float(proposal.fixed_global_value or 0.0), 2)
    else:
        proposal.total_value = round(sum(float(li.total_value) for li in proposal.line_items), 2)


def _line_item_factory(
    db: Session, requested: Iterable[Any]
) -> Callable[[], list[models.ProposalLineItem]]:
    """Validate the requested items now; the returned callable builds fresh rows each time."""

    items = consolidate_line_items(requested)
    if not items:
        raise ValidationError("At least one line item with a service is required")
    services = directory.get_services(db, [i.service_id for i in items])
    return lambda: [
        models.ProposalLineItem(
            service_id=item.service_id,
            position=position,
            service_name=services[item.service_id].name,
            service_description=services[item.service_id].description,
            service_category=services[item.service_id].category,
            quantity=item.quantity,
            unit_value=item.unit_value,
            total_value=item.total_value,
        )
        for position, item in enumerate(items, start=1)
    ]


def create_proposal(
    db: Session,
    payload: ProposalCreate,
    *,
    actor_id: int,
    now: Optional[datetime] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> models.Proposal:
    client = directory.get_client(db, payload.client_id)
    validate_discount_config(_discounts(payload))
    build_line_items = _line_item_factory(db, payload.line_items)

    max_installments = payload.max_installments or settings.default_max_installments
    valid_until = payload.valid_until or (
        (now or _utc_now()).date() + timedelta(days=settings.proposal_validity_days)
    )
    client_id = client.id

    def _build(number: str) -> models.Proposal:
        proposal = models.Proposal(
            proposal_number=number,
            client_id=client_id,
            kind=payload.kind,
            status=ProposalStatus.draft,
            use_fixed_global_value=payload.use_fixed_global_value,
            fixed_global_value=payload.fixed_global_value,
            max_installments=max_installments,
            valid_until=valid_until,
            notes=payload.notes,
            public_token=generate_public_token(),
            created_by=actor_id,
            **{name: getattr(payload, name) for name in _DISCOUNT_FIELDS},
        )
        proposal.line_items = build_line_items()
        _check_commercial_terms(proposal)
        _recompute_total(proposal)
        return proposal

    try:
        proposal = document_numbering.insert_with_yearly_number(
            db,
            column=models.Proposal.proposal_number,
            prefix=settings.proposal_number_prefix,
            build=_build,
            now=now,
            max_insert_attempts=settings.number_insert_attempts,
            max_attempts=settings.number_allocation_attempts,
            backoff_ms=(settings.number_backoff_min_ms, settings.number_backoff_max_ms),
            sleep=sleep,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(proposal)
    logger.info(
        "proposal_created",
        extra={
            "proposal_id": proposal.id,
            "proposal_number": proposal.proposal_number,
            "total_value": proposal.total_value,
        },
    )
    return proposal


def get_proposal(db: Session, proposal_id: int) -> models.Proposal:
    proposal = db.get(models.Proposal, int(proposal_id))
    if proposal is None:
        raise NotFoundError("Proposal", proposal_id)
    if transitions.expire_if_due(db, proposal):
        db.commit()
        db.refresh(proposal)
    return proposal


def list_proposals(
    db: Session,
    *,
    status: ProposalStatus | None = None,
    client_id: int | None = None,
    limit: int = 100,
    offset: int = 0,
) -> list[models.Proposal]:
    if transitions.expire_stale_proposals(db):
        db.commit()

    q = db.query(models.Proposal)
    if status is not None:
        q = q.filter(models.Proposal.status == status)
    if client_id is not None:
        q = q.filter(models.Proposal.client_id == int(client_id))
    return q.order_by(models.Proposal.id.desc()).offset(offset).limit(limit).all()


def _ensure_editable(proposal: models.Proposal) -> None:
    status = transitions.effective_status(proposal)
    if status not in transitions.EDITABLE_STATUSES:
        raise StateError(
            f"Proposal in status {status.value} can no longer be edited",
            current_status=status.value,
        )


def update_proposal(db: Session, proposal_id: int, payload: ProposalUpdate) -> models.Proposal:
    proposal = get_proposal(db, proposal_id)
    _ensure_editable(proposal)

    data = payload.model_dump(exclude_unset=True)
    line_items = data.pop("line_items", None)
    try:
        if "client_id" in data:
            proposal.client_id = directory.get_client(db, data.pop("client_id")).id
        for key, value in data.items():
            if value is None and key in _REQUIRED_FIELDS:
                continue
            setattr(proposal, key, value)
        if not proposal.max_installments:
            proposal.max_installments = settings.default_max_installments

        if line_items is not None:
            new_items = _line_item_factory(db, payload.line_items)()
            proposal.line_items.clear()
            db.flush()
            proposal.line_items.extend(new_items)

        _check_commercial_terms(proposal)
        _recompute_total(proposal)
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(proposal)
    logger.info("proposal_updated", extra={"proposal_id": proposal.id})
    return proposal


def send_proposal(db: Session, proposal_id: int, *, today: date | None = None) -> models.Proposal:
    """draft -> sent. The public link is live from here on."""

    proposal = get_proposal(db, proposal_id)
    today = today or date.today()
    updates: dict[str, Any] = {
        "sent_at": _utc_now(),
        "public_token": proposal.public_token or generate_public_token(),
    }
    if proposal.valid_until is None or proposal.valid_until < today:
        updates["valid_until"] = today + timedelta(days=settings.proposal_validity_days)

    try:
        transitions.transition(db, proposal, ProposalStatus.sent, updates=updates, action="send")
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(proposal)
    logger.info(
        "proposal_sent",
        extra={"proposal_id": proposal.id, "proposal_number": proposal.proposal_number},
    )
    return proposal


def regenerate_token(db: Session, proposal_id: int) -> models.Proposal:
    proposal = get_proposal(db, proposal_id)
    _ensure_editable(proposal)
    proposal.public_token = generate_public_token()
    db.commit()
    db.refresh(proposal)
    logger.info("proposal_token_regenerated", extra={"proposal_id": proposal.id})
    return proposal


def duplicate_proposal(
    db: Session,
    proposal_id: int,
    *,
    actor_id: int,
    now: Optional[datetime] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> models.Proposal:
    """Copy the commercial content into a fresh draft with its own number and token."""

    source = get_proposal(db, proposal_id)
    payload = ProposalCreate(
        client_id=source.client_id,
        kind=source.kind,
        line_items=[
            {"service_id": li.service_id, "unit_value": li.unit_value}
            for li in source.line_items
            for _ in range(max(1, int(li.quantity)))
        ],
        use_fixed_global_value=source.use_fixed_global_value,
        fixed_global_value=source.fixed_global_value,
        max_installments=source.max_installments,
        notes=source.notes,
        **{name: getattr(source, name) for name in _DISCOUNT_FIELDS},
    )
    copy = create_proposal(db, payload, actor_id=actor_id, now=now, sleep=sleep)

    # Keep the priced totals of the source even where quantity * unit differs from total.
    by_service = {li.service_id: li for li in source.line_items}
    for li in copy.line_items:
        original = by_service.get(li.service_id)
        if original is not None:
            li.unit_value = original.unit_value
            li.total_value = original.total_value
    _recompute_total(copy)
    db.commit()
    db.refresh(copy)
    logger.info(
        "proposal_duplicated",
        extra={"proposal_id": copy.id, "source_proposal_id": source.id},
    )
    return copy


def delete_proposal(db: Session, proposal_id: int) -> None:
    proposal = get_proposal(db, proposal_id)
    if ProposalStatus(proposal.status) == ProposalStatus.converted:
        raise StateError(
            "Converted proposals cannot be deleted", current_status=ProposalStatus.converted.value
        )
    db.delete(proposal)
    db.commit()
    logger.warning("proposal_deleted", extra={"proposal_id": int(proposal_id)})


def expire_sweep(db: Session, *, today: date | None = None) -> int:
    expired = transitions.expire_stale_proposals(db, today=today)
    db.commit()
    if expired:
        logger.info("proposals_expired", extra={"count": expired})
    return expired


# Public (token-bearing) actions.


def resolve_public(db: Session, token: str) -> models.Proposal:
    if not is_valid_public_token(token):
        raise ValidationError("Invalid token format")
    proposal = (
        db.query(models.Proposal).filter(models.Proposal.public_token == token).first()
    )
    # Drafts are not published yet.
    if proposal is None or ProposalStatus(proposal.status) == ProposalStatus.draft:
        raise NotFoundError("Proposal")
    if transitions.expire_if_due(db, proposal):
        db.commit()
        db.refresh(proposal)
    return proposal


def _ensure_open(proposal: models.Proposal) -> None:
    status = transitions.effective_status(proposal)
    if status != ProposalStatus.sent:
        raise StateError(
            f"Proposal is {status.value}", current_status=status.value
        )


def record_access(
    db: Session,
    proposal: models.Proposal,
    action: str,
    *,
    ip: str | None = None,
    user_agent: str | None = None,
) -> None:
    """Best-effort access trail; a failure here never fails the public request."""

    try:
        db.add(
            models.ProposalAccessLog(
                proposal_id=proposal.id,
                action=action,
                ip_address=ip,
                user_agent=(user_agent or "")[:256] or None,
            )
        )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.warning(
            "proposal_access_log_failed",
            extra={"proposal_id": proposal.id, "access_action": action},
        )


def public_payload(proposal: models.Proposal) -> dict[str, Any]:
    """Client-facing view; carries no internal identifiers beyond the proposal number."""

    status = transitions.effective_status(proposal)
    data: dict[str, Any] = {
        "proposal_number": proposal.proposal_number,
        "status": status,
        "kind": proposal.kind,
        "client_name": proposal.client.trade_name or proposal.client.name,
        "total_value": proposal.total_value,
        "use_fixed_global_value": proposal.use_fixed_global_value,
        "fixed_global_value": proposal.fixed_global_value,
        "max_installments": proposal.max_installments,
        "valid_until": proposal.valid_until,
        "signed_at": proposal.signed_at,
        "payment_policy": proposal.payment_policy,
        "payment_method": proposal.payment_method,
        "installment_count": proposal.installment_count,
        "installment_value": proposal.installment_value,
        "line_items": list(proposal.line_items),
        **{name: getattr(proposal, name) for name in _DISCOUNT_FIELDS},
    }
    if status == ProposalStatus.sent:
        data["pay_now_preview"] = evaluate_proposal(proposal, PaymentPolicy.pay_now)
        data["pay_later_preview"] = evaluate_proposal(proposal, PaymentPolicy.pay_later)
    return data


def view_public(
    db: Session, token: str, *, ip: str | None = None, user_agent: str | None = None
) -> models.Proposal:
    proposal = resolve_public(db, token)
    # Expired and converted proposals are no longer served to clients.
    if transitions.effective_status(proposal) in {ProposalStatus.expired, ProposalStatus.converted}:
        raise NotFoundError("Proposal")
    record_access(db, proposal, "view", ip=ip, user_agent=user_agent)
    return proposal


def _apply_selections(proposal: models.Proposal, selections: Iterable[ServiceSelection]) -> None:
    by_position = {li.position: li for li in proposal.line_items}
    for selection in selections:
        line_item = by_position.get(selection.position)
        if line_item is None:
            raise ValidationError(f"Unknown line item position {selection.position}")
        line_item.selected = bool(selection.selected)
        if selection.client_notes is not None:
            line_item.client_notes = selection.client_notes


def select_services(
    db: Session,
    token: str,
    selections: list[ServiceSelection],
    *,
    ip: str | None = None,
    user_agent: str | None = None,
) -> models.Proposal:
    proposal = resolve_public(db, token)
    _ensure_open(proposal)
    try:
        _apply_selections(proposal, selections)
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(proposal)
    record_access(db, proposal, "select", ip=ip, user_agent=user_agent)
    return proposal


def sign_proposal(
    db: Session,
    token: str,
    payload: SignProposalRequest,
    *,
    ip: str | None = None,
    user_agent: str | None = None,
) -> models.Proposal:
    """Client signature. Full acceptance signs; partial acceptance becomes a counterproposal.

    The valuation computed here is authoritative and replaces the proposal total.
    """

    proposal = resolve_public(db, token)
    _ensure_open(proposal)

    try:
        if payload.selections:
            _apply_selections(proposal, payload.selections)

        payment_terms.ensure_known_method(payload.payment_method)
        count = int(payload.installments)
        if not 1 <= count <= int(proposal.max_installments):
            raise ValidationError(
                f"installments must be between 1 and {proposal.max_installments}"
            )
        payment_terms.ensure_installable([payload.payment_method], count)

        valuation = evaluate_proposal(proposal, payload.payment_policy)
        if valuation.selected_count == 0 and not proposal.use_fixed_global_value:
            raise ValidationError("Select at least one service before signing")

        to_status = (
            ProposalStatus.signed
            if proposal.use_fixed_global_value or valuation.full_acceptance
            else ProposalStatus.counterproposal
        )
        for line_item in proposal.line_items:
            if line_item.selected is None:
                line_item.selected = True

        transitions.transition(
            db,
            proposal,
            to_status,
            updates={
                "total_value": valuation.payable,
                "discount_applied": valuation.discount_applied,
                "payment_policy": payload.payment_policy,
                "payment_method": payload.payment_method,
                "installment_count": count,
                "installment_value": installment_value(valuation.payable, count),
                "signer_name": payload.signer_name,
                "signer_email": payload.signer_email,
                "signer_phone": payload.signer_phone,
                "signer_document": payload.signer_document,
                "signature_data": payload.signature_data,
                "client_observations": payload.client_observations,
                "signer_ip": ip,
                "signed_at": _utc_now(),
            },
            action="sign",
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(proposal)
    logger.info(
        "proposal_signed",
        extra={
            "proposal_id": proposal.id,
            "proposal_number": proposal.proposal_number,
            "outcome": to_status.value,
            "payable": valuation.payable,
            "discount_applied": valuation.discount_applied,
        },
    )
    record_access(db, proposal, "sign", ip=ip, user_agent=user_agent)
    notifications.dispatch(
        notifications.PROPOSAL_SIGNED,
        {
            "proposal_id": proposal.id,
            "proposal_number": proposal.proposal_number,
            "status": to_status.value,
            "total_value": valuation.payable,
        },
        user_id=proposal.created_by,
    )
    return proposal


def reject_proposal(
    db: Session,
    token: str,
    payload: RejectProposalRequest,
    *,
    ip: str | None = None,
    user_agent: str | None = None,
) -> models.Proposal:
    proposal = resolve_public(db, token)
    _ensure_open(proposal)
    try:
        transitions.transition(
            db,
            proposal,
            ProposalStatus.rejected,
            updates={"rejection_reason": payload.reason, "rejected_at": _utc_now()},
            action="reject",
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(proposal)
    logger.info(
        "proposal_rejected",
        extra={"proposal_id": proposal.id, "proposal_number": proposal.proposal_number},
    )
    record_access(db, proposal, "reject", ip=ip, user_agent=user_agent)
    notifications.dispatch(
        notifications.PROPOSAL_REJECTED,
        {"proposal_id": proposal.id, "proposal_number": proposal.proposal_number},
        user_id=proposal.created_by,
    )
    return proposal

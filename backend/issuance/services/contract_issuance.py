"""Contract issuance and maintenance.

Issuing a contract touches several tables: the contract row, the standing
zero-valued services every contract carries, the requested line items (plus
sub-allocation percentages for one category), payment methods, the
installment schedule and the team assignments. All of it runs in one session
transaction; a failure after the contract row was flushed rolls that
transaction back and is reported as ``PartialFailureError`` with
``compensated`` telling whether the row is really gone.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Iterable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from issuance import models
from issuance.config import settings
from issuance.core.exceptions import (
    NotFoundError,
    PartialFailureError,
    StateError,
    ValidationError,
)
from issuance.database import dialect_name
from issuance.models.domain import (
    BarterType,
    ContractStatus,
    LineItemStatus,
    PaymentValueType,
    ProposalStatus,
)
from issuance.schemas.contracts import ContractCreate, ContractUpdate, PaymentMethodIn
from issuance.schemas.proposals import ConvertProposalRequest
from issuance.services import (
    assignment_ledger,
    directory,
    document_numbering,
    installment_scheduler,
    notifications,
    payment_terms,
    proposal_transitions,
)
from issuance.services.assignment_ledger import OwnerFallbackPolicy
from issuance.services.line_items import ConsolidatedLineItem, consolidate_line_items
from issuance.services.valuation import is_selected

logger = logging.getLogger("issuance.contracts")

DEFAULT_SUB_ALLOCATIONS = {
    "administrative": 100.0,
    "commercial": 100.0,
    "operational": 100.0,
    "internship": 50.0,
}


@dataclass
class ContractDraft:
    client_id: int
    kind: models.ContractKind
    line_items: list[Any]
    payment_methods: list[Any] = field(default_factory=list)
    installment_count: int = 1
    first_installment_date: date | None = None
    total_value: float | None = None
    barter_type: BarterType | None = None
    barter_value: float | None = None
    start_date: date | None = None
    end_date: date | None = None
    notes: str | None = None
    assigned_user_ids: list[int] = field(default_factory=list)
    proposal_id: int | None = None


def sub_allocation_values(provided: dict[str, float] | None) -> dict[str, float]:
    values = dict(DEFAULT_SUB_ALLOCATIONS)
    for key, value in (provided or {}).items():
        if key in values and value is not None:
            values[key] = float(value)
    return values


def _insert_standing_line_items(
    db: Session, contract: models.Contract, service_ids: Iterable[int]
) -> None:
    for service_id in service_ids:
        db.add(
            models.ContractLineItem(
                contract_id=contract.id,
                service_id=service_id,
                quantity=1,
                unit_value=0.0,
                total_value=0.0,
                status=LineItemStatus.not_started,
            )
        )
    db.flush()


def _insert_line_item(
    db: Session,
    contract: models.Contract,
    item: ConsolidatedLineItem,
    service: models.Service,
) -> models.ContractLineItem:
    row = models.ContractLineItem(
        contract_id=contract.id,
        service_id=item.service_id,
        quantity=item.quantity,
        unit_value=item.unit_value,
        total_value=item.total_value,
        status=LineItemStatus.not_started,
    )
    db.add(row)
    db.flush()

    if service.category == settings.sub_allocation_category:
        db.add(
            models.ContractLineItemAllocation(
                line_item_id=row.id, **sub_allocation_values(item.sub_allocations)
            )
        )
    elif item.sub_allocations:
        logger.warning(
            "sub_allocations_ignored",
            extra={"contract_id": contract.id, "service_id": item.service_id},
        )
    return row


def _insert_requested_line_items(
    db: Session,
    contract: models.Contract,
    items: list[ConsolidatedLineItem],
    services: dict[int, models.Service],
) -> None:
    for item in items:
        _insert_line_item(db, contract, item, services[item.service_id])
    db.flush()


def _replace_payment_methods(
    db: Session, contract: models.Contract, methods: Iterable[Any]
) -> None:
    db.query(models.ContractPaymentMethod).filter(
        models.ContractPaymentMethod.contract_id == contract.id
    ).delete(synchronize_session="fetch")
    db.expire(contract, ["payment_methods"])
    for order, method in enumerate(methods, start=1):
        value_type = PaymentValueType(method.value_type)
        db.add(
            models.ContractPaymentMethod(
                contract_id=contract.id,
                payment_method=method.payment_method,
                value_type=value_type,
                percentage=method.percentage if value_type == PaymentValueType.percentage else None,
                fixed_value=(
                    method.fixed_value if value_type == PaymentValueType.fixed_value else None
                ),
                sort_order=order,
            )
        )
    db.flush()


def _schedule(db: Session, contract: models.Contract, cash_total: float) -> None:
    count = int(contract.installment_count or 1)
    first = contract.first_installment_date or date.today()
    installment_scheduler.replace_schedule(
        db,
        contract=contract,
        total=cash_total,
        count=count,
        first_due_date=first,
        interval_days=settings.installment_interval_days,
    )
    contract.installment_value = round(cash_total / count, 2) if count > 1 else None


def _compensate(db: Session, contract_number: str) -> bool:
    """Undo a half-issued contract. True when no row with ``contract_number`` remains."""

    try:
        db.rollback()
    except SQLAlchemyError:
        logger.exception("contract_rollback_failed", extra={"contract_number": contract_number})
        return False

    try:
        leftover = (
            db.query(models.Contract)
            .filter(models.Contract.contract_number == contract_number)
            .first()
        )
        if leftover is None:
            return True
        delete_contract_tree(db, leftover.id)
        db.commit()
        return True
    except SQLAlchemyError:
        logger.exception("contract_compensation_failed", extra={"contract_number": contract_number})
        db.rollback()
        return False


def issue_contract(
    db: Session,
    draft: ContractDraft,
    *,
    actor_id: int,
    now=None,
    sleep: Callable[[float], None] = time.sleep,
) -> models.Contract:
    # Validate and look everything up before the first write.
    client = directory.get_client(db, draft.client_id)
    items = consolidate_line_items(draft.line_items)
    if not items:
        raise ValidationError("At least one line item with a service is required")
    services = directory.get_services(db, [i.service_id for i in items])

    installment_count = int(draft.installment_count or 1)
    if installment_count < 1:
        raise ValidationError("installment_count must be >= 1")

    total = round(
        float(draft.total_value)
        if draft.total_value is not None
        else sum(i.total_value for i in items),
        2,
    )
    cash_total = payment_terms.cash_collectible(total, draft.barter_type, draft.barter_value)
    payment_terms.resolve_amounts(draft.payment_methods, cash_total)
    payment_terms.ensure_installable(
        [m.payment_method for m in draft.payment_methods], installment_count
    )

    for user_id in draft.assigned_user_ids:
        if db.get(models.User, int(user_id)) is None:
            raise ValidationError(f"Unknown user {user_id}")

    requested_ids = {i.service_id for i in items}
    standing_ids = [
        s.id
        for s in directory.always_included_services(db, settings.always_included_category)
        if s.id not in requested_ids
    ]

    proposal = None
    if draft.proposal_id is not None:
        proposal = db.get(models.Proposal, int(draft.proposal_id))
        if proposal is None:
            raise NotFoundError("Proposal", draft.proposal_id)

    client_id = client.id
    first_installment_date = draft.first_installment_date or (
        date.today() if installment_count > 1 else None
    )

    def _build(number: str) -> models.Contract:
        return models.Contract(
            contract_number=number,
            client_id=client_id,
            kind=draft.kind,
            status=ContractStatus.active.value,
            total_value=total,
            installment_count=installment_count,
            first_installment_date=first_installment_date,
            barter_type=draft.barter_type,
            barter_value=draft.barter_value,
            start_date=draft.start_date,
            end_date=draft.end_date,
            notes=draft.notes,
            proposal_id=draft.proposal_id,
            created_by=actor_id,
        )

    contract = document_numbering.insert_with_yearly_number(
        db,
        column=models.Contract.contract_number,
        prefix=settings.contract_number_prefix,
        build=_build,
        now=now,
        max_insert_attempts=settings.number_insert_attempts,
        max_attempts=settings.number_allocation_attempts,
        backoff_ms=(settings.number_backoff_min_ms, settings.number_backoff_max_ms),
        sleep=sleep,
    )
    contract_number = contract.contract_number

    step = "line_items"
    try:
        _insert_standing_line_items(db, contract, standing_ids)
        _insert_requested_line_items(db, contract, items, services)

        step = "payment_methods"
        _replace_payment_methods(db, contract, draft.payment_methods)

        step = "installments"
        if installment_count > 1:
            _schedule(db, contract, cash_total)

        step = "assignments"
        assignment_ledger.seed_assignments(
            db,
            contract_id=contract.id,
            owner_id=actor_id,
            viewer_ids=draft.assigned_user_ids,
        )

        if proposal is not None:
            step = "proposal"
            proposal_transitions.transition(
                db,
                proposal,
                ProposalStatus.converted,
                updates={"converted_to_contract_id": contract.id},
                action="convert",
            )

        db.commit()
    except StateError:
        # Someone converted the proposal first; nothing of ours may survive.
        db.rollback()
        raise
    except Exception as exc:
        compensated = _compensate(db, contract_number)
        logger.error(
            "contract_issue_failed",
            extra={
                "contract_number": contract_number,
                "step": step,
                "compensated": compensated,
                "error": str(exc),
            },
        )
        raise PartialFailureError(
            step=step,
            contract_number=contract_number,
            compensated=compensated,
            reason=type(exc).__name__,
        ) from exc

    db.refresh(contract)
    logger.info(
        "contract_issued",
        extra={
            "contract_id": contract.id,
            "contract_number": contract.contract_number,
            "proposal_id": draft.proposal_id,
            "total_value": contract.total_value,
        },
    )
    notifications.dispatch(
        notifications.CONTRACT_CREATED,
        {
            "contract_id": contract.id,
            "contract_number": contract.contract_number,
            "client_id": contract.client_id,
            "total_value": contract.total_value,
            "proposal_id": draft.proposal_id,
        },
        user_id=actor_id,
    )
    return contract


def create_contract(
    db: Session, payload: ContractCreate, *, actor_id: int, **kwargs
) -> models.Contract:
    draft = ContractDraft(
        client_id=payload.client_id,
        kind=payload.kind,
        line_items=list(payload.line_items),
        payment_methods=list(payload.payment_methods),
        installment_count=payload.installment_count,
        first_installment_date=payload.first_installment_date,
        total_value=payload.total_value,
        barter_type=payload.barter_type,
        barter_value=payload.barter_value,
        start_date=payload.start_date,
        end_date=payload.end_date,
        notes=payload.notes,
        assigned_user_ids=list(payload.assigned_user_ids),
    )
    return issue_contract(db, draft, actor_id=actor_id, **kwargs)


def convert_proposal(
    db: Session,
    proposal_id: int,
    payload: ConvertProposalRequest,
    *,
    actor_id: int,
    **kwargs,
) -> models.Contract:
    proposal = db.get(models.Proposal, int(proposal_id))
    if proposal is None:
        raise NotFoundError("Proposal", proposal_id)

    status = proposal_transitions.effective_status(proposal)
    if status not in proposal_transitions.CONVERTIBLE_STATUSES:
        raise StateError(
            f"Cannot convert a proposal in status {status.value}", current_status=status.value
        )

    if proposal.use_fixed_global_value:
        billable = list(proposal.line_items)
    else:
        billable = [li for li in proposal.line_items if is_selected(li)]

    methods = []
    if proposal.payment_method:
        methods = [
            PaymentMethodIn(
                payment_method=proposal.payment_method,
                value_type=PaymentValueType.percentage,
                percentage=100.0,
            )
        ]

    draft = ContractDraft(
        client_id=proposal.client_id,
        kind=proposal.kind,
        line_items=[
            ConsolidatedLineItem(
                service_id=li.service_id,
                unit_value=li.unit_value,
                total_value=li.total_value,
                quantity=li.quantity,
            )
            for li in billable
        ],
        payment_methods=methods,
        installment_count=int(proposal.installment_count or 1),
        first_installment_date=payload.first_installment_date,
        total_value=proposal.total_value,
        start_date=payload.start_date,
        end_date=payload.end_date,
        notes=payload.notes,
        assigned_user_ids=list(payload.assigned_user_ids),
        proposal_id=proposal.id,
    )
    return issue_contract(db, draft, actor_id=actor_id, **kwargs)


def get_contract(db: Session, contract_id: int) -> models.Contract:
    contract = db.get(models.Contract, int(contract_id))
    if contract is None:
        raise NotFoundError("Contract", contract_id)
    return contract


def _load_for_update(db: Session, contract_id: int) -> models.Contract:
    q = db.query(models.Contract).filter(models.Contract.id == int(contract_id))
    # SQLite doesn't support FOR UPDATE; other DBs serialize same-contract edits on the row lock.
    if dialect_name(db) not in {"sqlite", ""}:
        q = q.with_for_update()
    contract = q.first()
    if contract is None:
        raise NotFoundError("Contract", contract_id)
    return contract


def _reconcile_line_items(
    db: Session, contract: models.Contract, requested: list[Any]
) -> None:
    items = consolidate_line_items(requested)
    if not items:
        raise ValidationError("At least one line item with a service is required")
    services = directory.get_services(db, [i.service_id for i in items])
    wanted = {i.service_id: i for i in items}

    standing_ids = {
        s.id for s in directory.always_included_services(db, settings.always_included_category)
    }
    existing = {li.service_id: li for li in contract.line_items}

    removed = [
        li
        for service_id, li in existing.items()
        if service_id not in wanted and service_id not in standing_ids
    ]
    for li in removed:
        # Allocation rows go with their line item (delete-orphan cascade).
        contract.line_items.remove(li)

    # Standing services stay on the contract but fall back to zero once no longer requested.
    for service_id in standing_ids - set(wanted):
        current = existing.get(service_id)
        if current is not None:
            current.unit_value = 0.0
            current.total_value = 0.0
            current.quantity = 1
    db.flush()

    for service_id, item in wanted.items():
        current = existing.get(service_id)
        if current is None:
            _insert_line_item(db, contract, item, services[service_id])
            continue
        if (
            current.unit_value != item.unit_value
            or current.total_value != item.total_value
            or current.quantity != item.quantity
        ):
            current.unit_value = item.unit_value
            current.total_value = item.total_value
            current.quantity = item.quantity
        if services[service_id].category == settings.sub_allocation_category and item.sub_allocations:
            if current.allocation is None:
                current.allocation = models.ContractLineItemAllocation(
                    **sub_allocation_values(item.sub_allocations)
                )
            else:
                for key, value in item.sub_allocations.items():
                    if key in DEFAULT_SUB_ALLOCATIONS:
                        setattr(current.allocation, key, float(value))
    db.flush()
    db.expire(contract, ["line_items"])

    logger.info(
        "contract_line_items_reconciled",
        extra={
            "contract_id": contract.id,
            "removed": [li.service_id for li in removed],
            "added": [s for s in wanted if s not in existing],
        },
    )


def update_contract(
    db: Session,
    contract_id: int,
    payload: ContractUpdate,
    *,
    actor_id: int,
    policy: OwnerFallbackPolicy | None = None,
) -> models.Contract:
    """Diff-and-reconcile edit of an issued contract, committed as one transaction."""

    policy = policy or OwnerFallbackPolicy(settings.owner_removal_policy)
    try:
        contract = _load_for_update(db, contract_id)
        if contract.status == ContractStatus.cancelled.value:
            raise StateError("Cancelled contracts cannot be edited", current_status="cancelled")

        fields = payload.model_fields_set
        previous_total = float(contract.total_value or 0.0)
        previous_cash = payment_terms.cash_collectible(
            previous_total, contract.barter_type, contract.barter_value
        )
        previous_count = int(contract.installment_count or 1)
        previous_first = contract.first_installment_date

        if payload.line_items is not None:
            _reconcile_line_items(db, contract, payload.line_items)
            contract.total_value = round(sum(li.total_value for li in contract.line_items), 2)

        for name in ("barter_type", "barter_value", "start_date", "end_date", "notes"):
            if name in fields:
                setattr(contract, name, getattr(payload, name))
        if payload.installment_count is not None:
            contract.installment_count = int(payload.installment_count)
        if payload.first_installment_date is not None:
            contract.first_installment_date = payload.first_installment_date

        cash_total = payment_terms.cash_collectible(
            contract.total_value, contract.barter_type, contract.barter_value
        )

        if payload.payment_methods is not None:
            methods = list(payload.payment_methods)
            payment_terms.resolve_amounts(methods, cash_total)
            _replace_payment_methods(db, contract, methods)
        else:
            methods = list(contract.payment_methods)
            if abs(cash_total - previous_cash) > payment_terms.TOLERANCE:
                payment_terms.resolve_amounts(methods, cash_total)
        payment_terms.ensure_installable(
            [m.payment_method for m in methods], int(contract.installment_count)
        )

        schedule_changed = (
            abs(cash_total - previous_cash) > payment_terms.TOLERANCE
            or int(contract.installment_count) != previous_count
            or contract.first_installment_date != previous_first
        )
        if schedule_changed:
            if contract.first_installment_date is None and int(contract.installment_count) > 1:
                contract.first_installment_date = date.today()
            _schedule(db, contract, cash_total)

        if payload.assigned_user_ids is not None:
            assignment_ledger.sync_assignments(
                db,
                contract_id=contract.id,
                user_ids=payload.assigned_user_ids,
                initiator_id=actor_id,
                policy=policy,
            )

        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(contract)
    logger.info(
        "contract_updated",
        extra={
            "contract_id": contract.id,
            "total_value": contract.total_value,
            "installment_count": contract.installment_count,
            "rescheduled": schedule_changed,
        },
    )
    return contract


def regenerate_schedule(
    db: Session,
    contract_id: int,
    *,
    installment_count: int,
    first_due_date: date,
    interval_days: int | None = None,
) -> list[models.Installment]:
    try:
        contract = _load_for_update(db, contract_id)
        if contract.status == ContractStatus.cancelled.value:
            raise StateError("Cancelled contracts cannot be rescheduled", current_status="cancelled")
        methods = [m.payment_method for m in contract.payment_methods]
        payment_terms.ensure_installable(methods, installment_count)

        cash_total = payment_terms.cash_collectible(
            contract.total_value, contract.barter_type, contract.barter_value
        )
        contract.installment_count = int(installment_count)
        contract.first_installment_date = first_due_date
        rows = installment_scheduler.replace_schedule(
            db,
            contract=contract,
            total=cash_total,
            count=installment_count,
            first_due_date=first_due_date,
            interval_days=interval_days or settings.installment_interval_days,
        )
        contract.installment_value = (
            round(cash_total / int(installment_count), 2) if int(installment_count) > 1 else None
        )
        db.commit()
    except Exception:
        db.rollback()
        raise
    for row in rows:
        db.refresh(row)
    return rows


def change_status(db: Session, contract_id: int, new_status: ContractStatus) -> models.Contract:
    contract = get_contract(db, contract_id)
    current = ContractStatus(contract.status)
    if current == ContractStatus.cancelled and new_status != ContractStatus.cancelled:
        raise StateError("Cancelled contracts cannot be reopened", current_status=current.value)
    contract.status = new_status.value
    db.commit()
    db.refresh(contract)
    logger.info(
        "contract_status_changed",
        extra={"contract_id": contract.id, "from": current.value, "to": new_status.value},
    )
    return contract


def cancel_contract(db: Session, contract_id: int) -> models.Contract:
    return change_status(db, contract_id, ContractStatus.cancelled)


def delete_contract_tree(db: Session, contract_id: int) -> None:
    """Remove a contract and every dependent row. Does not commit."""

    db.query(models.Proposal).filter(
        models.Proposal.converted_to_contract_id == int(contract_id)
    ).update({"converted_to_contract_id": None}, synchronize_session=False)

    line_item_ids = [
        row[0]
        for row in db.query(models.ContractLineItem.id)
        .filter(models.ContractLineItem.contract_id == int(contract_id))
        .all()
    ]
    if line_item_ids:
        db.query(models.ContractLineItemAllocation).filter(
            models.ContractLineItemAllocation.line_item_id.in_(line_item_ids)
        ).delete(synchronize_session=False)

    for model in (
        models.ContractLineItem,
        models.ContractAssignment,
        models.Installment,
        models.ContractPaymentMethod,
    ):
        db.query(model).filter(model.contract_id == int(contract_id)).delete(
            synchronize_session=False
        )
    db.query(models.Contract).filter(models.Contract.id == int(contract_id)).delete(
        synchronize_session=False
    )
    db.expire_all()


def hard_delete_contract(db: Session, contract_id: int) -> None:
    get_contract(db, contract_id)
    try:
        delete_contract_tree(db, contract_id)
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.warning("contract_hard_deleted", extra={"contract_id": int(contract_id)})


def list_contracts(
    db: Session,
    *,
    visible_to_user_id: int | None = None,
    status: ContractStatus | None = None,
    client_id: int | None = None,
    limit: int = 100,
    offset: int = 0,
) -> list[models.Contract]:
    q = db.query(models.Contract)
    if visible_to_user_id is not None:
        q = q.join(
            models.ContractAssignment,
            models.ContractAssignment.contract_id == models.Contract.id,
        ).filter(
            models.ContractAssignment.user_id == int(visible_to_user_id),
            models.ContractAssignment.active.is_(True),
        )
    if status is not None:
        q = q.filter(models.Contract.status == status.value)
    if client_id is not None:
        q = q.filter(models.Contract.client_id == int(client_id))
    return q.order_by(models.Contract.id.desc()).offset(offset).limit(limit).all()


def set_line_item_status(
    db: Session, contract_id: int, line_item_id: int, new_status: LineItemStatus
) -> models.ContractLineItem:
    contract = get_contract(db, contract_id)
    if contract.status == ContractStatus.cancelled.value:
        raise StateError("Cancelled contracts cannot be edited", current_status="cancelled")
    line_item = db.get(models.ContractLineItem, int(line_item_id))
    if line_item is None or line_item.contract_id != contract.id:
        raise NotFoundError("Line item", line_item_id)
    line_item.status = new_status
    db.commit()
    db.refresh(line_item)
    return line_item

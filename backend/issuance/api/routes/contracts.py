from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.orm import Session

from issuance import models
from issuance.api.deps import (
    CONTRACT_OWNERS,
    CONTRACT_WRITERS,
    ensure_contract_access,
    get_current_user,
    is_admin,
    require_roles,
)
from issuance.config import settings
from issuance.database import get_db
from issuance.schemas import (
    AssignmentCreate,
    AssignmentRead,
    AssignmentRoleUpdate,
    ContractCreate,
    ContractLineItemRead,
    ContractRead,
    ContractStatusUpdate,
    ContractSummaryRead,
    ContractUpdate,
    InstallmentRead,
    InstallmentScheduleRequest,
    InstallmentSummaryRead,
    LineItemStatusUpdate,
    PaymentMethodRead,
)
from issuance.services import assignment_ledger, contract_issuance, installment_scheduler
from issuance.services.assignment_ledger import OwnerFallbackPolicy

router = APIRouter(prefix="/contracts", tags=["contracts"])

_ISSUERS = require_roles(models.RoleName.comercial, models.RoleName.financeiro)


def _policy() -> OwnerFallbackPolicy:
    return OwnerFallbackPolicy(settings.owner_removal_policy)


@router.post("", response_model=ContractRead, status_code=status.HTTP_201_CREATED)
def create_contract(
    payload: ContractCreate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(_ISSUERS),
):
    return contract_issuance.create_contract(db, payload, actor_id=current_user.id)


@router.get("", response_model=List[ContractSummaryRead])
def list_contracts(
    status_filter: Optional[models.ContractStatus] = Query(None, alias="status"),
    client_id: Optional[int] = None,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    return contract_issuance.list_contracts(
        db,
        visible_to_user_id=None if is_admin(current_user) else current_user.id,
        status=status_filter,
        client_id=client_id,
        limit=limit,
        offset=offset,
    )


@router.get("/{contract_id}", response_model=ContractRead)
def get_contract(
    contract_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    contract = contract_issuance.get_contract(db, contract_id)
    ensure_contract_access(db, current_user, contract.id)
    return contract


@router.put("/{contract_id}", response_model=ContractRead)
def update_contract(
    contract_id: int,
    payload: ContractUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    contract_issuance.get_contract(db, contract_id)
    ensure_contract_access(db, current_user, contract_id, CONTRACT_WRITERS)
    return contract_issuance.update_contract(
        db, contract_id, payload, actor_id=current_user.id, policy=_policy()
    )


@router.patch("/{contract_id}/status", response_model=ContractRead)
def update_contract_status(
    contract_id: int,
    payload: ContractStatusUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    contract_issuance.get_contract(db, contract_id)
    ensure_contract_access(db, current_user, contract_id, CONTRACT_WRITERS)
    return contract_issuance.change_status(db, contract_id, payload.status)


@router.delete("/{contract_id}", response_model=ContractRead)
def cancel_contract(
    contract_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    contract_issuance.get_contract(db, contract_id)
    ensure_contract_access(db, current_user, contract_id, CONTRACT_OWNERS)
    return contract_issuance.cancel_contract(db, contract_id)


@router.delete("/{contract_id}/hard", status_code=status.HTTP_204_NO_CONTENT)
def hard_delete_contract(
    contract_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(require_roles(models.RoleName.admin)),
):
    contract_issuance.hard_delete_contract(db, contract_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.patch(
    "/{contract_id}/line-items/{line_item_id}/status", response_model=ContractLineItemRead
)
def update_line_item_status(
    contract_id: int,
    line_item_id: int,
    payload: LineItemStatusUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    contract_issuance.get_contract(db, contract_id)
    ensure_contract_access(db, current_user, contract_id, CONTRACT_WRITERS)
    return contract_issuance.set_line_item_status(db, contract_id, line_item_id, payload.status)


@router.get("/{contract_id}/payment-methods", response_model=List[PaymentMethodRead])
def list_payment_methods(
    contract_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    contract = contract_issuance.get_contract(db, contract_id)
    ensure_contract_access(db, current_user, contract.id)
    return contract.payment_methods


# Installments


@router.get("/{contract_id}/installments", response_model=List[InstallmentRead])
def list_installments(
    contract_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    contract = contract_issuance.get_contract(db, contract_id)
    ensure_contract_access(db, current_user, contract.id)
    return contract.installments


@router.get("/{contract_id}/installments/summary", response_model=InstallmentSummaryRead)
def installment_summary(
    contract_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    contract = contract_issuance.get_contract(db, contract_id)
    ensure_contract_access(db, current_user, contract.id)
    return installment_scheduler.summarize(list(contract.installments))


@router.post("/{contract_id}/installments/schedule", response_model=List[InstallmentRead])
def regenerate_installments(
    contract_id: int,
    payload: InstallmentScheduleRequest,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    contract_issuance.get_contract(db, contract_id)
    ensure_contract_access(db, current_user, contract_id, CONTRACT_WRITERS)
    return contract_issuance.regenerate_schedule(
        db,
        contract_id,
        installment_count=payload.installment_count,
        first_due_date=payload.first_due_date,
        interval_days=payload.interval_days,
    )


# Assignments


@router.get("/{contract_id}/assignments", response_model=List[AssignmentRead])
def list_assignments(
    contract_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    contract_issuance.get_contract(db, contract_id)
    ensure_contract_access(db, current_user, contract_id)
    return assignment_ledger.active_assignments(db, contract_id)


@router.post(
    "/{contract_id}/assignments",
    response_model=AssignmentRead,
    status_code=status.HTTP_201_CREATED,
)
def add_assignment(
    contract_id: int,
    payload: AssignmentCreate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    contract_issuance.get_contract(db, contract_id)
    ensure_contract_access(db, current_user, contract_id, CONTRACT_OWNERS)
    try:
        entry = assignment_ledger.assign_user(
            db,
            contract_id=contract_id,
            user_id=payload.user_id,
            role=payload.role,
            assigned_by=current_user.id,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(entry)
    return entry


@router.patch("/{contract_id}/assignments/{user_id}", response_model=AssignmentRead)
def change_assignment_role(
    contract_id: int,
    user_id: int,
    payload: AssignmentRoleUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    contract_issuance.get_contract(db, contract_id)
    ensure_contract_access(db, current_user, contract_id, CONTRACT_OWNERS)
    try:
        entry = assignment_ledger.change_role(
            db,
            contract_id=contract_id,
            user_id=user_id,
            role=payload.role,
            initiator_id=current_user.id,
            policy=_policy(),
        )
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(entry)
    return entry


@router.delete("/{contract_id}/assignments/{user_id}", response_model=AssignmentRead)
def remove_assignment(
    contract_id: int,
    user_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    contract_issuance.get_contract(db, contract_id)
    ensure_contract_access(db, current_user, contract_id, CONTRACT_OWNERS)
    try:
        entry = assignment_ledger.remove_user(
            db,
            contract_id=contract_id,
            user_id=user_id,
            initiator_id=current_user.id,
            policy=_policy(),
        )
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(entry)
    return entry

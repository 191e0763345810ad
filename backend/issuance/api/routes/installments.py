from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from issuance import models
from issuance.api.deps import CONTRACT_WRITERS, ensure_contract_access, get_current_user
from issuance.core.exceptions import NotFoundError
from issuance.database import get_db
from issuance.schemas import InstallmentRead, InstallmentStatusUpdate
from issuance.services import installment_scheduler

router = APIRouter(prefix="/installments", tags=["installments"])


@router.patch("/{installment_id}/status", response_model=InstallmentRead)
def update_installment_status(
    installment_id: int,
    payload: InstallmentStatusUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    installment = db.get(models.Installment, installment_id)
    if installment is None:
        raise NotFoundError("Installment", installment_id)
    ensure_contract_access(db, current_user, installment.contract_id, CONTRACT_WRITERS)

    try:
        installment = installment_scheduler.set_installment_status(
            db,
            installment_id=installment_id,
            status=payload.status,
            paid_amount=payload.paid_amount,
            paid_date=payload.paid_date,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(installment)
    return installment

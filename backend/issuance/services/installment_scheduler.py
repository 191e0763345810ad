from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal

from sqlalchemy.orm import Session

from issuance import models
from issuance.core.exceptions import NotFoundError, StateError, ValidationError
from issuance.models.domain import InstallmentStatus

logger = logging.getLogger("issuance.installments")

_CENT = Decimal("0.01")


@dataclass(frozen=True)
class PlannedInstallment:
    installment_number: int
    due_date: date
    amount: float
    notes: str


@dataclass(frozen=True)
class InstallmentSummary:
    count: int
    total_amount: float
    paid_amount: float
    pending_amount: float
    overdue_amount: float
    paid_count: int
    pending_count: int
    overdue_count: int


def plan_installments(
    total: float,
    count: int,
    first_due_date: date,
    interval_days: int = 30,
) -> list[PlannedInstallment]:
    """Split ``total`` into ``count`` equal installments spaced ``interval_days`` apart.

    Amounts are rounded to cents and the last installment takes whatever the
    rounding left over, so the amounts always add up to ``total``. A count of 1
    means a single obligation for the whole value and yields no rows.
    """

    count = int(count)
    if count < 1:
        raise ValidationError("installment count must be >= 1")
    if int(interval_days) < 1:
        raise ValidationError("installment interval must be >= 1 day")
    if total is None or float(total) < 0:
        raise ValidationError("installment total must be >= 0")
    if count == 1:
        return []

    total_dec = Decimal(str(total)).quantize(_CENT, rounding=ROUND_HALF_UP)
    share = (total_dec / count).quantize(_CENT, rounding=ROUND_DOWN)
    last = total_dec - share * (count - 1)

    planned: list[PlannedInstallment] = []
    for i in range(1, count + 1):
        amount = last if i == count else share
        planned.append(
            PlannedInstallment(
                installment_number=i,
                due_date=first_due_date + timedelta(days=(i - 1) * int(interval_days)),
                amount=float(amount),
                notes=f"Parcela {i} de {count}",
            )
        )
    return planned


def replace_schedule(
    db: Session,
    *,
    contract: models.Contract,
    total: float,
    count: int,
    first_due_date: date,
    interval_days: int = 30,
) -> list[models.Installment]:
    """Delete-then-insert the contract's schedule inside the caller's transaction."""

    planned = plan_installments(total, count, first_due_date, interval_days)

    db.query(models.Installment).filter(models.Installment.contract_id == contract.id).delete(
        synchronize_session="fetch"
    )
    db.expire(contract, ["installments"])

    rows = [
        models.Installment(
            contract_id=contract.id,
            installment_number=p.installment_number,
            due_date=p.due_date,
            amount=p.amount,
            status=InstallmentStatus.pending,
            notes=p.notes,
        )
        for p in planned
    ]
    db.add_all(rows)
    db.flush()

    logger.info(
        "installment_schedule_replaced",
        extra={"contract_id": contract.id, "count": len(rows), "total": float(total)},
    )
    return rows


def set_installment_status(
    db: Session,
    *,
    installment_id: int,
    status: InstallmentStatus,
    paid_amount: float | None = None,
    paid_date: date | None = None,
    today: date | None = None,
) -> models.Installment:
    installment = db.get(models.Installment, int(installment_id))
    if installment is None:
        raise NotFoundError("Installment", installment_id)

    contract = db.get(models.Contract, installment.contract_id)
    if contract is not None and contract.status == models.ContractStatus.cancelled.value:
        raise StateError("Installments of a cancelled contract cannot change", current_status="cancelled")

    if status == InstallmentStatus.paid:
        amount = installment.amount if paid_amount is None else float(paid_amount)
        if amount <= 0:
            raise ValidationError("paid amount must be > 0")
        installment.paid_amount = round(amount, 2)
        installment.paid_date = paid_date or today or date.today()
    else:
        if paid_amount is not None:
            raise ValidationError("paid amount is only accepted when marking an installment paid")
        installment.paid_amount = None
        installment.paid_date = None

    installment.status = status
    db.flush()
    return installment


def mark_overdue_installments(db: Session, *, today: date | None = None) -> int:
    today = today or date.today()
    rowcount = (
        db.query(models.Installment)
        .filter(models.Installment.status == InstallmentStatus.pending)
        .filter(models.Installment.due_date < today)
        .update({"status": InstallmentStatus.overdue}, synchronize_session=False)
    )
    return int(rowcount or 0)


def summarize(installments: list[models.Installment]) -> InstallmentSummary:
    def _sum(status: InstallmentStatus | None) -> float:
        return round(
            sum(float(i.amount) for i in installments if status is None or i.status == status), 2
        )

    return InstallmentSummary(
        count=len(installments),
        total_amount=_sum(None),
        paid_amount=round(
            sum(float(i.paid_amount or i.amount) for i in installments if i.status == InstallmentStatus.paid),
            2,
        ),
        pending_amount=_sum(InstallmentStatus.pending),
        overdue_amount=_sum(InstallmentStatus.overdue),
        paid_count=sum(1 for i in installments if i.status == InstallmentStatus.paid),
        pending_count=sum(1 for i in installments if i.status == InstallmentStatus.pending),
        overdue_count=sum(1 for i in installments if i.status == InstallmentStatus.overdue),
    )

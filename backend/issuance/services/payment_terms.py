from __future__ import annotations

from typing import Any, Iterable

from issuance.core.exceptions import ValidationError
from issuance.models.domain import BarterType, PaymentValueType

ALLOWED_PAYMENT_METHODS = (
    "PIX",
    "Boleto",
    "Cartão de Crédito",
    "Cartão de Débito",
    "Transferência",
    "Pix Parcelado",
)
INSTALLABLE_PAYMENT_METHODS = frozenset({"Boleto", "Pix Parcelado"})

TOLERANCE = 0.01


def ensure_known_method(name: str) -> str:
    if name not in ALLOWED_PAYMENT_METHODS:
        raise ValidationError(f"Unsupported payment method: {name}")
    return name


def cash_collectible(
    total: float, barter_type: BarterType | None, barter_value: float | None
) -> float:
    """Portion of ``total`` paid in money once the barter/trade-in is taken out."""

    total = float(total)
    if barter_type is None or not barter_value:
        return round(total, 2)
    barter_value = float(barter_value)
    if barter_type == BarterType.percentage:
        if not 0 <= barter_value <= 100:
            raise ValidationError("barter percentage must be between 0 and 100")
        return round(total * (1 - barter_value / 100.0), 2)
    if barter_value > total + TOLERANCE:
        raise ValidationError("barter value cannot exceed the contract total")
    return round(max(0.0, total - barter_value), 2)


def resolve_amounts(methods: Iterable[Any], cash_total: float) -> list[float]:
    """Validate one or two payment methods against ``cash_total`` and return each one's amount."""

    methods = list(methods)
    if cash_total > 0 and not methods:
        raise ValidationError("At least one payment method is required")
    if len(methods) > 2:
        raise ValidationError("At most two payment methods are allowed")

    amounts: list[float] = []
    for method in methods:
        ensure_known_method(method.payment_method)
        value_type = PaymentValueType(method.value_type)
        if value_type == PaymentValueType.percentage:
            if method.percentage is None or not 0 < float(method.percentage) <= 100:
                raise ValidationError("percentage payment methods need a percentage in (0, 100]")
            amounts.append(round(cash_total * float(method.percentage) / 100.0, 2))
        else:
            if method.fixed_value is None or float(method.fixed_value) <= 0:
                raise ValidationError("fixed_value payment methods need a positive fixed_value")
            amounts.append(round(float(method.fixed_value), 2))

    if methods and abs(sum(amounts) - cash_total) > TOLERANCE + 1e-9:
        raise ValidationError(
            f"Payment methods add up to {round(sum(amounts), 2)} but the amount due is {cash_total}"
        )
    return amounts


def ensure_installable(methods: Iterable[str], installment_count: int) -> None:
    if int(installment_count) <= 1:
        return
    if not any(m in INSTALLABLE_PAYMENT_METHODS for m in methods):
        raise ValidationError(
            "Installments require one of: " + ", ".join(sorted(INSTALLABLE_PAYMENT_METHODS))
        )

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable

from issuance.core.exceptions import ValidationError
from issuance.models.domain import PaymentPolicy


@dataclass(frozen=True)
class DiscountRule:
    percentage: float | None = None
    value: float | None = None


@dataclass(frozen=True)
class DiscountConfig:
    pay_now: DiscountRule = DiscountRule()
    pay_later: DiscountRule = DiscountRule()

    def for_policy(self, policy: PaymentPolicy) -> DiscountRule:
        return self.pay_now if policy == PaymentPolicy.pay_now else self.pay_later


@dataclass(frozen=True)
class Valuation:
    base_value: float
    payable: float
    discount_applied: bool
    discount_amount: float
    selected_count: int
    line_count: int
    full_acceptance: bool


def validate_discount_config(config: DiscountConfig) -> None:
    for name, rule in (("pay_now", config.pay_now), ("pay_later", config.pay_later)):
        if rule.percentage is not None and not 0 <= float(rule.percentage) <= 100:
            raise ValidationError(f"{name} discount percentage must be between 0 and 100")
        if rule.value is not None and float(rule.value) < 0:
            raise ValidationError(f"{name} discount value must be >= 0")


def discount_config_from_proposal(proposal: Any) -> DiscountConfig:
    return DiscountConfig(
        pay_now=DiscountRule(
            percentage=proposal.pay_now_discount_percentage,
            value=proposal.pay_now_discount_value,
        ),
        pay_later=DiscountRule(
            percentage=proposal.pay_later_discount_percentage,
            value=proposal.pay_later_discount_value,
        ),
    )


def is_selected(line_item: Any) -> bool:
    # Line items the client never touched count as selected.
    selected = getattr(line_item, "selected", None)
    return True if selected is None else bool(selected)


def apply_discount(base: float, rule: DiscountRule) -> float:
    """Absolute value wins over percentage; neither configured leaves ``base`` untouched."""

    if rule.value is not None and float(rule.value) > 0:
        return max(0.0, base - float(rule.value))
    if rule.percentage is not None and float(rule.percentage) > 0:
        return base * (1 - float(rule.percentage) / 100.0)
    return base


def evaluate(
    line_items: Iterable[Any],
    *,
    discounts: DiscountConfig,
    policy: PaymentPolicy,
    use_fixed_global_value: bool = False,
    fixed_global_value: float | None = None,
) -> Valuation:
    items = list(line_items)
    selected = [li for li in items if is_selected(li)]
    full_acceptance = len(selected) == len(items)

    if use_fixed_global_value:
        if fixed_global_value is None:
            raise ValidationError("Fixed global value is enabled but not set")
        base = float(fixed_global_value)
    else:
        base = sum(float(li.total_value or 0.0) for li in selected)

    eligible = use_fixed_global_value or full_acceptance
    payable = apply_discount(base, discounts.for_policy(policy)) if eligible else base

    base = round(base, 2)
    payable = round(payable, 2)
    return Valuation(
        base_value=base,
        payable=payable,
        discount_applied=payable < base,
        discount_amount=round(base - payable, 2),
        selected_count=len(selected),
        line_count=len(items),
        full_acceptance=full_acceptance,
    )


def evaluate_proposal(proposal: Any, policy: PaymentPolicy) -> Valuation:
    return evaluate(
        proposal.line_items,
        discounts=discount_config_from_proposal(proposal),
        policy=policy,
        use_fixed_global_value=bool(proposal.use_fixed_global_value),
        fixed_global_value=proposal.fixed_global_value,
    )


def installment_value(payable: float, installment_count: int) -> float:
    if int(installment_count) < 1:
        raise ValidationError("installment count must be >= 1")
    return round(float(payable) / int(installment_count), 2)

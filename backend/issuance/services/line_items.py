from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

logger = logging.getLogger("issuance.line_items")


@dataclass(frozen=True)
class RequestedLineItem:
    service_id: int | None
    unit_value: float
    sub_allocations: Mapping[str, float] | None = None


@dataclass(frozen=True)
class ConsolidatedLineItem:
    service_id: int
    unit_value: float
    total_value: float
    quantity: int
    sub_allocations: Mapping[str, float] | None = field(default=None)


def _field(item: Any, name: str, default: Any = None) -> Any:
    if isinstance(item, Mapping):
        return item.get(name, default)
    return getattr(item, name, default)


def consolidate_line_items(items: Iterable[Any]) -> list[ConsolidatedLineItem]:
    """Merge repeated service references into one priced entry each.

    ``quantity`` counts the occurrences, ``total_value`` adds their values and
    ``unit_value`` keeps the lowest of them. Entries without a service
    reference are dropped with a warning. Output keeps first-seen order.

    Accepts ``RequestedLineItem``s, pydantic models or plain mappings.
    """

    order: list[int] = []
    merged: dict[int, dict[str, Any]] = {}

    for index, item in enumerate(items):
        service_id = _field(item, "service_id")
        if service_id is None:
            logger.warning("line_item_without_service_dropped", extra={"index": index})
            continue

        service_id = int(service_id)
        value = float(_field(item, "unit_value", 0.0) or 0.0)
        # Already-priced entries (e.g. proposal lines) bring their own quantity and total.
        quantity = int(_field(item, "quantity", 1) or 1)
        total = _field(item, "total_value")
        total = value * quantity if total is None else float(total)
        sub_allocations = _field(item, "sub_allocations")

        entry = merged.get(service_id)
        if entry is None:
            order.append(service_id)
            merged[service_id] = {
                "unit_value": value,
                "total_value": total,
                "quantity": quantity,
                "sub_allocations": sub_allocations,
            }
            continue

        entry["unit_value"] = min(entry["unit_value"], value)
        entry["total_value"] += total
        entry["quantity"] += quantity
        if entry["sub_allocations"] is None and sub_allocations is not None:
            entry["sub_allocations"] = sub_allocations

    if len(order) < sum(m["quantity"] for m in merged.values()):
        logger.info(
            "line_items_consolidated",
            extra={"distinct": len(order), "received": sum(m["quantity"] for m in merged.values())},
        )

    return [
        ConsolidatedLineItem(
            service_id=service_id,
            unit_value=round(merged[service_id]["unit_value"], 2),
            total_value=round(merged[service_id]["total_value"], 2),
            quantity=int(merged[service_id]["quantity"]),
            sub_allocations=_as_plain_dict(merged[service_id]["sub_allocations"]),
        )
        for service_id in order
    ]


def _as_plain_dict(value: Any) -> dict[str, float] | None:
    if value is None:
        return None
    if hasattr(value, "model_dump"):
        value = value.model_dump(exclude_none=True)
    return {str(k): float(v) for k, v in dict(value).items() if v is not None}

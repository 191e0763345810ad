from __future__ import annotations

import logging
from typing import Any

from issuance.services.audit import audit_event

logger = logging.getLogger("issuance.notifications")

CONTRACT_CREATED = "contract.created"
PROPOSAL_SIGNED = "proposal.signed"
PROPOSAL_REJECTED = "proposal.rejected"


def _deliver(event: str, user_id: int | None, payload: dict[str, Any]) -> None:
    # Delivery channels (e-mail, chat) hang off the audit trail; recording is the dispatch.
    audit_event(event, user_id, payload)


def dispatch(event: str, payload: dict[str, Any], *, user_id: int | None = None) -> None:
    """Fire-and-forget. Called after the business transaction committed; never raises."""

    try:
        _deliver(event, user_id, payload)
        logger.info("notification_dispatched", extra={"event": event, **_safe(payload)})
    except Exception as exc:
        logger.warning(
            "notification_failed",
            extra={"event": event, "error": str(exc), **_safe(payload)},
        )


def _safe(payload: dict[str, Any]) -> dict[str, Any]:
    # LogRecord reserves some attribute names; keep the identifiers only.
    keys = ("contract_number", "proposal_number", "contract_id", "proposal_id")
    return {k: payload[k] for k in keys if k in payload}

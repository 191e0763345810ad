"""Domain exceptions raised by the issuance engine.

Every exception carries a stable ``code`` and the HTTP status the API layer
maps it to. Services raise these; routes never build HTTP errors for domain
rules themselves.
"""

from __future__ import annotations

from typing import Any


class IssuanceError(Exception):
    code = "ISSUANCE_ERROR"
    http_status = 400

    def __init__(self, message: str = "", **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"detail": self.message, "code": self.code}
        if self.details:
            body["context"] = self.details
        return body


class ValidationError(IssuanceError):
    """Malformed input: missing client, empty line items, bad discount configuration."""

    code = "VALIDATION_ERROR"
    http_status = 400


class NotFoundError(IssuanceError):
    code = "NOT_FOUND"
    http_status = 404

    def __init__(self, entity: str, identifier: Any = None) -> None:
        message = f"{entity} not found" if identifier is None else f"{entity} {identifier} not found"
        super().__init__(message, entity=entity)
        self.entity = entity
        self.identifier = identifier


class ConflictError(IssuanceError):
    """Identifier race beyond the retry budget, or an owner removal that would orphan a contract."""

    code = "CONFLICT"
    http_status = 409


class StateError(IssuanceError):
    """Operation requested against a proposal or contract in an incompatible status."""

    code = "INVALID_STATE"
    http_status = 409

    def __init__(self, message: str, *, current_status: str | None = None) -> None:
        if current_status is not None:
            super().__init__(message, current_status=current_status)
        else:
            super().__init__(message)
        self.current_status = current_status


class PartialFailureError(IssuanceError):
    """A contract issuance step failed after the contract row was written.

    ``compensated`` tells whether the contract row is gone afterwards; when it
    is False somebody has to clean ``contract_number`` up by hand.
    """

    code = "PARTIAL_FAILURE"
    http_status = 500

    def __init__(self, *, step: str, contract_number: str, compensated: bool, reason: str = "") -> None:
        message = f"Contract {contract_number} could not be completed at step '{step}'"
        if not compensated:
            message += "; the contract row may remain and needs manual cleanup"
        super().__init__(
            message,
            step=step,
            contract_number=contract_number,
            compensated=compensated,
            reason=reason,
        )
        self.step = step
        self.contract_number = contract_number
        self.compensated = compensated

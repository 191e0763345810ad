"""Client-facing proposal endpoints, authenticated only by the proposal's public token.

Domain errors are collapsed into three answers so nothing internal leaks:
404 "not found or expired", 409 "already processed" and 400 "invalid input".
"""

import logging
from contextlib import contextmanager
from typing import Iterator

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from issuance.api.deps import client_ip
from issuance.core.exceptions import (
    ConflictError,
    IssuanceError,
    NotFoundError,
    StateError,
    ValidationError,
)
from issuance.database import get_db
from issuance.models import ProposalStatus
from issuance.schemas import (
    PublicProposalRead,
    RejectProposalRequest,
    SelectServicesRequest,
    SignProposalRequest,
)
from issuance.services import proposals as proposal_service

logger = logging.getLogger("issuance.public")

router = APIRouter(prefix="/public/proposals", tags=["public"])

NOT_FOUND = "Proposal not found or expired"
ALREADY_PROCESSED = "Proposal already processed"
INVALID_INPUT = "Invalid input"


@contextmanager
def _public_errors(action: str) -> Iterator[None]:
    try:
        yield
    except NotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=NOT_FOUND)
    except StateError as exc:
        if exc.current_status == ProposalStatus.expired.value:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=NOT_FOUND)
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=ALREADY_PROCESSED)
    except ConflictError:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=ALREADY_PROCESSED)
    except ValidationError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=INVALID_INPUT)
    except IssuanceError as exc:
        logger.warning("public_action_failed", extra={"public_action": action, "code": exc.code})
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=INVALID_INPUT)


def _read(proposal) -> PublicProposalRead:
    return PublicProposalRead.model_validate(proposal_service.public_payload(proposal))


@router.get("/{token}", response_model=PublicProposalRead)
def view_proposal(token: str, request: Request, db: Session = Depends(get_db)):
    with _public_errors("view"):
        proposal = proposal_service.view_public(
            db, token, ip=client_ip(request), user_agent=request.headers.get("user-agent")
        )
        return _read(proposal)


@router.put("/{token}/select-services", response_model=PublicProposalRead)
def select_services(
    token: str,
    payload: SelectServicesRequest,
    request: Request,
    db: Session = Depends(get_db),
):
    with _public_errors("select"):
        proposal = proposal_service.select_services(
            db,
            token,
            payload.selections,
            ip=client_ip(request),
            user_agent=request.headers.get("user-agent"),
        )
        return _read(proposal)


@router.put("/{token}/sign", response_model=PublicProposalRead)
def sign_proposal(
    token: str,
    payload: SignProposalRequest,
    request: Request,
    db: Session = Depends(get_db),
):
    with _public_errors("sign"):
        proposal = proposal_service.sign_proposal(
            db,
            token,
            payload,
            ip=client_ip(request),
            user_agent=request.headers.get("user-agent"),
        )
        return _read(proposal)


@router.put("/{token}/reject", response_model=PublicProposalRead)
def reject_proposal(
    token: str,
    payload: RejectProposalRequest,
    request: Request,
    db: Session = Depends(get_db),
):
    with _public_errors("reject"):
        proposal = proposal_service.reject_proposal(
            db,
            token,
            payload,
            ip=client_ip(request),
            user_agent=request.headers.get("user-agent"),
        )
        return _read(proposal)

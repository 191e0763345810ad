from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.orm import Session

from issuance import models
from issuance.api.deps import get_current_user, require_roles
from issuance.database import get_db
from issuance.schemas import (
    ContractRead,
    ConvertProposalRequest,
    ExpireSweepRead,
    ProposalCreate,
    ProposalLinkRead,
    ProposalRead,
    ProposalUpdate,
)
from issuance.services import contract_issuance
from issuance.services import proposals as proposal_service

router = APIRouter(prefix="/proposals", tags=["proposals"])

_SELLERS = require_roles(models.RoleName.comercial)
_CONVERTERS = require_roles(models.RoleName.comercial, models.RoleName.financeiro)


def _link(proposal: models.Proposal) -> ProposalLinkRead:
    return ProposalLinkRead(
        proposal=ProposalRead.model_validate(proposal),
        public_url=proposal_service.public_url(proposal),
    )


@router.post("", response_model=ProposalRead, status_code=status.HTTP_201_CREATED)
def create_proposal(
    payload: ProposalCreate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(_SELLERS),
):
    return proposal_service.create_proposal(db, payload, actor_id=current_user.id)


@router.get("", response_model=List[ProposalRead])
def list_proposals(
    status_filter: Optional[models.ProposalStatus] = Query(None, alias="status"),
    client_id: Optional[int] = None,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    return proposal_service.list_proposals(
        db, status=status_filter, client_id=client_id, limit=limit, offset=offset
    )


@router.post("/expire-sweep", response_model=ExpireSweepRead)
def expire_sweep(
    db: Session = Depends(get_db),
    current_user: models.User = Depends(require_roles(models.RoleName.admin)),
):
    return ExpireSweepRead(expired=proposal_service.expire_sweep(db))


@router.get("/{proposal_id}", response_model=ProposalRead)
def get_proposal(
    proposal_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    return proposal_service.get_proposal(db, proposal_id)


@router.put("/{proposal_id}", response_model=ProposalRead)
def update_proposal(
    proposal_id: int,
    payload: ProposalUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(_SELLERS),
):
    return proposal_service.update_proposal(db, proposal_id, payload)


@router.post("/{proposal_id}/send", response_model=ProposalLinkRead)
def send_proposal(
    proposal_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(_SELLERS),
):
    return _link(proposal_service.send_proposal(db, proposal_id))


@router.post("/{proposal_id}/regenerate-token", response_model=ProposalLinkRead)
def regenerate_token(
    proposal_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(_SELLERS),
):
    return _link(proposal_service.regenerate_token(db, proposal_id))


@router.post(
    "/{proposal_id}/duplicate", response_model=ProposalRead, status_code=status.HTTP_201_CREATED
)
def duplicate_proposal(
    proposal_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(_SELLERS),
):
    return proposal_service.duplicate_proposal(db, proposal_id, actor_id=current_user.id)


@router.delete("/{proposal_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_proposal(
    proposal_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(_SELLERS),
):
    proposal_service.delete_proposal(db, proposal_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/{proposal_id}/convert", response_model=ContractRead, status_code=status.HTTP_201_CREATED
)
def convert_proposal(
    proposal_id: int,
    payload: Optional[ConvertProposalRequest] = None,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(_CONVERTERS),
):
    return contract_issuance.convert_proposal(
        db, proposal_id, payload or ConvertProposalRequest(), actor_id=current_user.id
    )

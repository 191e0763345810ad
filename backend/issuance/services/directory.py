"""Read-only lookups into the client directory and the service catalog."""

from __future__ import annotations

from typing import Iterable

from sqlalchemy.orm import Session

from issuance import models
from issuance.core.exceptions import NotFoundError, ValidationError


def get_client(db: Session, client_id: int | None) -> models.Client:
    if client_id is None:
        raise ValidationError("client_id is required")
    client = db.get(models.Client, int(client_id))
    if client is None or not client.active:
        raise NotFoundError("Client", client_id)
    return client


def get_services(db: Session, service_ids: Iterable[int]) -> dict[int, models.Service]:
    wanted = {int(s) for s in service_ids}
    if not wanted:
        return {}
    found = {
        s.id: s for s in db.query(models.Service).filter(models.Service.id.in_(wanted)).all()
    }
    missing = sorted(wanted - set(found))
    if missing:
        raise NotFoundError("Service", missing[0])
    return found


def always_included_services(db: Session, category: str) -> list[models.Service]:
    return (
        db.query(models.Service)
        .filter(models.Service.category == category)
        .filter(models.Service.active.is_(True))
        .order_by(models.Service.id.asc())
        .all()
    )

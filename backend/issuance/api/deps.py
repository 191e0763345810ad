from typing import Callable, Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.orm import Session

from issuance.config import settings
from issuance.core.security import decode_access_token_subject
from issuance.database import get_db
from issuance.models import AssignmentRole, RoleName, User
from issuance.services import assignment_ledger


def _token_url() -> str:
    if settings.api_prefix:
        prefix = settings.api_prefix.rstrip("/")
        return f"{prefix}/auth/token"
    return "/auth/token"


oauth2_scheme = OAuth2PasswordBearer(tokenUrl=_token_url())

_DB_DEP = Depends(get_db)
_TOKEN_DEP = Depends(oauth2_scheme)


def get_current_user(db: Session = _DB_DEP, token: str = _TOKEN_DEP) -> User:
    subject = decode_access_token_subject(token)
    if not subject:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")

    user = db.query(User).filter(User.email == subject, User.active.is_(True)).first()
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found or inactive",
        )
    return user


_CURRENT_USER_DEP = Depends(get_current_user)


def is_admin(user: User) -> bool:
    return user.role == RoleName.admin


def require_roles(*roles: RoleName) -> Callable:
    allowed = {r.value for r in roles}

    def dependency(user: User = _CURRENT_USER_DEP) -> User:
        # Admin has access to everything
        if is_admin(user):
            return user
        if roles and user.role.value not in allowed:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient role")
        return user

    return dependency


def ensure_contract_access(
    db: Session,
    user: User,
    contract_id: int,
    roles: Optional[set[AssignmentRole]] = None,
) -> None:
    """Admins pass; everyone else needs an active assignment, optionally with one of ``roles``."""

    if is_admin(user):
        return
    role = assignment_ledger.user_role(db, contract_id, user.id)
    if role is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN, detail="Not assigned to this contract"
        )
    if roles and role not in roles:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient contract role"
        )


CONTRACT_WRITERS = {AssignmentRole.owner, AssignmentRole.editor}
CONTRACT_OWNERS = {AssignmentRole.owner}


def client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip() or None
    return request.client.host if request.client else None

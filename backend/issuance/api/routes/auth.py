from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordRequestForm
from sqlalchemy.orm import Session

from issuance import models
from issuance.api.deps import client_ip, get_current_user
from issuance.core.security import create_access_token_for_subject, verify_password
from issuance.database import get_db
from issuance.schemas import Token, UserRead
from issuance.services.audit import audit_event

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/token", response_model=Token)
def login_for_access_token(
    request: Request,
    form_data: OAuth2PasswordRequestForm = Depends(),
    db: Session = Depends(get_db),
):
    user = db.query(models.User).filter(models.User.email == form_data.username).first()
    context = {
        "db": db,
        "request_id": request.headers.get("x-request-id"),
        "ip": client_ip(request),
        "user_agent": request.headers.get("user-agent"),
    }
    if not user or not verify_password(form_data.password, user.hashed_password):
        audit_event("auth.login_failed", None, {"email": form_data.username}, **context)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Incorrect email or password"
        )
    if not user.active:
        audit_event("auth.login_inactive", user.id, {"email": user.email}, **context)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Inactive user")

    access_token = create_access_token_for_subject(user.email)
    audit_event("auth.login_success", user.id, {"email": user.email}, **context)
    return Token(access_token=access_token)


@router.get("/me", response_model=UserRead)
def read_current_user(current_user: models.User = Depends(get_current_user)):
    return current_user

"""Shared dependencies: DB session, current user, activation workflow."""
import logging

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
from app.database import get_db
from app.models.user import User
from app.services.activation import ActivationWorkflow
from app.services.auth import decode_token_with_error

log = logging.getLogger("uvicorn.error")

security = HTTPBearer(auto_error=False)


def _user_from_token(db: Session, token_str: str) -> tuple[User | None, str | None]:
    payload, _ = decode_token_with_error(token_str)
    if not payload:
        return None, "Invalid or expired token"
    try:
        user_id = int(payload.get("sub"))
    except (TypeError, ValueError):
        return None, "Invalid token"
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        return None, "User not found"
    return user, None


def get_current_user(
    db: Session = Depends(get_db),
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> User:
    if not credentials:
        raise HTTPException(status_code=401, detail="Not authenticated")
    user, err = _user_from_token(db, (credentials.credentials or "").strip())
    if not user:
        raise HTTPException(status_code=401, detail=err)
    return user


def get_optional_user(
    db: Session = Depends(get_db),
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> User | None:
    """Logged-in user if a valid bearer token is sent, otherwise None (guest)."""
    if not credentials:
        return None
    user, err = _user_from_token(db, (credentials.credentials or "").strip())
    if not user:
        log.info("[Auth] Optional auth: %s. Proceeding as guest.", err)
    return user


def get_activation_workflow(request: Request) -> ActivationWorkflow:
    return request.app.state.activation

from typing import Callable, ContextManager, Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from agency_portal.auth import decode_access_token
from agency_portal.db import SessionLocal, get_db
from agency_portal.exceptions import AuthenticationError, AuthorizationError
from agency_portal.models import User
from agency_portal.rbac import can_countersign, is_operator
from agency_portal.services.email_service import get_email_service
from agency_portal.services.pdf_cache import get_pdf_cache
from agency_portal.services.pdf_renderer import get_pdf_renderer
from agency_portal.services.storage import get_storage_backend

security = HTTPBearer(auto_error=False)


def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db)
) -> User:
    """Get current user from JWT token (header or cookie)"""
    token = None
    if credentials:
        token = credentials.credentials
    else:
        token = request.cookies.get("access_token")

    if not token:
        raise AuthenticationError("Not authenticated")

    payload = decode_access_token(token)
    if payload is None:
        raise AuthenticationError("Invalid authentication credentials")

    email: str = payload.get("sub")
    if email is None:
        raise AuthenticationError("Invalid authentication credentials")

    user = db.query(User).filter(User.email == email).first()
    if user is None:
        raise AuthenticationError("User not found")

    request.state.user_id = str(user.id)
    return user


def get_current_active_user(current_user: User = Depends(get_current_user)) -> User:
    """Get current active user"""
    if not current_user.is_active:
        raise AuthorizationError("Inactive user")
    return current_user


def require_operator(current_user: User = Depends(get_current_active_user)) -> User:
    if not is_operator(current_user):
        raise AuthorizationError("Access denied. Staff role required.")
    return current_user


def require_countersigner(current_user: User = Depends(get_current_active_user)) -> User:
    if not can_countersign(current_user):
        raise AuthorizationError("Access denied. Admin or Manager role required.")
    return current_user


# ============= Collaborators (overridden in tests) =============

def get_storage():
    return get_storage_backend()


def get_cache():
    return get_pdf_cache()


def get_renderer():
    return get_pdf_renderer()


def get_notifier():
    return get_email_service()


def get_session_factory() -> Callable[[], ContextManager[Session]]:
    """Session source for background tasks, which outlive the request session."""
    return SessionLocal


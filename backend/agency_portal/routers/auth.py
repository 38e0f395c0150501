import logging

from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy.orm import Session

from agency_portal.auth import create_access_token, verify_password
from agency_portal.config import settings
from agency_portal.db import get_db
from agency_portal.exceptions import AuthenticationError, AuthorizationError
from agency_portal.models import User
from agency_portal.rate_limit import AUTH_RATE_LIMIT, limiter
from agency_portal.schemas import LoginRequest, MessageResponse, Token

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/auth", tags=["auth"])

COOKIE_NAME = "access_token"


@router.post("/login", response_model=Token)
@limiter.limit(AUTH_RATE_LIMIT)
def login(login_data: LoginRequest, response: Response, request: Request, db: Session = Depends(get_db)):
    """Login with email and password"""
    user = db.query(User).filter(User.email == login_data.email).first()
    if not user or not verify_password(login_data.password, user.password_hash):
        logger.warning("Failed login attempt", extra={"action": "login_failed"})
        raise AuthenticationError("Incorrect email or password")
    if not user.is_active:
        raise AuthorizationError("User account is inactive")

    access_token = create_access_token(data={"sub": user.email})
    response.set_cookie(
        key=COOKIE_NAME,
        value=access_token,
        httponly=True,
        secure=settings.ENVIRONMENT == "production",
        samesite="lax",
        max_age=settings.ACCESS_TOKEN_EXPIRE_HOURS * 3600,
        path="/",
    )
    logger.info("User logged in", extra={"user_id": str(user.id)})
    return Token(access_token=access_token)


@router.post("/logout", response_model=MessageResponse)
def logout(response: Response):
    response.delete_cookie(key=COOKIE_NAME, path="/")
    return MessageResponse(message="Logged out")

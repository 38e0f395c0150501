"""
Centralized error handling and the contract-signing error taxonomy.

Services raise these; the handlers registered in main.py turn them into
``{"error_code", "message", "details"}`` JSON bodies.
"""
import logging
from typing import Optional, Dict, Any

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)

LINK_EXPIRED_MESSAGE = "This signature link has expired. Please request a new one."
LINK_INVALID_MESSAGE = "Invalid or expired signature link."
ALREADY_SIGNED_MESSAGE = "This contract has already been signed. This link can no longer be used."


class AppException(Exception):
    """Base exception class for application-specific errors."""

    def __init__(
        self,
        error_code: str,
        message: str,
        status_code: int = status.HTTP_400_BAD_REQUEST,
        details: Optional[Dict[str, Any]] = None
    ):
        self.error_code = error_code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(AppException):
    """Raised when input validation fails."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            error_code="VALIDATION_ERROR",
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
            details=details
        )


class AuthenticationError(AppException):
    """Raised when authentication fails."""
    def __init__(self, message: str = "Authentication failed"):
        super().__init__(
            error_code="AUTHENTICATION_ERROR",
            message=message,
            status_code=status.HTTP_401_UNAUTHORIZED
        )


class AuthorizationError(AppException):
    """Raised when user lacks permission."""
    def __init__(self, message: str = "Insufficient permissions"):
        super().__init__(
            error_code="AUTHORIZATION_ERROR",
            message=message,
            status_code=status.HTTP_403_FORBIDDEN
        )


class NotFoundError(AppException):
    """Raised when a project, client, contract or template is not found."""
    def __init__(self, resource: str, identifier: Optional[str] = None):
        message = f"{resource} not found"
        if identifier:
            message += f": {identifier}"
        super().__init__(
            error_code="NOT_FOUND",
            message=message,
            status_code=status.HTTP_404_NOT_FOUND,
            details={"resource": resource, "identifier": identifier}
        )


class InvalidTransitionError(AppException):
    """Raised when a contract status change is not allowed from its current state."""
    def __init__(self, from_status: str, to_status: str):
        super().__init__(
            error_code="INVALID_TRANSITION",
            message=f"Contract cannot move from {from_status} to {to_status}",
            status_code=status.HTTP_409_CONFLICT,
            details={"from_status": from_status, "to_status": to_status}
        )


# ============= Signing taxonomy =============

class InvalidLinkError(AppException):
    """Token absent, mismatched, or superseded by a newer request."""
    def __init__(self):
        super().__init__(
            error_code="INVALID_SIGNATURE_LINK",
            message=LINK_INVALID_MESSAGE,
            status_code=status.HTTP_404_NOT_FOUND
        )


class ExpiredLinkError(AppException):
    """Token is past its expiry."""
    def __init__(self):
        super().__init__(
            error_code="SIGNATURE_LINK_EXPIRED",
            message=LINK_EXPIRED_MESSAGE,
            status_code=status.HTTP_410_GONE
        )


class AlreadySignedError(AppException):
    """Replay of a token that was consumed by a successful signature."""
    def __init__(self):
        super().__init__(
            error_code="CONTRACT_ALREADY_SIGNED",
            message=ALREADY_SIGNED_MESSAGE,
            status_code=status.HTTP_409_CONFLICT
        )


class MissingSignatureError(AppException):
    def __init__(self, message: str = "Signature and name are required"):
        super().__init__(
            error_code="MISSING_SIGNATURE",
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST
        )


class TermsNotAcceptedError(AppException):
    def __init__(self):
        super().__init__(
            error_code="TERMS_NOT_ACCEPTED",
            message="You must agree to the terms to sign",
            status_code=status.HTTP_400_BAD_REQUEST
        )


class ClientSignatureRequiredError(AppException):
    def __init__(self):
        super().__init__(
            error_code="CLIENT_SIGNATURE_REQUIRED",
            message="Client signature is required before countersigning.",
            status_code=status.HTTP_400_BAD_REQUEST
        )


class MaterializationFailedError(AppException):
    """Rendering or storing the signed artifact failed after a valid countersign."""
    def __init__(self, contract_id: Optional[str] = None):
        super().__init__(
            error_code="MATERIALIZATION_FAILED",
            message="The signed document could not be generated. It will be retried automatically.",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            details={"contract_id": contract_id} if contract_id else {}
        )


class ImmutableRecordError(AppException):
    """Raised when code tries to rewrite or remove an audit log entry."""
    def __init__(self, record: str):
        super().__init__(
            error_code="IMMUTABLE_RECORD",
            message=f"{record} entries are append-only",
            status_code=status.HTTP_409_CONFLICT,
            details={"record": record}
        )


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Handle application-specific exceptions."""
    logger.warning(
        "AppException: %s - %s", exc.error_code, exc.message,
        extra={
            "error_code": exc.error_code,
            "status": exc.status_code,
        }
    )

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error_code": exc.error_code,
            "message": exc.message,
            "details": exc.details
        }
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle FastAPI HTTPException with consistent format."""
    logger.warning(
        "HTTPException: %s - %s", exc.status_code, exc.detail,
        extra={"status": exc.status_code}
    )

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error_code": "HTTP_ERROR",
            "message": exc.detail,
            "details": {}
        },
        headers=getattr(exc, "headers", None),
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions without leaking internals."""
    logger.error(
        "Unexpected error on %s %s", request.method, request.url.path,
        exc_info=exc,
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error_code": "INTERNAL_ERROR",
            "message": "An unexpected error occurred",
            "details": {}
        }
    )

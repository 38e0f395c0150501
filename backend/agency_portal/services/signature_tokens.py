"""
Signing-link tokens.

A token is 32 random bytes, hex-encoded, with no relation to the contract it
unlocks. It lives on the contract row next to its absolute expiry and is the
whole authorization decision for the public view and sign endpoints.
"""
from __future__ import annotations

import hashlib
import hmac
import re
import secrets
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from agency_portal.config import settings
from agency_portal.contracts.state_machine import TOKEN_BEARING
from agency_portal.exceptions import AlreadySignedError, ExpiredLinkError, InvalidLinkError
from agency_portal.models import Contract, ContractStatus

TOKEN_BYTES = 32
_TOKEN_RE = re.compile(r"^[0-9a-f]{64}$")


def generate_token() -> str:
    return secrets.token_hex(TOKEN_BYTES)


def token_digest(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def compute_expiry(now: Optional[datetime] = None, ttl_days: Optional[int] = None) -> datetime:
    now = now or datetime.utcnow()
    return now + timedelta(days=ttl_days or settings.SIGNATURE_TOKEN_TTL_DAYS)


def is_expired(expires_at: Optional[datetime], now: Optional[datetime] = None) -> bool:
    """Valid through ``expires_at`` inclusive."""
    if expires_at is None:
        return True
    return (now or datetime.utcnow()) > expires_at


def _looks_like_token(token: Optional[str]) -> bool:
    return bool(token) and bool(_TOKEN_RE.match(token))


def resolve(db: Session, token: str, now: Optional[datetime] = None) -> Contract:
    """
    Find the contract a token unlocks or raise the matching link error.

    Shared by the view and sign paths. Raises:
        InvalidLinkError: unknown, malformed or superseded token.
        ExpiredLinkError: token past expiry, whether or not the expiry was written back yet.
        AlreadySignedError: token consumed by a completed signature.
    """
    if not _looks_like_token(token):
        raise InvalidLinkError()
    now = now or datetime.utcnow()

    contract = db.query(Contract).filter(Contract.signature_token == token).first()
    if contract is not None:
        if not hmac.compare_digest(contract.signature_token or "", token):
            raise InvalidLinkError()
        if contract.status not in TOKEN_BEARING:
            raise InvalidLinkError()
        if is_expired(contract.signature_expires_at, now):
            raise ExpiredLinkError()
        return contract

    # Retired tokens only decide which error to report; they never unlock anything
    retired = db.query(Contract).filter(Contract.retired_token_digest == token_digest(token)).first()
    if retired is not None:
        if retired.status == ContractStatus.SIGNED:
            raise AlreadySignedError()
        if retired.status == ContractStatus.EXPIRED:
            raise ExpiredLinkError()
    raise InvalidLinkError()


def signing_url(token: str) -> str:
    return f"{settings.BASE_URL.rstrip('/')}{settings.SIGNING_PAGE_PATH}?token={token}"

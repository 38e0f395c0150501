"""
Public signature capture. The signing token is the only credential; both
operations go through ``signature_tokens.resolve`` before touching anything.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from sqlalchemy.orm import Session

from agency_portal.config import settings
from agency_portal.exceptions import (
    ExpiredLinkError,
    MissingSignatureError,
    TermsNotAcceptedError,
    ValidationError,
)
from agency_portal.models import Client, Contract, Project
from agency_portal.services import contract_repository, signature_tokens

logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 255


def validate_signature_image(image: Optional[str], required: bool = True) -> Optional[str]:
    image = (image or "").strip()
    if not image:
        if required:
            raise MissingSignatureError()
        return None
    if not image.startswith("data:image/"):
        raise ValidationError("Signature must be an image data URL")
    if len(image) > settings.SIGNATURE_IMAGE_MAX_BYTES:
        raise ValidationError(
            "Signature image is too large",
            details={"max_bytes": settings.SIGNATURE_IMAGE_MAX_BYTES},
        )
    return image


def validate_signer_name(name: Optional[str]) -> str:
    name = (name or "").strip()
    if not name:
        raise MissingSignatureError()
    if len(name) > MAX_NAME_LENGTH:
        raise ValidationError("Signer name is too long", details={"max_length": MAX_NAME_LENGTH})
    return name


def _project_and_client(db: Session, contract: Contract) -> Tuple[Project, Client]:
    project = db.query(Project).filter(Project.id == contract.project_id).first()
    client = db.query(Client).filter(Client.id == contract.client_id).first()
    return project, client


def public_pdf_path(token: str) -> str:
    return f"/contracts/by-token/{token}/pdf"


def resolve_for_access(db: Session, token: str, now: Optional[datetime] = None) -> Contract:
    """Token guard plus lazy expiry write-back for read access."""
    try:
        return signature_tokens.resolve(db, token, now)
    except ExpiredLinkError:
        contract_repository.expire_stale_token(db, token, now)
        raise


def view(
    db: Session,
    token: str,
    actor_ip: Optional[str] = None,
    actor_user_agent: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Mark the contract viewed and return what the signing page needs. Never the body."""
    contract = resolve_for_access(db, token, now)
    contract = contract_repository.mark_viewed(db, contract, token, actor_ip, actor_user_agent, now)
    project, client = _project_and_client(db, contract)
    return {
        "contract_id": contract.id,
        "project_id": project.id,
        "project_name": project.project_name,
        "price": project.price,
        "client_name": client.contact_name,
        "client_email": client.email,
        "status": contract.status.value,
        "expires_at": contract.signature_expires_at,
        "contract_pdf_url": public_pdf_path(token),
    }


def sign(
    db: Session,
    token: str,
    signer_name: Optional[str],
    signature_image: Optional[str],
    agreed_to_terms: Any,
    actor_ip: Optional[str] = None,
    actor_user_agent: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Contract:
    """
    Record the client's signature.

    An expired token is rejected without any write. Only a literal ``True``
    counts as consent.
    """
    now = now or datetime.utcnow()
    contract = signature_tokens.resolve(db, token, now)
    if agreed_to_terms is not True:
        raise TermsNotAcceptedError()
    name = validate_signer_name(signer_name)
    image = validate_signature_image(signature_image, required=True)

    _, client = _project_and_client(db, contract)
    return contract_repository.apply_signature(
        db,
        contract,
        token,
        signer_name=name,
        signer_email=client.email,
        signature_data=image,
        signer_ip=actor_ip,
        signer_user_agent=actor_user_agent,
        now=now,
    )

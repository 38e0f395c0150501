"""
Agency countersignature. Operator-authenticated; only valid once the client
has signed, and never signs on the client's behalf.
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from agency_portal.exceptions import ClientSignatureRequiredError, MissingSignatureError, NotFoundError
from agency_portal.models import Contract, Project, User
from agency_portal.services import contract_repository
from agency_portal.services.signature_service import validate_signature_image


def countersign(
    db: Session,
    project_id: UUID,
    countersigner_name: Optional[str],
    signature_image: Optional[str],
    user: User,
    actor_ip: Optional[str] = None,
    actor_user_agent: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Contract:
    project = db.query(Project).filter(Project.id == project_id).first()
    if not project:
        raise NotFoundError("Project", str(project_id))

    name = (countersigner_name or "").strip()
    if not name:
        raise MissingSignatureError("Countersigner name is required")
    image = validate_signature_image(signature_image, required=False)

    contract = contract_repository.get_current_contract(db, project_id)
    if contract is None:
        raise ClientSignatureRequiredError()
    return contract_repository.apply_countersignature(
        db,
        contract,
        countersigner_name=name,
        countersigner_email=user.email,
        countersignature_data=image,
        countersigner_ip=actor_ip,
        countersigner_user_agent=actor_user_agent,
        now=now,
    )

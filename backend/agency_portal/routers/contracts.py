"""
Contract record management for staff: drafts, amendments, reminders and the
activity trail. Signing itself lives in contract_signing.
"""
import logging
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from agency_portal.db import get_db
from agency_portal.deps import get_notifier, require_operator
from agency_portal.exceptions import ValidationError
from agency_portal.models import Client, ContractStatus, Project, User
from agency_portal.schemas import (
    AmendmentCreate,
    ContractCreate,
    ContractFromTemplate,
    ContractResponse,
    ContractUpdate,
    MessageResponse,
    SignatureLogResponse,
)
from agency_portal.services import audit_log, contract_repository, notifications, signature_tokens

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/contracts", tags=["contracts"])


def _snapshot(db: Session, contract):
    project = db.query(Project).filter(Project.id == contract.project_id).first()
    client = db.query(Client).filter(Client.id == contract.client_id).first()
    return notifications.contract_snapshot(contract, project, client)


@router.get("", response_model=List[ContractResponse])
def list_contracts(
    project_id: Optional[UUID] = Query(None, alias="projectId"),
    client_id: Optional[UUID] = Query(None, alias="clientId"),
    status: Optional[ContractStatus] = None,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_operator),
):
    return contract_repository.list_contracts(db, project_id=project_id, client_id=client_id, status=status)


@router.post("", response_model=ContractResponse, status_code=201)
def create_contract(
    data: ContractCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_operator),
):
    return contract_repository.create_contract(
        db,
        project_id=data.project_id,
        client_id=data.client_id,
        content=data.content,
        template_id=data.template_id,
        renewal_at=data.renewal_at,
        created_by_user_id=current_user.id,
    )


@router.post("/from-template", response_model=ContractResponse, status_code=201)
def create_contract_from_template(
    data: ContractFromTemplate,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_operator),
):
    """Render a template against the project and freeze the result as a new draft."""
    return contract_repository.create_from_template(
        db,
        template_id=data.template_id,
        project_id=data.project_id,
        client_id=data.client_id,
        overrides=data.variables,
        renewal_at=data.renewal_at,
        created_by_user_id=current_user.id,
    )


@router.get("/{contract_id}", response_model=ContractResponse)
def get_contract(
    contract_id: UUID,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_operator),
):
    return contract_repository.get_contract(db, contract_id)


@router.put("/{contract_id}", response_model=ContractResponse)
def update_contract(
    contract_id: UUID,
    data: ContractUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_operator),
):
    return contract_repository.update_draft(db, contract_id, data.model_dump(exclude_unset=True))


@router.delete("/{contract_id}", response_model=ContractResponse)
def cancel_contract(
    contract_id: UUID,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_operator),
):
    """Contracts are never deleted; this cancels and keeps the record."""
    return contract_repository.cancel(db, contract_id, actor_email=current_user.email)


@router.get("/{contract_id}/activity", response_model=List[SignatureLogResponse])
def get_contract_activity(
    contract_id: UUID,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_operator),
):
    contract = contract_repository.get_contract(db, contract_id)
    return audit_log.list_for_contract(db, contract.id)


@router.post("/{contract_id}/expire", response_model=ContractResponse)
def expire_contract(
    contract_id: UUID,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_operator),
):
    return contract_repository.expire(db, contract_id, actor_email=current_user.email)


@router.post("/{contract_id}/amendment", response_model=ContractResponse, status_code=201)
def create_amendment(
    contract_id: UUID,
    data: AmendmentCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_operator),
):
    return contract_repository.create_amendment(
        db,
        parent_id=contract_id,
        actor_email=current_user.email,
        content=data.content,
        created_by_user_id=current_user.id,
    )


@router.post("/{contract_id}/resend-reminder", response_model=MessageResponse)
def resend_reminder(
    contract_id: UUID,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_operator),
    notifier=Depends(get_notifier),
):
    """Re-send the outstanding signing link. The token and its expiry are unchanged."""
    contract = contract_repository.get_contract(db, contract_id)
    token = contract.signature_token
    contract = contract_repository.record_reminder(db, contract, actor_email=current_user.email)
    result = notifications.send_signature_reminder(
        notifier, _snapshot(db, contract), signature_tokens.signing_url(token)
    )
    if not result.get("success"):
        return MessageResponse(success=False, message="Reminder recorded but the email could not be sent")
    return MessageResponse(message=f"Reminder sent ({contract.reminder_count} total)")


@router.post("/{contract_id}/renewal-reminder", response_model=MessageResponse)
def send_renewal_reminder(
    contract_id: UUID,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_operator),
    notifier=Depends(get_notifier),
):
    contract = contract_repository.get_contract(db, contract_id)
    if contract.status != ContractStatus.SIGNED:
        raise ValidationError("Renewal reminders apply to signed contracts only")
    snapshot = _snapshot(db, contract)
    if not snapshot["client_email"]:
        raise ValidationError("Client email is required to send a renewal reminder")
    contract_repository.record_renewal_reminder(db, contract, actor_email=current_user.email)
    result = notifications.send_renewal_reminder(notifier, snapshot)
    if not result.get("success"):
        return MessageResponse(success=False, message="Renewal reminder recorded but the email could not be sent")
    return MessageResponse(message="Renewal reminder sent")

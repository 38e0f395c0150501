"""
Contract repository: the only code that writes contract status or token fields.

Every transition here follows the same shape: a conditional UPDATE whose WHERE
clause restates the guard, a rowcount check, the legacy project mirror, an
audit log entry, and one commit. When the conditional write matches nothing
the row is re-read to report the precise reason.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from agency_portal.config import settings
from agency_portal.contracts.state_machine import (
    TERMINAL,
    TOKEN_BEARING,
    ensure_transition,
    is_client_signed,
    sources_for,
)
from agency_portal.exceptions import (
    AlreadySignedError,
    ClientSignatureRequiredError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from agency_portal.models import (
    Client,
    Contract,
    ContractStatus,
    ContractTemplate,
    Project,
    SignatureAction,
    TemplateType,
)
from agency_portal.services import audit_log, signature_tokens, template_service
from agency_portal.services.variable_resolver import get_contract_variables, load_project_and_client

logger = logging.getLogger(__name__)

FALLBACK_CONTRACT_BODY = """WEB DESIGN & DEVELOPMENT AGREEMENT

This agreement is made on {{ date.today }} between {{ business.name }} ("Service Provider") and {{ client.name }}{% if client.company %} of {{ client.company }}{% endif %} ("Client").

1. PROJECT
Project: {{ project.name }}
Type: {{ project.type }}
Description: {{ project.description }}
Timeline: {{ project.timeline }}
Start date: {{ project.start_date }}
Due date: {{ project.due_date }}

2. FEES
Total project price: {{ project.price }}
Deposit due on signing: {{ project.deposit_amount }}

3. TERMS
{% for term in terms %}- {{ term }}
{% endfor %}
4. CONTACT
{{ business.contact }} - {{ business.email }} - {{ business.website }}
"""


def _mirror_fields(contract: Optional[Contract]) -> Dict[str, Any]:
    if contract is None:
        return {
            "contract_signature_requested_at": None,
            "contract_signature_expires_at": None,
            "contract_signed_at": None,
            "contract_signer_name": None,
            "contract_signer_email": None,
            "contract_countersigned_at": None,
            "contract_countersigner_name": None,
            "contract_signed_pdf_path": None,
        }
    return {
        "contract_signature_requested_at": contract.signature_requested_at,
        "contract_signature_expires_at": contract.signature_expires_at,
        "contract_signed_at": contract.signed_at,
        "contract_signer_name": contract.signer_name,
        "contract_signer_email": contract.signer_email,
        "contract_countersigned_at": contract.countersigned_at,
        "contract_countersigner_name": contract.countersigner_name,
        "contract_signed_pdf_path": contract.signed_pdf_path,
    }


def sync_project_mirror(db: Session, project_id: UUID) -> None:
    """Copy the current contract's signature state onto the legacy project columns.

    Runs inside the caller's transaction so the mirror commits with the
    transition. The signing token is never copied.
    """
    db.flush()
    current = get_current_contract(db, project_id)
    if current is not None:
        db.refresh(current)
    db.execute(
        update(Project)
        .where(Project.id == project_id)
        .values(**_mirror_fields(current))
        .execution_options(synchronize_session=False)
    )


# ============= Reads =============

def get_contract(db: Session, contract_id: UUID) -> Contract:
    contract = db.query(Contract).filter(Contract.id == contract_id).first()
    if not contract:
        raise NotFoundError("Contract", str(contract_id))
    return contract


def get_current_contract(db: Session, project_id: UUID) -> Optional[Contract]:
    """Latest non-cancelled contract for a project; project-scoped endpoints act on it."""
    return (
        db.query(Contract)
        .filter(Contract.project_id == project_id, Contract.status != ContractStatus.CANCELLED)
        .order_by(Contract.created_at.desc())
        .first()
    )


def list_contracts(
    db: Session,
    project_id: Optional[UUID] = None,
    client_id: Optional[UUID] = None,
    status: Optional[ContractStatus] = None,
) -> List[Contract]:
    query = db.query(Contract)
    if project_id:
        query = query.filter(Contract.project_id == project_id)
    if client_id:
        query = query.filter(Contract.client_id == client_id)
    if status:
        query = query.filter(Contract.status == status)
    return query.order_by(Contract.created_at.desc()).all()


def _reload(db: Session, contract_id: UUID) -> Contract:
    db.expire_all()
    return get_contract(db, contract_id)


# ============= Creation =============

def create_contract(
    db: Session,
    project_id: UUID,
    content: str,
    client_id: Optional[UUID] = None,
    variables: Optional[Dict[str, Any]] = None,
    template_id: Optional[UUID] = None,
    parent_contract_id: Optional[UUID] = None,
    renewal_at: Optional[datetime] = None,
    created_by_user_id: Optional[UUID] = None,
    commit: bool = True,
) -> Contract:
    if not content or not content.strip():
        raise ValidationError("Contract content is required")
    project, client = load_project_and_client(db, project_id, client_id)
    contract = Contract(
        project_id=project.id,
        client_id=client.id,
        template_id=template_id,
        parent_contract_id=parent_contract_id,
        content=content,
        variables=dict(variables or {}),
        status=ContractStatus.DRAFT,
        renewal_at=renewal_at,
        created_by_user_id=created_by_user_id,
        reminder_count=0,
    )
    db.add(contract)
    sync_project_mirror(db, project.id)
    if commit:
        db.commit()
        db.refresh(contract)
    logger.info(
        "Contract created",
        extra={"project_id": str(project.id), "contract_id": str(contract.id), "status": "draft"},
    )
    return contract


def render_for_project(
    db: Session,
    project_id: UUID,
    template: Optional[ContractTemplate] = None,
    client_id: Optional[UUID] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> Tuple[str, Dict[str, str]]:
    """Render a template (or the built-in body) against a project's facts.

    Returns the body and the binding snapshot used to produce it.
    """
    bindings = get_contract_variables(db, project_id, client_id, overrides)
    if template is not None:
        return template_service.render_content(template.content, bindings), bindings
    body = template_service.render_content(
        FALLBACK_CONTRACT_BODY, {**bindings, "terms": list(settings.CONTRACT_TERMS)}
    )
    return body, bindings


def create_from_template(
    db: Session,
    template_id: UUID,
    project_id: UUID,
    client_id: Optional[UUID] = None,
    overrides: Optional[Dict[str, Any]] = None,
    renewal_at: Optional[datetime] = None,
    created_by_user_id: Optional[UUID] = None,
) -> Contract:
    template = template_service.get_template(db, template_id)
    if not template.is_active:
        raise ValidationError("Template is inactive", details={"template_id": str(template_id)})
    content, bindings = render_for_project(db, project_id, template, client_id, overrides)
    return create_contract(
        db,
        project_id=project_id,
        client_id=client_id,
        content=content,
        variables=bindings,
        template_id=template.id,
        renewal_at=renewal_at,
        created_by_user_id=created_by_user_id,
    )


def get_or_create_current_contract(db: Session, project_id: UUID, actor_user_id: Optional[UUID] = None) -> Contract:
    """Current contract, creating a draft from the default standard template when none exists."""
    contract = get_current_contract(db, project_id)
    if contract is not None:
        return contract
    template = template_service.get_default_template(db, TemplateType.STANDARD)
    content, bindings = render_for_project(db, project_id, template)
    return create_contract(
        db,
        project_id=project_id,
        content=content,
        variables=bindings,
        template_id=template.id if template else None,
        created_by_user_id=actor_user_id,
    )


def update_draft(db: Session, contract_id: UUID, changes: Dict[str, Any]) -> Contract:
    """Edit body or scheduling fields. Only drafts may change their text."""
    contract = get_contract(db, contract_id)
    values: Dict[str, Any] = {}
    if "content" in changes and changes["content"] is not None:
        if contract.status != ContractStatus.DRAFT:
            raise InvalidTransitionError(contract.status.value, ContractStatus.DRAFT.value)
        if not changes["content"].strip():
            raise ValidationError("Contract content is required")
        values["content"] = changes["content"]
    if "renewal_at" in changes:
        values["renewal_at"] = changes["renewal_at"]
    if not values:
        return contract

    statement = update(Contract).where(Contract.id == contract.id)
    if "content" in values:
        # The body freezes the moment a signature is requested
        statement = statement.where(Contract.status == ContractStatus.DRAFT)
    result = db.execute(statement.values(**values).execution_options(synchronize_session=False))
    if result.rowcount != 1:
        db.rollback()
        current = _reload(db, contract_id)
        raise InvalidTransitionError(current.status.value, ContractStatus.DRAFT.value)
    db.commit()
    return _reload(db, contract_id)


def create_amendment(
    db: Session,
    parent_id: UUID,
    actor_email: str,
    content: Optional[str] = None,
    created_by_user_id: Optional[UUID] = None,
) -> Contract:
    parent = get_contract(db, parent_id)
    amendment = create_contract(
        db,
        project_id=parent.project_id,
        client_id=parent.client_id,
        content=content or parent.content,
        variables=parent.variables,
        template_id=parent.template_id,
        parent_contract_id=parent.id,
        created_by_user_id=created_by_user_id,
        commit=False,
    )
    db.flush()
    audit_log.record(
        db,
        project_id=parent.project_id,
        contract_id=parent.id,
        action=SignatureAction.AMENDED,
        actor_email=actor_email,
        details={"amendment_id": str(amendment.id)},
    )
    db.commit()
    db.refresh(amendment)
    return amendment


# ============= Signing lifecycle =============

def request_signature(
    db: Session,
    contract: Contract,
    actor_email: str,
    actor_ip: Optional[str] = None,
    actor_user_agent: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Tuple[Contract, str]:
    """Mint (or overwrite) the signing token and move the contract to ``sent``."""
    now = now or datetime.utcnow()
    if contract.status == ContractStatus.SIGNED:
        raise AlreadySignedError()
    ensure_transition(contract.status, ContractStatus.SENT)

    client = db.query(Client).filter(Client.id == contract.client_id).first()
    if not client or not client.email:
        raise ValidationError("Client email is required to request a signature")

    reissue = contract.status != ContractStatus.DRAFT
    token = signature_tokens.generate_token()
    expires_at = signature_tokens.compute_expiry(now)
    result = db.execute(
        update(Contract)
        .where(
            Contract.id == contract.id,
            Contract.status.in_(sources_for(ContractStatus.SENT)),
            Contract.signed_at.is_(None),
        )
        .values(
            status=ContractStatus.SENT,
            signature_token=token,
            signature_requested_at=now,
            signature_expires_at=expires_at,
            retired_token_digest=None,
            sent_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        current = _reload(db, contract.id)
        if current.status == ContractStatus.SIGNED:
            raise AlreadySignedError()
        raise InvalidTransitionError(current.status.value, ContractStatus.SENT.value)

    sync_project_mirror(db, contract.project_id)
    audit_log.record(
        db,
        project_id=contract.project_id,
        contract_id=contract.id,
        action=SignatureAction.REQUESTED,
        actor_email=actor_email,
        actor_ip=actor_ip,
        actor_user_agent=actor_user_agent,
        details={"expires_at": expires_at.isoformat(), "recipient": client.email, "reissued": reissue},
        now=now,
    )
    db.commit()
    return _reload(db, contract.id), token


def mark_viewed(
    db: Session,
    contract: Contract,
    token: str,
    actor_ip: Optional[str] = None,
    actor_user_agent: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Contract:
    """``sent`` to ``viewed`` on the first view.

    Later views only append to the log: the row, its ``viewed_at`` and its
    ``updated_at`` stay as the first view left them.
    """
    now = now or datetime.utcnow()
    first_view = contract.status == ContractStatus.SENT
    if first_view:
        result = db.execute(
            update(Contract)
            .where(
                Contract.id == contract.id,
                Contract.signature_token == token,
                Contract.status == ContractStatus.SENT,
            )
            .values(status=ContractStatus.VIEWED, viewed_at=func.coalesce(Contract.viewed_at, now))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.rollback()
            db.expire_all()
            # Raced with another view, a sign or a re-request; the token guard names the outcome
            signature_tokens.resolve(db, token, now)
            first_view = False
    client = db.query(Client).filter(Client.id == contract.client_id).first()
    if first_view:
        sync_project_mirror(db, contract.project_id)
    audit_log.record(
        db,
        project_id=contract.project_id,
        contract_id=contract.id,
        action=SignatureAction.VIEWED,
        actor_email=client.email if client and client.email else "anonymous",
        actor_ip=actor_ip,
        actor_user_agent=actor_user_agent,
        now=now,
    )
    db.commit()
    return _reload(db, contract.id)


def expire_stale_token(db: Session, token: str, now: Optional[datetime] = None) -> bool:
    """Write back a lapsed token: status ``expired``, token retired, ``expired`` logged by ``system``.

    Returns True when this call performed the write.
    """
    now = now or datetime.utcnow()
    contract = db.query(Contract).filter(Contract.signature_token == token).first()
    if contract is None:
        return False
    result = db.execute(
        update(Contract)
        .where(
            Contract.id == contract.id,
            Contract.signature_token == token,
            Contract.status.in_(list(TOKEN_BEARING)),
            Contract.signature_expires_at < now,
        )
        .values(
            status=ContractStatus.EXPIRED,
            signature_token=None,
            signature_requested_at=None,
            signature_expires_at=None,
            retired_token_digest=signature_tokens.token_digest(token),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        return False
    sync_project_mirror(db, contract.project_id)
    audit_log.record(
        db,
        project_id=contract.project_id,
        contract_id=contract.id,
        action=SignatureAction.EXPIRED,
        actor_email=audit_log.SYSTEM_ACTOR,
        details={"reason": "link_expired"},
        now=now,
    )
    db.commit()
    return True


def apply_signature(
    db: Session,
    contract: Contract,
    token: str,
    signer_name: str,
    signer_email: str,
    signature_data: str,
    signer_ip: Optional[str] = None,
    signer_user_agent: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Contract:
    """Record the client signature and consume the token in one conditional write.

    The WHERE clause is the whole guard: token matches, not expired, nobody
    has signed yet. Of two concurrent calls with one token exactly one
    matches a row.
    """
    now = now or datetime.utcnow()
    result = db.execute(
        update(Contract)
        .where(
            Contract.id == contract.id,
            Contract.signature_token == token,
            Contract.signature_expires_at >= now,
            Contract.signed_at.is_(None),
            Contract.status.in_(list(TOKEN_BEARING)),
        )
        .values(
            status=ContractStatus.SIGNED,
            signer_name=signer_name,
            signer_email=signer_email,
            signer_ip=signer_ip,
            signer_user_agent=signer_user_agent,
            signature_data=signature_data,
            signed_at=now,
            signature_token=None,
            signature_requested_at=None,
            signature_expires_at=None,
            retired_token_digest=signature_tokens.token_digest(token),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        db.expire_all()
        signature_tokens.resolve(db, token, now)
        # Token still resolves yet the write matched nothing: someone else won
        raise AlreadySignedError()

    sync_project_mirror(db, contract.project_id)
    audit_log.record(
        db,
        project_id=contract.project_id,
        contract_id=contract.id,
        action=SignatureAction.SIGNED,
        actor_email=signer_email,
        actor_ip=signer_ip,
        actor_user_agent=signer_user_agent,
        details={"signer_name": signer_name, "agreed_to_terms": True},
        now=now,
    )
    db.commit()
    logger.info(
        "Contract signed by client",
        extra={"project_id": str(contract.project_id), "contract_id": str(contract.id), "status": "signed"},
    )
    return _reload(db, contract.id)


def apply_countersignature(
    db: Session,
    contract: Contract,
    countersigner_name: str,
    countersigner_email: str,
    countersignature_data: Optional[str] = None,
    countersigner_ip: Optional[str] = None,
    countersigner_user_agent: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Contract:
    """Record or overwrite the agency countersignature on a client-signed contract.

    Overwriting clears ``signed_pdf_path`` so the artifact is produced again
    under a new name; the earlier file is left in storage untouched.
    """
    now = now or datetime.utcnow()
    if not is_client_signed(contract) or contract.status != ContractStatus.SIGNED:
        raise ClientSignatureRequiredError()
    recountersign = contract.countersigned_at is not None
    previous_pdf_path = contract.signed_pdf_path

    result = db.execute(
        update(Contract)
        .where(
            Contract.id == contract.id,
            Contract.status == ContractStatus.SIGNED,
            Contract.signed_at.isnot(None),
        )
        .values(
            countersigner_name=countersigner_name,
            countersigner_email=countersigner_email,
            countersigner_ip=countersigner_ip,
            countersigner_user_agent=countersigner_user_agent,
            countersignature_data=countersignature_data,
            countersigned_at=now,
            signed_pdf_path=None,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        raise ClientSignatureRequiredError()

    sync_project_mirror(db, contract.project_id)
    audit_log.record(
        db,
        project_id=contract.project_id,
        contract_id=contract.id,
        action=SignatureAction.COUNTERSIGNED,
        actor_email=countersigner_email,
        actor_ip=countersigner_ip,
        actor_user_agent=countersigner_user_agent,
        details={
            "countersigner_name": countersigner_name,
            "has_signature_image": bool(countersignature_data),
            "recountersign": recountersign,
            "previous_pdf_path": previous_pdf_path if recountersign else None,
        },
        now=now,
    )
    db.commit()
    return _reload(db, contract.id)


def assign_signed_pdf_path(
    db: Session,
    contract: Contract,
    path: str,
    countersigned_at: datetime,
) -> bool:
    """Set the artifact path once. Loses quietly to a concurrent writer or a newer countersign."""
    result = db.execute(
        update(Contract)
        .where(
            Contract.id == contract.id,
            Contract.signed_pdf_path.is_(None),
            Contract.countersigned_at == countersigned_at,
        )
        .values(signed_pdf_path=path)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        return False
    sync_project_mirror(db, contract.project_id)
    audit_log.record(
        db,
        project_id=contract.project_id,
        contract_id=contract.id,
        action=SignatureAction.MATERIALIZED,
        actor_email=audit_log.SYSTEM_ACTOR,
        details={"path": path},
    )
    db.commit()
    return True


# ============= Operator actions =============

def expire(db: Session, contract_id: UUID, actor_email: str, now: Optional[datetime] = None) -> Contract:
    """Operator-forced expiry of an outstanding request."""
    now = now or datetime.utcnow()
    contract = get_contract(db, contract_id)
    ensure_transition(contract.status, ContractStatus.EXPIRED)
    token = contract.signature_token
    result = db.execute(
        update(Contract)
        .where(Contract.id == contract.id, Contract.status.in_(sources_for(ContractStatus.EXPIRED)))
        .values(
            status=ContractStatus.EXPIRED,
            signature_token=None,
            signature_requested_at=None,
            signature_expires_at=None,
            retired_token_digest=signature_tokens.token_digest(token) if token else None,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        current = _reload(db, contract_id)
        raise InvalidTransitionError(current.status.value, ContractStatus.EXPIRED.value)
    sync_project_mirror(db, contract.project_id)
    audit_log.record(
        db,
        project_id=contract.project_id,
        contract_id=contract.id,
        action=SignatureAction.EXPIRED,
        actor_email=actor_email,
        details={"reason": "operator"},
        now=now,
    )
    db.commit()
    return _reload(db, contract_id)


def cancel(db: Session, contract_id: UUID, actor_email: str, now: Optional[datetime] = None) -> Contract:
    now = now or datetime.utcnow()
    contract = get_contract(db, contract_id)
    if contract.status in TERMINAL:
        raise InvalidTransitionError(contract.status.value, ContractStatus.CANCELLED.value)
    ensure_transition(contract.status, ContractStatus.CANCELLED)
    result = db.execute(
        update(Contract)
        .where(Contract.id == contract.id, Contract.status.in_(sources_for(ContractStatus.CANCELLED)))
        .values(
            status=ContractStatus.CANCELLED,
            signature_token=None,
            signature_requested_at=None,
            signature_expires_at=None,
            cancelled_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        current = _reload(db, contract_id)
        raise InvalidTransitionError(current.status.value, ContractStatus.CANCELLED.value)
    sync_project_mirror(db, contract.project_id)
    audit_log.record(
        db,
        project_id=contract.project_id,
        contract_id=contract.id,
        action=SignatureAction.CANCELLED,
        actor_email=actor_email,
        now=now,
    )
    db.commit()
    return _reload(db, contract_id)


def record_reminder(db: Session, contract: Contract, actor_email: str, now: Optional[datetime] = None) -> Contract:
    """Bookkeeping for a resent signing link; requires an outstanding, unexpired token."""
    now = now or datetime.utcnow()
    if contract.status not in TOKEN_BEARING or not contract.signature_token:
        raise ValidationError("No active signature request for this contract")
    if signature_tokens.is_expired(contract.signature_expires_at, now):
        raise ValidationError("The signature request has expired. Request a new signature instead.")
    contract.last_reminder_at = now
    contract.reminder_count = (contract.reminder_count or 0) + 1
    audit_log.record(
        db,
        project_id=contract.project_id,
        contract_id=contract.id,
        action=SignatureAction.REMINDER_SENT,
        actor_email=actor_email,
        details={"reminder_count": contract.reminder_count},
        now=now,
    )
    db.commit()
    db.refresh(contract)
    return contract


def record_renewal_reminder(db: Session, contract: Contract, actor_email: str, now: Optional[datetime] = None) -> Contract:
    now = now or datetime.utcnow()
    contract.renewal_reminder_sent_at = now
    contract.last_reminder_at = now
    contract.reminder_count = (contract.reminder_count or 0) + 1
    audit_log.record(
        db,
        project_id=contract.project_id,
        contract_id=contract.id,
        action=SignatureAction.RENEWAL_REMINDER_SENT,
        actor_email=actor_email,
        details={"renewal_at": contract.renewal_at.isoformat() if contract.renewal_at else None},
        now=now,
    )
    db.commit()
    db.refresh(contract)
    return contract

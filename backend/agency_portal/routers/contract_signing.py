"""
Signature lifecycle endpoints.

The by-token routes are public: the token in the path is the credential and
every call goes through the same token guard. The rest require staff auth.
"""
import logging
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.responses import Response
from sqlalchemy.orm import Session

from agency_portal.db import get_db
from agency_portal.deps import (
    get_cache,
    get_current_active_user,
    get_notifier,
    get_renderer,
    get_session_factory,
    get_storage,
    require_countersigner,
    require_operator,
)
from agency_portal.exceptions import AuthorizationError, NotFoundError
from agency_portal.middleware.request_id import get_client_ip, get_user_agent
from agency_portal.models import Client, Project, User
from agency_portal.rate_limit import PUBLIC_SIGNING_RATE_LIMIT, limiter
from agency_portal.rbac import can_view_project_contract
from agency_portal.schemas import (
    ContractByTokenResponse,
    CountersignRequest,
    CountersignResponse,
    RequestSignatureResponse,
    SignatureLogResponse,
    SignatureStatusResponse,
    SignByTokenRequest,
    SignResponse,
)
from agency_portal.services import (
    artifact_materializer,
    audit_log,
    contract_repository,
    countersignature_service,
    notifications,
    signature_service,
    signature_tokens,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/contracts", tags=["contract-signing"])


def _load_project(db: Session, project_id: UUID) -> Project:
    project = db.query(Project).filter(Project.id == project_id).first()
    if not project:
        raise NotFoundError("Project", str(project_id))
    return project


def _load_client(db: Session, client_id: UUID) -> Client:
    client = db.query(Client).filter(Client.id == client_id).first()
    if not client:
        raise NotFoundError("Client", str(client_id))
    return client


def _pdf_response(result: artifact_materializer.PdfResult) -> Response:
    return Response(
        content=result.content,
        media_type="application/pdf",
        headers={
            "Content-Disposition": f'inline; filename="{result.filename}"',
            "Cache-Control": "private, no-store",
            "X-Contract-PDF-Source": result.source,
        },
    )


# ============= Public (token-authorized) =============

@router.get("/by-token/{token}", response_model=ContractByTokenResponse)
@limiter.limit(PUBLIC_SIGNING_RATE_LIMIT)
def get_contract_by_token(token: str, request: Request, db: Session = Depends(get_db)):
    """Signing page data. Marks the contract viewed; never returns the body text."""
    return signature_service.view(
        db,
        token,
        actor_ip=get_client_ip(request),
        actor_user_agent=get_user_agent(request),
    )


@router.get("/by-token/{token}/pdf")
@limiter.limit(PUBLIC_SIGNING_RATE_LIMIT)
def get_contract_pdf_by_token(
    token: str,
    request: Request,
    db: Session = Depends(get_db),
    renderer=Depends(get_renderer),
    storage=Depends(get_storage),
    cache=Depends(get_cache),
):
    contract = signature_service.resolve_for_access(db, token)
    project = _load_project(db, contract.project_id)
    client = _load_client(db, contract.client_id)
    result = artifact_materializer.contract_pdf(db, project, client, contract, renderer, storage, cache)
    return _pdf_response(result)


@router.post("/sign-by-token/{token}", response_model=SignResponse)
@limiter.limit(PUBLIC_SIGNING_RATE_LIMIT)
def sign_contract_by_token(
    token: str,
    data: SignByTokenRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    notifier=Depends(get_notifier),
):
    contract = signature_service.sign(
        db,
        token,
        signer_name=data.signer_name,
        signature_image=data.signature_image,
        agreed_to_terms=data.agreed_to_terms,
        actor_ip=get_client_ip(request),
        actor_user_agent=get_user_agent(request),
    )
    project = _load_project(db, contract.project_id)
    client = _load_client(db, contract.client_id)
    snapshot = notifications.contract_snapshot(contract, project, client)
    background_tasks.add_task(notifications.notify_signed, notifier, snapshot)
    return SignResponse(message="Contract signed successfully", signed_at=contract.signed_at)


# ============= Operator =============

@router.post("/{project_id}/request-signature", response_model=RequestSignatureResponse)
def request_signature(
    project_id: UUID,
    request: Request,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_operator),
    notifier=Depends(get_notifier),
):
    project = _load_project(db, project_id)
    contract = contract_repository.get_or_create_current_contract(db, project.id, current_user.id)
    contract, token = contract_repository.request_signature(
        db,
        contract,
        actor_email=current_user.email,
        actor_ip=get_client_ip(request),
        actor_user_agent=get_user_agent(request),
    )
    client = _load_client(db, contract.client_id)
    url = signature_tokens.signing_url(token)
    result = notifications.send_signature_request(
        notifier, notifications.contract_snapshot(contract, project, client), url
    )
    return RequestSignatureResponse(
        contract_id=contract.id,
        status=contract.status,
        expires_at=contract.signature_expires_at,
        signature_url=url,
        email_sent=bool(result.get("success")),
    )


@router.post("/{project_id}/countersign", response_model=CountersignResponse)
def countersign_contract(
    project_id: UUID,
    data: CountersignRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_countersigner),
    notifier=Depends(get_notifier),
    renderer=Depends(get_renderer),
    storage=Depends(get_storage),
    session_factory=Depends(get_session_factory),
):
    contract = countersignature_service.countersign(
        db,
        project_id,
        countersigner_name=data.signer_name,
        signature_image=data.signature_image,
        user=current_user,
        actor_ip=get_client_ip(request),
        actor_user_agent=get_user_agent(request),
    )
    project = _load_project(db, contract.project_id)
    client = _load_client(db, contract.client_id)
    background_tasks.add_task(
        artifact_materializer.materialize_in_background, session_factory, contract.id, renderer, storage
    )
    background_tasks.add_task(
        notifications.send_countersigned_notice, notifier, notifications.contract_snapshot(contract, project, client)
    )
    return CountersignResponse(message="Contract countersigned", countersigned_at=contract.countersigned_at)


@router.get("/{project_id}/signature-status", response_model=SignatureStatusResponse)
def get_signature_status(
    project_id: UUID,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_operator),
):
    project = _load_project(db, project_id)
    contract = contract_repository.get_current_contract(db, project.id)
    log = [SignatureLogResponse.model_validate(entry) for entry in audit_log.list_for_project(db, project.id)]
    if contract is None:
        return SignatureStatusResponse(project_id=project.id, log=log)
    return SignatureStatusResponse(
        project_id=project.id,
        contract_id=contract.id,
        status=contract.status,
        requested_at=contract.sent_at,
        expires_at=contract.signature_expires_at,
        link_active=bool(contract.signature_token)
        and not signature_tokens.is_expired(contract.signature_expires_at),
        viewed_at=contract.viewed_at,
        signed_at=contract.signed_at,
        signer_name=contract.signer_name,
        signer_email=contract.signer_email,
        signer_ip=contract.signer_ip,
        countersigned_at=contract.countersigned_at,
        countersigner_name=contract.countersigner_name,
        countersigner_email=contract.countersigner_email,
        signed_pdf_path=contract.signed_pdf_path,
        is_fully_signed=contract.signed_at is not None and contract.countersigned_at is not None,
        reminder_count=contract.reminder_count or 0,
        log=log,
    )


@router.get("/{project_id}/pdf")
def get_contract_pdf(
    project_id: UUID,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
    renderer=Depends(get_renderer),
    storage=Depends(get_storage),
    cache=Depends(get_cache),
):
    """Stored signed artifact when present, otherwise an on-demand render."""
    project = _load_project(db, project_id)
    if not can_view_project_contract(current_user, project):
        raise AuthorizationError("You do not have access to this contract")
    client = _load_client(db, project.client_id)
    contract = contract_repository.get_current_contract(db, project.id)
    result = artifact_materializer.contract_pdf(db, project, client, contract, renderer, storage, cache)
    return _pdf_response(result)

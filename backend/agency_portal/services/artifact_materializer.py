"""
Signed-artifact materialization and contract PDF delivery.

Once a contract carries both signatures its final PDF is rendered from the
frozen body and both signature images, stored, and its path written back
with a single conditional UPDATE. Until then PDFs are rendered on demand,
watermarked while the client signature is missing, and cached by
(contract id, updated_at). A stored artifact is always served as-is.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Callable, ContextManager, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from agency_portal.contracts.state_machine import is_client_signed, is_countersigned
from agency_portal.exceptions import MaterializationFailedError
from agency_portal.models import Client, Contract, ContractStatus, Project
from agency_portal.services import contract_repository
from agency_portal.services.pdf_cache import pdf_cache_key, version_stamp
from agency_portal.services.pdf_renderer import ContractDocument, ContractPdfRenderer, SignatureBlock
from agency_portal.services.storage import StorageBackend, contract_artifact_key
from agency_portal.utils.retry import retry_storage

logger = logging.getLogger(__name__)

CONTRACT_TITLE = "Web Design & Development Agreement"


@dataclass
class PdfResult:
    content: bytes
    filename: str
    source: str  # stored | cache | rendered


def needs_watermark(contract: Optional[Contract]) -> bool:
    """Derived only from the signer fields; there is no stored draft flag."""
    return contract is None or not is_client_signed(contract)


def watermark_label(contract: Optional[Contract]) -> Optional[str]:
    if not needs_watermark(contract):
        return None
    if contract is None or contract.status == ContractStatus.DRAFT:
        return "DRAFT"
    return "UNSIGNED"


def slugify(value: Optional[str], fallback: str = "project") -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", (value or "").lower()).strip("-")
    return slug[:50].rstrip("-") or fallback


def artifact_filename(project: Project, contract: Contract) -> str:
    stamp = contract.countersigned_at.strftime("%Y%m%dT%H%M%S%f") if contract.countersigned_at else "unsigned"
    return f"contract-{slugify(project.project_name)}-{contract.id}-{stamp}.pdf"


def download_filename(project: Project) -> str:
    return f"contract-{slugify(project.project_name)}-{project.id}.pdf"


def build_document(
    body: str,
    project: Project,
    client: Client,
    contract: Optional[Contract] = None,
    watermark: Optional[str] = None,
) -> ContractDocument:
    signatures = [
        SignatureBlock(
            label="Client",
            name=contract.signer_name if contract else None,
            signed_at=contract.signed_at if contract else None,
            image_data_url=contract.signature_data if contract else None,
        ),
        SignatureBlock(
            label="Service Provider",
            name=contract.countersigner_name if contract else None,
            signed_at=contract.countersigned_at if contract else None,
            image_data_url=contract.countersignature_data if contract else None,
        ),
    ]
    return ContractDocument(
        title=CONTRACT_TITLE,
        body=body,
        project_name=project.project_name,
        client_name=client.contact_name,
        signatures=signatures,
        watermark=watermark,
    )


@retry_storage
def _store(storage: StorageBackend, key: str, data: bytes) -> None:
    storage.save_bytes(key, data, content_type="application/pdf")


def materialize(
    db: Session,
    contract_id: UUID,
    renderer: ContractPdfRenderer,
    storage: StorageBackend,
) -> Optional[str]:
    """
    Produce the signed artifact if both signatures exist and none is stored yet.

    Returns the artifact path, or None when the contract is not fully signed.
    Raises MaterializationFailedError when rendering or storage fails; the
    next PDF fetch tries again.
    """
    contract = contract_repository.get_contract(db, contract_id)
    if contract.signed_pdf_path:
        return contract.signed_pdf_path
    if not (is_client_signed(contract) and is_countersigned(contract)):
        return None

    project = db.query(Project).filter(Project.id == contract.project_id).first()
    client = db.query(Client).filter(Client.id == contract.client_id).first()
    countersigned_at = contract.countersigned_at
    key = contract_artifact_key(str(project.id), artifact_filename(project, contract))
    try:
        pdf_bytes = renderer.render(build_document(contract.content, project, client, contract))
        _store(storage, key, pdf_bytes)
    except Exception as exc:
        logger.error(
            "Signed contract materialization failed: %s", exc,
            extra={"contract_id": str(contract.id), "error_code": "MATERIALIZATION_FAILED"},
            exc_info=True,
        )
        raise MaterializationFailedError(str(contract.id)) from exc

    if contract_repository.assign_signed_pdf_path(db, contract, key, countersigned_at):
        logger.info(
            "Signed contract materialized",
            extra={"contract_id": str(contract.id), "project_id": str(project.id), "action": "materialized"},
        )
        return key
    # Another writer won, or a newer countersign superseded this render
    db.expire_all()
    return contract_repository.get_contract(db, contract_id).signed_pdf_path


def materialize_in_background(
    session_factory: Callable[[], ContextManager[Session]],
    contract_id: UUID,
    renderer: ContractPdfRenderer,
    storage: StorageBackend,
) -> None:
    """Background task after countersign. Failures wait for the next PDF fetch."""
    with session_factory() as db:
        try:
            materialize(db, contract_id, renderer, storage)
        except MaterializationFailedError:
            logger.warning(
                "Materialization deferred to next PDF fetch",
                extra={"contract_id": str(contract_id)},
            )


def contract_pdf(
    db: Session,
    project: Project,
    client: Client,
    contract: Optional[Contract],
    renderer: ContractPdfRenderer,
    storage: StorageBackend,
    cache,
) -> PdfResult:
    """PDF bytes for a project's contract: stored artifact, cached render, or fresh render."""
    filename = download_filename(project)

    if contract is not None and contract.signed_pdf_path is None and is_countersigned(contract):
        try:
            materialize(db, contract.id, renderer, storage)
        except MaterializationFailedError:
            logger.warning("Serving on-demand render while materialization is pending",
                           extra={"contract_id": str(contract.id)})
        db.expire_all()
        contract = contract_repository.get_contract(db, contract.id)

    if contract is not None and contract.signed_pdf_path:
        if storage.exists(contract.signed_pdf_path):
            return PdfResult(storage.read_bytes(contract.signed_pdf_path), filename, "stored")
        logger.error(
            "Signed artifact missing from storage: %s", contract.signed_pdf_path,
            extra={"contract_id": str(contract.id)},
        )

    if contract is not None:
        key = pdf_cache_key(contract.id, contract.updated_at)
        cached = cache.get(key)
        if cached is not None:
            return PdfResult(cached, filename, "cache")
        data = renderer.render(
            build_document(contract.content, project, client, contract, watermark_label(contract))
        )
        cache.put(key, data, version_stamp(contract.updated_at))
        return PdfResult(data, filename, "rendered")

    # No contract yet: preview of the built-in body, never persisted
    body, _ = contract_repository.render_for_project(db, project.id)
    data = renderer.render(build_document(body, project, client, None, watermark_label(None)))
    return PdfResult(data, filename, "rendered")

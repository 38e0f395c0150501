import logging
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from agency_portal.db import get_db
from agency_portal.deps import require_operator
from agency_portal.models import TemplateType, User
from agency_portal.schemas import ContractTemplateCreate, ContractTemplateResponse, ContractTemplateUpdate
from agency_portal.services import template_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/contract-templates", tags=["contract-templates"])


@router.get("", response_model=List[ContractTemplateResponse])
def list_templates(
    type: Optional[TemplateType] = None,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_operator),
):
    """Active templates, defaults first"""
    return template_service.list_templates(db, type)


@router.post("", response_model=ContractTemplateResponse, status_code=201)
def create_template(
    data: ContractTemplateCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_operator),
):
    return template_service.create_template(
        db,
        name=data.name,
        content=data.content,
        template_type=data.type,
        variables=data.variables,
        is_default=data.is_default,
    )


@router.get("/{template_id}", response_model=ContractTemplateResponse)
def get_template(
    template_id: UUID,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_operator),
):
    return template_service.get_template(db, template_id)


@router.put("/{template_id}", response_model=ContractTemplateResponse)
def update_template(
    template_id: UUID,
    data: ContractTemplateUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_operator),
):
    return template_service.update_template(db, template_id, data.model_dump(exclude_unset=True))


@router.delete("/{template_id}", response_model=ContractTemplateResponse)
def deactivate_template(
    template_id: UUID,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_operator),
):
    """Soft delete. Contracts already rendered from it keep their frozen text."""
    return template_service.deactivate_template(db, template_id)

"""
Gathers project, client and business facts into the flat binding set used to
render contract templates. Keys are dotted (``client.name``) to match the
placeholders operators write in template bodies.
"""
from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from agency_portal.config import settings
from agency_portal.exceptions import NotFoundError, ValidationError
from agency_portal.models import Client, Project

logger = logging.getLogger(__name__)

DEFAULT_CONTRACT_VARIABLES: List[str] = [
    "client.name",
    "client.email",
    "client.company",
    "project.name",
    "project.type",
    "project.description",
    "project.start_date",
    "project.due_date",
    "project.timeline",
    "project.price",
    "project.deposit_amount",
    "business.name",
    "business.owner",
    "business.contact",
    "business.email",
    "business.website",
    "date.today",
]


def format_currency(value: Optional[float]) -> str:
    if value is None:
        return ""
    return f"${value:,.2f}"


def _format_date(value: Optional[date]) -> str:
    if value is None:
        return ""
    return f"{value:%B} {value.day}, {value.year}"


def build_variable_source(project: Project, client: Client, today: Optional[date] = None) -> Dict[str, Dict[str, Any]]:
    """Nested view of the facts a contract can reference."""
    return {
        "client": {
            "name": client.contact_name,
            "email": client.email,
            "company": client.company_name,
        },
        "project": {
            "name": project.project_name,
            "type": project.project_type,
            "description": project.description,
            "start_date": project.start_date,
            "due_date": project.due_date,
            "timeline": project.timeline,
            "price": project.price,
            "deposit_amount": project.deposit_amount,
        },
        "business": {
            "name": settings.BUSINESS_NAME,
            "owner": settings.BUSINESS_OWNER,
            "contact": settings.BUSINESS_CONTACT,
            "email": settings.BUSINESS_EMAIL,
            "website": settings.BUSINESS_WEBSITE,
        },
        "date": {
            "today": today or datetime.utcnow().date(),
        },
    }


def resolve_contract_variables(source: Dict[str, Dict[str, Any]]) -> Dict[str, str]:
    """Flatten a variable source into ``{"client.name": "Acme", ...}`` with display formatting."""
    bindings: Dict[str, str] = {}
    for group, values in source.items():
        for key, value in values.items():
            if key in ("price", "deposit_amount"):
                rendered = format_currency(value)
            elif isinstance(value, (date, datetime)):
                rendered = _format_date(value)
            else:
                rendered = "" if value is None else str(value)
            bindings[f"{group}.{key}"] = rendered
    return bindings


def load_project_and_client(db: Session, project_id: UUID, client_id: Optional[UUID] = None):
    project = db.query(Project).filter(Project.id == project_id).first()
    if not project:
        raise NotFoundError("Project", str(project_id))
    client_id = client_id or project.client_id
    if client_id != project.client_id:
        raise ValidationError("Client does not own this project", details={"client_id": str(client_id)})
    client = db.query(Client).filter(Client.id == client_id).first()
    if not client:
        raise NotFoundError("Client", str(client_id))
    return project, client


def get_contract_variables(
    db: Session,
    project_id: UUID,
    client_id: Optional[UUID] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> Dict[str, str]:
    project, client = load_project_and_client(db, project_id, client_id)
    bindings = resolve_contract_variables(build_variable_source(project, client))
    if overrides:
        bindings.update({key: "" if value is None else str(value) for key, value in overrides.items()})
    logger.debug(
        "Resolved %d contract variables", len(bindings),
        extra={"project_id": str(project_id)},
    )
    return bindings

"""
Contract template store: CRUD over reusable bodies plus placeholder rendering.

Templates are never hard-deleted; ``deactivate_template`` flips ``is_active``.
At most one active template per type carries ``is_default``; every write that
sets the flag clears the others of that type in the same transaction.
"""
from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional
from uuid import UUID

from jinja2 import ChainableUndefined, TemplateSyntaxError
from jinja2.sandbox import SandboxedEnvironment
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from agency_portal.exceptions import NotFoundError, ValidationError
from agency_portal.models import ContractTemplate, TemplateType

logger = logging.getLogger(__name__)

PLACEHOLDER_RE = re.compile(r"\{\{\s*([a-zA-Z0-9_.]+)\s*\}\}")

# Undefined placeholders render as empty text instead of raising
_env = SandboxedEnvironment(undefined=ChainableUndefined, autoescape=False, keep_trailing_newline=True)


def extract_placeholders(content: str) -> List[str]:
    """Placeholder names in order of first appearance."""
    seen: List[str] = []
    for name in PLACEHOLDER_RE.findall(content or ""):
        if name not in seen:
            seen.append(name)
    return seen


def _nest(bindings: Dict[str, Any]) -> Dict[str, Any]:
    """Turn ``{"client.name": "Acme"}`` into ``{"client": {"name": "Acme"}}``."""
    nested: Dict[str, Any] = {}
    for key, value in bindings.items():
        node = nested
        parts = key.split(".")
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        node[parts[-1]] = value
    return nested


def render_content(content: str, bindings: Dict[str, Any]) -> str:
    """Substitute ``{{ placeholder }}`` markers; unknown names render empty."""
    try:
        template = _env.from_string(content)
    except TemplateSyntaxError as exc:
        raise ValidationError(
            "Template body is not valid",
            details={"line": exc.lineno, "error": exc.message},
        )
    return template.render(**_nest(bindings))


def list_templates(db: Session, template_type: Optional[TemplateType] = None) -> List[ContractTemplate]:
    query = db.query(ContractTemplate).filter(ContractTemplate.is_active.is_(True))
    if template_type:
        query = query.filter(ContractTemplate.type == template_type)
    return query.order_by(ContractTemplate.is_default.desc(), ContractTemplate.name.asc()).all()


def get_template(db: Session, template_id: UUID) -> ContractTemplate:
    template = db.query(ContractTemplate).filter(ContractTemplate.id == template_id).first()
    if not template:
        raise NotFoundError("Contract template", str(template_id))
    return template


def get_default_template(db: Session, template_type: TemplateType = TemplateType.STANDARD) -> Optional[ContractTemplate]:
    return (
        db.query(ContractTemplate)
        .filter(
            ContractTemplate.type == template_type,
            ContractTemplate.is_default.is_(True),
            ContractTemplate.is_active.is_(True),
        )
        .first()
    )


def _clear_defaults(db: Session, template_type: TemplateType, keep_id: Optional[UUID] = None) -> None:
    query = db.query(ContractTemplate).filter(
        ContractTemplate.type == template_type,
        ContractTemplate.is_default.is_(True),
    )
    if keep_id is not None:
        query = query.filter(ContractTemplate.id != keep_id)
    query.update({ContractTemplate.is_default: False}, synchronize_session="fetch")


def _commit_template(db: Session, template_type: TemplateType) -> None:
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ValidationError(
            "Another default template was saved for this type at the same time",
            details={"type": template_type.value},
        )


def create_template(
    db: Session,
    name: str,
    content: str,
    template_type: TemplateType = TemplateType.STANDARD,
    variables: Optional[List[str]] = None,
    is_default: bool = False,
) -> ContractTemplate:
    if not name or not name.strip():
        raise ValidationError("Template name is required")
    if not content or not content.strip():
        raise ValidationError("Template content is required")
    # Fail fast on bodies that would not render later
    render_content(content, {})

    if is_default:
        _clear_defaults(db, template_type)
    template = ContractTemplate(
        name=name.strip(),
        type=template_type,
        content=content,
        variables=list(variables) if variables else extract_placeholders(content),
        is_default=is_default,
        is_active=True,
    )
    db.add(template)
    _commit_template(db, template_type)
    db.refresh(template)
    logger.info("Contract template created", extra={"action": "template_created", "status": template_type.value})
    return template


def update_template(db: Session, template_id: UUID, changes: Dict[str, Any]) -> ContractTemplate:
    template = get_template(db, template_id)
    if not template.is_active:
        raise ValidationError("Inactive templates cannot be edited")

    if changes.get("name") is not None:
        template.name = changes["name"].strip()
    if changes.get("type") is not None:
        template.type = TemplateType(changes["type"])
    if changes.get("content") is not None:
        render_content(changes["content"], {})
        template.content = changes["content"]
        if changes.get("variables") is None:
            template.variables = extract_placeholders(template.content)
    if changes.get("variables") is not None:
        template.variables = list(changes["variables"])
    if changes.get("is_default") is not None:
        if changes["is_default"]:
            _clear_defaults(db, template.type, keep_id=template.id)
        template.is_default = bool(changes["is_default"])
    elif template.is_default and changes.get("type") is not None:
        # A default moved to another type must not collide with that type's default
        _clear_defaults(db, template.type, keep_id=template.id)

    _commit_template(db, template.type)
    db.refresh(template)
    return template


def deactivate_template(db: Session, template_id: UUID) -> ContractTemplate:
    template = get_template(db, template_id)
    template.is_active = False
    template.is_default = False
    db.commit()
    db.refresh(template)
    logger.info("Contract template deactivated", extra={"action": "template_deactivated"})
    return template

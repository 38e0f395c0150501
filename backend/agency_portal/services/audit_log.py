"""
Append-only contract signature log.

Entries are added to the caller's session so they commit or roll back with
the transition they describe. ORM listeners reject any UPDATE or DELETE of an
existing entry, including bulk statements issued through a Session.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy import event
from sqlalchemy.orm import Session

from agency_portal.exceptions import ImmutableRecordError
from agency_portal.models import ContractSignatureLog, SignatureAction

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"


def record(
    db: Session,
    project_id: UUID,
    action: SignatureAction,
    actor_email: str,
    contract_id: Optional[UUID] = None,
    actor_ip: Optional[str] = None,
    actor_user_agent: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> ContractSignatureLog:
    """Stage a log entry in ``db``. The caller commits."""
    entry = ContractSignatureLog(
        project_id=project_id,
        contract_id=contract_id,
        action=action,
        actor_email=actor_email or SYSTEM_ACTOR,
        actor_ip=actor_ip,
        actor_user_agent=actor_user_agent,
        details=details or {},
        created_at=now or datetime.utcnow(),
    )
    db.add(entry)
    logger.info(
        "Contract %s", action.value,
        extra={
            "action": action.value,
            "project_id": str(project_id),
            "contract_id": str(contract_id) if contract_id else None,
        },
    )
    return entry


def list_for_contract(db: Session, contract_id: UUID) -> List[ContractSignatureLog]:
    return (
        db.query(ContractSignatureLog)
        .filter(ContractSignatureLog.contract_id == contract_id)
        .order_by(ContractSignatureLog.created_at.asc())
        .all()
    )


def list_for_project(db: Session, project_id: UUID, limit: int = 100) -> List[ContractSignatureLog]:
    return (
        db.query(ContractSignatureLog)
        .filter(ContractSignatureLog.project_id == project_id)
        .order_by(ContractSignatureLog.created_at.desc())
        .limit(limit)
        .all()
    )


def serialize(entry: ContractSignatureLog) -> Dict[str, Any]:
    return {
        "id": str(entry.id),
        "contract_id": str(entry.contract_id) if entry.contract_id else None,
        "action": entry.action.value,
        "actor_email": entry.actor_email,
        "actor_ip": entry.actor_ip,
        "actor_user_agent": entry.actor_user_agent,
        "details": entry.details or {},
        "created_at": entry.created_at,
    }


@event.listens_for(ContractSignatureLog, "before_update")
def _reject_log_update(mapper, connection, target):
    logger.error("Blocked update of signature log entry %s", target.id)
    raise ImmutableRecordError("Contract signature log")


@event.listens_for(ContractSignatureLog, "before_delete")
def _reject_log_delete(mapper, connection, target):
    logger.error("Blocked delete of signature log entry %s", target.id)
    raise ImmutableRecordError("Contract signature log")


@event.listens_for(Session, "do_orm_execute")
def _reject_bulk_log_writes(orm_execute_state):
    if not (orm_execute_state.is_update or orm_execute_state.is_delete):
        return
    for mapper in orm_execute_state.all_mappers:
        if mapper.class_ is ContractSignatureLog:
            raise ImmutableRecordError("Contract signature log")

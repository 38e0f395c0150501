"""
Single source of truth for contract statuses and valid transitions.

Countersignature is not a status: it is a flag on a ``signed`` contract.
"""
from __future__ import annotations

from typing import Dict, FrozenSet, List, Optional

from agency_portal.exceptions import InvalidTransitionError
from agency_portal.models import Contract, ContractStatus

# Statuses in which a signing token may exist
TOKEN_BEARING: FrozenSet[ContractStatus] = frozenset({ContractStatus.SENT, ContractStatus.VIEWED})

TERMINAL: FrozenSet[ContractStatus] = frozenset({ContractStatus.SIGNED, ContractStatus.CANCELLED})

VALID_NEXT: Dict[ContractStatus, List[ContractStatus]] = {
    ContractStatus.DRAFT: [ContractStatus.SENT, ContractStatus.CANCELLED],
    # SENT -> SENT and VIEWED -> SENT are re-requests that overwrite the token
    ContractStatus.SENT: [
        ContractStatus.SENT,
        ContractStatus.VIEWED,
        ContractStatus.SIGNED,
        ContractStatus.EXPIRED,
        ContractStatus.CANCELLED,
    ],
    ContractStatus.VIEWED: [
        ContractStatus.SENT,
        ContractStatus.VIEWED,
        ContractStatus.SIGNED,
        ContractStatus.EXPIRED,
        ContractStatus.CANCELLED,
    ],
    ContractStatus.EXPIRED: [ContractStatus.SENT, ContractStatus.CANCELLED],
    ContractStatus.SIGNED: [],
    ContractStatus.CANCELLED: [],
}


def can_transition(from_status: Optional[ContractStatus], to_status: ContractStatus) -> bool:
    """Check if transition from_status -> to_status is allowed."""
    if from_status is None:
        return to_status == ContractStatus.DRAFT
    return to_status in VALID_NEXT.get(from_status, [])


def ensure_transition(from_status: ContractStatus, to_status: ContractStatus) -> None:
    if not can_transition(from_status, to_status):
        raise InvalidTransitionError(from_status.value, to_status.value)


def sources_for(to_status: ContractStatus) -> List[ContractStatus]:
    """All statuses that may move to ``to_status``; used in conditional UPDATE guards."""
    return [status for status, targets in VALID_NEXT.items() if to_status in targets]


def is_client_signed(contract: Contract) -> bool:
    return bool(contract.signed_at and contract.signer_name and contract.signature_data)


def is_countersigned(contract: Contract) -> bool:
    return contract.countersigned_at is not None

"""
Contract notification emails.

Everything here works from a plain-dict snapshot taken before the request
session closes, so background sends never touch the database. Failures are
logged and reported in the return value; they never undo a committed
transition.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Optional, Protocol

from agency_portal.config import settings
from agency_portal.models import Client, Contract, Project
from agency_portal.services.email_service import EmailService

logger = logging.getLogger(__name__)


class NotificationSender(Protocol):
    def send(self, to: Any, subject: str, text: str, html: Optional[str] = None) -> Dict[str, Any]:
        ...


def contract_snapshot(contract: Contract, project: Project, client: Client) -> Dict[str, Any]:
    return {
        "contract_id": str(contract.id),
        "project_id": str(project.id),
        "project_name": project.project_name,
        "client_name": client.contact_name or "there",
        "client_email": client.email,
        "signer_name": contract.signer_name,
        "signer_email": contract.signer_email,
        "signed_at": contract.signed_at,
        "countersigner_name": contract.countersigner_name,
        "countersigned_at": contract.countersigned_at,
        "expires_at": contract.signature_expires_at,
        "renewal_at": contract.renewal_at,
    }


def _date(value: Optional[datetime]) -> str:
    return value.strftime("%B %d, %Y") if value else ""


def _pdf_url(snapshot: Dict[str, Any]) -> str:
    return f"{settings.BASE_URL.rstrip('/')}/contracts/{snapshot['project_id']}/pdf"


def _deliver(sender: NotificationSender, kind: str, to: str, subject: str, text: str, html: str) -> Dict[str, Any]:
    try:
        result = sender.send(to, subject, text, html)
    except Exception:
        logger.exception("Notification %s failed", kind, extra={"action": kind})
        return {"success": False, "message": f"{kind} notification failed"}
    if not result.get("success"):
        logger.warning("Notification %s not delivered: %s", kind, result.get("message"), extra={"action": kind})
    return result


def send_signature_request(sender: NotificationSender, snapshot: Dict[str, Any], signing_url: str) -> Dict[str, Any]:
    project_name = snapshot["project_name"]
    expires = _date(snapshot.get("expires_at"))
    text = (
        f"Hi {snapshot['client_name']},\n\n"
        f"Your contract for \"{project_name}\" is ready for review and signature.\n\n"
        f"Review and sign here:\n{signing_url}\n\n"
        f"This link expires on {expires}.\n\n"
        f"Thanks,\n{settings.BUSINESS_NAME}"
    )
    html = EmailService.render_layout(
        heading="Contract ready to sign",
        paragraphs=[
            f"Hi {snapshot['client_name']},",
            f"Your contract for \"{project_name}\" is ready for review and signature.",
            f"This link expires on {expires}.",
        ],
        action_url=signing_url,
        action_label="Review & Sign",
    )
    return _deliver(
        sender, "signature_request", snapshot["client_email"],
        f"Contract Ready for Signature - {project_name}", text, html,
    )


def send_signature_reminder(sender: NotificationSender, snapshot: Dict[str, Any], signing_url: str) -> Dict[str, Any]:
    project_name = snapshot["project_name"]
    expires = _date(snapshot.get("expires_at"))
    text = (
        f"Hi {snapshot['client_name']},\n\n"
        f"This is a friendly reminder to review and sign the contract for \"{project_name}\".\n\n"
        f"Sign the contract here:\n{signing_url}\n\n"
        f"This request expires on {expires}.\n\n"
        f"Thanks,\n{settings.BUSINESS_NAME}"
    )
    html = EmailService.render_layout(
        heading="Reminder: contract signature needed",
        paragraphs=[
            f"Hi {snapshot['client_name']},",
            f"This is a friendly reminder to review and sign the contract for \"{project_name}\".",
            f"This request expires on {expires}.",
        ],
        action_url=signing_url,
        action_label="Sign Contract",
    )
    return _deliver(
        sender, "signature_reminder", snapshot["client_email"],
        f"Reminder: Contract Signature Needed - {project_name}", text, html,
    )


def send_signed_confirmation(sender: NotificationSender, snapshot: Dict[str, Any]) -> Dict[str, Any]:
    project_name = snapshot["project_name"]
    signed = _date(snapshot.get("signed_at"))
    text = (
        f"Hi {snapshot['signer_name']},\n\n"
        f"Thank you for signing the contract for \"{project_name}\" on {signed}.\n"
        f"We will countersign shortly and send you the fully executed copy.\n\n"
        f"Thanks,\n{settings.BUSINESS_NAME}"
    )
    html = EmailService.render_layout(
        heading="Contract signed",
        paragraphs=[
            f"Hi {snapshot['signer_name']},",
            f"Thank you for signing the contract for \"{project_name}\" on {signed}.",
            "We will countersign shortly and send you the fully executed copy.",
        ],
    )
    return _deliver(
        sender, "signed_confirmation", snapshot["signer_email"],
        f"Contract Signed - {project_name}", text, html,
    )


def send_signed_admin_notice(sender: NotificationSender, snapshot: Dict[str, Any]) -> Dict[str, Any]:
    project_name = snapshot["project_name"]
    text = (
        f"{snapshot['signer_name']} ({snapshot['signer_email']}) signed the contract for "
        f"\"{project_name}\" on {_date(snapshot.get('signed_at'))}.\n\n"
        f"Countersign it from the admin dashboard."
    )
    html = EmailService.render_layout(
        heading="Client signed a contract",
        paragraphs=[
            f"{snapshot['signer_name']} ({snapshot['signer_email']}) signed the contract for \"{project_name}\".",
            "Countersign it from the admin dashboard.",
        ],
    )
    return _deliver(
        sender, "signed_admin_notice", settings.BUSINESS_EMAIL,
        f"Contract Signed: {project_name}", text, html,
    )


def send_countersigned_notice(sender: NotificationSender, snapshot: Dict[str, Any]) -> Dict[str, Any]:
    project_name = snapshot["project_name"]
    pdf_url = _pdf_url(snapshot)
    text = (
        f"Hi {snapshot['client_name']},\n\n"
        f"The contract for \"{project_name}\" has been countersigned by "
        f"{snapshot['countersigner_name']} and is now fully executed.\n\n"
        f"Download your copy: {pdf_url}\n\n"
        f"Thanks,\n{settings.BUSINESS_NAME}"
    )
    html = EmailService.render_layout(
        heading="Contract fully executed",
        paragraphs=[
            f"Hi {snapshot['client_name']},",
            f"The contract for \"{project_name}\" has been countersigned and is now fully executed.",
        ],
        action_url=pdf_url,
        action_label="Download Contract",
    )
    return _deliver(
        sender, "countersigned_notice", snapshot["client_email"],
        f"Contract Fully Executed - {project_name}", text, html,
    )


def send_renewal_reminder(sender: NotificationSender, snapshot: Dict[str, Any]) -> Dict[str, Any]:
    project_name = snapshot["project_name"]
    renewal = _date(snapshot.get("renewal_at")) or "soon"
    text = (
        f"Hi {snapshot['client_name']},\n\n"
        f"This is a reminder that your maintenance agreement for \"{project_name}\" "
        f"is up for renewal on {renewal}.\n\n"
        f"Please reply to this email if you'd like to renew.\n\n"
        f"Thanks,\n{settings.BUSINESS_NAME}"
    )
    html = EmailService.render_layout(
        heading="Renewal reminder",
        paragraphs=[
            f"Hi {snapshot['client_name']},",
            f"Your maintenance agreement for \"{project_name}\" is up for renewal on {renewal}.",
            "Please reply to this email if you'd like to renew.",
        ],
    )
    return _deliver(
        sender, "renewal_reminder", snapshot["client_email"],
        f"Renewal Reminder - {project_name}", text, html,
    )


def notify_signed(sender: NotificationSender, snapshot: Dict[str, Any]) -> None:
    """Background task after a client signature: confirmation plus internal notice."""
    send_signed_confirmation(sender, snapshot)
    send_signed_admin_notice(sender, snapshot)

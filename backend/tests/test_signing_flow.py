"""
Service-level tests for the request, view and sign lifecycle.
"""
from datetime import datetime, timedelta

import pytest
from sqlalchemy.orm.attributes import set_committed_value

from agency_portal.exceptions import (
    AlreadySignedError,
    ExpiredLinkError,
    InvalidLinkError,
    InvalidTransitionError,
    MissingSignatureError,
    TermsNotAcceptedError,
    ValidationError,
)
from agency_portal.models import ContractSignatureLog, ContractStatus, Project, SignatureAction
from agency_portal.services import audit_log, contract_repository, signature_service, signature_tokens
from agency_portal.services.pdf_cache import pdf_cache_key


@pytest.fixture
def sent(db_session, project, admin_user):
    """A contract with an outstanding signing link, returned as (contract, token, requested_at)."""
    now = datetime.utcnow()
    contract = contract_repository.get_or_create_current_contract(db_session, project.id, admin_user.id)
    contract, token = contract_repository.request_signature(db_session, contract, admin_user.email, now=now)
    return contract, token, now


def _actions(db_session, contract_id):
    return [entry.action for entry in audit_log.list_for_contract(db_session, contract_id)]


class TestRequestSignature:

    def test_request_moves_to_sent_with_seven_day_link(self, sent):
        contract, token, now = sent
        assert contract.status == ContractStatus.SENT
        assert contract.signature_token == token
        assert contract.signature_expires_at == now + timedelta(days=7)
        assert contract.sent_at == now

    def test_request_requires_client_email(self, db_session, project, acme_client, admin_user):
        acme_client.email = None
        db_session.commit()
        contract = contract_repository.get_or_create_current_contract(db_session, project.id)
        with pytest.raises(ValidationError):
            contract_repository.request_signature(db_session, contract, admin_user.email)
        db_session.refresh(contract)
        assert contract.status == ContractStatus.DRAFT

    def test_request_on_signed_contract_is_rejected(self, db_session, sent, admin_user, signature_image):
        contract, token, _ = sent
        signed = signature_service.sign(db_session, token, "Jane Doe", signature_image, True)
        with pytest.raises(AlreadySignedError):
            contract_repository.request_signature(db_session, signed, admin_user.email)

    def test_request_on_cancelled_contract_is_rejected(self, db_session, sent, admin_user):
        contract, _, _ = sent
        cancelled = contract_repository.cancel(db_session, contract.id, admin_user.email)
        with pytest.raises(InvalidTransitionError):
            contract_repository.request_signature(db_session, cancelled, admin_user.email)

    def test_request_is_logged(self, db_session, sent):
        contract, _, _ = sent
        entries = audit_log.list_for_contract(db_session, contract.id)
        assert [e.action for e in entries] == [SignatureAction.REQUESTED]
        assert entries[0].details["recipient"] == "jane@acme.test"
        assert entries[0].details["reissued"] is False


class TestView:

    def test_view_marks_viewed_and_hides_body(self, db_session, sent):
        contract, token, _ = sent
        projection = signature_service.view(db_session, token, actor_ip="10.0.0.1")
        assert projection["status"] == "viewed"
        assert projection["project_name"] == "Redesign"
        assert projection["contract_pdf_url"] == f"/contracts/by-token/{token}/pdf"
        assert "content" not in projection
        assert contract.content not in [str(v) for v in projection.values()]

    def test_repeat_view_keeps_first_timestamp(self, db_session, sent):
        contract, token, now = sent
        signature_service.view(db_session, token, now=now + timedelta(hours=1))
        signature_service.view(db_session, token, now=now + timedelta(hours=2))
        db_session.refresh(contract)
        assert contract.status == ContractStatus.VIEWED
        assert contract.viewed_at == now + timedelta(hours=1)

    def test_repeat_view_leaves_the_row_and_cache_key_alone(self, db_session, sent):
        contract, token, now = sent
        signature_service.view(db_session, token, now=now + timedelta(minutes=1))
        db_session.refresh(contract)
        updated_at = contract.updated_at
        cache_key = pdf_cache_key(contract.id, contract.updated_at)

        signature_service.view(db_session, token, now=now + timedelta(minutes=2))
        db_session.refresh(contract)
        assert contract.updated_at == updated_at
        assert pdf_cache_key(contract.id, contract.updated_at) == cache_key
        assert _actions(db_session, contract.id).count(SignatureAction.VIEWED) == 2

    def test_view_expired_link_writes_back(self, db_session, sent):
        contract, token, now = sent
        with pytest.raises(ExpiredLinkError):
            signature_service.view(db_session, token, now=now + timedelta(days=8))
        db_session.refresh(contract)
        assert contract.status == ContractStatus.EXPIRED
        assert contract.signature_token is None
        expired = [e for e in audit_log.list_for_contract(db_session, contract.id) if e.action == SignatureAction.EXPIRED]
        assert expired[0].actor_email == audit_log.SYSTEM_ACTOR

    def test_view_unknown_token(self, db_session, sent):
        with pytest.raises(InvalidLinkError):
            signature_service.view(db_session, "0" * 64)


class TestSign:

    def test_sign_records_signer_and_clears_token(self, db_session, sent, signature_image):
        contract, token, _ = sent
        signed = signature_service.sign(
            db_session, token, "  Jane Doe  ", signature_image, True, actor_ip="10.0.0.9", actor_user_agent="pytest"
        )
        assert signed.status == ContractStatus.SIGNED
        assert signed.signer_name == "Jane Doe"
        assert signed.signer_email == "jane@acme.test"
        assert signed.signature_data == signature_image
        assert signed.signer_ip == "10.0.0.9"
        assert signed.signed_at is not None
        assert signed.signature_token is None
        assert signed.signature_expires_at is None

    def test_replay_is_already_signed_and_changes_nothing(self, db_session, sent, signature_image):
        contract, token, _ = sent
        first = signature_service.sign(db_session, token, "Jane Doe", signature_image, True)
        signed_at = first.signed_at
        with pytest.raises(AlreadySignedError):
            signature_service.sign(db_session, token, "Mallory", signature_image, True)
        db_session.refresh(first)
        assert first.signer_name == "Jane Doe"
        assert first.signed_at == signed_at
        assert _actions(db_session, contract.id).count(SignatureAction.SIGNED) == 1

    def test_stale_handle_loses_to_a_completed_signature(self, db_session, sent, signature_image):
        contract, token, _ = sent
        # Both submissions passed the token guard before either wrote
        stale = signature_tokens.resolve(db_session, token)
        signature_service.sign(db_session, token, "Alice", signature_image, True)

        with pytest.raises(AlreadySignedError):
            contract_repository.apply_signature(
                db_session, stale, token, "Mallory", "mallory@example.test", signature_image
            )
        db_session.expire_all()
        current = contract_repository.get_contract(db_session, contract.id)
        assert current.status == ContractStatus.SIGNED
        assert current.signer_name == "Alice"
        assert current.signer_email == "jane@acme.test"
        assert _actions(db_session, contract.id).count(SignatureAction.SIGNED) == 1

    def test_expired_link_performs_no_write(self, db_session, sent, signature_image):
        contract, token, now = sent
        log_count = db_session.query(ContractSignatureLog).count()
        with pytest.raises(ExpiredLinkError):
            signature_service.sign(
                db_session, token, "Jane Doe", signature_image, True, now=now + timedelta(days=7, seconds=1)
            )
        db_session.refresh(contract)
        assert contract.status == ContractStatus.SENT
        assert contract.signature_token == token
        assert contract.signed_at is None
        assert db_session.query(ContractSignatureLog).count() == log_count

    def test_link_is_valid_at_the_exact_expiry(self, db_session, sent, signature_image):
        contract, token, now = sent
        signed = signature_service.sign(
            db_session, token, "Jane Doe", signature_image, True, now=now + timedelta(days=7)
        )
        assert signed.status == ContractStatus.SIGNED

    @pytest.mark.parametrize("agreed", [False, None, "true", 1])
    def test_terms_must_be_literally_true(self, db_session, sent, signature_image, agreed):
        contract, token, _ = sent
        with pytest.raises(TermsNotAcceptedError):
            signature_service.sign(db_session, token, "Jane Doe", signature_image, agreed)
        db_session.refresh(contract)
        assert contract.signed_at is None

    @pytest.mark.parametrize("name,image", [("", "sig"), ("   ", "sig"), ("Jane Doe", ""), ("Jane Doe", None)])
    def test_missing_name_or_image(self, db_session, sent, signature_image, name, image):
        contract, token, _ = sent
        image = signature_image if image == "sig" else image
        with pytest.raises(MissingSignatureError):
            signature_service.sign(db_session, token, name, image, True)
        db_session.refresh(contract)
        assert contract.signature_token == token

    def test_image_must_be_a_data_url(self, db_session, sent):
        _, token, _ = sent
        with pytest.raises(ValidationError):
            signature_service.sign(db_session, token, "Jane Doe", "https://evil.example/sig.png", True)

    def test_old_token_invalid_after_re_request(self, db_session, sent, admin_user, signature_image):
        contract, old_token, _ = sent
        contract, new_token = contract_repository.request_signature(db_session, contract, admin_user.email)
        with pytest.raises(InvalidLinkError):
            signature_service.sign(db_session, old_token, "Jane Doe", signature_image, True)
        signed = signature_service.sign(db_session, new_token, "Jane Doe", signature_image, True)
        assert signed.status == ContractStatus.SIGNED

    def test_re_request_after_expiry_issues_fresh_link(self, db_session, sent, admin_user, signature_image):
        contract, token, now = sent
        with pytest.raises(ExpiredLinkError):
            signature_service.view(db_session, token, now=now + timedelta(days=8))
        db_session.refresh(contract)
        contract, fresh = contract_repository.request_signature(db_session, contract, admin_user.email)
        assert contract.status == ContractStatus.SENT
        assert contract.retired_token_digest is None
        with pytest.raises(InvalidLinkError):
            signature_service.view(db_session, token)
        assert signature_service.sign(db_session, fresh, "Jane Doe", signature_image, True).signed_at


class TestProjectMirror:

    def test_mirror_follows_transitions_without_token(self, db_session, sent, project, signature_image):
        contract, token, now = sent
        db_session.refresh(project)
        assert project.contract_signature_expires_at == now + timedelta(days=7)
        assert project.contract_signed_at is None

        signed = signature_service.sign(db_session, token, "Jane Doe", signature_image, True)
        db_session.refresh(project)
        assert project.contract_signed_at == signed.signed_at
        assert project.contract_signer_name == "Jane Doe"
        assert project.contract_signature_expires_at is None
        assert not hasattr(Project, "contract_signature_token")


class TestOperatorActions:

    def test_operator_expire(self, db_session, sent, admin_user):
        contract, token, _ = sent
        expired = contract_repository.expire(db_session, contract.id, admin_user.email)
        assert expired.status == ContractStatus.EXPIRED
        with pytest.raises(ExpiredLinkError):
            signature_service.view(db_session, token)

    def test_cancel_is_terminal(self, db_session, sent, admin_user):
        contract, token, _ = sent
        cancelled = contract_repository.cancel(db_session, contract.id, admin_user.email)
        assert cancelled.status == ContractStatus.CANCELLED
        assert cancelled.cancelled_at is not None
        with pytest.raises(InvalidLinkError):
            signature_service.view(db_session, token)
        with pytest.raises(InvalidTransitionError):
            contract_repository.cancel(db_session, contract.id, admin_user.email)

    def test_signed_contract_cannot_be_cancelled(self, db_session, sent, admin_user, signature_image):
        contract, token, _ = sent
        signature_service.sign(db_session, token, "Jane Doe", signature_image, True)
        with pytest.raises(InvalidTransitionError):
            contract_repository.cancel(db_session, contract.id, admin_user.email)

    def test_reminder_needs_live_link(self, db_session, sent, admin_user):
        contract, _, now = sent
        reminded = contract_repository.record_reminder(db_session, contract, admin_user.email)
        assert reminded.reminder_count == 1
        with pytest.raises(ValidationError):
            contract_repository.record_reminder(db_session, contract, admin_user.email, now=now + timedelta(days=8))

    def test_amendment_links_to_parent(self, db_session, sent, admin_user):
        contract, _, _ = sent
        amendment = contract_repository.create_amendment(
            db_session, contract.id, admin_user.email, content="Scope change: add a blog."
        )
        assert amendment.parent_contract_id == contract.id
        assert amendment.status == ContractStatus.DRAFT
        assert contract_repository.get_current_contract(db_session, contract.project_id).id == amendment.id
        assert SignatureAction.AMENDED in _actions(db_session, contract.id)

    def test_draft_edit_racing_a_signature_request_is_rejected(self, db_session, sent):
        contract, _, _ = sent
        original = contract.content
        # This session still believes the contract is a draft; the row was sent meanwhile
        set_committed_value(contract, "status", ContractStatus.DRAFT)

        with pytest.raises(InvalidTransitionError):
            contract_repository.update_draft(db_session, contract.id, {"content": "Late edit"})
        db_session.expire_all()
        current = contract_repository.get_contract(db_session, contract.id)
        assert current.content == original
        assert current.status == ContractStatus.SENT

    def test_draft_body_is_editable_until_sent(self, db_session, project, sent):
        contract, _, _ = sent
        with pytest.raises(InvalidTransitionError):
            contract_repository.update_draft(db_session, contract.id, {"content": "New text"})

"""
HTTP tests for the signing lifecycle endpoints.
"""
import uuid
from datetime import datetime, timedelta
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi import status

from agency_portal.auth import create_access_token, get_password_hash
from agency_portal.models import Client, Contract, ContractStatus, Role, User


def _request_signature(client, project, headers):
    response = client.post(f"/contracts/{project.id}/request-signature", headers=headers)
    assert response.status_code == status.HTTP_200_OK, response.text
    data = response.json()
    token = parse_qs(urlparse(data["signature_url"]).query)["token"][0]
    return data, token


def _sign(client, token, image, **overrides):
    payload = {"signerName": "Jane Doe", "signatureImage": image, "agreedToTerms": True}
    payload.update(overrides)
    return client.post(f"/contracts/sign-by-token/{token}", json=payload)


@pytest.mark.integration
class TestRequestSignatureEndpoint:

    def test_request_issues_link_and_emails_client(self, client, db_session, project, admin_headers, notifier):
        data, token = _request_signature(client, project, admin_headers)
        assert data["status"] == "sent"
        assert data["email_sent"] is True
        assert len(token) == 64
        expires_at = datetime.fromisoformat(data["expires_at"])
        assert timedelta(days=6, hours=23) < expires_at - datetime.utcnow() <= timedelta(days=7)
        assert notifier.sent[0]["to"] == "jane@acme.test"
        assert data["signature_url"] in notifier.sent[0]["text"]

    def test_email_failure_does_not_undo_request(self, client, db_session, project, admin_headers, notifier):
        notifier.succeed = False
        data, token = _request_signature(client, project, admin_headers)
        assert data["email_sent"] is False
        contract = db_session.get(Contract, uuid.UUID(data["contract_id"]))
        assert contract.status == ContractStatus.SENT

    def test_requires_operator(self, client, project, client_headers):
        response = client.post(f"/contracts/{project.id}/request-signature", headers=client_headers)
        assert response.status_code == status.HTTP_403_FORBIDDEN

    def test_requires_auth(self, client, project):
        response = client.post(f"/contracts/{project.id}/request-signature")
        assert response.status_code == status.HTTP_401_UNAUTHORIZED
        assert response.json()["error_code"] == "AUTHENTICATION_ERROR"

    def test_unknown_project(self, client, admin_headers):
        response = client.post(
            "/contracts/00000000-0000-0000-0000-000000000000/request-signature", headers=admin_headers
        )
        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert response.json()["error_code"] == "NOT_FOUND"


@pytest.mark.integration
class TestPublicSigning:

    def test_view_marks_viewed_without_body(self, client, db_session, project, admin_headers):
        _, token = _request_signature(client, project, admin_headers)
        response = client.get(f"/contracts/by-token/{token}")
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status"] == "viewed"
        assert data["client_name"] == "Jane Doe"
        assert "content" not in data
        assert response.headers["cache-control"] == "no-store"
        assert response.headers["referrer-policy"] == "no-referrer"

    def test_public_pdf_by_token(self, client, project, admin_headers):
        _, token = _request_signature(client, project, admin_headers)
        response = client.get(f"/contracts/by-token/{token}/pdf")
        assert response.status_code == status.HTTP_200_OK
        assert response.headers["content-type"] == "application/pdf"
        assert response.content.startswith(b"%PDF")

    def test_signing_page_pdf_is_served_from_cache_across_views(self, client, project, admin_headers):
        _, token = _request_signature(client, project, admin_headers)
        client.get(f"/contracts/by-token/{token}")
        first = client.get(f"/contracts/by-token/{token}/pdf")
        assert first.headers["x-contract-pdf-source"] == "rendered"

        client.get(f"/contracts/by-token/{token}")
        second = client.get(f"/contracts/by-token/{token}/pdf")
        assert second.headers["x-contract-pdf-source"] == "cache"
        assert second.content == first.content

    def test_sign_then_replay(self, client, db_session, project, admin_headers, signature_image, notifier):
        _, token = _request_signature(client, project, admin_headers)
        client.get(f"/contracts/by-token/{token}")

        response = _sign(client, token, signature_image)
        assert response.status_code == status.HTTP_200_OK, response.text
        assert response.json()["signed_at"]

        db_session.expire_all()
        contract = db_session.query(Contract).filter(Contract.project_id == project.id).first()
        assert contract.status == ContractStatus.SIGNED
        assert contract.signer_name == "Jane Doe"
        assert contract.signature_token is None
        recipients = [message["to"] for message in notifier.sent]
        assert "jane@acme.test" in recipients[1:]

        replay = _sign(client, token, signature_image, signerName="Someone Else")
        assert replay.status_code == status.HTTP_409_CONFLICT
        assert replay.json()["error_code"] == "CONTRACT_ALREADY_SIGNED"
        db_session.expire_all()
        assert db_session.get(Contract, contract.id).signer_name == "Jane Doe"

    def test_expired_link(self, client, db_session, project, admin_headers, signature_image):
        data, token = _request_signature(client, project, admin_headers)
        contract = db_session.query(Contract).filter(Contract.project_id == project.id).first()
        contract.signature_expires_at = datetime.utcnow() - timedelta(minutes=1)
        db_session.commit()

        response = _sign(client, token, signature_image)
        assert response.status_code == status.HTTP_410_GONE
        assert response.json()["error_code"] == "SIGNATURE_LINK_EXPIRED"
        assert "expired" in response.json()["message"]
        db_session.expire_all()
        assert db_session.get(Contract, contract.id).status == ContractStatus.SENT

        view = client.get(f"/contracts/by-token/{token}")
        assert view.status_code == status.HTTP_410_GONE
        db_session.expire_all()
        assert db_session.get(Contract, contract.id).status == ContractStatus.EXPIRED

    def test_unknown_token(self, client):
        response = client.get(f"/contracts/by-token/{'a' * 64}")
        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert response.json()["error_code"] == "INVALID_SIGNATURE_LINK"

    def test_re_request_invalidates_old_link(self, client, project, admin_headers):
        _, old_token = _request_signature(client, project, admin_headers)
        _, new_token = _request_signature(client, project, admin_headers)
        assert client.get(f"/contracts/by-token/{old_token}").status_code == status.HTTP_404_NOT_FOUND
        assert client.get(f"/contracts/by-token/{new_token}").status_code == status.HTTP_200_OK

    def test_payload_errors(self, client, project, admin_headers, signature_image):
        _, token = _request_signature(client, project, admin_headers)
        response = _sign(client, token, signature_image, agreedToTerms=False)
        assert response.json()["error_code"] == "TERMS_NOT_ACCEPTED"
        response = _sign(client, token, signature_image, agreedToTerms="yes")
        assert response.json()["error_code"] == "TERMS_NOT_ACCEPTED"
        response = _sign(client, token, "", signerName="Jane Doe")
        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["error_code"] == "MISSING_SIGNATURE"
        response = client.post(f"/contracts/sign-by-token/{token}", json={"agreedToTerms": True})
        assert response.json()["error_code"] == "MISSING_SIGNATURE"


@pytest.mark.integration
class TestCountersignEndpoint:

    def test_countersign_before_client_signature(self, client, project, admin_headers):
        _request_signature(client, project, admin_headers)
        response = client.post(
            f"/contracts/{project.id}/countersign", json={"signerName": "Sam Studio"}, headers=admin_headers
        )
        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["error_code"] == "CLIENT_SIGNATURE_REQUIRED"

    def test_countersign_materializes_artifact(
        self, client, db_session, project, admin_headers, signature_image, storage, notifier
    ):
        _, token = _request_signature(client, project, admin_headers)
        assert _sign(client, token, signature_image).status_code == status.HTTP_200_OK

        response = client.post(
            f"/contracts/{project.id}/countersign",
            json={"signerName": "Sam Studio", "signatureImage": signature_image},
            headers=admin_headers,
        )
        assert response.status_code == status.HTTP_200_OK, response.text
        assert response.json()["countersigned_at"]

        db_session.expire_all()
        contract = db_session.query(Contract).filter(Contract.project_id == project.id).first()
        assert contract.countersigned_at is not None
        assert contract.signed_pdf_path
        assert storage.read_bytes(contract.signed_pdf_path).startswith(b"%PDF")
        assert notifier.sent[-1]["subject"].startswith("Contract Fully Executed")

        pdf = client.get(f"/contracts/{project.id}/pdf", headers=admin_headers)
        assert pdf.status_code == status.HTTP_200_OK
        assert pdf.headers["x-contract-pdf-source"] == "stored"
        assert pdf.content == storage.read_bytes(contract.signed_pdf_path)

    def test_consultant_cannot_countersign(self, client, project, consultant_headers):
        response = client.post(
            f"/contracts/{project.id}/countersign", json={"signerName": "C"}, headers=consultant_headers
        )
        assert response.status_code == status.HTTP_403_FORBIDDEN


@pytest.mark.integration
class TestStatusAndPdf:

    def test_signature_status_projection(self, client, project, admin_headers, signature_image):
        empty = client.get(f"/contracts/{project.id}/signature-status", headers=admin_headers)
        assert empty.status_code == status.HTTP_200_OK
        assert empty.json()["contract_id"] is None

        _, token = _request_signature(client, project, admin_headers)
        client.get(f"/contracts/by-token/{token}")
        data = client.get(f"/contracts/{project.id}/signature-status", headers=admin_headers).json()
        assert data["status"] == "viewed"
        assert data["link_active"] is True
        assert data["viewed_at"]
        assert [entry["action"] for entry in data["log"]] == ["viewed", "requested"]

        _sign(client, token, signature_image)
        data = client.get(f"/contracts/{project.id}/signature-status", headers=admin_headers).json()
        assert data["status"] == "signed"
        assert data["link_active"] is False
        assert data["signer_name"] == "Jane Doe"
        assert data["is_fully_signed"] is False
        assert "signature_token" not in data

    def test_pdf_for_operator_and_owning_client(self, client, project, admin_headers, client_headers):
        response = client.get(f"/contracts/{project.id}/pdf", headers=admin_headers)
        assert response.status_code == status.HTTP_200_OK
        assert response.headers["content-type"] == "application/pdf"
        assert f"contract-redesign-{project.id}.pdf" in response.headers["content-disposition"]

        response = client.get(f"/contracts/{project.id}/pdf", headers=client_headers)
        assert response.status_code == status.HTTP_200_OK

    def test_pdf_forbidden_for_other_clients(self, client, db_session, project):
        other = Client(contact_name="Other Person", email="other@example.test")
        db_session.add(other)
        db_session.commit()
        user = User(
            email="other@example.test",
            name="Other",
            password_hash=get_password_hash("secret123"),
            role=Role.CLIENT,
            client_id=other.id,
            is_active=True,
        )
        db_session.add(user)
        db_session.commit()
        headers = {"Authorization": f"Bearer {create_access_token(data={'sub': user.email})}"}
        response = client.get(f"/contracts/{project.id}/pdf", headers=headers)
        assert response.status_code == status.HTTP_403_FORBIDDEN

    def test_pdf_requires_auth(self, client, project):
        assert client.get(f"/contracts/{project.id}/pdf").status_code == status.HTTP_401_UNAUTHORIZED

"""
Email delivery and contract notification content.
"""
from datetime import datetime

import pytest

from agency_portal.config import settings
from agency_portal.services import notifications
from agency_portal.services.email_service import EmailService


@pytest.fixture
def snapshot():
    return {
        "contract_id": "c-1",
        "project_id": "p-1",
        "project_name": "Redesign",
        "client_name": "Jane Doe",
        "client_email": "jane@acme.test",
        "signer_name": "Jane Doe",
        "signer_email": "jane@acme.test",
        "signed_at": datetime(2026, 1, 6, 9, 30),
        "countersigner_name": None,
        "countersigned_at": None,
        "expires_at": datetime(2026, 1, 12, 9, 0),
        "renewal_at": None,
    }


class ExplodingSender:
    def send(self, to, subject, text, html=None):
        raise ConnectionError("smtp down")


@pytest.mark.unit
class TestEmailService:

    def test_missing_api_key_is_mocked(self, monkeypatch):
        monkeypatch.setattr(settings, "RESEND_API_KEY", None)
        result = EmailService.send("jane@acme.test", "Hello", "Body")
        assert result["success"] is True
        assert "Mocking" in result["message"]

    def test_delivery_error_is_reported_not_raised(self, monkeypatch):
        monkeypatch.setattr(settings, "RESEND_API_KEY", "re_live_key")

        def fail(params):
            raise RuntimeError("resend unavailable")

        monkeypatch.setattr(EmailService, "_deliver", staticmethod(fail))
        result = EmailService.send("jane@acme.test", "Hello", "Body")
        assert result == {"success": False, "message": "resend unavailable"}

    def test_params_sent_to_resend(self, monkeypatch):
        monkeypatch.setattr(settings, "RESEND_API_KEY", "re_live_key")
        captured = {}
        monkeypatch.setattr(EmailService, "_deliver", staticmethod(lambda params: captured.update(params)))
        EmailService.send("jane@acme.test", "Hello", "Body", html="<p>Body</p>")
        assert captured["to"] == ["jane@acme.test"]
        assert captured["from"] == settings.EMAIL_FROM
        assert captured["html"] == "<p>Body</p>"

    def test_layout_escapes_content(self):
        html = EmailService.render_layout("Heading", ["<script>alert(1)</script>"])
        assert "<script>" not in html
        assert settings.BUSINESS_NAME in html


@pytest.mark.unit
class TestContractNotifications:

    def test_signature_request_contains_link_and_expiry(self, snapshot, notifier):
        result = notifications.send_signature_request(notifier, snapshot, "https://portal.test/sign?token=abc")
        assert result["success"] is True
        message = notifier.sent[0]
        assert message["to"] == "jane@acme.test"
        assert "Redesign" in message["subject"]
        assert "https://portal.test/sign?token=abc" in message["text"]
        assert "January 12, 2026" in message["text"]

    def test_sender_exception_is_contained(self, snapshot):
        result = notifications.send_signature_request(ExplodingSender(), snapshot, "https://portal.test/sign")
        assert result["success"] is False

    def test_notify_signed_sends_confirmation_and_internal_notice(self, snapshot, notifier):
        notifications.notify_signed(notifier, snapshot)
        assert len(notifier.sent) == 2
        assert notifier.sent[0]["to"] == "jane@acme.test"

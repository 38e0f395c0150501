import logging
from typing import Any, Dict, List, Optional, Union

import resend
from jinja2 import Template

from agency_portal.config import settings
from agency_portal.utils.retry import retry_email

logger = logging.getLogger(__name__)

# Configure Resend global API key
resend.api_key = settings.RESEND_API_KEY

BASE_EMAIL_TEMPLATE = """
<!DOCTYPE html>
<html>
<head>
    <style>
        body { font-family: Arial, sans-serif; line-height: 1.6; color: #333; }
        .container { max-width: 600px; margin: 0 auto; padding: 20px; }
        .header { background: #1F2937; color: white; padding: 20px; text-align: center; }
        .content { padding: 24px; background: #f9fafb; }
        .button { background: #00AFF0; color: white; padding: 12px 24px; text-decoration: none; border-radius: 6px; display: inline-block; margin: 20px 0; font-weight: bold; }
        .footer { text-align: center; padding: 20px; color: #666; font-size: 12px; }
    </style>
</head>
<body>
    <div class="container">
        <div class="header">
            <h1>{{ heading }}</h1>
        </div>
        <div class="content">
            {% for paragraph in paragraphs %}<p>{{ paragraph }}</p>
            {% endfor %}
            {% if action_url %}<p style="text-align: center;"><a href="{{ action_url }}" class="button">{{ action_label }}</a></p>{% endif %}
        </div>
        <div class="footer">
            <p>{{ business_name }}</p>
        </div>
    </div>
</body>
</html>
"""


def _is_mock_key(api_key: Optional[str]) -> bool:
    return not api_key or api_key.startswith("your-") or api_key == "None"


class EmailService:
    """Resend-backed notification sender."""

    @staticmethod
    @retry_email
    def _deliver(params: Dict[str, Any]) -> Any:
        return resend.Emails.send(params)

    @staticmethod
    def send(
        to: Union[str, List[str]],
        subject: str,
        text: str,
        html: Optional[str] = None,
        from_email: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Send one email. Never raises: delivery failures come back as
        ``{"success": False, "message": ...}`` after bounded retries.
        """
        recipients = [to] if isinstance(to, str) else list(to)
        if _is_mock_key(settings.RESEND_API_KEY):
            msg = "Resend API Key missing/invalid. Mocking success."
            logger.info("%s Subject: %s", msg, subject)
            return {"success": True, "message": msg}

        params = {
            "from": from_email or settings.EMAIL_FROM,
            "to": recipients,
            "subject": subject,
            "text": text,
        }
        if html:
            params["html"] = html
        try:
            response = EmailService._deliver(params)
        except Exception as e:
            logger.error("Error sending email '%s': %s", subject, e)
            return {"success": False, "message": str(e)}
        logger.info("Email sent: %s", response)
        return {"success": True, "message": "Email sent successfully"}

    @staticmethod
    def render_template(template_str: str, context: Dict[str, Any]) -> str:
        """Render Jinja2 template with context."""
        template = Template(template_str, autoescape=True)
        return template.render(**context)

    @staticmethod
    def render_layout(
        heading: str,
        paragraphs: List[str],
        action_url: Optional[str] = None,
        action_label: Optional[str] = None,
    ) -> str:
        return EmailService.render_template(
            BASE_EMAIL_TEMPLATE,
            {
                "heading": heading,
                "paragraphs": paragraphs,
                "action_url": action_url,
                "action_label": action_label,
                "business_name": settings.BUSINESS_NAME,
            },
        )


def get_email_service() -> EmailService:
    return EmailService()

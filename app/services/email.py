"""
Email delivery through a Resend-compatible HTTP API.
"""

import html
import logging
from typing import Optional

import httpx

from app.core.config import settings

logger = logging.getLogger(__name__)


class EmailDeliveryError(Exception):
    """The email provider rejected or never received the message."""


class EmailClient:
    def __init__(
        self,
        api_url: Optional[str] = None,
        api_key: Optional[str] = None,
        sender: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.api_url = api_url or settings.EMAIL_API_URL
        self.api_key = api_key if api_key is not None else settings.EMAIL_API_KEY
        self.sender = sender or settings.EMAIL_FROM
        self.timeout = timeout
        self.transport = transport

    def send(self, to: str, subject: str, html: str) -> str:
        """Send one email and return the provider's message id."""
        if not self.api_key:
            raise EmailDeliveryError("EMAIL_API_KEY is not configured")

        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.post(
                    self.api_url,
                    json={"from": self.sender, "to": [to], "subject": subject, "html": html},
                    headers={"Authorization": f"Bearer {self.api_key}"},
                )
        except httpx.HTTPError as e:
            raise EmailDeliveryError(f"Email request failed: {e}") from e

        if response.status_code not in (200, 201, 202):
            raise EmailDeliveryError(
                f"Email provider returned {response.status_code}: {response.text[:200]}"
            )

        try:
            body = response.json()
        except ValueError:
            logger.warning("Email provider returned a non-JSON body: %s", response.text[:200])
            body = {}
        message_id = str(body.get("id", "")) if isinstance(body, dict) else ""
        logger.info("Sent email '%s' to %s (id=%s)", subject, to, message_id)
        return message_id


def render_book_completed_email(full_name: Optional[str], project_title: str, project_url: str) -> str:
    greeting = f"Hi {html.escape(full_name)}," if full_name else "Hi,"
    return f"""<p>{greeting}</p>
<p>Your book <strong>{html.escape(project_title)}</strong> has finished writing.</p>
<p><a href="{html.escape(project_url)}">Open it in InkStory</a> to read and edit the full manuscript.</p>
<p>Happy writing!<br>The InkStory team</p>"""

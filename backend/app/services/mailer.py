"""Transactional email via the Resend HTTP API.

Preview mode:
  When no RESEND_API_KEY is configured, or in development with SEND_EMAILS
  off, messages are logged instead of sent and reported as successful with
  ``preview=True``.  Callers treat both outcomes the same way.

Every request is bounded by ``settings.mail_timeout_seconds``.
"""

import html
import logging
from dataclasses import dataclass

import httpx

from app.config import settings

logger = logging.getLogger(__name__)

RESEND_BASE_URL = "https://api.resend.com"


@dataclass
class SendResult:
    success: bool
    preview: bool = False
    message_id: str | None = None
    error: str | None = None


class Mailer:
    """Resend client.  Pass ``client`` to inject a preconfigured httpx client."""

    def __init__(self, client: httpx.AsyncClient | None = None, api_key: str | None = None):
        self.api_key = settings.resend_api_key if api_key is None else api_key
        self.from_email = settings.email_from
        self.reply_to = settings.support_email or None
        self._client = client

    @property
    def preview_mode(self) -> bool:
        if not self.api_key:
            return True
        return settings.environment == "development" and not settings.send_emails

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=RESEND_BASE_URL,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                timeout=settings.mail_timeout_seconds,
            )
        return self._client

    async def close(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def send(
        self,
        to: str,
        subject: str,
        html_body: str,
        text: str | None = None,
        reply_to: str | None = None,
    ) -> SendResult:
        if self.preview_mode:
            logger.info(
                "Email preview (not sent): %s",
                subject,
                extra={"to": to, "text": text or ""},
            )
            return SendResult(success=True, preview=True)

        payload = {
            "from": self.from_email,
            "to": [to],
            "subject": subject,
            "html": html_body,
        }
        if text:
            payload["text"] = text
        if reply_to or self.reply_to:
            payload["reply_to"] = reply_to or self.reply_to

        try:
            response = await self._get_client().post("/emails", json=payload)
        except httpx.HTTPError as exc:
            logger.warning("Email transport error: %s", exc, extra={"to": to})
            return SendResult(success=False, error=str(exc))

        if response.status_code >= 400:
            error = f"Email API error: {response.status_code} - {response.text}"
            logger.warning(error, extra={"to": to})
            return SendResult(success=False, error=error)

        message_id = None
        try:
            message_id = response.json().get("id")
        except ValueError:
            pass
        logger.info("Email sent: %s", subject, extra={"to": to, "message_id": message_id})
        return SendResult(success=True, message_id=message_id)


# ── Templates ────────────────────────────────────────────────

def build_shipment_update_email(
    tracking_number: str,
    status: str,
    origin: str = "",
    destination: str = "",
    eta: str = "",
    note: str = "",
    message: str | None = None,
    subject: str | None = None,
) -> tuple[str, str, str]:
    """Return (subject, html, text) for a shipment status email."""
    status_text = (status or "CREATED").replace("_", " ")
    subject = subject or f"Update on {tracking_number} • {status_text}"
    track_url = f"{settings.app_url.rstrip('/')}/track/{tracking_number}"

    lines = [
        f"Your {settings.brand_name} shipment {tracking_number} has an update.",
        "",
        f"Status: {status_text}",
    ]
    if origin or destination:
        lines.append(f"Route: {origin or '?'} → {destination or '?'}")
    if eta:
        lines.append(f"ETA: {eta}")
    if note:
        lines.append(f"Note: {note}")
    if message:
        lines += ["", message]
    lines += ["", f"Track your shipment: {track_url}"]
    text = "\n".join(lines)

    paragraphs = "".join(
        f"<p>{html.escape(line)}</p>" for line in lines[:-1] if line
    )
    html_body = (
        f"<div>{paragraphs}"
        f'<p><a href="{html.escape(track_url, quote=True)}">Track your shipment</a></p>'
        "</div>"
    )
    return subject, html_body, text


_mailer: Mailer | None = None


def get_mailer() -> Mailer:
    global _mailer
    if _mailer is None:
        _mailer = Mailer()
    return _mailer


async def close_mailer():
    global _mailer
    if _mailer is not None:
        await _mailer.close()
        _mailer = None

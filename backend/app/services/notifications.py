"""Decide whether a shipment change emails the recipient, and send it.

Dispatch runs after the HTTP response (FastAPI BackgroundTasks), so it works
from a ``NotificationContext`` snapshot instead of the ORM object, and it
never raises: a failed email must not undo or fail the status change.
"""

import logging
from dataclasses import dataclass

from app.config import settings
from app.models.shipment import Shipment
from app.services.mailer import build_shipment_update_email, get_mailer

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NotificationContext:
    tracking_number: str
    status: str
    recipient_email: str
    origin: str = ""
    destination: str = ""
    eta: str = ""
    note: str = ""

    @classmethod
    def from_shipment(cls, shipment: Shipment) -> "NotificationContext":
        latest = shipment.timeline[-1] if shipment.timeline else None
        return cls(
            tracking_number=shipment.tracking_number,
            status=shipment.status or "CREATED",
            recipient_email=(shipment.recipient_email or "").strip().lower(),
            origin=shipment.origin or "",
            destination=shipment.destination or "",
            eta=shipment.eta_display,
            note=latest.note if latest else "",
        )


@dataclass(frozen=True)
class NotifyResult:
    attempted: bool
    success: bool = False
    preview: bool = False


def should_notify(ctx: NotificationContext, auto: bool = False, forced: bool = False) -> bool:
    if not ctx.recipient_email:
        return False
    return forced or (auto and settings.email_auto_notify)


async def maybe_notify(
    ctx: NotificationContext,
    auto: bool = False,
    forced: bool = False,
    message: str | None = None,
    subject: str | None = None,
) -> NotifyResult:
    if not should_notify(ctx, auto=auto, forced=forced):
        return NotifyResult(attempted=False)

    try:
        subject, html_body, text = build_shipment_update_email(
            tracking_number=ctx.tracking_number,
            status=ctx.status,
            origin=ctx.origin,
            destination=ctx.destination,
            eta=ctx.eta,
            note=ctx.note,
            message=message,
            subject=subject,
        )
        result = await get_mailer().send(ctx.recipient_email, subject, html_body, text)
    except Exception:
        logger.exception(
            "Shipment notification failed",
            extra={"tracking_number": ctx.tracking_number},
        )
        return NotifyResult(attempted=True)

    if not result.success:
        logger.warning(
            "Shipment notification not delivered: %s",
            result.error,
            extra={"tracking_number": ctx.tracking_number},
        )
    return NotifyResult(attempted=True, success=result.success, preview=result.preview)

"""Admin shipment router: operations desk.

Endpoints:
    GET    /api/admin/shipments/                   Paginated list (status / free-text filters)
    GET    /api/admin/shipments/{shipment_id}      Full detail
    PATCH  /api/admin/shipments/{shipment_id}      Status / location / route update
    POST   /api/admin/shipments/{shipment_id}/notify   Email the recipient now
"""

import logging

from fastapi import APIRouter, BackgroundTasks, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.deps import AuthContext, require_admin
from app.database import get_db
from app.middleware.exceptions import GlobalEdgeException, ValidationError
from app.schemas.common import PaginatedResponse
from app.schemas.shipment import (
    NotifyRequest,
    NotifyResponse,
    ShipmentOut,
    ShipmentUpdate,
    ShipmentUpdateResponse,
)
from app.services.mailer import build_shipment_update_email, get_mailer
from app.services.notifications import NotificationContext, maybe_notify, should_notify
from app.services.shipments import get_shipment, normalize_patch, update_shipment
from app.services.tracking import list_admin_shipments

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/", response_model=PaginatedResponse[ShipmentOut])
async def list_shipments(
    shipment_status: str | None = Query(None, alias="status"),
    q: str | None = Query(None),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
    _admin: AuthContext = Depends(require_admin),
):
    items, total = await list_admin_shipments(
        db, status=shipment_status, q=q, limit=limit, offset=offset
    )
    return PaginatedResponse[ShipmentOut](
        items=[ShipmentOut.model_validate(s) for s in items],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/{shipment_id}", response_model=ShipmentOut)
async def get_shipment_detail(
    shipment_id: str,
    db: AsyncSession = Depends(get_db),
    _admin: AuthContext = Depends(require_admin),
):
    return ShipmentOut.model_validate(await get_shipment(db, shipment_id))


@router.patch("/{shipment_id}", response_model=ShipmentUpdateResponse)
async def patch_shipment(
    shipment_id: str,
    body: ShipmentUpdate,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    admin: AuthContext = Depends(require_admin),
):
    """Apply an update and append one timeline entry.

    The recipient email is sent after the response when ``notify_now`` is
    set, or when auto-notify is switched on.  Email failures never affect
    the update.
    """
    patch = normalize_patch(body)
    shipment = await update_shipment(db, shipment_id, patch, admin.role)

    ctx = NotificationContext.from_shipment(shipment)
    queued = should_notify(ctx, auto=True, forced=patch.notify_now)
    if queued:
        background_tasks.add_task(
            maybe_notify,
            ctx,
            auto=True,
            forced=patch.notify_now,
            message=patch.message,
            subject=patch.message_subject,
        )

    return ShipmentUpdateResponse(
        message="Shipment updated",
        shipment=ShipmentOut.model_validate(shipment),
        notification_queued=queued,
    )


@router.post("/{shipment_id}/notify", response_model=NotifyResponse)
async def notify_recipient(
    shipment_id: str,
    body: NotifyRequest,
    db: AsyncSession = Depends(get_db),
    _admin: AuthContext = Depends(require_admin),
):
    """Send an update email synchronously and report the delivery outcome."""
    shipment = await get_shipment(db, shipment_id)
    to = (body.to or shipment.recipient_email or "").strip().lower()
    if not to:
        raise ValidationError("No recipient email on this shipment", field="to")

    ctx = NotificationContext.from_shipment(shipment)
    subject, html_body, text = build_shipment_update_email(
        tracking_number=ctx.tracking_number,
        status=ctx.status,
        origin=ctx.origin,
        destination=ctx.destination,
        eta=ctx.eta,
        note=ctx.note,
        message=body.message,
        subject=body.subject,
    )
    result = await get_mailer().send(to, subject, html_body, text)
    if not result.success:
        raise GlobalEdgeException(
            message="Email delivery failed",
            status_code=status.HTTP_502_BAD_GATEWAY,
            error_code="MAIL_DELIVERY_FAILED",
            details={"error": result.error} if result.error else None,
        )

    logger.info(
        "Sent manual notification for %s", shipment.tracking_number,
        extra={"to": to, "preview": result.preview},
    )
    return NotifyResponse(message="Notification sent", to=to, preview=result.preview)

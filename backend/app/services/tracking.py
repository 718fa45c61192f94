"""Read views over shipments.

Three audiences:
  owner   the user a shipment belongs to (authenticated)
  admin   unrestricted, filterable and paginated
  public  anyone holding a tracking number; internal identifiers stripped
"""

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.middleware.exceptions import ResourceNotFoundError
from app.models.shipment import Shipment
from app.schemas.shipment import (
    ContactBlock,
    PublicFreightOut,
    PublicParcelOut,
    PublicTrackingView,
    RecipientBlock,
    TimelineEntryOut,
)
from app.services.shipments import normalize_status, status_label


# ── Owner ────────────────────────────────────────────────────

async def list_owner_shipments(db: AsyncSession, owner_id: str) -> list[Shipment]:
    result = await db.execute(
        select(Shipment)
        .where(Shipment.user_id == owner_id)
        .order_by(Shipment.created_at.desc())
    )
    return list(result.scalars().all())


async def get_owner_shipment(
    db: AsyncSession, owner_id: str, shipment_id: str
) -> Shipment:
    # Other owners' shipments are reported as missing, not forbidden
    result = await db.execute(
        select(Shipment).where(
            Shipment.id == shipment_id,
            Shipment.user_id == owner_id,
        )
    )
    shipment = result.scalar_one_or_none()
    if not shipment:
        raise ResourceNotFoundError("Shipment", shipment_id)
    return shipment


# ── Admin ────────────────────────────────────────────────────

async def list_admin_shipments(
    db: AsyncSession,
    status: str | None = None,
    q: str | None = None,
    limit: int = 20,
    offset: int = 0,
) -> tuple[list[Shipment], int]:
    """Filtered, newest-first page of shipments plus the total match count.

    ``status`` accepts a code, a label or "all".  An unrecognized status
    matches nothing rather than being ignored.
    """
    stmt = select(Shipment)

    if status and status.strip().lower() != "all":
        code = normalize_status(status)
        if code is None:
            return [], 0
        stmt = stmt.where(Shipment.status == code)

    if q and q.strip():
        pattern = f"%{q.strip().lower()}%"
        stmt = stmt.where(
            or_(
                func.lower(Shipment.tracking_number).like(pattern),
                func.lower(Shipment.origin).like(pattern),
                func.lower(Shipment.destination).like(pattern),
                func.lower(Shipment.recipient_email).like(pattern),
                func.lower(Shipment.last_location).like(pattern),
            )
        )

    count_stmt = select(func.count()).select_from(stmt.subquery())
    total = (await db.execute(count_stmt)).scalar() or 0

    result = await db.execute(
        stmt.order_by(Shipment.created_at.desc()).limit(limit).offset(offset)
    )
    return list(result.scalars().all()), total


# ── Public ───────────────────────────────────────────────────

def _public_parcel(parcel: dict | None) -> PublicParcelOut | None:
    if not parcel:
        return None
    return PublicParcelOut(
        weight=parcel.get("weight") or 0,
        value=parcel.get("value") or 0,
        contents=parcel.get("contents") or "",
        level=parcel.get("level") or "standard",
    )


def _public_freight(freight: dict | None) -> PublicFreightOut | None:
    if not freight:
        return None
    return PublicFreightOut(
        mode=freight.get("mode") or "air",
        pallets=freight.get("pallets") or 1,
        weight=freight.get("weight") or 0,
    )


def _contact(block: dict | None) -> ContactBlock | None:
    if not block:
        return None
    contact = ContactBlock(
        name=block.get("name") or "",
        email=block.get("email") or "",
        phone=block.get("phone") or "",
    )
    if not (contact.name or contact.email or contact.phone):
        return None
    return contact


def build_public_view(shipment: Shipment) -> PublicTrackingView:
    """Project a shipment onto the public tracking shape.

    Never carries id, user_id, idempotency_key, source or version.  The
    status label is computed for display only; the stored code is untouched.
    """
    recipient = shipment.recipient_contact or {}
    return PublicTrackingView(
        tracking_number=shipment.tracking_number,
        status=status_label(shipment.status),
        eta=shipment.eta_display,
        eta_at=shipment.eta_at,
        last_location=shipment.last_location or None,
        origin=shipment.origin or None,
        destination=shipment.destination or None,
        service_type=shipment.service_type,
        parcel=_public_parcel(shipment.parcel),
        freight=_public_freight(shipment.freight),
        timeline=[TimelineEntryOut.model_validate(e) for e in shipment.timeline],
        price=shipment.price,
        currency=shipment.currency,
        billable=shipment.billable,
        recipient_email=shipment.recipient_email or "",
        recipient_address=shipment.recipient_address or "",
        shipper=_contact(shipment.shipper_contact),
        recipient=RecipientBlock(
            name=recipient.get("name") or "",
            email=recipient.get("email") or shipment.recipient_email or "",
            phone=recipient.get("phone") or "",
            address=shipment.recipient_address or "",
        ),
        created_at=shipment.created_at,
        updated_at=shipment.updated_at,
    )


async def get_public_tracking(db: AsyncSession, tracking_number: str) -> PublicTrackingView:
    tn = (tracking_number or "").strip().upper()
    result = await db.execute(
        select(Shipment).where(Shipment.tracking_number == tn)
    )
    shipment = result.scalar_one_or_none()
    if not shipment:
        raise ResourceNotFoundError("Shipment", tn or tracking_number)
    return build_public_view(shipment)

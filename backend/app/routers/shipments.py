"""Shipment router: quoting, booking, owner views and public tracking.

Endpoints:
    POST   /api/shipments/quote                    Price a parcel or freight payload
    GET    /api/shipments/track/{tracking_number}  Public tracking view
    POST   /api/shipments/public                   Guest booking (alias: /guest)
    POST   /api/shipments/                         Booking by the signed-in user
    GET    /api/shipments/                         The signed-in user's shipments
    GET    /api/shipments/{shipment_id}            One of the signed-in user's shipments
"""

from fastapi import APIRouter, Depends, Header, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.deps import AuthContext, get_auth_context
from app.database import get_db
from app.middleware.exceptions import ValidationError
from app.schemas.shipment import (
    PublicTrackingView,
    QuoteOut,
    QuoteRequest,
    ShipmentCreate,
    ShipmentOut,
)
from app.services import rates
from app.services.shipments import create_shipment
from app.services.tracking import (
    build_public_view,
    get_owner_shipment,
    get_public_tracking,
    list_owner_shipments,
)

router = APIRouter()


def idempotency_key(
    idempotency_key: str | None = Header(None, alias="Idempotency-Key"),
    x_idempotency_key: str | None = Header(None, alias="X-Idempotency-Key"),
) -> str | None:
    key = (idempotency_key or x_idempotency_key or "").strip()
    return key or None


# ── Public ───────────────────────────────────────────────────

@router.post("/quote", response_model=QuoteOut)
async def quote(body: QuoteRequest):
    """Price a payload without booking.  Parcel wins when both are sent."""
    if body.parcel is not None:
        level = body.service_level or body.parcel.level or "standard"
        return QuoteOut.model_validate(rates.quote_parcel(body.parcel, level))
    if body.freight is not None:
        return QuoteOut.model_validate(rates.quote_freight(body.freight))
    raise ValidationError("parcel or freight payload required", field="parcel")


@router.get("/track/{tracking_number}", response_model=PublicTrackingView)
async def track(
    tracking_number: str,
    db: AsyncSession = Depends(get_db),
):
    return await get_public_tracking(db, tracking_number)


@router.post(
    "/public",
    response_model=PublicTrackingView,
    status_code=status.HTTP_201_CREATED,
)
@router.post(
    "/guest",
    response_model=PublicTrackingView,
    status_code=status.HTTP_201_CREATED,
    include_in_schema=False,
)
async def create_guest_shipment(
    body: ShipmentCreate,
    db: AsyncSession = Depends(get_db),
    key: str | None = Depends(idempotency_key),
):
    """Book without an account.

    The booker is linked to an existing or prospect user by email/phone when
    possible, but the response never reveals that link.
    """
    shipment = await create_shipment(db, None, body, idempotency_key=key)
    return build_public_view(shipment)


# ── Authenticated owner ──────────────────────────────────────

@router.post("/", response_model=ShipmentOut, status_code=status.HTTP_201_CREATED)
async def create_owned_shipment(
    body: ShipmentCreate,
    db: AsyncSession = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
    key: str | None = Depends(idempotency_key),
):
    shipment = await create_shipment(db, ctx.owner_id, body, idempotency_key=key)
    return ShipmentOut.model_validate(shipment)


@router.get("/", response_model=list[ShipmentOut])
async def list_my_shipments(
    db: AsyncSession = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
):
    shipments = await list_owner_shipments(db, ctx.owner_id)
    return [ShipmentOut.model_validate(s) for s in shipments]


@router.get("/{shipment_id}", response_model=ShipmentOut)
async def get_my_shipment(
    shipment_id: str,
    db: AsyncSession = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
):
    shipment = await get_owner_shipment(db, ctx.owner_id, shipment_id)
    return ShipmentOut.model_validate(shipment)

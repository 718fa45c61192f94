"""Shipment lifecycle service.

Handles booking and status changes for a Shipment:
  - Validating route, recipient and service payload
  - Snapshotting the quote at creation
  - Linking an owner (authenticated user, else identity resolution)
  - Generating a unique tracking number
  - Appending exactly one ShipmentEvent per change, in the same flush as
    the field changes it describes

Any status may move to any other valid status; DELIVERED and CANCELLED are
end states for display only.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from app.config import settings
from app.middleware.exceptions import (
    ConflictError,
    PermissionDeniedError,
    ResourceNotFoundError,
    ValidationError,
)
from app.models.shipment import Shipment
from app.models.shipment_event import ShipmentEvent
from app.models.user import UserRole
from app.schemas.shipment import PlaceIn, ShipmentCreate, ShipmentUpdate
from app.services import rates
from app.services.identity import extract_contact, normalize_email, resolve_user
from app.utils.clock import utcnow
from app.utils.numbering import generate_tracking_number, tracking_number_exists

logger = logging.getLogger(__name__)

STATUS_CODES = (
    "CREATED",
    "PICKED_UP",
    "IN_TRANSIT",
    "OUT_FOR_DELIVERY",
    "DELIVERED",
    "EXCEPTION",
    "CANCELLED",
)

STATUS_LABELS = {
    "CREATED": "Created",
    "PICKED_UP": "Picked Up",
    "IN_TRANSIT": "In Transit",
    "OUT_FOR_DELIVERY": "Out for Delivery",
    "DELIVERED": "Delivered",
    "EXCEPTION": "Exception",
    "CANCELLED": "Cancelled",
}

END_STATES = frozenset({"DELIVERED", "CANCELLED"})

MIN_PARCEL_ADDRESS_LENGTH = 6


# ── Normalization helpers ────────────────────────────────────

def normalize_status(value: str | None) -> str | None:
    """Map a status code or label to its code.

    "in transit", "IN-TRANSIT", "in_transit" and "In Transit" all give
    "IN_TRANSIT".  Returns None for anything unrecognized.
    """
    if not value:
        return None
    code = "_".join(str(value).replace("-", " ").replace("_", " ").upper().split())
    return code if code in STATUS_CODES else None


def status_label(code: str | None) -> str:
    code = code or "CREATED"
    return STATUS_LABELS.get(code, code.replace("_", " ").title())


def normalize_place(place: str | PlaceIn | None) -> str:
    """Collapse a place string or {city, state, country} into one line."""
    if not place:
        return ""
    if isinstance(place, str):
        return place.strip()
    city = ", ".join(p.strip() for p in (place.city, place.state) if p and p.strip())
    country = (place.country or "").strip()
    return ", ".join(p for p in (city, country) if p)


def normalize_address(address: str | None) -> str:
    if not address or not isinstance(address, str):
        return ""
    return " ".join(address.split())


def infer_service_type(body: ShipmentCreate) -> str:
    if body.service_type:
        return body.service_type
    return "freight" if body.freight is not None else "parcel"


# ── Create ───────────────────────────────────────────────────

def _build_contacts(body: ShipmentCreate, recipient_email: str, address: str) -> tuple[dict, dict]:
    c = body.contact
    shipper = {
        "name": (c and (c.shipper_name or c.name)) or "",
        "email": normalize_email(c and (c.shipper_email or c.email)),
        "phone": (c and (c.shipper_phone or c.phone)) or "",
    }
    recipient = {
        "name": (c and c.recipient_name) or "",
        "email": recipient_email,
        "phone": (c and c.recipient_phone) or "",
    }
    return shipper, recipient


def _sync_recipient_email(shipment: Shipment) -> None:
    """Keep flat recipient_email and recipient_contact.email mirrored."""
    contact = dict(shipment.recipient_contact or {})
    flat = normalize_email(shipment.recipient_email)
    nested = normalize_email(contact.get("email"))
    if not nested and flat:
        nested = flat
    if not flat and nested:
        flat = nested
    contact["email"] = nested
    shipment.recipient_contact = contact
    shipment.recipient_email = flat


async def _find_by_idempotency_key(db: AsyncSession, key: str) -> Shipment | None:
    result = await db.execute(select(Shipment).where(Shipment.idempotency_key == key))
    return result.scalar_one_or_none()


def _replay(existing: Shipment, caller_id: str | None, recipient_email: str) -> Shipment:
    """Return an earlier booking made under the same key by the same caller.

    Authenticated callers must own the booking.  Guests can only replay a
    guest booking for the same recipient.  Anything else is a key reuse.
    """
    if caller_id:
        same_caller = existing.user_id == caller_id
    else:
        same_caller = (
            existing.source == "web_guest"
            and existing.recipient_email == recipient_email
        )
    if not same_caller:
        logger.warning(
            "Idempotency key %s reused by a different caller", existing.idempotency_key,
            extra={"shipment_id": existing.id, "caller_id": caller_id},
        )
        raise ConflictError(
            "Idempotency-Key was already used for another booking",
            error_code="IDEMPOTENCY_KEY_REUSED",
        )

    logger.info("Idempotent replay for key %s", existing.idempotency_key)
    return existing


async def create_shipment(
    db: AsyncSession,
    owner_id: str | None,
    body: ShipmentCreate,
    idempotency_key: str | None = None,
) -> Shipment:
    """Validate, price and persist a new booking.

    A repeated ``idempotency_key`` from the same caller returns the original
    booking, including when the original is committed by a concurrent
    request between our lookup and our insert.

    Raises:
        ValidationError for missing route, recipient or service payload.
        ConflictError when the key belongs to another caller's booking.
    """
    caller_id = owner_id

    if idempotency_key:
        existing = await _find_by_idempotency_key(db, idempotency_key)
        if existing:
            return _replay(existing, caller_id, normalize_email(body.recipient_email))

    # ── Validate ──────────────────────────────────────────────
    service_type = infer_service_type(body)

    origin = normalize_place(body.origin)
    destination = normalize_place(body.destination)
    if not origin:
        raise ValidationError("from and to are required", field="from")
    if not destination:
        raise ValidationError("from and to are required", field="to")

    recipient_email = normalize_email(body.recipient_email)
    if not recipient_email:
        raise ValidationError("recipient_email is required", field="recipient_email")

    address = normalize_address(
        body.recipient_address
        or (body.contact.recipient_address if body.contact else None)
    )
    if service_type == "parcel" and len(address) < MIN_PARCEL_ADDRESS_LENGTH:
        raise ValidationError(
            "recipient_address is required for parcel shipments",
            field="recipient_address",
        )

    if service_type == "freight" and body.freight is None:
        raise ValidationError("freight payload required", field="freight")
    if service_type == "parcel" and body.parcel is None:
        raise ValidationError("parcel payload required", field="parcel")

    # ── Quote ─────────────────────────────────────────────────
    if service_type == "freight":
        detail = body.freight
        pricing = rates.quote_freight(detail)
        parcel_data, freight_data = None, detail.model_dump()
    else:
        level = body.service_level or body.parcel.level or "standard"
        detail = body.parcel.model_copy(update={"level": level.strip().lower()})
        pricing = rates.quote_parcel(detail, level)
        parcel_data, freight_data = detail.model_dump(), None

    # ── Owner ─────────────────────────────────────────────────
    source = "web_auth" if caller_id else "web_guest"
    if not owner_id:
        user = await resolve_user(db, extract_contact(body))
        owner_id = user.id if user else None

    # ── Persist ───────────────────────────────────────────────
    shipper, recipient = _build_contacts(body, recipient_email, address)
    attempts = max(1, settings.tracking_number_attempts)

    for attempt in range(1, attempts + 1):
        now = utcnow()
        shipment = Shipment(
            tracking_number=await generate_tracking_number(db),
            user_id=owner_id,
            service_type=service_type,
            origin=origin,
            destination=destination,
            shipper_contact=shipper,
            recipient_contact=recipient,
            recipient_email=recipient_email,
            recipient_address=address,
            parcel=parcel_data,
            freight=freight_data,
            currency=pricing.currency,
            price=pricing.price,
            billable=pricing.billable,
            eta=pricing.eta,
            status="CREATED",
            last_location="",
            source=source,
            idempotency_key=idempotency_key,
            created_at=now,
            updated_at=now,
            timeline=[
                ShipmentEvent(seq=0, status="CREATED", at=now, note="Booking created"),
            ],
        )
        _sync_recipient_email(shipment)

        # Only this insert is rolled back; the prospect user above stays
        try:
            async with db.begin_nested():
                db.add(shipment)
                await db.flush()
        except IntegrityError:
            if idempotency_key:
                existing = await _find_by_idempotency_key(db, idempotency_key)
                if existing:
                    return _replay(existing, caller_id, recipient_email)
            if not await tracking_number_exists(db, shipment.tracking_number):
                raise
            logger.warning(
                "Tracking number %s taken at insert (attempt %d/%d)",
                shipment.tracking_number, attempt, attempts,
            )
            continue

        logger.info(
            "Created shipment %s (%s, %s -> %s)",
            shipment.tracking_number, service_type, origin, destination,
            extra={"shipment_id": shipment.id, "owner_id": owner_id, "source": source},
        )
        return shipment

    raise ConflictError(
        "Could not allocate a unique tracking number",
        error_code="TRACKING_NUMBER_EXHAUSTED",
    )


# ── Update ───────────────────────────────────────────────────

@dataclass
class ShipmentPatch:
    """Canonical form of an update request, aliases already resolved."""
    status: str | None = None
    last_location: str | None = None
    note: str | None = None
    eta: str | None = None
    eta_at: datetime | None = None
    origin: str | None = None
    destination: str | None = None
    notify_now: bool = False
    message: str | None = None
    message_subject: str | None = None
    provided: set[str] = field(default_factory=set)


def parse_eta_at(value: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError("Invalid eta_at datetime", field="eta_at")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def normalize_patch(body: ShipmentUpdate) -> ShipmentPatch:
    """Resolve aliases and validate values of an update request.

    ``from``/``to`` win over ``origin``/``destination`` when both are sent.
    """
    sent = body.model_fields_set
    patch = ShipmentPatch(
        notify_now=body.notify_now,
        message=body.message,
        message_subject=body.message_subject,
    )

    if body.status:
        code = normalize_status(body.status)
        if not code:
            raise ValidationError(f"Invalid status: {body.status}", field="status")
        patch.status = code
        patch.provided.add("status")

    if "last_location" in sent and body.last_location is not None:
        patch.last_location = body.last_location.strip()
        patch.provided.add("last_location")

    if "note" in sent and body.note:
        patch.note = body.note.strip()

    if "eta" in sent and body.eta is not None:
        patch.eta = str(body.eta)
        patch.provided.add("eta")

    if "eta_at" in sent and body.eta_at is not None:
        patch.eta_at = parse_eta_at(body.eta_at)
        patch.provided.add("eta_at")

    next_from = body.from_ if "from_" in sent else body.origin
    next_to = body.to if "to" in sent else body.destination
    if next_from is not None:
        patch.origin = next_from.strip()
        if not patch.origin:
            raise ValidationError("from cannot be blank", field="from")
        patch.provided.add("origin")
    if next_to is not None:
        patch.destination = next_to.strip()
        if not patch.destination:
            raise ValidationError("to cannot be blank", field="to")
        patch.provided.add("destination")

    return patch


async def get_shipment(db: AsyncSession, shipment_id: str) -> Shipment:
    shipment = (
        await db.execute(select(Shipment).where(Shipment.id == shipment_id))
    ).scalar_one_or_none()
    if not shipment:
        raise ResourceNotFoundError("Shipment", shipment_id)
    return shipment


def _timeline_note(patch: ShipmentPatch, changes: list[str], actor_role: str) -> str:
    if patch.note:
        return patch.note
    if patch.last_location:
        return f"Location: {patch.last_location}"
    if changes:
        return " | ".join(changes)
    return f"Updated by {actor_role}"


async def update_shipment(
    db: AsyncSession,
    shipment_id: str,
    body: ShipmentUpdate | ShipmentPatch,
    actor_role: str,
) -> Shipment:
    """Apply a partial update and append one timeline entry.

    Raises:
        PermissionDeniedError unless the actor is an admin.
        ResourceNotFoundError for an unknown shipment.
        ValidationError for an unknown status or bad eta_at.
        ConflictError when another writer changed the shipment first.
    """
    if actor_role != UserRole.ADMIN.value:
        raise PermissionDeniedError("Only admins can update shipments")

    patch = body if isinstance(body, ShipmentPatch) else normalize_patch(body)
    shipment = await get_shipment(db, shipment_id)

    if patch.status:
        if shipment.status in END_STATES and patch.status != shipment.status:
            logger.info(
                "Shipment %s leaves end state %s for %s",
                shipment.tracking_number, shipment.status, patch.status,
            )
        shipment.status = patch.status
    if "last_location" in patch.provided:
        shipment.last_location = patch.last_location
    if "eta" in patch.provided:
        shipment.eta = patch.eta
    if "eta_at" in patch.provided:
        shipment.eta_at = patch.eta_at

    changes: list[str] = []
    if "origin" in patch.provided:
        previous = shipment.origin or ""
        shipment.origin = patch.origin
        if shipment.origin != previous:
            changes.append(f'Origin: "{previous}" → "{shipment.origin}"')
    if "destination" in patch.provided:
        previous = shipment.destination or ""
        shipment.destination = patch.destination
        if shipment.destination != previous:
            changes.append(f'Destination: "{previous}" → "{shipment.destination}"')

    now = utcnow()
    shipment.timeline.append(
        ShipmentEvent(
            seq=len(shipment.timeline),
            status=shipment.status or "CREATED",
            at=now,
            note=_timeline_note(patch, changes, actor_role),
        )
    )
    shipment.updated_at = now

    try:
        await db.flush()
    except StaleDataError:
        raise ConflictError(
            "Shipment was modified by another request; reload and retry",
            error_code="CONCURRENT_UPDATE",
        )

    logger.info(
        "Updated shipment %s -> %s",
        shipment.tracking_number, shipment.status,
        extra={"shipment_id": shipment.id, "changes": changes},
    )
    return shipment

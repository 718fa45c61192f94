"""Pydantic schemas for shipment booking, quoting, updates and tracking."""

from datetime import datetime
from typing import Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, EmailStr, Field, field_validator


# ── Service detail ───────────────────────────────────────────

class ParcelDetail(BaseModel):
    weight: float = Field(0, ge=0)  # kg
    length: float = Field(0, ge=0)  # cm
    width: float = Field(0, ge=0)
    height: float = Field(0, ge=0)
    value: float = Field(0, ge=0)  # declared value
    contents: str = ""
    level: str = "standard"

    @field_validator("level", mode="before")
    @classmethod
    def _lower_level(cls, v):
        if isinstance(v, str):
            return v.strip().lower() or "standard"
        return v or "standard"


class FreightDetail(BaseModel):
    mode: Literal["air", "sea", "road"] = "air"
    pallets: int = Field(1, ge=1)
    length: float = Field(0, ge=0)  # cm, per pallet
    width: float = Field(0, ge=0)
    height: float = Field(0, ge=0)
    weight: float = Field(0, ge=0)  # kg, per pallet
    incoterm: str = "DAP"
    notes: str = ""

    @field_validator("mode", mode="before")
    @classmethod
    def _lower_mode(cls, v):
        if isinstance(v, str):
            return v.strip().lower()
        return v or "air"

    @field_validator("pallets", mode="before")
    @classmethod
    def _default_pallets(cls, v):
        return v or 1


# ── Contacts & places ────────────────────────────────────────

class ContactBlock(BaseModel):
    name: str = ""
    email: str = ""
    phone: str = ""


class PlaceIn(BaseModel):
    city: str | None = None
    state: str | None = None
    country: str | None = None


class BookingContact(BaseModel):
    """Contact block sent with a booking.  Generic keys describe the booker."""
    name: str | None = None
    email: str | None = None
    phone: str | None = None
    shipper_name: str | None = None
    shipper_email: str | None = None
    shipper_phone: str | None = None
    recipient_name: str | None = None
    recipient_phone: str | None = None
    recipient_address: str | None = None


# ── Quote ────────────────────────────────────────────────────

class QuoteRequest(BaseModel):
    parcel: ParcelDetail | None = None
    freight: FreightDetail | None = None
    service_level: str | None = None


class QuoteOut(BaseModel):
    currency: str
    price: int
    eta: str
    billable: float

    model_config = ConfigDict(from_attributes=True)


# ── Create ───────────────────────────────────────────────────

class ShipmentCreate(BaseModel):
    service_type: Literal["parcel", "freight"] | None = None
    origin: str | PlaceIn | None = Field(
        None, validation_alias=AliasChoices("from", "origin")
    )
    destination: str | PlaceIn | None = Field(
        None, validation_alias=AliasChoices("to", "destination")
    )
    recipient_email: str | None = None
    recipient_address: str | None = None
    service_level: str | None = None
    parcel: ParcelDetail | None = None
    freight: FreightDetail | None = None
    contact: BookingContact | None = None


# ── Update (partial, admin) ──────────────────────────────────

class ShipmentUpdate(BaseModel):
    status: str | None = None
    last_location: str | None = None
    note: str | None = None
    eta: str | None = None
    eta_at: str | None = None
    from_: str | None = Field(None, alias="from")
    origin: str | None = None
    to: str | None = None
    destination: str | None = None
    notify_now: bool = False
    message: str | None = None
    message_subject: str | None = None

    model_config = ConfigDict(populate_by_name=True)


class NotifyRequest(BaseModel):
    to: EmailStr | None = None
    subject: str | None = None
    message: str | None = None


class NotifyResponse(BaseModel):
    message: str
    to: str
    preview: bool = False


# ── Response (owner / admin) ─────────────────────────────────

class TimelineEntryOut(BaseModel):
    status: str
    at: datetime
    note: str

    model_config = ConfigDict(from_attributes=True)


class ShipmentOut(BaseModel):
    id: str
    tracking_number: str
    user_id: str | None
    service_type: str
    origin: str
    destination: str
    shipper_contact: ContactBlock
    recipient_contact: ContactBlock
    recipient_email: str
    recipient_address: str
    parcel: ParcelDetail | None
    freight: FreightDetail | None
    currency: str
    price: int
    billable: float
    eta: str
    eta_at: datetime | None
    eta_display: str
    status: str
    last_location: str
    source: str
    timeline: list[TimelineEntryOut]
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ShipmentUpdateResponse(BaseModel):
    message: str
    shipment: ShipmentOut
    notification_queued: bool


# ── Response (public tracking) ───────────────────────────────

class PublicParcelOut(BaseModel):
    weight: float
    value: float
    contents: str
    level: str


class PublicFreightOut(BaseModel):
    mode: str
    pallets: int
    weight: float


class RecipientBlock(ContactBlock):
    address: str = ""


class PublicTrackingView(BaseModel):
    tracking_number: str
    status: str
    eta: str
    eta_at: datetime | None
    last_location: str | None
    origin: str | None
    destination: str | None
    service_type: str
    parcel: PublicParcelOut | None
    freight: PublicFreightOut | None
    timeline: list[TimelineEntryOut]
    price: int
    currency: str
    billable: float
    recipient_email: str
    recipient_address: str
    shipper: ContactBlock | None
    recipient: RecipientBlock
    created_at: datetime
    updated_at: datetime

"""Shipment: a single parcel or freight booking.

The quote snapshot (currency, price, eta, billable) is written once at
creation.  Status changes never overwrite history: every change appends a
ShipmentEvent, and ``status`` always mirrors the newest event.

Statuses:  CREATED | PICKED_UP | IN_TRANSIT | OUT_FOR_DELIVERY |
           DELIVERED | EXCEPTION | CANCELLED
Sources:   web_auth | web_guest
"""

import uuid
from datetime import datetime

from sqlalchemy import DateTime, Float, ForeignKey, Index, Integer, JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base
from app.models.shipment_event import ShipmentEvent
from app.utils.clock import utcnow


class Shipment(Base):
    __tablename__ = "shipments"
    __table_args__ = (
        Index("ix_shipments_status_created", "status", "created_at"),
        Index("ix_shipments_user_created", "user_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    tracking_number: Mapped[str] = mapped_column(
        String(32), unique=True, nullable=False, index=True
    )

    # ── Ownership ─────────────────────────────────────────────
    user_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("users.id"), index=True
    )

    # ── Classification & route ────────────────────────────────
    service_type: Mapped[str] = mapped_column(String(10), nullable=False, default="parcel")
    origin: Mapped[str] = mapped_column(String(255), nullable=False)
    destination: Mapped[str] = mapped_column(String(255), nullable=False)

    # ── Parties ───────────────────────────────────────────────
    # {"name": ..., "email": ..., "phone": ...}
    shipper_contact: Mapped[dict] = mapped_column(JSON, default=dict)
    recipient_contact: Mapped[dict] = mapped_column(JSON, default=dict)
    # Flat back-compat fields; recipient_email mirrors recipient_contact.email
    recipient_email: Mapped[str] = mapped_column(String(255), default="")
    recipient_address: Mapped[str] = mapped_column(Text, default="")

    # ── Service detail (shape depends on service_type) ────────
    #   parcel:  {"weight", "length", "width", "height", "value", "contents", "level"}
    #   freight: {"mode", "pallets", "length", "width", "height", "weight", "incoterm", "notes"}
    parcel: Mapped[dict | None] = mapped_column(JSON)
    freight: Mapped[dict | None] = mapped_column(JSON)

    # ── Quote snapshot ────────────────────────────────────────
    currency: Mapped[str] = mapped_column(String(3), default="EUR")
    price: Mapped[int] = mapped_column(Integer, default=0)
    billable: Mapped[float] = mapped_column(Float, default=0)
    eta: Mapped[str] = mapped_column(String(100), default="")
    eta_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # ── Lifecycle ─────────────────────────────────────────────
    status: Mapped[str] = mapped_column(String(30), default="CREATED", index=True)
    last_location: Mapped[str] = mapped_column(String(255), default="")

    # ── Metadata ──────────────────────────────────────────────
    source: Mapped[str] = mapped_column(String(20), default="web_guest")
    idempotency_key: Mapped[str | None] = mapped_column(String(255), unique=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    # ── Relationships ─────────────────────────────────────────
    timeline: Mapped[list[ShipmentEvent]] = relationship(
        back_populates="shipment",
        order_by=ShipmentEvent.seq,
        lazy="selectin",
    )
    user = relationship("User", back_populates="shipments")

    # Concurrent writers get StaleDataError instead of interleaving history
    __mapper_args__ = {"version_id_col": version}

    @property
    def eta_display(self) -> str:
        if self.eta_at:
            return self.eta_at.isoformat()
        return self.eta or ""

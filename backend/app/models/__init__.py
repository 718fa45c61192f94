"""Aggregate model imports for Alembic auto-detection."""

from app.models.user import User, UserRole
from app.models.shipment_event import ShipmentEvent
from app.models.shipment import Shipment

__all__ = ["User", "UserRole", "ShipmentEvent", "Shipment"]

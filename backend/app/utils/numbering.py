"""Tracking number generation.

Format:
  GE-XXXXXXXX   8 characters from an alphabet without look-alikes
                (no I, O, 0, 1), e.g. GE-8K3F7Q2Z

Each candidate is checked against existing shipments; after
``settings.tracking_number_attempts`` collisions we fall back to a
timestamp-derived code.  The unique index on shipments.tracking_number
is the final guard; create_shipment retries when an insert hits it.
"""

import logging
import secrets
import time

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.shipment import Shipment

logger = logging.getLogger(__name__)

PREFIX = "GE"
ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
CODE_LENGTH = 8

_BASE36 = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"


def to_base36(value: int) -> str:
    if value == 0:
        return "0"
    out = []
    while value:
        value, rem = divmod(value, 36)
        out.append(_BASE36[rem])
    return "".join(reversed(out))


def random_tracking_code() -> str:
    code = "".join(secrets.choice(ALPHABET) for _ in range(CODE_LENGTH))
    return f"{PREFIX}-{code}"


def fallback_tracking_code() -> str:
    """GE<base36 ms timestamp><4 random base36 chars>."""
    suffix = "".join(secrets.choice(_BASE36) for _ in range(4))
    return f"{PREFIX}{to_base36(int(time.time() * 1000))}{suffix}"


async def tracking_number_exists(db: AsyncSession, tracking_number: str) -> bool:
    result = await db.execute(
        select(Shipment.id).where(Shipment.tracking_number == tracking_number)
    )
    return result.first() is not None


async def generate_tracking_number(db: AsyncSession) -> str:
    """Return a tracking number not used by any stored shipment."""
    attempts = max(1, settings.tracking_number_attempts)
    for _ in range(attempts):
        candidate = random_tracking_code()
        if not await tracking_number_exists(db, candidate):
            return candidate

    logger.warning(
        "Tracking number collisions exhausted after %d attempts; using fallback",
        attempts,
    )
    return fallback_tracking_code()

"""Identity resolution: link a booking to a user record.

Given the booker's contact details, find an existing user by email (case
insensitive) or phone (any of the legacy stored shapes).  When nothing
matches and an email is available, create a lightweight *prospect* user.
Without an email the booking stays a guest booking (no owner).

Resolution never blocks a booking: creation failures are logged and the
caller gets ``None``.
"""

import logging
import re
import secrets
from dataclasses import dataclass

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.user import User, UserRole
from app.schemas.shipment import ShipmentCreate

logger = logging.getLogger(__name__)

_NON_DIGITS = re.compile(r"\D")


@dataclass
class ContactInfo:
    name: str = ""
    email: str = ""
    phone: str = ""


# ── Normalization ────────────────────────────────────────────

def normalize_email(email: str | None) -> str:
    return (email or "").strip().lower()


def normalize_phone(
    phone: str | None,
    country_code: str | None = None,
    trunk_prefix: str | None = None,
) -> str:
    """Best-effort E.164 for the configured domestic numbering plan.

    The digit-length heuristic only holds for the default country; numbers
    from elsewhere may be mangled.
    """
    if not phone:
        return ""
    cc = country_code or settings.default_country_code
    trunk = trunk_prefix if trunk_prefix is not None else settings.trunk_prefix

    digits = _NON_DIGITS.sub("", str(phone))
    if not digits:
        return ""
    if digits.startswith(cc):
        return f"+{digits}"
    if trunk and len(digits) == 11 and digits.startswith(trunk):
        return f"+{cc}{digits[len(trunk):]}"
    if len(digits) == 10:
        return f"+{cc}{digits}"
    return f"+{digits}"


def phone_lookup_shapes(normalized: str) -> list[str]:
    """Shapes a stored phone may take for the same number.

    +447700900123 -> ["+447700900123", "447700900123", "07700900123"]
    """
    if not normalized:
        return []
    digits = normalized.lstrip("+")
    shapes = [normalized, digits]
    cc = settings.default_country_code
    if digits.startswith(cc) and settings.trunk_prefix:
        shapes.append(f"{settings.trunk_prefix}{digits[len(cc):]}")
    return shapes


def extract_contact(body: ShipmentCreate) -> ContactInfo:
    """Pick the booker's contact from a booking payload.

    Falls back to the recipient email so guest bookings can still be linked.
    """
    c = body.contact
    if c is None:
        return ContactInfo(email=body.recipient_email or "")
    return ContactInfo(
        name=c.name or c.shipper_name or "",
        email=c.email or c.shipper_email or body.recipient_email or "",
        phone=c.phone or c.shipper_phone or "",
    )


# ── Lookup / create ──────────────────────────────────────────

async def find_user(db: AsyncSession, email: str, phone: str) -> User | None:
    """Look up a user by normalized email, then by normalized phone."""
    if email:
        user = (
            await db.execute(
                select(User).where(func.lower(User.email) == email).limit(1)
            )
        ).scalar_one_or_none()
        if user:
            return user

    shapes = phone_lookup_shapes(phone)
    if shapes:
        return (
            await db.execute(
                select(User)
                .where(User.phone.in_(shapes))
                .order_by(User.created_at.asc())
                .limit(1)
            )
        ).scalar_one_or_none()
    return None


async def resolve_user(db: AsyncSession, contact: ContactInfo) -> User | None:
    """Find or create the user behind a booking contact.

    Returns None for guest bookings (no email) and when creation fails.
    Must run before any other write in the session: a failed insert rolls
    the session back.
    """
    email = normalize_email(contact.email)
    phone = normalize_phone(contact.phone)

    user = await find_user(db, email, phone)
    if user:
        return user

    if not email:
        return None

    try:
        user = User(
            email=email,
            full_name=(contact.name or "").strip() or email.split("@")[0],
            phone=phone or None,
            # Unusable credential; prospects claim the account later
            hashed_password=f"!{secrets.token_hex(16)}",
            role=UserRole.PROSPECT,
        )
        db.add(user)
        await db.flush()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.warning(
            "Could not create prospect user; retrying lookup",
            extra={"email": email, "error": str(exc)},
        )
        # A concurrent checkout may have created the same prospect
        try:
            return await find_user(db, email, phone)
        except SQLAlchemyError:
            logger.exception("Prospect lookup failed; booking proceeds ownerless")
            return None

    logger.info("Created prospect user %s", user.id)
    return user

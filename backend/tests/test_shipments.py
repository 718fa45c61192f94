"""Shipment lifecycle service tests."""

import asyncio
import random

import pytest
import pytest_asyncio
from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.config import settings
from app.database import Base
from app.middleware.exceptions import (
    ConflictError,
    PermissionDeniedError,
    ResourceNotFoundError,
    ValidationError,
)
from app.models import Shipment, User, UserRole
from app.schemas.shipment import PlaceIn, ShipmentCreate, ShipmentUpdate
from app.services import shipments as shipment_service
from app.services.shipments import (
    create_shipment,
    normalize_address,
    normalize_place,
    normalize_status,
    status_label,
    update_shipment,
)
from app.utils import numbering

ADMIN = UserRole.ADMIN.value


@pytest.mark.unit
class TestNormalization:
    @pytest.mark.parametrize(
        "raw", ["in transit", "IN-TRANSIT", "in_transit", "In Transit", " IN_TRANSIT "]
    )
    def test_status_forms(self, raw):
        assert normalize_status(raw) == "IN_TRANSIT"

    def test_label_forms(self):
        assert normalize_status("Out for delivery") == "OUT_FOR_DELIVERY"
        assert normalize_status("picked-up") == "PICKED_UP"

    @pytest.mark.parametrize("raw", ["lost at sea", "", None, "TRANSIT"])
    def test_unknown_status(self, raw):
        assert normalize_status(raw) is None

    def test_status_label(self):
        assert status_label("IN_TRANSIT") == "In Transit"
        assert status_label(None) == "Created"

    def test_place(self):
        assert normalize_place("  Lyon ") == "Lyon"
        assert normalize_place(PlaceIn(city="Austin", state="TX", country="US")) == "Austin, TX, US"
        assert normalize_place(PlaceIn(country="DE")) == "DE"
        assert normalize_place(None) == ""

    def test_address_collapses_whitespace(self):
        assert normalize_address("  1  Main\n St ") == "1 Main St"
        assert normalize_address(None) == ""


@pytest.mark.unit
class TestTrackingCodes:
    def test_alphabet_has_no_look_alikes(self):
        assert not set("IO01") & set(numbering.ALPHABET)

    def test_random_code_shape(self):
        code = numbering.random_tracking_code()
        assert code.startswith("GE-")
        assert len(code) == 11
        assert set(code[3:]) <= set(numbering.ALPHABET)


@pytest.mark.asyncio
class TestCreateShipment:
    async def test_guest_parcel_booking(self, db_session: AsyncSession, parcel_payload):
        shipment = await create_shipment(
            db_session, None, ShipmentCreate.model_validate(parcel_payload)
        )

        assert shipment.tracking_number.startswith("GE-")
        assert shipment.service_type == "parcel"
        assert shipment.origin == "London, UK"
        assert shipment.destination == "Paris, France"
        assert shipment.recipient_email == "rita.recipient@example.com"
        assert shipment.recipient_contact["email"] == "rita.recipient@example.com"
        assert shipment.recipient_address == "12 Rue de Rivoli, 75001 Paris"
        assert (shipment.price, shipment.billable, shipment.currency) == (30, 5, "EUR")
        assert shipment.status == "CREATED"
        assert shipment.source == "web_guest"
        assert len(shipment.timeline) == 1
        assert shipment.timeline[0].status == "CREATED"
        assert shipment.timeline[0].seq == 0

    async def test_guest_booking_creates_prospect_owner(
        self, db_session: AsyncSession, parcel_payload
    ):
        shipment = await create_shipment(
            db_session, None, ShipmentCreate.model_validate(parcel_payload)
        )
        owner = await db_session.get(User, shipment.user_id)
        assert owner.email == "sam.sender@example.com"
        assert owner.role == UserRole.PROSPECT

    async def test_authenticated_owner_wins(
        self, db_session: AsyncSession, test_user: User, parcel_payload
    ):
        shipment = await create_shipment(
            db_session, test_user.id, ShipmentCreate.model_validate(parcel_payload)
        )
        assert shipment.user_id == test_user.id
        assert shipment.source == "web_auth"

    async def test_freight_booking_without_address(
        self, db_session: AsyncSession, freight_payload
    ):
        shipment = await create_shipment(
            db_session, None, ShipmentCreate.model_validate(freight_payload)
        )
        assert shipment.service_type == "freight"
        assert shipment.origin == "Rotterdam, NL"
        assert shipment.destination == "Houston, TX, US"
        assert shipment.price == 590
        assert shipment.freight["pallets"] == 2
        assert shipment.parcel is None

    async def test_service_type_inferred_from_freight_payload(
        self, db_session: AsyncSession, freight_payload
    ):
        freight_payload.pop("service_type")
        shipment = await create_shipment(
            db_session, None, ShipmentCreate.model_validate(freight_payload)
        )
        assert shipment.service_type == "freight"

    @pytest.mark.parametrize("address", ["", "  ", "1 A  ", "12345"])
    async def test_parcel_needs_six_character_address(
        self, db_session: AsyncSession, parcel_payload, address
    ):
        parcel_payload["recipient_address"] = address
        with pytest.raises(ValidationError) as exc:
            await create_shipment(db_session, None, ShipmentCreate.model_validate(parcel_payload))
        assert exc.value.field == "recipient_address"

    @pytest.mark.parametrize("field, key", [("from", "from"), ("to", "to")])
    async def test_route_required(self, db_session: AsyncSession, parcel_payload, field, key):
        parcel_payload[key] = "   "
        with pytest.raises(ValidationError) as exc:
            await create_shipment(db_session, None, ShipmentCreate.model_validate(parcel_payload))
        assert exc.value.field == field

    async def test_recipient_email_required(self, db_session: AsyncSession, parcel_payload):
        parcel_payload["recipient_email"] = " "
        with pytest.raises(ValidationError) as exc:
            await create_shipment(db_session, None, ShipmentCreate.model_validate(parcel_payload))
        assert exc.value.field == "recipient_email"

    async def test_declared_type_needs_matching_payload(
        self, db_session: AsyncSession, parcel_payload
    ):
        parcel_payload["service_type"] = "freight"
        with pytest.raises(ValidationError) as exc:
            await create_shipment(db_session, None, ShipmentCreate.model_validate(parcel_payload))
        assert exc.value.field == "freight"

    async def test_idempotency_key_returns_existing_booking(
        self, db_session: AsyncSession, parcel_payload
    ):
        body = ShipmentCreate.model_validate(parcel_payload)
        first = await create_shipment(db_session, None, body, idempotency_key="checkout-42")
        again = await create_shipment(db_session, None, body, idempotency_key="checkout-42")
        assert again.id == first.id
        assert again.tracking_number == first.tracking_number

    async def test_tracking_numbers_unique(self, db_session: AsyncSession, freight_payload):
        body = ShipmentCreate.model_validate(freight_payload)
        numbers = [
            (await create_shipment(db_session, None, body)).tracking_number
            for _ in range(25)
        ]
        assert len(set(numbers)) == 25

    async def test_tracking_number_fallback_after_collisions(
        self, db_session: AsyncSession, freight_payload, monkeypatch
    ):
        monkeypatch.setattr(numbering, "random_tracking_code", lambda: "GE-AAAAAAAA")
        body = ShipmentCreate.model_validate(freight_payload)

        first = await create_shipment(db_session, None, body)
        second = await create_shipment(db_session, None, body)

        assert first.tracking_number == "GE-AAAAAAAA"
        assert second.tracking_number.startswith("GE")
        assert second.tracking_number != first.tracking_number
        assert "-" not in second.tracking_number

    async def test_idempotency_key_replays_for_same_owner(
        self, db_session: AsyncSession, test_user: User, parcel_payload
    ):
        body = ShipmentCreate.model_validate(parcel_payload)
        first = await create_shipment(db_session, test_user.id, body, idempotency_key="cart-1")
        again = await create_shipment(db_session, test_user.id, body, idempotency_key="cart-1")
        assert again.id == first.id

    async def test_idempotency_key_of_guest_booking_not_replayed_to_owner(
        self, db_session: AsyncSession, test_user: User, parcel_payload
    ):
        body = ShipmentCreate.model_validate(parcel_payload)
        await create_shipment(db_session, None, body, idempotency_key="checkout-1")

        with pytest.raises(ConflictError) as exc:
            await create_shipment(db_session, test_user.id, body, idempotency_key="checkout-1")
        assert exc.value.error_code == "IDEMPOTENCY_KEY_REUSED"
        assert test_user.id not in exc.value.message

    async def test_idempotency_key_of_owner_booking_not_replayed_to_guest(
        self, db_session: AsyncSession, test_user: User, parcel_payload
    ):
        body = ShipmentCreate.model_validate(parcel_payload)
        await create_shipment(db_session, test_user.id, body, idempotency_key="checkout-2")

        with pytest.raises(ConflictError):
            await create_shipment(db_session, None, body, idempotency_key="checkout-2")

    async def test_guest_replay_needs_same_recipient(
        self, db_session: AsyncSession, parcel_payload
    ):
        await create_shipment(
            db_session, None, ShipmentCreate.model_validate(parcel_payload),
            idempotency_key="checkout-3",
        )
        other = ShipmentCreate.model_validate(
            {**parcel_payload, "recipient_email": "someone.else@example.com"}
        )
        with pytest.raises(ConflictError):
            await create_shipment(db_session, None, other, idempotency_key="checkout-3")

    async def test_key_committed_between_lookup_and_insert_is_replayed(
        self, db_session: AsyncSession, test_user: User, parcel_payload, monkeypatch
    ):
        body = ShipmentCreate.model_validate(parcel_payload)
        first = await create_shipment(db_session, test_user.id, body, idempotency_key="cart-9")

        real_lookup = shipment_service._find_by_idempotency_key
        lookups = []

        async def lookup_misses_once(db, key):
            lookups.append(key)
            if len(lookups) == 1:
                return None
            return await real_lookup(db, key)

        monkeypatch.setattr(shipment_service, "_find_by_idempotency_key", lookup_misses_once)

        again = await create_shipment(db_session, test_user.id, body, idempotency_key="cart-9")

        assert again.id == first.id
        assert len(lookups) == 2
        total = (
            await db_session.execute(select(func.count()).select_from(Shipment))
        ).scalar_one()
        assert total == 1

    async def test_tracking_number_taken_at_insert_is_retried(
        self, db_session: AsyncSession, test_user: User, freight_payload, monkeypatch
    ):
        body = ShipmentCreate.model_validate(freight_payload)
        first = await create_shipment(db_session, test_user.id, body)
        candidates = iter([first.tracking_number, "GE-ZZZZ2345"])

        async def stale_generator(db):
            return next(candidates)

        monkeypatch.setattr(shipment_service, "generate_tracking_number", stale_generator)

        second = await create_shipment(db_session, test_user.id, body)
        assert second.tracking_number == "GE-ZZZZ2345"
        assert second.timeline[0].note == "Booking created"

    async def test_tracking_number_retries_are_bounded(
        self, db_session: AsyncSession, test_user: User, freight_payload, monkeypatch
    ):
        body = ShipmentCreate.model_validate(freight_payload)
        first = await create_shipment(db_session, test_user.id, body)

        async def always_taken(db):
            return first.tracking_number

        monkeypatch.setattr(shipment_service, "generate_tracking_number", always_taken)
        monkeypatch.setattr(settings, "tracking_number_attempts", 2)

        with pytest.raises(ConflictError) as exc:
            await create_shipment(db_session, test_user.id, body)
        assert exc.value.error_code == "TRACKING_NUMBER_EXHAUSTED"


@pytest.mark.asyncio
class TestUpdateShipment:
    async def _create(self, db_session, payload):
        return await create_shipment(db_session, None, ShipmentCreate.model_validate(payload))

    async def test_status_update_appends_one_entry(self, db_session: AsyncSession, parcel_payload):
        shipment = await self._create(db_session, parcel_payload)

        updated = await update_shipment(
            db_session, shipment.id,
            ShipmentUpdate(status="in transit", last_location="Calais"),
            ADMIN,
        )

        assert updated.status == "IN_TRANSIT"
        assert updated.last_location == "Calais"
        assert len(updated.timeline) == 2
        assert updated.timeline[-1].status == "IN_TRANSIT"
        assert updated.timeline[-1].note == "Location: Calais"

    async def test_timeline_is_append_only(self, db_session: AsyncSession, parcel_payload):
        shipment = await self._create(db_session, parcel_payload)
        steps = ["PICKED_UP", "In Transit", "out-for-delivery", "delivered", "EXCEPTION"]

        snapshots = []
        for k, step in enumerate(steps, start=1):
            await update_shipment(db_session, shipment.id, ShipmentUpdate(status=step), ADMIN)
            assert len(shipment.timeline) == 1 + k
            snapshots.append([(e.seq, e.status, e.at) for e in shipment.timeline])

        for earlier, later in zip(snapshots, snapshots[1:]):
            assert later[: len(earlier)] == earlier
        assert shipment.status == shipment.timeline[-1].status == "EXCEPTION"

    async def test_any_status_can_follow_an_end_state(
        self, db_session: AsyncSession, parcel_payload
    ):
        shipment = await self._create(db_session, parcel_payload)
        await update_shipment(db_session, shipment.id, ShipmentUpdate(status="CANCELLED"), ADMIN)
        updated = await update_shipment(
            db_session, shipment.id, ShipmentUpdate(status="CREATED"), ADMIN
        )
        assert updated.status == "CREATED"

    async def test_invalid_status_rejected(self, db_session: AsyncSession, parcel_payload):
        shipment = await self._create(db_session, parcel_payload)
        with pytest.raises(ValidationError) as exc:
            await update_shipment(
                db_session, shipment.id, ShipmentUpdate(status="teleported"), ADMIN
            )
        assert exc.value.field == "status"
        assert "teleported" in exc.value.message
        assert len(shipment.timeline) == 1

    async def test_invalid_eta_at_rejected(self, db_session: AsyncSession, parcel_payload):
        shipment = await self._create(db_session, parcel_payload)
        with pytest.raises(ValidationError) as exc:
            await update_shipment(
                db_session, shipment.id, ShipmentUpdate(eta_at="next tuesday"), ADMIN
            )
        assert exc.value.field == "eta_at"

    async def test_eta_at_sets_display(self, db_session: AsyncSession, parcel_payload):
        shipment = await self._create(db_session, parcel_payload)
        updated = await update_shipment(
            db_session, shipment.id, ShipmentUpdate(eta_at="2026-11-02T09:30:00Z"), ADMIN
        )
        assert updated.eta_at.year == 2026
        assert updated.eta_display.startswith("2026-11-02T09:30")
        assert updated.timeline[-1].note == "Updated by admin"

    async def test_route_change_note_prefers_from_over_origin(
        self, db_session: AsyncSession, parcel_payload
    ):
        shipment = await self._create(db_session, parcel_payload)
        body = ShipmentUpdate.model_validate(
            {"from": "Dover, UK", "origin": "ignored", "destination": "Lille, France"}
        )

        updated = await update_shipment(db_session, shipment.id, body, ADMIN)

        assert updated.origin == "Dover, UK"
        assert updated.destination == "Lille, France"
        assert updated.timeline[-1].note == (
            'Origin: "London, UK" → "Dover, UK" | '
            'Destination: "Paris, France" → "Lille, France"'
        )

    async def test_explicit_note_wins(self, db_session: AsyncSession, parcel_payload):
        shipment = await self._create(db_session, parcel_payload)
        updated = await update_shipment(
            db_session, shipment.id,
            ShipmentUpdate(status="exception", last_location="Calais", note="Customs hold"),
            ADMIN,
        )
        assert updated.timeline[-1].note == "Customs hold"

    async def test_blank_route_rejected(self, db_session: AsyncSession, parcel_payload):
        shipment = await self._create(db_session, parcel_payload)
        with pytest.raises(ValidationError):
            await update_shipment(
                db_session, shipment.id, ShipmentUpdate.model_validate({"to": "  "}), ADMIN
            )

    async def test_non_admin_rejected(self, db_session: AsyncSession, parcel_payload):
        shipment = await self._create(db_session, parcel_payload)
        with pytest.raises(PermissionDeniedError):
            await update_shipment(
                db_session, shipment.id, ShipmentUpdate(status="DELIVERED"), UserRole.USER.value
            )

    async def test_unknown_shipment(self, db_session: AsyncSession):
        with pytest.raises(ResourceNotFoundError):
            await update_shipment(db_session, "missing", ShipmentUpdate(status="DELIVERED"), ADMIN)

    async def test_concurrent_writer_gets_conflict(
        self, db_session: AsyncSession, parcel_payload
    ):
        shipment = await self._create(db_session, parcel_payload)
        # Another writer bumps the row behind this session's back
        await db_session.execute(
            text("UPDATE shipments SET version = version + 1 WHERE id = :id"),
            {"id": shipment.id},
        )

        with pytest.raises(ConflictError):
            await update_shipment(
                db_session, shipment.id, ShipmentUpdate(status="DELIVERED"), ADMIN
            )


@pytest.mark.integration
@pytest.mark.asyncio
class TestConcurrentBooking:
    """Parallel bookings, each in its own session, on a file-backed database."""

    @pytest_asyncio.fixture
    async def session_factory(self, tmp_path):
        engine = create_async_engine(
            f"sqlite+aiosqlite:///{tmp_path / 'bookings.db'}",
            connect_args={"timeout": 30},
        )
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        await engine.dispose()

    async def _owner(self, factory) -> str:
        async with factory() as session:
            user = User(
                email="bulk@example.com",
                full_name="Bulk Booker",
                hashed_password="!not-a-real-hash",
                role=UserRole.USER,
            )
            session.add(user)
            await session.commit()
            return user.id

    async def test_parallel_bookings_get_distinct_tracking_numbers(
        self, session_factory, freight_payload, monkeypatch
    ):
        # Tiny code pool so parallel sessions collide on insert
        pool = ["GE-AAAA2222", "GE-BBBB3333", "GE-CCCC4444"]
        monkeypatch.setattr(numbering, "random_tracking_code", lambda: random.choice(pool))
        owner_id = await self._owner(session_factory)
        body = ShipmentCreate.model_validate(freight_payload)

        async def book() -> str:
            async with session_factory() as session:
                shipment = await create_shipment(session, owner_id, body)
                await session.commit()
                return shipment.tracking_number

        numbers = await asyncio.gather(*(book() for _ in range(6)))

        assert len(set(numbers)) == 6
        async with session_factory() as session:
            stored = (await session.execute(select(Shipment.tracking_number))).scalars().all()
        assert sorted(stored) == sorted(numbers)

    async def test_parallel_retries_with_one_key_make_one_booking(
        self, session_factory, freight_payload
    ):
        owner_id = await self._owner(session_factory)
        body = ShipmentCreate.model_validate(freight_payload)

        async def book() -> str:
            async with session_factory() as session:
                shipment = await create_shipment(
                    session, owner_id, body, idempotency_key="retry-storm"
                )
                await session.commit()
                return shipment.id

        ids = await asyncio.gather(*(book() for _ in range(4)))

        assert len(set(ids)) == 1
        async with session_factory() as session:
            total = (
                await session.execute(select(func.count()).select_from(Shipment))
            ).scalar_one()
        assert total == 1

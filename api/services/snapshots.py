"""
Event Snapshot Recorder — append-only audit copies of bookings and OTPs.

Every mutating operation on a Booking or an OTPRecord calls into this module
inside the same transaction as the mutation. A failed insert propagates, so
the surrounding transaction (and the mutation it records) rolls back:
every committed state change has exactly one audit row.
"""

from sqlalchemy.ext.asyncio import AsyncSession

from models.booking import Booking, BookingEvent, BookingStatusEvent
from models.otp import OTPEvent, OTPRecord
from services.actors import Actor
from services.clock import Clock, default_clock


def _shared_columns(entity: type, event: type) -> tuple[str, ...]:
    """Columns the event table mirrors from the entity table (surrogate id aside)."""
    entity_columns = entity.__table__.columns
    return tuple(
        column.key for column in event.__table__.columns
        if column.key in entity_columns and column.key != "id"
    )


BOOKING_SNAPSHOT_FIELDS = _shared_columns(Booking, BookingEvent)
OTP_SNAPSHOT_FIELDS = _shared_columns(OTPRecord, OTPEvent)


async def snapshot_booking(
    session: AsyncSession,
    booking: Booking,
    event_type: str,
    actor: Actor,
    clock: Clock = default_clock,
) -> BookingEvent:
    """Copy every business field of ``booking`` into a new booking_events row."""
    # Read back what the transaction holds now, not what the caller cached
    await session.flush()
    await session.refresh(booking)

    event = BookingEvent(
        booking_id=booking.id,
        event_type=event_type,
        actor_id=actor.id,
        actor_role=actor.role.value,
        recorded_at=clock.now(),
        **{name: getattr(booking, name) for name in BOOKING_SNAPSHOT_FIELDS},
    )
    session.add(event)
    await session.flush()
    return event


async def snapshot_otp(
    session: AsyncSession,
    record: OTPRecord,
    event_type: str,
    clock: Clock = default_clock,
) -> OTPEvent:
    """Copy every business field of ``record`` into a new otp_events row."""
    await session.flush()
    await session.refresh(record)

    event = OTPEvent(
        otp_id=record.id,
        event_type=event_type,
        recorded_at=clock.now(),
        **{name: getattr(record, name) for name in OTP_SNAPSHOT_FIELDS},
    )
    session.add(event)
    await session.flush()
    return event


async def record_status_event(
    session: AsyncSession,
    booking: Booking,
    actor: Actor,
    clock: Clock = default_clock,
) -> BookingStatusEvent:
    event = BookingStatusEvent(
        booking_id=booking.id,
        status=booking.status,
        created_by=actor.id,
        created_at=clock.now(),
    )
    session.add(event)
    await session.flush()
    return event

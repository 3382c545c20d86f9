"""
Booking State Machine — the one table of allowed status transitions.

    initial → pre_booked → booked → received_by_postmaster
            → received_by_postman → delivered
    any non-terminal → return

Each transition is a set of source statuses, a target, the event type it
records and a conjunction of named guards. Guards are evaluated on the row
as it is inside the transaction that writes it (``lock_booking``), so the
check and the write see the same state.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from models.booking import Booking, BookingStatus
from services.actors import Actor, ActorRole
from services.clock import Clock, default_clock
from services.errors import NotFoundError, PreconditionFailedError, ValidationError
from services.snapshots import record_status_event, snapshot_booking

logger = logging.getLogger(__name__)


class TransitionName(str, Enum):
    PRE_BOOK = "pre_book"
    BOOK = "book"
    RECEIVE_BY_POSTMASTER = "receive_by_postmaster"
    RECEIVE_BY_POSTMAN = "receive_by_postman"
    DELIVER = "deliver"
    RETURN = "return"


@dataclass(frozen=True)
class Guard:
    name: str
    message: str
    check: Callable[[Booking, Actor], bool]


@dataclass(frozen=True)
class Transition:
    name: TransitionName
    sources: frozenset[BookingStatus]
    target: BookingStatus
    event_type: str
    guards: tuple[Guard, ...] = field(default_factory=tuple)
    # Stamp the actor into received_by on success
    marks_receiver: bool = False


def _present(value: str | None) -> bool:
    return bool(value and value.strip())


def _role_in(*roles: ActorRole) -> Callable[[Booking, Actor], bool]:
    allowed = set(roles) | {ActorRole.ADMIN}
    return lambda booking, actor: actor.role in allowed


# ── Guards ─────────────────────────────────────────────────

DELIVERY_ADDRESS_PRESENT = Guard(
    "delivery_address_present",
    "Delivery address is required",
    lambda b, a: _present(b.delivery_address),
)
BARCODE_PRESENT = Guard(
    "barcode_present",
    "Booking has no tracking barcode",
    lambda b, a: _present(b.barcode),
)
BAG_ASSIGNED = Guard(
    "bag_assigned",
    "Booking is not assigned to a bag",
    lambda b, a: _present(b.current_bag_id),
)
ACTOR_IS_POSTMASTER = Guard(
    "actor_is_postmaster",
    "Only a postmaster can receive a bag",
    _role_in(ActorRole.POSTMASTER),
)
ACTOR_IS_POSTMAN = Guard(
    "actor_is_postman",
    "Only a postman can receive an item",
    _role_in(ActorRole.POSTMAN),
)
PHONE_CONFIRMED = Guard(
    "delivery_phone_confirmed",
    "Delivery phone is not confirmed",
    lambda b, a: b.delivery_phone_confirmed_verified,
)
APPLICATION_ID_VERIFIED = Guard(
    "application_id_verified",
    "Application ID is not verified",
    lambda b, a: b.delivery_application_id_verified,
)
PHOTO_PRESENT = Guard(
    "delivery_photo_present",
    "Delivery photo is not uploaded",
    lambda b, a: b.has_delivery_photo,
)
ACTOR_RECEIVED_ITEM = Guard(
    "actor_received_item",
    "Item was received by another postman",
    lambda b, a: a.role == ActorRole.ADMIN or b.received_by == a.id,
)


NON_TERMINAL = frozenset(s for s in BookingStatus if not s.is_terminal)

TRANSITIONS: dict[TransitionName, Transition] = {
    t.name: t for t in (
        Transition(
            TransitionName.PRE_BOOK,
            frozenset({BookingStatus.INITIAL}),
            BookingStatus.PRE_BOOKED,
            "delivery_info_updated",
            (DELIVERY_ADDRESS_PRESENT,),
        ),
        Transition(
            TransitionName.BOOK,
            frozenset({BookingStatus.PRE_BOOKED}),
            BookingStatus.BOOKED,
            "booking_confirmed_and_item_added_to_bag",
            (BARCODE_PRESENT, BAG_ASSIGNED),
        ),
        Transition(
            TransitionName.RECEIVE_BY_POSTMASTER,
            frozenset({BookingStatus.BOOKED}),
            BookingStatus.RECEIVED_BY_POSTMASTER,
            "bag_received_by_postmaster",
            (ACTOR_IS_POSTMASTER,),
        ),
        Transition(
            TransitionName.RECEIVE_BY_POSTMAN,
            frozenset({BookingStatus.RECEIVED_BY_POSTMASTER}),
            BookingStatus.RECEIVED_BY_POSTMAN,
            "item_received_by_postman",
            (ACTOR_IS_POSTMAN,),
            marks_receiver=True,
        ),
        Transition(
            TransitionName.DELIVER,
            frozenset({BookingStatus.RECEIVED_BY_POSTMAN}),
            BookingStatus.DELIVERED,
            "item_delivered",
            (PHONE_CONFIRMED, APPLICATION_ID_VERIFIED, PHOTO_PRESENT, ACTOR_RECEIVED_ITEM),
        ),
        Transition(
            TransitionName.RETURN,
            NON_TERMINAL,
            BookingStatus.RETURN,
            "returned",
        ),
    )
}


def get_transition(name: TransitionName | str) -> Transition:
    try:
        return TRANSITIONS[TransitionName(name)]
    except ValueError:
        raise ValidationError(f"Unknown booking transition: {name!r}", transition=str(name))


def require_status(booking: Booking, allowed: set[BookingStatus] | frozenset[BookingStatus], action: str) -> None:
    """Guard for operations that change flags rather than status."""
    if booking.status not in allowed:
        expected = ", ".join(sorted(s.value for s in allowed))
        raise PreconditionFailedError(
            "status",
            f"Cannot {action} while booking is {booking.status.value} (expected {expected})",
        )


async def lock_booking(session: AsyncSession, booking_id: int) -> Booking:
    """Load a booking row locked FOR UPDATE until the transaction ends."""
    result = await session.execute(
        select(Booking)
        .where(Booking.id == booking_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    booking = result.scalar_one_or_none()
    if booking is None:
        raise NotFoundError(f"Booking {booking_id} not found", booking_id=booking_id)
    return booking


class BookingStateMachine:
    def __init__(self, session: AsyncSession, clock: Clock = default_clock):
        self.session = session
        self.clock = clock

    @staticmethod
    def check(booking: Booking, transition: Transition, actor: Actor) -> list[Guard]:
        """Guards that currently fail, status first. Empty means allowed."""
        failed: list[Guard] = []
        if booking.status not in transition.sources:
            expected = ", ".join(sorted(s.value for s in transition.sources))
            failed.append(Guard(
                "status",
                f"Cannot {transition.name.value} a booking in status {booking.status.value} "
                f"(expected {expected})",
                lambda b, a: False,
            ))
        failed.extend(g for g in transition.guards if not g.check(booking, actor))
        return failed

    @classmethod
    def ensure_allowed(cls, booking: Booking, transition: Transition, actor: Actor) -> None:
        failed = cls.check(booking, transition, actor)
        if failed:
            raise PreconditionFailedError(
                failed[0].name,
                failed[0].message,
                [g.name for g in failed],
            )

    async def apply(
        self,
        booking: Booking,
        transition: TransitionName | str | Transition,
        actor: Actor,
        changes: dict[str, Any] | None = None,
    ) -> bool:
        """
        Apply ``transition`` to a booking already locked by the caller.

        ``changes`` are written together with the status change and are
        visible to the guards. Returns False when the booking is already in
        the target status (nothing written), True otherwise.
        """
        if not isinstance(transition, Transition):
            transition = get_transition(transition)

        if booking.status == transition.target:
            logger.info(
                "Booking transition skipped, already %s: booking_id=%s",
                booking.status.value, booking.id,
            )
            return False

        for name, value in (changes or {}).items():
            setattr(booking, name, value)

        self.ensure_allowed(booking, transition, actor)

        previous = booking.status
        booking.status = transition.target
        booking.updated_by = actor.id
        booking.updated_at = self.clock.now()
        if transition.marks_receiver:
            booking.received_by = actor.id

        await record_status_event(self.session, booking, actor, self.clock)
        await snapshot_booking(self.session, booking, transition.event_type, actor, self.clock)
        logger.info(
            "Booking transition applied: booking_id=%s, %s -> %s, actor=%s",
            booking.id, previous.value, booking.status.value, actor,
        )
        return True

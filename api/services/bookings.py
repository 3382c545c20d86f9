"""
Booking workflows — the use cases behind the booking and delivery routes.

Every workflow runs in one transaction and locks the booking row first.
Each committed change to a booking leaves exactly one booking_events row;
status changes also leave a booking_status_events row. SMS delivery and
DMS calls never run inside a transaction: SMS goes out after commit, DMS
is called before it and the guards are checked again on the locked row.
"""

import logging
from dataclasses import dataclass

import bcrypt
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from db.database import transaction
from models.booking import Booking, BookingStatus, BookingType
from models.otp import OTPPurpose
from services.actors import Actor
from services.booking_state import (
    BookingStateMachine,
    TransitionName,
    get_transition,
    lock_booking,
    require_status,
)
from services.clock import Clock, default_clock
from services.dms import DmsClient
from services.errors import NotFoundError, PreconditionFailedError, ValidationError
from services.otp import IssueResult, OTPIssueResult, OTPService
from services.sms import NotificationSender, SmsSender, dispatch_otp
from services.snapshots import record_status_event, snapshot_booking

logger = logging.getLogger(__name__)

CONFIRMATION_STATUSES = frozenset({
    BookingStatus.RECEIVED_BY_POSTMASTER,
    BookingStatus.RECEIVED_BY_POSTMAN,
})
POSTMAN_STATUSES = frozenset({BookingStatus.RECEIVED_BY_POSTMAN})
OPEN_STATUSES = frozenset(s for s in BookingStatus if not s.is_terminal)


@dataclass
class DeliveryPhoneResult:
    booking: Booking
    otp: OTPIssueResult


def _hash_code(code: str) -> str:
    return bcrypt.hashpw(code.encode(), bcrypt.gensalt()).decode()


def _required(value: str | None, field_name: str) -> str:
    value = (value or "").strip()
    if not value:
        raise ValidationError(f"{field_name} is required", field=field_name)
    return value


def _touch(booking: Booking, actor: Actor, clock: Clock) -> None:
    booking.updated_by = actor.id
    booking.updated_at = clock.now()


def _issue_result(result: IssueResult) -> OTPIssueResult:
    return OTPIssueResult(
        otp_id=result.record.id,
        expires_at=result.record.expires_at,
        success=True,
        already_active=not result.created,
    )


def _send_if_new(result: IssueResult, sender: NotificationSender | None) -> None:
    if result.created:
        dispatch_otp(sender or SmsSender(), result.record.phone, result.record.code)


# ── Queries ────────────────────────────────────────────────

async def get_booking(session: AsyncSession, booking_id: int) -> Booking:
    booking = await session.get(Booking, booking_id, populate_existing=True)
    if booking is None:
        raise NotFoundError(f"Booking {booking_id} not found", booking_id=booking_id)
    return booking


async def find_booking_by_barcode(session: AsyncSession, barcode: str) -> Booking:
    result = await session.execute(select(Booking).where(Booking.barcode == barcode))
    booking = result.scalar_one_or_none()
    if booking is None:
        raise NotFoundError(f"No booking with barcode {barcode}", barcode=barcode)
    return booking


# ── Creation and delivery details ──────────────────────────

async def create_booking(
    session: AsyncSession,
    actor: Actor,
    *,
    app_or_order_id: str,
    name: str,
    phone: str,
    address: str,
    emergency_contact_name: str | None = None,
    emergency_contact_phone: str | None = None,
    booking_type: BookingType | str = BookingType.CUSTOMER,
    clock: Clock = default_clock,
) -> Booking:
    app_or_order_id = _required(app_or_order_id, "app_or_order_id")
    try:
        booking_type = BookingType(booking_type)
    except ValueError:
        raise ValidationError(f"Unknown booking type: {booking_type!r}", field="booking_type")

    async with transaction(session):
        existing = await session.execute(
            select(Booking.id).where(Booking.app_or_order_id == app_or_order_id)
        )
        if existing.scalar_one_or_none() is not None:
            raise PreconditionFailedError(
                "unique_app_or_order_id",
                f"A booking for {app_or_order_id} already exists",
            )

        now = clock.now()
        booking = Booking(
            app_or_order_id=app_or_order_id,
            name=_required(name, "name"),
            phone=_required(phone, "phone"),
            address=_required(address, "address"),
            emergency_contact_name=emergency_contact_name,
            emergency_contact_phone=emergency_contact_phone,
            booking_type=booking_type,
            status=BookingStatus.INITIAL,
            booking_date=now,
            created_by=actor.id,
            updated_by=actor.id,
            created_at=now,
            updated_at=now,
        )
        session.add(booking)
        await session.flush()
        await record_status_event(session, booking, actor, clock)
        await snapshot_booking(session, booking, "created", actor, clock)

    logger.info("Booking created: booking_id=%s, app_or_order_id=%s, actor=%s", booking.id, app_or_order_id, actor)
    return booking


async def update_delivery_info(
    session: AsyncSession,
    booking_id: int,
    actor: Actor,
    *,
    receiver_name: str,
    delivery_address: str,
    delivery_branch_code: str | None = None,
    clock: Clock = default_clock,
) -> Booking:
    """Record where the parcel goes. Moves an initial booking to pre_booked."""
    changes = {
        "receiver_name": _required(receiver_name, "receiver_name"),
        "delivery_address": _required(delivery_address, "delivery_address"),
        "delivery_branch_code": delivery_branch_code,
    }
    async with transaction(session):
        booking = await lock_booking(session, booking_id)
        machine = BookingStateMachine(session, clock)
        if booking.status == BookingStatus.PRE_BOOKED:
            # Still editable before the booking is confirmed with the DMS
            for name, value in changes.items():
                setattr(booking, name, value)
            _touch(booking, actor, clock)
            await snapshot_booking(session, booking, "delivery_info_updated", actor, clock)
        else:
            await machine.apply(booking, TransitionName.PRE_BOOK, actor, changes)
    return booking


# ── Delivery phone (apply) ─────────────────────────────────

async def set_delivery_phone(
    session: AsyncSession,
    booking_id: int,
    phone: str,
    actor: Actor,
    *,
    sender: NotificationSender | None = None,
    clock: Clock = default_clock,
) -> DeliveryPhoneResult:
    """Set the phone the parcel is delivered to and send it a verification code."""
    phone = _required(phone, "phone")
    otp = OTPService(session, clock)

    async with transaction(session):
        booking = await lock_booking(session, booking_id)
        require_status(booking, OPEN_STATUSES, "change the delivery phone")

        previous = booking.delivery_phone
        if previous == phone:
            # Same number: only (re)send the code, proofs stay as they are
            if booking.delivery_phone_applied_verified:
                raise PreconditionFailedError(
                    "delivery_phone_already_verified", "Delivery phone is already verified"
                )
        else:
            # Proofs belong to the old number; drop both with their OTP state
            if previous:
                for purpose in OTPPurpose:
                    await otp.invalidate_scope(previous, purpose)
            booking.delivery_phone = phone
            booking.delivery_phone_applied_verified = False
            booking.delivery_phone_applied_otp_hash = None
            booking.delivery_phone_confirmed_verified = False
            booking.delivery_phone_confirmed_otp_hash = None
            _touch(booking, actor, clock)
            await snapshot_booking(session, booking, "delivery_phone_updated", actor, clock)

        issued = await otp.issue(phone, OTPPurpose.DELIVERY_PHONE_APPLY, booking.id)

    _send_if_new(issued, sender)
    logger.info("Delivery phone set: booking_id=%s, phone=%s, actor=%s", booking.id, phone, actor)
    return DeliveryPhoneResult(booking=booking, otp=_issue_result(issued))


async def verify_delivery_phone(
    session: AsyncSession,
    booking_id: int,
    code: str,
    actor: Actor,
    *,
    clock: Clock = default_clock,
) -> Booking:
    async with transaction(session):
        booking = await lock_booking(session, booking_id)
        require_status(booking, OPEN_STATUSES, "verify the delivery phone")
        if not booking.delivery_phone:
            raise PreconditionFailedError("delivery_phone_present", "Booking has no delivery phone")
        if booking.delivery_phone_applied_verified:
            raise PreconditionFailedError(
                "delivery_phone_already_verified", "Delivery phone is already verified"
            )

        await OTPService(session, clock).verify(
            booking.delivery_phone, code, OTPPurpose.DELIVERY_PHONE_APPLY
        )

        booking.delivery_phone_applied_verified = True
        booking.delivery_phone_applied_otp_hash = _hash_code(code)
        _touch(booking, actor, clock)
        await snapshot_booking(session, booking, "phone_applied_verified", actor, clock)

    logger.info("Delivery phone verified: booking_id=%s, actor=%s", booking.id, actor)
    return booking


# ── Delivery confirmation (at the door) ────────────────────

async def send_delivery_confirmation_otp(
    session: AsyncSession,
    booking_id: int,
    actor: Actor,
    *,
    sender: NotificationSender | None = None,
    clock: Clock = default_clock,
) -> OTPIssueResult:
    async with transaction(session):
        booking = await lock_booking(session, booking_id)
        require_status(booking, CONFIRMATION_STATUSES, "send a delivery confirmation code")
        if not booking.delivery_phone:
            raise PreconditionFailedError("delivery_phone_present", "Booking has no delivery phone")
        if booking.delivery_phone_confirmed_verified:
            raise PreconditionFailedError(
                "delivery_phone_already_confirmed", "Delivery phone is already confirmed"
            )

        issued = await OTPService(session, clock).issue(
            booking.delivery_phone, OTPPurpose.DELIVERY_PHONE_CONFIRM, booking.id
        )
        if issued.created:
            _touch(booking, actor, clock)
            await snapshot_booking(session, booking, "delivery_confirmation_send_otp", actor, clock)

    _send_if_new(issued, sender)
    return _issue_result(issued)


async def confirm_delivery_phone(
    session: AsyncSession,
    booking_id: int,
    code: str,
    actor: Actor,
    *,
    clock: Clock = default_clock,
) -> Booking:
    async with transaction(session):
        booking = await lock_booking(session, booking_id)
        require_status(booking, CONFIRMATION_STATUSES, "confirm the delivery phone")
        if not booking.delivery_phone:
            raise PreconditionFailedError("delivery_phone_present", "Booking has no delivery phone")
        if booking.delivery_phone_confirmed_verified:
            raise PreconditionFailedError(
                "delivery_phone_already_confirmed", "Delivery phone is already confirmed"
            )

        await OTPService(session, clock).verify(
            booking.delivery_phone, code, OTPPurpose.DELIVERY_PHONE_CONFIRM
        )

        booking.delivery_phone_confirmed_verified = True
        booking.delivery_phone_confirmed_otp_hash = _hash_code(code)
        _touch(booking, actor, clock)
        await record_status_event(session, booking, actor, clock)
        await snapshot_booking(session, booking, "delivery_phone_confirmed", actor, clock)

    logger.info("Delivery phone confirmed: booking_id=%s, actor=%s", booking.id, actor)
    return booking


async def verify_application_id(
    session: AsyncSession,
    booking_id: int,
    app_or_order_id: str,
    actor: Actor,
    *,
    clock: Clock = default_clock,
) -> Booking:
    app_or_order_id = _required(app_or_order_id, "app_or_order_id")
    async with transaction(session):
        booking = await lock_booking(session, booking_id)
        require_status(booking, POSTMAN_STATUSES, "verify the application ID")
        if booking.delivery_application_id_verified:
            raise PreconditionFailedError(
                "application_id_already_verified", "Application ID is already verified"
            )
        if booking.app_or_order_id != app_or_order_id:
            raise PreconditionFailedError(
                "application_id_matches", "Application ID does not match this booking"
            )

        booking.delivery_application_id_verified = True
        _touch(booking, actor, clock)
        await snapshot_booking(session, booking, "application_id_verified", actor, clock)

    logger.info("Application ID verified: booking_id=%s, actor=%s", booking.id, actor)
    return booking


async def record_delivery_photo(
    session: AsyncSession,
    booking_id: int,
    photo_path: str,
    actor: Actor,
    *,
    clock: Clock = default_clock,
) -> Booking:
    photo_path = _required(photo_path, "delivery_photo")
    async with transaction(session):
        booking = await lock_booking(session, booking_id)
        require_status(booking, POSTMAN_STATUSES, "upload a delivery photo")
        if booking.has_delivery_photo:
            raise PreconditionFailedError(
                "delivery_photo_already_uploaded", "Delivery photo is already uploaded"
            )

        booking.delivery_photo = photo_path
        _touch(booking, actor, clock)
        await snapshot_booking(session, booking, "delivery_photo_uploaded", actor, clock)

    return booking


async def reset_phone_verification(
    session: AsyncSession,
    booking_id: int,
    purpose: OTPPurpose | str,
    actor: Actor,
    *,
    clock: Clock = default_clock,
) -> Booking:
    """Clear a phone proof so it can be earned again, along with its OTP state."""
    try:
        purpose = OTPPurpose(purpose)
    except ValueError:
        raise ValidationError(f"Unknown OTP purpose: {purpose!r}", purpose=str(purpose))

    async with transaction(session):
        booking = await lock_booking(session, booking_id)
        require_status(booking, OPEN_STATUSES, "reset phone verification")

        if purpose == OTPPurpose.DELIVERY_PHONE_APPLY:
            booking.delivery_phone_applied_verified = False
            booking.delivery_phone_applied_otp_hash = None
        else:
            booking.delivery_phone_confirmed_verified = False
            booking.delivery_phone_confirmed_otp_hash = None

        if booking.delivery_phone:
            await OTPService(session, clock).invalidate_scope(booking.delivery_phone, purpose)

        _touch(booking, actor, clock)
        await snapshot_booking(session, booking, "phone_verification_reset", actor, clock)

    logger.info(
        "Phone verification reset: booking_id=%s, purpose=%s, actor=%s",
        booking.id, purpose.value, actor,
    )
    return booking


# ── Status transitions ─────────────────────────────────────

async def apply_booking_transition(
    session: AsyncSession,
    booking_id: int,
    transition: TransitionName | str,
    actor: Actor,
    *,
    clock: Clock = default_clock,
) -> Booking:
    """Apply a named transition using only what is already on the booking."""
    chosen = get_transition(transition)
    async with transaction(session):
        booking = await lock_booking(session, booking_id)
        await BookingStateMachine(session, clock).apply(booking, chosen, actor)
    return booking


async def book_booking(
    session: AsyncSession,
    booking_id: int,
    bag_id: str,
    actor: Actor,
    *,
    dms: DmsClient | None = None,
    clock: Clock = default_clock,
) -> Booking:
    """Confirm the booking with the DMS and put the item in a bag."""
    bag_id = _required(bag_id, "bag_id")
    dms = dms or DmsClient()
    transition = get_transition(TransitionName.BOOK)

    async with transaction(session):
        booking = await get_booking(session, booking_id)
    if booking.status == transition.target:
        return booking
    require_status(booking, transition.sources, "book")

    barcode = await dms.allocate_barcode()
    await dms.book_article(
        barcode,
        booking.app_or_order_id,
        receiver={
            "name": booking.receiver_name,
            "phone": booking.delivery_phone or booking.phone,
            "street_address": booking.delivery_address,
            "branch_code": booking.delivery_branch_code,
        },
    )

    async with transaction(session):
        booking = await lock_booking(session, booking_id)
        await BookingStateMachine(session, clock).apply(
            booking,
            transition,
            actor,
            changes={
                "barcode": barcode,
                "current_bag_id": bag_id,
                "booking_date": clock.now(),
            },
        )
    return booking


async def deliver_booking(
    session: AsyncSession,
    booking_id: int,
    actor: Actor,
    *,
    dms: DmsClient | None = None,
    clock: Clock = default_clock,
) -> Booking:
    """Hand the item over: all delivery guards, then the DMS, then the status."""
    dms = dms or DmsClient()
    transition = get_transition(TransitionName.DELIVER)

    async with transaction(session):
        booking = await get_booking(session, booking_id)
    if booking.status == transition.target:
        return booking
    BookingStateMachine.ensure_allowed(booking, transition, actor)

    await dms.deliver_article(booking.barcode)

    async with transaction(session):
        booking = await lock_booking(session, booking_id)
        await BookingStateMachine(session, clock).apply(booking, transition, actor)
    return booking

"""Booking API endpoints — creation, delivery details, delivery phone, booking."""

from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from db.database import get_db
from models.booking import BookingEvent
from routers.deps import get_actor, get_dms, get_sender
from schemas import (
    BookingCreate, BookingEventResponse, BookingResponse, BookRequest, CodeSubmission,
    DeliveryInfoUpdate, DeliveryPhoneResponse, DeliveryPhoneUpdate, OTPSendResponse,
    TransitionRequest, VerificationReset,
)
from services import bookings
from services.actors import Actor
from services.dms import DmsClient
from services.sms import NotificationSender

router = APIRouter()


@router.post("/", response_model=BookingResponse, status_code=201)
async def create_booking(
    data: BookingCreate,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    return await bookings.create_booking(db, actor, **data.model_dump())


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(booking_id: int, db: AsyncSession = Depends(get_db)):
    return await bookings.get_booking(db, booking_id)


@router.get("/{booking_id}/events", response_model=list[BookingEventResponse])
async def get_booking_events(booking_id: int, db: AsyncSession = Depends(get_db)):
    """Audit trail, oldest first."""
    await bookings.get_booking(db, booking_id)
    result = await db.execute(
        select(BookingEvent)
        .where(BookingEvent.booking_id == booking_id)
        .order_by(BookingEvent.recorded_at, BookingEvent.id)
    )
    return result.scalars().all()


@router.put("/{booking_id}/delivery-info", response_model=BookingResponse)
async def update_delivery_info(
    booking_id: int,
    data: DeliveryInfoUpdate,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    return await bookings.update_delivery_info(db, booking_id, actor, **data.model_dump())


@router.put("/{booking_id}/delivery-phone", response_model=DeliveryPhoneResponse)
async def set_delivery_phone(
    booking_id: int,
    data: DeliveryPhoneUpdate,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_actor),
    sender: NotificationSender = Depends(get_sender),
):
    result = await bookings.set_delivery_phone(db, booking_id, data.phone, actor, sender=sender)
    return DeliveryPhoneResponse(
        booking=BookingResponse.model_validate(result.booking),
        otp=OTPSendResponse(**vars(result.otp)),
    )


@router.post("/{booking_id}/delivery-phone/verify", response_model=BookingResponse)
async def verify_delivery_phone(
    booking_id: int,
    data: CodeSubmission,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    return await bookings.verify_delivery_phone(db, booking_id, data.code, actor)


@router.post("/{booking_id}/verification/reset", response_model=BookingResponse)
async def reset_phone_verification(
    booking_id: int,
    data: VerificationReset,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    return await bookings.reset_phone_verification(db, booking_id, data.purpose, actor)


@router.post("/{booking_id}/book", response_model=BookingResponse)
async def book(
    booking_id: int,
    data: BookRequest,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_actor),
    dms: DmsClient = Depends(get_dms),
):
    """Allocate a barcode, book the article with the DMS and add it to a bag."""
    return await bookings.book_booking(db, booking_id, data.bag_id, actor, dms=dms)


@router.post("/{booking_id}/transition", response_model=BookingResponse)
async def apply_transition(
    booking_id: int,
    data: TransitionRequest,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    return await bookings.apply_booking_transition(db, booking_id, data.transition, actor)

"""Delivery API endpoints — the postmaster and postman side of a booking."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from db.database import get_db
from routers.deps import get_actor, get_dms, get_sender
from schemas import (
    ApplicationIdSubmission, BookingResponse, CodeSubmission, DeliveryPhotoSubmission,
    OTPSendResponse,
)
from services import bookings
from services.actors import Actor
from services.booking_state import TransitionName
from services.dms import DmsClient
from services.sms import NotificationSender

router = APIRouter()


@router.get("/items/{barcode}", response_model=BookingResponse)
async def item_details(barcode: str, db: AsyncSession = Depends(get_db)):
    return await bookings.find_booking_by_barcode(db, barcode)


@router.post("/{booking_id}/receive-bag", response_model=BookingResponse)
async def receive_bag(
    booking_id: int,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    return await bookings.apply_booking_transition(
        db, booking_id, TransitionName.RECEIVE_BY_POSTMASTER, actor
    )


@router.post("/{booking_id}/receive-item", response_model=BookingResponse)
async def receive_item(
    booking_id: int,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    return await bookings.apply_booking_transition(
        db, booking_id, TransitionName.RECEIVE_BY_POSTMAN, actor
    )


@router.post("/{booking_id}/confirmation/send-otp", response_model=OTPSendResponse)
async def send_confirmation_otp(
    booking_id: int,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_actor),
    sender: NotificationSender = Depends(get_sender),
):
    result = await bookings.send_delivery_confirmation_otp(db, booking_id, actor, sender=sender)
    return OTPSendResponse(**vars(result))


@router.post("/{booking_id}/confirmation/verify", response_model=BookingResponse)
async def confirm_delivery_phone(
    booking_id: int,
    data: CodeSubmission,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    return await bookings.confirm_delivery_phone(db, booking_id, data.code, actor)


@router.post("/{booking_id}/application-id/verify", response_model=BookingResponse)
async def verify_application_id(
    booking_id: int,
    data: ApplicationIdSubmission,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    return await bookings.verify_application_id(db, booking_id, data.app_or_order_id, actor)


@router.post("/{booking_id}/photo", response_model=BookingResponse)
async def upload_photo(
    booking_id: int,
    data: DeliveryPhotoSubmission,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    """Record where the delivery photo was stored; the upload itself happens elsewhere."""
    return await bookings.record_delivery_photo(db, booking_id, data.photo_path, actor)


@router.post("/{booking_id}/deliver", response_model=BookingResponse)
async def deliver(
    booking_id: int,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_actor),
    dms: DmsClient = Depends(get_dms),
):
    return await bookings.deliver_booking(db, booking_id, actor, dms=dms)


@router.post("/{booking_id}/return", response_model=BookingResponse)
async def return_item(
    booking_id: int,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    return await bookings.apply_booking_transition(db, booking_id, TransitionName.RETURN, actor)

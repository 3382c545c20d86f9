"""OTP API endpoints — send, verify, retry status and admin unblock."""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from db.database import get_db
from models.otp import OTPPurpose
from routers.deps import get_actor, get_sender, require_admin
from schemas import (
    OTPRetryInfoResponse, OTPScopeRequest, OTPSendRequest, OTPSendResponse,
    OTPVerifyRequest, OTPVerifyResponse,
)
from services.actors import Actor
from services.otp import get_otp_retry_info, issue_otp, unblock_otp, verify_otp
from services.sms import NotificationSender

router = APIRouter()


@router.post("/send", response_model=OTPSendResponse)
async def send_otp(
    data: OTPSendRequest,
    db: AsyncSession = Depends(get_db),
    sender: NotificationSender = Depends(get_sender),
):
    """Send a code, or report the one that is still live."""
    result = await issue_otp(db, data.phone, data.purpose, data.booking_id, sender=sender)
    return OTPSendResponse(**vars(result))


@router.post("/verify", response_model=OTPVerifyResponse)
async def verify(data: OTPVerifyRequest, db: AsyncSession = Depends(get_db)):
    record = await verify_otp(db, data.phone, data.code, data.purpose)
    return OTPVerifyResponse(success=True, otp_id=record.id)


@router.get("/retry-info", response_model=OTPRetryInfoResponse)
async def retry_info(
    phone: str = Query(..., min_length=1),
    purpose: OTPPurpose = Query(...),
    db: AsyncSession = Depends(get_db),
):
    return await get_otp_retry_info(db, phone, purpose)


@router.post("/unblock")
async def unblock(
    data: OTPScopeRequest,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    require_admin(actor)
    record = await unblock_otp(db, data.phone, data.purpose)
    return {"success": True, "otp_id": record.id}

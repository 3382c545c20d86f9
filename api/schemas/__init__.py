"""Pydantic schemas for API request/response models."""

from __future__ import annotations
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field

from models.booking import BookingStatus, BookingType
from models.otp import NO_BOOKING_ID, OTPPurpose
from services.booking_state import TransitionName


# ── OTP Schemas ────────────────────────────────────────────

class OTPSendRequest(BaseModel):
    phone: str = Field(..., min_length=1, max_length=20)
    purpose: OTPPurpose
    booking_id: int = NO_BOOKING_ID


class OTPSendResponse(BaseModel):
    otp_id: int
    expires_at: datetime
    success: bool
    already_active: bool


class OTPVerifyRequest(BaseModel):
    phone: str = Field(..., min_length=1, max_length=20)
    code: str
    purpose: OTPPurpose


class OTPVerifyResponse(BaseModel):
    success: bool
    otp_id: int


class OTPScopeRequest(BaseModel):
    phone: str = Field(..., min_length=1, max_length=20)
    purpose: OTPPurpose


class OTPRetryInfoResponse(BaseModel):
    can_request_new_otp: bool
    can_retry_otp: bool
    is_blocked: bool
    remaining_retries: int
    blocked_until: datetime | None
    message: str

    model_config = ConfigDict(from_attributes=True)


# ── Booking Schemas ────────────────────────────────────────

class BookingCreate(BaseModel):
    app_or_order_id: str = Field(..., min_length=1, max_length=255)
    name: str
    phone: str = Field(..., min_length=1, max_length=20)
    address: str
    emergency_contact_name: str | None = None
    emergency_contact_phone: str | None = None
    booking_type: BookingType = BookingType.CUSTOMER


class DeliveryInfoUpdate(BaseModel):
    receiver_name: str
    delivery_address: str
    delivery_branch_code: str | None = None


class DeliveryPhoneUpdate(BaseModel):
    phone: str = Field(..., min_length=1, max_length=20)


class CodeSubmission(BaseModel):
    code: str


class BookRequest(BaseModel):
    bag_id: str = Field(..., min_length=1)


class TransitionRequest(BaseModel):
    transition: TransitionName


class VerificationReset(BaseModel):
    purpose: OTPPurpose


class ApplicationIdSubmission(BaseModel):
    app_or_order_id: str


class DeliveryPhotoSubmission(BaseModel):
    photo_path: str = Field(..., min_length=1, max_length=512)


class BookingResponse(BaseModel):
    id: int
    app_or_order_id: str
    status: BookingStatus
    name: str
    phone: str
    address: str
    receiver_name: str | None
    delivery_branch_code: str | None
    delivery_address: str | None
    current_bag_id: str | None
    barcode: str | None
    delivery_phone: str | None
    delivery_phone_applied_verified: bool
    delivery_phone_confirmed_verified: bool
    delivery_application_id_verified: bool
    delivery_photo: str | None
    booking_type: BookingType
    booking_date: datetime
    created_by: str
    updated_by: str | None
    received_by: str | None = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class DeliveryPhoneResponse(BaseModel):
    booking: BookingResponse
    otp: OTPSendResponse


class BookingEventResponse(BaseModel):
    id: int
    booking_id: int
    event_type: str
    status: BookingStatus
    actor_id: str
    actor_role: str
    recorded_at: datetime

    model_config = ConfigDict(from_attributes=True)

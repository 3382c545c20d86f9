from models.otp import NO_BOOKING_ID, OTPEvent, OTPPurpose, OTPRecord
from models.booking import Booking, BookingEvent, BookingStatus, BookingStatusEvent, BookingType

__all__ = [
    "NO_BOOKING_ID", "OTPPurpose", "OTPRecord", "OTPEvent",
    "Booking", "BookingStatus", "BookingType", "BookingStatusEvent", "BookingEvent",
]

"""Booking, BookingStatusEvent and BookingEvent ORM models — delivery lifecycle."""

import enum
from datetime import datetime

from sqlalchemy import Boolean, Enum as SAEnum, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from db.database import Base
from db.types import UTCDateTime, utcnow


class BookingStatus(str, enum.Enum):
    INITIAL = "initial"
    PRE_BOOKED = "pre_booked"
    BOOKED = "booked"
    RECEIVED_BY_POSTMASTER = "received_by_postmaster"
    RECEIVED_BY_POSTMAN = "received_by_postman"
    DELIVERED = "delivered"
    RETURN = "return"

    @property
    def is_terminal(self) -> bool:
        return self in (BookingStatus.DELIVERED, BookingStatus.RETURN)


class BookingType(str, enum.Enum):
    AGENT = "agent"
    CUSTOMER = "customer"


def _enum_values(e: type[enum.Enum]) -> list[str]:
    return [m.value for m in e]


# One named type shared by every table that stores a status
BOOKING_STATUS_TYPE = SAEnum(BookingStatus, name="booking_status", values_callable=_enum_values)


def _status_column(**kw) -> Mapped[BookingStatus]:
    return mapped_column(BOOKING_STATUS_TYPE, nullable=False, **kw)


class BookingFields:
    """Business columns shared by bookings and their booking_events snapshots."""

    app_or_order_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    phone: Mapped[str] = mapped_column(String(20), nullable=False)
    address: Mapped[str] = mapped_column(Text, nullable=False)
    emergency_contact_name: Mapped[str | None] = mapped_column(String(255))
    emergency_contact_phone: Mapped[str | None] = mapped_column(String(20))

    # Delivery information (second step)
    receiver_name: Mapped[str | None] = mapped_column(String(255))
    delivery_branch_code: Mapped[str | None] = mapped_column(String(100))
    delivery_address: Mapped[str | None] = mapped_column(Text)

    # Booking with the delivery management system
    current_bag_id: Mapped[str | None] = mapped_column(String(255))
    barcode: Mapped[str | None] = mapped_column(String(255))

    # Phone possession proofs
    delivery_phone: Mapped[str | None] = mapped_column(String(20))
    delivery_phone_applied_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    delivery_phone_applied_otp_hash: Mapped[str | None] = mapped_column(String(128))
    delivery_phone_confirmed_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    delivery_phone_confirmed_otp_hash: Mapped[str | None] = mapped_column(String(128))
    delivery_application_id_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    delivery_photo: Mapped[str | None] = mapped_column(String(512))

    booking_type: Mapped[BookingType] = mapped_column(
        SAEnum(BookingType, name="booking_type", values_callable=_enum_values),
        nullable=False,
        default=BookingType.CUSTOMER,
    )
    # Postman who took the item for doorstep delivery
    received_by: Mapped[str | None] = mapped_column(String(255))

    booking_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    created_by: Mapped[str] = mapped_column(String(255), nullable=False)
    updated_by: Mapped[str | None] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)


class Booking(BookingFields, Base):
    __tablename__ = "bookings"
    # Unique business key on bookings only; events repeat it
    __table_args__ = (UniqueConstraint("app_or_order_id", name="uq_bookings_app_or_order_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    status: Mapped[BookingStatus] = _status_column(default=BookingStatus.INITIAL, index=True)

    @property
    def has_delivery_photo(self) -> bool:
        return bool(self.delivery_photo and self.delivery_photo.strip())

    def __repr__(self) -> str:
        return f"<Booking id={self.id} app_or_order_id={self.app_or_order_id} status={self.status.value}>"


class BookingStatusEvent(Base):
    __tablename__ = "booking_status_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    booking_id: Mapped[int] = mapped_column(ForeignKey("bookings.id"), nullable=False, index=True)
    status: Mapped[BookingStatus] = _status_column()
    created_by: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)


class BookingEvent(BookingFields, Base):
    """Immutable full copy of a booking at the moment it was mutated."""

    __tablename__ = "booking_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    booking_id: Mapped[int] = mapped_column(ForeignKey("bookings.id"), nullable=False, index=True)
    status: Mapped[BookingStatus] = _status_column()
    # created, delivery_info_updated, phone_applied_verified, item_delivered, ...
    event_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    actor_id: Mapped[str] = mapped_column(String(255), nullable=False)
    actor_role: Mapped[str] = mapped_column(String(30), nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

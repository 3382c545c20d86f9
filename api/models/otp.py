"""OTPRecord and OTPEvent ORM models."""

import enum
from datetime import datetime, timedelta

from sqlalchemy import Boolean, Enum as SAEnum, Index, Integer, String, text
from sqlalchemy.orm import Mapped, mapped_column

from db.database import Base
from db.types import UTCDateTime, utcnow

# booking_id used for OTPs that are not tied to a booking
NO_BOOKING_ID = 0


class OTPPurpose(str, enum.Enum):
    DELIVERY_PHONE_APPLY = "delivery_phone_apply_verification"
    DELIVERY_PHONE_CONFIRM = "delivery_phone_confirm_verification"


class OTPFields:
    """Business columns shared by otp_records and their otp_events snapshots."""

    phone: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    code: Mapped[str] = mapped_column(String(6), nullable=False)
    purpose: Mapped[OTPPurpose] = mapped_column(
        SAEnum(OTPPurpose, name="otp_purpose", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
    )
    booking_id: Mapped[int] = mapped_column(Integer, nullable=False, default=NO_BOOKING_ID, index=True)
    is_used: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    is_blocked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    blocked_until: Mapped[datetime | None] = mapped_column(UTCDateTime)
    last_attempt_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)


class OTPRecord(OTPFields, Base):
    __tablename__ = "otp_records"
    __table_args__ = (
        Index("ix_otp_records_scope", "phone", "purpose", "created_at"),
        # At most one unused code per scope, even for racing first issues
        Index(
            "uq_otp_records_unused_scope",
            "phone",
            "purpose",
            unique=True,
            postgresql_where=text("NOT is_used"),
            sqlite_where=text("NOT is_used"),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at

    def is_currently_blocked(self, now: datetime) -> bool:
        if not self.is_blocked:
            return False
        # No expiry on the block means it is permanent
        if self.blocked_until is None:
            return True
        return now <= self.blocked_until

    def has_stale_block(self, now: datetime) -> bool:
        return self.is_blocked and self.blocked_until is not None and now > self.blocked_until

    def is_live(self, now: datetime) -> bool:
        """Unused, unexpired and not blocked: the code a caller should be using."""
        return not self.is_used and not self.is_expired(now) and not self.is_currently_blocked(now)

    def can_retry(self, now: datetime) -> bool:
        return self.is_live(now) and self.retry_count < self.max_retries

    @property
    def remaining_attempts(self) -> int:
        return max(self.max_retries - self.retry_count, 0)

    def increment_retry(self, now: datetime, block_for: timedelta) -> None:
        """Count a failed attempt; block the record once retries are exhausted."""
        self.retry_count = min(self.retry_count + 1, self.max_retries)
        self.last_attempt_at = now
        if self.retry_count >= self.max_retries:
            self.is_blocked = True
            self.blocked_until = now + block_for

    def reset(self) -> None:
        self.retry_count = 0
        self.is_blocked = False
        self.blocked_until = None
        self.last_attempt_at = None

    def __repr__(self) -> str:
        return f"<OTPRecord id={self.id} phone={self.phone} purpose={self.purpose.value}>"


class OTPEvent(OTPFields, Base):
    __tablename__ = "otp_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    otp_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    # created, verified, retry_failed, blocked, unblocked, invalidated, expired
    event_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    recorded_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

"""
OTP Engine — issuance, verification, retry counting and blocking.

Policy:
  - 6-digit numeric codes from ``secrets``
  - One live code per (phone, purpose) scope; re-issuing returns the live one
  - 5-minute expiry, 3 verification attempts
  - The attempt that exhausts the retries blocks the scope for 15 minutes
  - Every write is mirrored into otp_events in the same transaction

All reads that lead to a write lock the latest scope record ``FOR UPDATE``
so concurrent attempts on the same code are serialised by the database.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from db.database import transaction
from models.otp import NO_BOOKING_ID, OTPPurpose, OTPRecord
from services.clock import Clock, default_clock
from services.errors import (
    InvalidOTPError,
    NotFoundError,
    OTPBlockedError,
    OTPExpiredError,
    ValidationError,
)
from services.sms import NotificationSender, SmsSender, dispatch_otp
from services.snapshots import snapshot_otp

logger = logging.getLogger(__name__)


# ── Result types ───────────────────────────────────────────

@dataclass
class IssueResult:
    record: OTPRecord
    created: bool


@dataclass
class OTPIssueResult:
    otp_id: int
    expires_at: datetime
    success: bool = True
    already_active: bool = False


@dataclass
class OTPRetryInfo:
    can_request_new_otp: bool
    can_retry_otp: bool
    is_blocked: bool
    remaining_retries: int
    blocked_until: datetime | None
    message: str


# ── Input validation ───────────────────────────────────────

def _require_phone(phone: str) -> str:
    phone = (phone or "").strip()
    if not phone:
        raise ValidationError("Phone number is required")
    return phone


def _require_purpose(purpose: OTPPurpose | str) -> OTPPurpose:
    try:
        return OTPPurpose(purpose)
    except ValueError:
        raise ValidationError(f"Unknown OTP purpose: {purpose!r}", purpose=str(purpose))


def _require_code(code: str) -> str:
    code = (code or "").strip()
    if len(code) != settings.OTP_LENGTH or not (code.isascii() and code.isdigit()):
        raise ValidationError(f"OTP must be exactly {settings.OTP_LENGTH} digits")
    return code


def _block_message(blocked_until: datetime | None) -> str:
    if blocked_until is None:
        return "OTP verification is permanently blocked"
    return f"OTP verification is blocked until {blocked_until.strftime('%H:%M:%S')}"


def _is_postgresql(session: AsyncSession) -> bool:
    return session.get_bind().dialect.name == "postgresql"


def scope_lock_statement(phone: str, purpose: OTPPurpose):
    """Transaction-scoped advisory lock taken by every issuer of one scope."""
    return select(func.pg_advisory_xact_lock(func.hashtext(f"otp:{phone}:{purpose.value}")))


class OTPService:
    """OTP operations bound to one session; callers own the transaction."""

    def __init__(self, session: AsyncSession, clock: Clock = default_clock):
        self.session = session
        self.clock = clock
        self.ttl = timedelta(seconds=settings.OTP_TTL_SECONDS)
        self.max_retries = settings.OTP_MAX_RETRIES
        self.block_for = timedelta(minutes=settings.OTP_BLOCK_MINUTES)

    def _scope_query(self, phone: str, purpose: OTPPurpose, *conditions):
        return (
            select(OTPRecord)
            .where(OTPRecord.phone == phone, OTPRecord.purpose == purpose, *conditions)
            .order_by(OTPRecord.created_at.desc(), OTPRecord.id.desc())
            .execution_options(populate_existing=True)
        )

    async def _latest(self, phone: str, purpose: OTPPurpose, *conditions) -> OTPRecord | None:
        """Latest record for the scope, row-locked until the transaction ends."""
        stmt = self._scope_query(phone, purpose, *conditions).limit(1).with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _lift_stale_block(self, record: OTPRecord | None, now: datetime) -> bool:
        if record is None or not record.has_stale_block(now):
            return False
        record.reset()
        await snapshot_otp(self.session, record, "unblocked", self.clock)
        logger.info("Expired OTP block lifted: otp_id=%s, phone=%s", record.id, record.phone)
        return True

    async def _lock_scope(self, phone: str, purpose: OTPPurpose) -> None:
        # Row locks cannot cover a scope that has no rows yet
        if _is_postgresql(self.session):
            await self.session.execute(scope_lock_statement(phone, purpose))

    # ── Issuance ──────────────────────────────────────────

    async def issue(
        self,
        phone: str,
        purpose: OTPPurpose | str,
        booking_id: int | None = NO_BOOKING_ID,
    ) -> IssueResult:
        """
        Return the live code for the scope, or create one.

        Raises:
            ValidationError: empty phone, unknown purpose or missing booking id
            OTPBlockedError: the latest code for the scope is still blocked
        """
        phone = _require_phone(phone)
        purpose = _require_purpose(purpose)
        if booking_id is None:
            raise ValidationError("Booking ID is required for OTP generation")

        now = self.clock.now()
        await self._lock_scope(phone, purpose)
        latest = await self._latest(phone, purpose)
        await self._lift_stale_block(latest, now)

        if latest is not None:
            if latest.is_currently_blocked(now):
                raise OTPBlockedError(
                    "OTP requests are blocked due to too many failed attempts",
                    blocked_until=latest.blocked_until,
                    remaining_attempts=latest.remaining_attempts,
                )
            if latest.is_live(now):
                logger.info("Live OTP reused: otp_id=%s, phone=%s", latest.id, phone)
                return IssueResult(record=latest, created=False)
            if not latest.is_used and latest.is_expired(now):
                latest.is_used = True
                await snapshot_otp(self.session, latest, "expired", self.clock)

        await self._invalidate_unused(phone, purpose)

        record = OTPRecord(
            phone=phone,
            code=self.clock.random_code(settings.OTP_LENGTH),
            purpose=purpose,
            booking_id=booking_id,
            is_used=False,
            retry_count=0,
            max_retries=self.max_retries,
            is_blocked=False,
            expires_at=now + self.ttl,
            created_at=now,
            updated_at=now,
        )
        self.session.add(record)
        await snapshot_otp(self.session, record, "created", self.clock)
        logger.info(
            "OTP issued: otp_id=%s, phone=%s, purpose=%s, booking_id=%s",
            record.id, phone, purpose.value, booking_id,
        )
        return IssueResult(record=record, created=True)

    async def _invalidate_unused(self, phone: str, purpose: OTPPurpose) -> int:
        result = await self.session.execute(
            self._scope_query(phone, purpose, OTPRecord.is_used.is_(False)).with_for_update()
        )
        records = result.scalars().all()
        for record in records:
            record.is_used = True
            await snapshot_otp(self.session, record, "invalidated", self.clock)
        return len(records)

    # ── Verification ──────────────────────────────────────

    async def verify(self, phone: str, code: str, purpose: OTPPurpose | str) -> OTPRecord:
        """
        Check ``code`` against the latest unused code for the scope.

        Returns the record, now marked used. Every failure raises; failed
        attempts are counted and survive the raise (``keeps_changes``).
        """
        code = _require_code(code)
        phone = _require_phone(phone)
        purpose = _require_purpose(purpose)

        now = self.clock.now()
        record = await self._latest(phone, purpose, OTPRecord.is_used.is_(False))
        if record is None:
            raise NotFoundError("No active OTP found for this phone number", phone=phone)

        lifted = await self._lift_stale_block(record, now)

        if record.is_currently_blocked(now):
            raise OTPBlockedError(
                _block_message(record.blocked_until),
                blocked_until=record.blocked_until,
                remaining_attempts=record.remaining_attempts,
            )

        if record.is_expired(now):
            # Keep a lifted block; the code itself stays unused
            raise OTPExpiredError(expired_at=record.expires_at, keeps_changes=lifted)

        if record.code != code:
            record.increment_retry(now, self.block_for)
            if record.is_blocked:
                await snapshot_otp(self.session, record, "blocked", self.clock)
                logger.warning(
                    "OTP blocked after %s failed attempts: otp_id=%s, phone=%s, until=%s",
                    record.retry_count, record.id, phone, record.blocked_until,
                )
                raise OTPBlockedError(
                    "Invalid OTP. Maximum attempts exceeded. OTP is now blocked",
                    blocked_until=record.blocked_until,
                    remaining_attempts=0,
                    keeps_changes=True,
                )
            await snapshot_otp(self.session, record, "retry_failed", self.clock)
            logger.warning(
                "Invalid OTP attempt: otp_id=%s, phone=%s, remaining=%s",
                record.id, phone, record.remaining_attempts,
            )
            raise InvalidOTPError(record.remaining_attempts)

        record.is_used = True
        record.last_attempt_at = now
        await snapshot_otp(self.session, record, "verified", self.clock)
        logger.info("OTP verified: otp_id=%s, phone=%s, purpose=%s", record.id, phone, purpose.value)
        return record

    # ── Status and administration ─────────────────────────

    async def retry_info(self, phone: str, purpose: OTPPurpose | str) -> OTPRetryInfo:
        phone = _require_phone(phone)
        purpose = _require_purpose(purpose)

        now = self.clock.now()
        record = await self._latest(phone, purpose)
        if record is None:
            return OTPRetryInfo(
                can_request_new_otp=True,
                can_retry_otp=False,
                is_blocked=False,
                remaining_retries=self.max_retries,
                blocked_until=None,
                message="You can request a new OTP",
            )

        await self._lift_stale_block(record, now)

        is_blocked = record.is_currently_blocked(now)
        info = OTPRetryInfo(
            can_request_new_otp=not is_blocked and (record.is_used or record.is_expired(now)),
            can_retry_otp=record.can_retry(now),
            is_blocked=is_blocked,
            remaining_retries=record.remaining_attempts,
            blocked_until=record.blocked_until,
            message="Current OTP is still valid",
        )
        if info.is_blocked:
            info.message = _block_message(record.blocked_until)
        elif info.can_retry_otp:
            info.message = f"You have {info.remaining_retries} attempts remaining"
        elif info.can_request_new_otp:
            info.message = "You can request a new OTP"
        return info

    async def unblock(self, phone: str, purpose: OTPPurpose | str) -> OTPRecord:
        """Admin reset of the latest blocked code for the scope."""
        phone = _require_phone(phone)
        purpose = _require_purpose(purpose)

        record = await self._latest(phone, purpose, OTPRecord.is_blocked.is_(True))
        if record is None:
            raise NotFoundError(f"No blocked OTP found for phone {phone}", phone=phone)

        record.reset()
        await snapshot_otp(self.session, record, "unblocked", self.clock)
        logger.info("OTP unblocked: otp_id=%s, phone=%s", record.id, phone)
        return record

    async def invalidate_scope(self, phone: str, purpose: OTPPurpose | str) -> int:
        """Retire every unused code for the scope and clear its retry/block state."""
        phone = _require_phone(phone)
        purpose = _require_purpose(purpose)

        result = await self.session.execute(self._scope_query(phone, purpose).with_for_update())
        count = 0
        for record in result.scalars().all():
            if record.is_used and not record.is_blocked and record.retry_count == 0:
                continue
            record.reset()
            record.is_used = True
            await snapshot_otp(self.session, record, "invalidated", self.clock)
            count += 1
        return count

    async def cleanup_expired_blocks(self) -> int:
        now = self.clock.now()
        result = await self.session.execute(
            select(OTPRecord)
            .where(
                OTPRecord.is_blocked.is_(True),
                OTPRecord.blocked_until.is_not(None),
                OTPRecord.blocked_until < now,
            )
            .with_for_update()
        )
        records = result.scalars().all()
        for record in records:
            record.reset()
            await snapshot_otp(self.session, record, "unblocked", self.clock)
        return len(records)

    async def cleanup_expired_otps(self) -> int:
        """Retire unused codes past their expiry. Rows are kept for audit."""
        now = self.clock.now()
        result = await self.session.execute(
            select(OTPRecord)
            .where(OTPRecord.is_used.is_(False), OTPRecord.expires_at < now)
            .with_for_update()
        )
        records = result.scalars().all()
        for record in records:
            record.is_used = True
            await snapshot_otp(self.session, record, "expired", self.clock)
        return len(records)


# ── Caller-facing operations (one transaction each) ────────

async def issue_otp(
    session: AsyncSession,
    phone: str,
    purpose: OTPPurpose | str,
    booking_id: int | None = NO_BOOKING_ID,
    *,
    sender: NotificationSender | None = None,
    clock: Clock = default_clock,
) -> OTPIssueResult:
    """Issue (or reuse) a code and send it by SMS once the write has committed."""
    async with transaction(session):
        result = await OTPService(session, clock).issue(phone, purpose, booking_id)

    record = result.record
    if result.created:
        dispatch_otp(sender or SmsSender(), record.phone, record.code)
    return OTPIssueResult(
        otp_id=record.id,
        expires_at=record.expires_at,
        success=True,
        already_active=not result.created,
    )


async def verify_otp(
    session: AsyncSession,
    phone: str,
    code: str,
    purpose: OTPPurpose | str,
    *,
    clock: Clock = default_clock,
) -> OTPRecord:
    async with transaction(session):
        return await OTPService(session, clock).verify(phone, code, purpose)


async def get_otp_retry_info(
    session: AsyncSession,
    phone: str,
    purpose: OTPPurpose | str,
    *,
    clock: Clock = default_clock,
) -> OTPRetryInfo:
    async with transaction(session):
        return await OTPService(session, clock).retry_info(phone, purpose)


async def unblock_otp(
    session: AsyncSession,
    phone: str,
    purpose: OTPPurpose | str,
    *,
    clock: Clock = default_clock,
) -> OTPRecord:
    async with transaction(session):
        return await OTPService(session, clock).unblock(phone, purpose)

"""Tests for the OTP engine (in-memory SQLite)."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "api"))

from datetime import timedelta

import pytest
from sqlalchemy import func, select
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import IntegrityError

from models.otp import OTPEvent, OTPPurpose, OTPRecord
from services.clock import Clock
from services.errors import (
    InvalidOTPError,
    NotFoundError,
    OTPBlockedError,
    OTPExpiredError,
    ValidationError,
)
import services.otp as otp_module
from services.otp import (
    OTPService,
    get_otp_retry_info,
    issue_otp,
    scope_lock_statement,
    unblock_otp,
    verify_otp,
)
from services.otp_sweeper import sweep_once
from services.sms import wait_for_pending

from conftest import FakeSender

PHONE = "01712345678"
APPLY = OTPPurpose.DELIVERY_PHONE_APPLY


async def _events(session, otp_id) -> list[str]:
    result = await session.execute(
        select(OTPEvent.event_type).where(OTPEvent.otp_id == otp_id).order_by(OTPEvent.id)
    )
    return list(result.scalars())


def test_otp_format():
    """Generated OTP should be a 6-digit string."""
    for _ in range(50):
        code = Clock().random_code()
        assert len(code) == 6
        assert code.isdigit()


@pytest.mark.asyncio
async def test_issue_creates_record_and_sends_sms(session, clock, sender):
    """A new code is stored with a 5-minute expiry and sent after commit."""
    result = await issue_otp(session, PHONE, APPLY, sender=sender, clock=clock)
    await wait_for_pending()

    assert result.success is True
    assert result.already_active is False
    assert result.expires_at == clock.now() + timedelta(minutes=5)
    assert sender.sent == [(PHONE, "482913")]

    record = await session.get(OTPRecord, result.otp_id)
    assert record.retry_count == 0
    assert record.max_retries == 3
    assert record.booking_id == 0
    assert await _events(session, record.id) == ["created"]


@pytest.mark.asyncio
async def test_issue_is_idempotent_while_code_is_live(session, clock, sender):
    """Issuing twice in a row returns the same code and sends it once."""
    first = await issue_otp(session, PHONE, APPLY, sender=sender, clock=clock)
    clock.advance(minutes=2)
    second = await issue_otp(session, PHONE, APPLY, sender=sender, clock=clock)
    await wait_for_pending()

    assert second.otp_id == first.otp_id
    assert second.already_active is True
    assert second.expires_at == first.expires_at
    assert len(sender.sent) == 1


@pytest.mark.asyncio
async def test_single_active_code_per_scope(session, clock, sender):
    """After expiry a new code replaces the old one; only one is ever live."""
    first = await issue_otp(session, PHONE, APPLY, sender=sender, clock=clock)
    clock.advance(minutes=6)
    second = await issue_otp(session, PHONE, APPLY, sender=sender, clock=clock)
    await wait_for_pending()

    assert second.otp_id != first.otp_id
    live = await session.execute(
        select(func.count(OTPRecord.id)).where(
            OTPRecord.phone == PHONE,
            OTPRecord.purpose == APPLY,
            OTPRecord.is_used.is_(False),
            OTPRecord.expires_at >= clock.now(),
        )
    )
    assert live.scalar() == 1

    old = await session.get(OTPRecord, first.otp_id)
    assert old.is_used is True
    assert await _events(session, first.otp_id) == ["created", "expired"]


@pytest.mark.asyncio
async def test_scopes_are_independent(session, clock, sender):
    """Same phone, different purpose: two separate live codes."""
    apply = await issue_otp(session, PHONE, APPLY, sender=sender, clock=clock)
    confirm = await issue_otp(
        session, PHONE, OTPPurpose.DELIVERY_PHONE_CONFIRM, sender=sender, clock=clock
    )
    await wait_for_pending()

    assert apply.otp_id != confirm.otp_id
    assert confirm.already_active is False


@pytest.mark.asyncio
async def test_issue_validates_input(session, clock, sender):
    with pytest.raises(ValidationError):
        await issue_otp(session, "  ", APPLY, sender=sender, clock=clock)
    with pytest.raises(ValidationError):
        await issue_otp(session, PHONE, "parcel_pickup", sender=sender, clock=clock)
    with pytest.raises(ValidationError):
        await issue_otp(session, PHONE, APPLY, None, sender=sender, clock=clock)


@pytest.mark.asyncio
async def test_notification_failure_does_not_fail_issuance(session, clock):
    """The gateway being down is logged; the code is still valid."""
    failing = FakeSender(fail=True)
    result = await issue_otp(session, PHONE, APPLY, sender=failing, clock=clock)
    await wait_for_pending()

    assert result.success is True
    record = await verify_otp(session, PHONE, "482913", APPLY, clock=clock)
    assert record.is_used is True


@pytest.mark.asyncio
@pytest.mark.parametrize("code", ["12345", "1234567", "abcdef", "12 456", ""])
async def test_verify_rejects_malformed_code(session, clock, code):
    with pytest.raises(ValidationError):
        await verify_otp(session, PHONE, code, APPLY, clock=clock)


@pytest.mark.asyncio
async def test_verify_without_code_is_not_found(session, clock):
    with pytest.raises(NotFoundError):
        await verify_otp(session, PHONE, "123456", APPLY, clock=clock)


@pytest.mark.asyncio
async def test_otp_verify_success(session, clock, sender):
    """Correct OTP should verify once and only once."""
    issued = await issue_otp(session, PHONE, APPLY, sender=sender, clock=clock)
    await wait_for_pending()

    record = await verify_otp(session, PHONE, "482913", APPLY, clock=clock)
    assert record.id == issued.otp_id
    assert record.is_used is True
    assert record.last_attempt_at == clock.now()

    with pytest.raises(NotFoundError):
        await verify_otp(session, PHONE, "482913", APPLY, clock=clock)
    assert await _events(session, issued.otp_id) == ["created", "verified"]


@pytest.mark.asyncio
async def test_otp_verify_wrong_code(session, clock, sender, session_factory):
    """Wrong OTP fails with the remaining attempts, and the attempt is kept."""
    issued = await issue_otp(session, PHONE, APPLY, sender=sender, clock=clock)
    await wait_for_pending()

    with pytest.raises(InvalidOTPError) as exc:
        await verify_otp(session, PHONE, "000000", APPLY, clock=clock)
    assert exc.value.remaining_attempts == 2
    assert exc.value.to_dict()["error"] == "INVALID_CODE"

    # Seen from a fresh session: the failed attempt was committed
    async with session_factory() as other:
        record = await other.get(OTPRecord, issued.otp_id)
        assert record.retry_count == 1
        assert record.last_attempt_at == clock.now()
        assert record.is_used is False


@pytest.mark.asyncio
async def test_three_wrong_attempts_block_the_code(session, clock, sender):
    """Third wrong attempt blocks for 15 minutes; the right code is refused."""
    await issue_otp(session, PHONE, APPLY, sender=sender, clock=clock)
    await wait_for_pending()
    code = sender.last_code(PHONE)

    for remaining in (2, 1):
        with pytest.raises(InvalidOTPError) as exc:
            await verify_otp(session, PHONE, "000000", APPLY, clock=clock)
        assert exc.value.remaining_attempts == remaining

    with pytest.raises(OTPBlockedError) as exc:
        await verify_otp(session, PHONE, "000000", APPLY, clock=clock)
    blocked_until = clock.now() + timedelta(minutes=15)
    assert exc.value.blocked_until == blocked_until
    assert exc.value.remaining_attempts == 0

    clock.advance(minutes=1)
    with pytest.raises(OTPBlockedError) as exc:
        await verify_otp(session, PHONE, code, APPLY, clock=clock)
    assert exc.value.blocked_until == blocked_until

    # Issuing is refused too while the block lasts
    with pytest.raises(OTPBlockedError):
        await issue_otp(session, PHONE, APPLY, sender=sender, clock=clock)


@pytest.mark.asyncio
async def test_retry_count_never_exceeds_max(session, clock, sender):
    issued = await issue_otp(session, PHONE, APPLY, sender=sender, clock=clock)
    await wait_for_pending()

    for _ in range(5):
        with pytest.raises((InvalidOTPError, OTPBlockedError)):
            await verify_otp(session, PHONE, "000000", APPLY, clock=clock)

    record = await session.get(OTPRecord, issued.otp_id, populate_existing=True)
    assert record.retry_count == 3
    assert record.is_blocked is True
    assert await _events(session, record.id) == ["created", "retry_failed", "retry_failed", "blocked"]


@pytest.mark.asyncio
async def test_block_lapses_after_window(session, clock, sender):
    """Once the block window passes, a new code can be requested."""
    first = await issue_otp(session, PHONE, APPLY, sender=sender, clock=clock)
    for _ in range(3):
        with pytest.raises((InvalidOTPError, OTPBlockedError)):
            await verify_otp(session, PHONE, "000000", APPLY, clock=clock)

    clock.advance(minutes=16)
    second = await issue_otp(session, PHONE, APPLY, sender=sender, clock=clock)
    await wait_for_pending()

    assert second.otp_id != first.otp_id
    assert second.already_active is False
    old = await session.get(OTPRecord, first.otp_id, populate_existing=True)
    assert old.is_blocked is False
    assert old.retry_count == 0
    assert old.is_used is True


@pytest.mark.asyncio
async def test_expiry_boundary(session, clock, sender):
    """One second before expiry succeeds; one second after fails even with the right code."""
    await issue_otp(session, PHONE, APPLY, sender=sender, clock=clock)
    clock.advance(minutes=4, seconds=59)
    record = await verify_otp(session, PHONE, "482913", APPLY, clock=clock)
    assert record.is_used is True

    clock.advance(minutes=1)
    await issue_otp(session, PHONE, APPLY, sender=sender, clock=clock)
    await wait_for_pending()
    clock.advance(minutes=5, seconds=1)

    with pytest.raises(OTPExpiredError):
        await verify_otp(session, PHONE, "115208", APPLY, clock=clock)
    with pytest.raises(OTPExpiredError):
        await verify_otp(session, PHONE, "000000", APPLY, clock=clock)


@pytest.mark.asyncio
async def test_retry_info(session, clock, sender):
    info = await get_otp_retry_info(session, PHONE, APPLY, clock=clock)
    assert info.can_request_new_otp is True
    assert info.can_retry_otp is False
    assert info.remaining_retries == 3
    assert info.message == "You can request a new OTP"

    await issue_otp(session, PHONE, APPLY, sender=sender, clock=clock)
    await wait_for_pending()
    with pytest.raises(InvalidOTPError):
        await verify_otp(session, PHONE, "000000", APPLY, clock=clock)

    info = await get_otp_retry_info(session, PHONE, APPLY, clock=clock)
    assert info.can_retry_otp is True
    assert info.can_request_new_otp is False
    assert info.remaining_retries == 2
    assert info.message == "You have 2 attempts remaining"

    for _ in range(2):
        with pytest.raises((InvalidOTPError, OTPBlockedError)):
            await verify_otp(session, PHONE, "000000", APPLY, clock=clock)

    info = await get_otp_retry_info(session, PHONE, APPLY, clock=clock)
    assert info.is_blocked is True
    assert info.blocked_until == clock.now() + timedelta(minutes=15)
    assert info.message == "OTP verification is blocked until 09:15:00"


@pytest.mark.asyncio
async def test_retry_info_lifts_stale_block(session, clock, sender):
    await issue_otp(session, PHONE, APPLY, sender=sender, clock=clock)
    await wait_for_pending()
    for _ in range(3):
        with pytest.raises((InvalidOTPError, OTPBlockedError)):
            await verify_otp(session, PHONE, "000000", APPLY, clock=clock)

    clock.advance(minutes=20)
    info = await get_otp_retry_info(session, PHONE, APPLY, clock=clock)
    assert info.is_blocked is False
    assert info.can_request_new_otp is True
    assert info.remaining_retries == 3


@pytest.mark.asyncio
async def test_unblock(session, clock, sender):
    """Admin unblock resets the retry state so the live code works again."""
    issued = await issue_otp(session, PHONE, APPLY, sender=sender, clock=clock)
    await wait_for_pending()
    for _ in range(3):
        with pytest.raises((InvalidOTPError, OTPBlockedError)):
            await verify_otp(session, PHONE, "000000", APPLY, clock=clock)

    record = await unblock_otp(session, PHONE, APPLY, clock=clock)
    assert record.id == issued.otp_id
    assert record.retry_count == 0
    assert record.blocked_until is None

    verified = await verify_otp(session, PHONE, "482913", APPLY, clock=clock)
    assert verified.is_used is True

    with pytest.raises(NotFoundError):
        await unblock_otp(session, PHONE, APPLY, clock=clock)


@pytest.mark.asyncio
async def test_sweep_retires_expired_codes_and_blocks(session, clock, sender):
    await issue_otp(session, PHONE, APPLY, sender=sender, clock=clock)
    await issue_otp(session, "01811111111", APPLY, sender=sender, clock=clock)
    await wait_for_pending()
    for _ in range(3):
        with pytest.raises((InvalidOTPError, OTPBlockedError)):
            await verify_otp(session, PHONE, "000000", APPLY, clock=clock)

    clock.advance(minutes=16)
    unblocked, expired = await sweep_once(session, clock)
    assert (unblocked, expired) == (1, 2)

    # Rows are kept for audit, only retired
    total = await session.execute(select(func.count(OTPRecord.id)))
    assert total.scalar() == 2
    assert await sweep_once(session, clock) == (0, 0)


@pytest.mark.asyncio
async def test_locking_reads_use_for_update(session, clock, sender, monkeypatch):
    """Reads that lead to writes lock the scope row."""
    await issue_otp(session, PHONE, APPLY, sender=sender, clock=clock)
    await wait_for_pending()

    statements = []
    original = session.execute

    async def spy(statement, *args, **kwargs):
        statements.append(statement)
        return await original(statement, *args, **kwargs)

    monkeypatch.setattr(session, "execute", spy)
    with pytest.raises(InvalidOTPError):
        await verify_otp(session, PHONE, "000000", APPLY, clock=clock)

    compiled = str(statements[0].compile(dialect=postgresql.dialect()))
    assert "FOR UPDATE" in compiled
    assert "ORDER BY otp_records.created_at DESC, otp_records.id DESC" in compiled


@pytest.mark.asyncio
async def test_invalidate_scope(session, clock, sender):
    issued = await issue_otp(session, PHONE, APPLY, sender=sender, clock=clock)
    await wait_for_pending()
    with pytest.raises(InvalidOTPError):
        await verify_otp(session, PHONE, "000000", APPLY, clock=clock)

    service = OTPService(session, clock)
    assert await service.invalidate_scope(PHONE, APPLY) == 1
    await session.commit()

    record = await session.get(OTPRecord, issued.otp_id, populate_existing=True)
    assert record.is_used is True
    assert record.retry_count == 0
    with pytest.raises(NotFoundError):
        await verify_otp(session, PHONE, "482913", APPLY, clock=clock)


@pytest.mark.asyncio
async def test_verify_after_block_and_expiry_keeps_the_lifted_block(session, clock, sender, session_factory):
    """The lifted block is committed even though the verify call reports EXPIRED."""
    issued = await issue_otp(session, PHONE, APPLY, sender=sender, clock=clock)
    await wait_for_pending()
    for _ in range(3):
        with pytest.raises((InvalidOTPError, OTPBlockedError)):
            await verify_otp(session, PHONE, "000000", APPLY, clock=clock)

    clock.advance(minutes=16)
    with pytest.raises(OTPExpiredError):
        await verify_otp(session, PHONE, "482913", APPLY, clock=clock)

    async with session_factory() as other:
        stored = await other.get(OTPRecord, issued.otp_id)
        assert stored.is_blocked is False
        assert stored.retry_count == 0
        assert stored.is_used is False
        assert (await _events(other, issued.otp_id))[-1] == "unblocked"


def _unused_record(clock, code: str) -> OTPRecord:
    now = clock.now()
    return OTPRecord(
        phone=PHONE,
        code=code,
        purpose=APPLY,
        booking_id=0,
        is_used=False,
        retry_count=0,
        max_retries=3,
        is_blocked=False,
        expires_at=now + timedelta(minutes=5),
        created_at=now,
        updated_at=now,
    )


@pytest.mark.asyncio
async def test_database_rejects_a_second_unused_code(session, clock):
    """Two racing first issues cannot both leave a live code behind."""
    session.add(_unused_record(clock, "111111"))
    await session.commit()

    session.add(_unused_record(clock, "222222"))
    with pytest.raises(IntegrityError):
        await session.commit()
    await session.rollback()


@pytest.mark.asyncio
async def test_issue_takes_the_scope_lock_first(session, clock, sender, monkeypatch):
    """On PostgreSQL issuers serialise on an advisory lock before reading the scope."""
    statements = []
    original = session.execute

    async def spy(statement, *args, **kwargs):
        compiled = str(statement.compile(dialect=postgresql.dialect()))
        statements.append(compiled)
        if "pg_advisory_xact_lock" in compiled:
            return None
        return await original(statement, *args, **kwargs)

    monkeypatch.setattr(otp_module, "_is_postgresql", lambda session: True)
    monkeypatch.setattr(session, "execute", spy)
    await issue_otp(session, PHONE, APPLY, sender=sender, clock=clock)
    await wait_for_pending()

    assert "pg_advisory_xact_lock(hashtext(" in statements[0]
    assert "FOR UPDATE" in statements[1]


def test_scope_lock_is_keyed_on_phone_and_purpose():
    def literal(purpose):
        return str(scope_lock_statement(PHONE, purpose).compile(
            dialect=postgresql.dialect(), compile_kwargs={"literal_binds": True},
        ))

    assert "otp:01712345678:delivery_phone_apply_verification" in literal(APPLY)
    assert literal(APPLY) != literal(OTPPurpose.DELIVERY_PHONE_CONFIRM)

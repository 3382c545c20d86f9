"""
Periodic OTP maintenance: lift expired blocks and retire expired codes.

Started from the application lifespan when OTP_SWEEP_INTERVAL_SECONDS > 0.
"""

import asyncio
import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from db.database import transaction
from services.clock import Clock, default_clock
from services.errors import DeliveryError
from services.otp import OTPService

logger = logging.getLogger(__name__)


async def sweep_once(session: AsyncSession, clock: Clock = default_clock) -> tuple[int, int]:
    """Run both cleanups in one transaction. Returns (unblocked, expired)."""
    async with transaction(session):
        service = OTPService(session, clock)
        unblocked = await service.cleanup_expired_blocks()
        expired = await service.cleanup_expired_otps()
    if unblocked or expired:
        logger.info("OTP sweep: unblocked=%s, expired=%s", unblocked, expired)
    return unblocked, expired


async def run_sweeper(
    session_factory: async_sessionmaker,
    interval_seconds: float,
    clock: Clock = default_clock,
) -> None:
    """Sweep forever until cancelled. A failed sweep is logged and retried next tick."""
    logger.info("OTP sweeper started: interval=%ss", interval_seconds)
    while True:
        try:
            async with session_factory() as session:
                await sweep_once(session, clock)
        except DeliveryError as e:
            logger.error("OTP sweep failed: %s", e.message)
        await asyncio.sleep(interval_seconds)

"""
SMS Notification Service — delivers OTP codes to phone numbers.

Delivery is best-effort. ``dispatch_otp`` is called only after the issuing
transaction has committed and runs the send on its own asyncio task, so a
slow or failing gateway never holds a database transaction open and never
fails issuance. Failures are logged and swallowed.
"""

import asyncio
import logging
from typing import Protocol

import httpx

from config import settings
from services.errors import NotificationError

logger = logging.getLogger(__name__)

_pending: set[asyncio.Task] = set()


class NotificationSender(Protocol):
    async def send(self, phone: str, code: str) -> None: ...


def _digits(phone: str) -> str:
    return "".join(ch for ch in (phone or "").strip() if ch.isdigit())


class SmsSender:
    """Sends OTP messages through the configured HTTP SMS gateway."""

    def __init__(
        self,
        gateway_url: str | None = None,
        api_key: str | None = None,
        sender_id: str | None = None,
        timeout: float | None = None,
    ):
        self.gateway_url = gateway_url if gateway_url is not None else settings.SMS_GATEWAY_URL
        self.api_key = api_key if api_key is not None else settings.SMS_API_KEY
        self.sender_id = sender_id or settings.SMS_SENDER_ID
        self.timeout = timeout or settings.SMS_TIMEOUT_SECONDS

    async def send(self, phone: str, code: str) -> None:
        if not self.gateway_url or not self.api_key:
            raise NotificationError("SMS gateway not configured")

        mobile = _digits(phone)
        if not mobile:
            raise NotificationError(f"Invalid phone number {phone!r}")

        payload = {
            "to": mobile,
            "sender_id": self.sender_id,
            "message": f"Your verification code is {code}. It expires in "
                       f"{settings.OTP_TTL_SECONDS // 60} minutes.",
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(self.gateway_url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise NotificationError(f"SMS gateway unreachable: {e}") from e

        if resp.status_code >= 300:
            raise NotificationError(
                f"SMS gateway rejected message: status={resp.status_code} body={resp.text[:200]}"
            )
        logger.info("OTP SMS accepted by gateway: phone=%s", phone)


async def _deliver(sender: NotificationSender, phone: str, code: str) -> bool:
    try:
        await sender.send(phone, code)
        return True
    except Exception as e:
        # The code stays valid; the caller can still use it or request a resend
        logger.warning("OTP delivery failed: phone=%s, error=%s", phone, str(e))
        return False


def dispatch_otp(sender: NotificationSender, phone: str, code: str) -> asyncio.Task:
    """Hand an OTP to ``sender`` on a background task. Call after commit."""
    task = asyncio.get_running_loop().create_task(_deliver(sender, phone, code))
    _pending.add(task)
    task.add_done_callback(_pending.discard)
    return task


async def wait_for_pending() -> None:
    """Wait for all in-flight deliveries (shutdown hook and tests)."""
    if _pending:
        await asyncio.gather(*list(_pending), return_exceptions=True)

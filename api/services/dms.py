"""
Delivery Management System client — barcode allocation, article booking
and article delivery.

Calls happen before the local transaction that records their outcome, so
a failure here leaves the booking exactly as it was.
"""

import logging
from typing import Any

import httpx

from config import settings
from services.errors import ExternalServiceError

logger = logging.getLogger(__name__)


def _error_detail(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:200]
    if isinstance(body, dict):
        return str(body.get("detail") or body.get("message") or body)
    return str(body)


class DmsClient:
    def __init__(
        self,
        base_url: str | None = None,
        token: str | None = None,
        timeout: float | None = None,
    ):
        self.base_url = (base_url if base_url is not None else settings.DMS_BASE_URL or "").rstrip("/")
        self.token = token if token is not None else settings.DMS_API_TOKEN
        self.timeout = timeout or settings.DMS_TIMEOUT_SECONDS

    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        if not self.base_url:
            raise ExternalServiceError("DMS_BASE_URL is not configured")

        url = f"{self.base_url}{path}"
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            logger.error("DMS call failed: url=%s, error=%s", url, str(e))
            raise ExternalServiceError(f"Failed to reach delivery system: {e}") from e

        if not 200 <= resp.status_code < 300:
            detail = _error_detail(resp)
            logger.error("DMS call rejected: url=%s, status=%s, detail=%s", url, resp.status_code, detail)
            raise ExternalServiceError(
                f"Delivery system rejected request: {detail}",
                status_code=resp.status_code,
            )

        try:
            data = resp.json()
        except ValueError:
            data = {}
        return data if isinstance(data, dict) else {"data": data}

    async def allocate_barcode(self, service_type: str = "letter") -> str:
        data = await self._post("/dms/api/get-barcode/", {"service_type": service_type})
        barcode = data.get("barcode")
        if not isinstance(barcode, str) or not barcode:
            raise ExternalServiceError("Barcode not found in delivery system response")
        logger.info("DMS barcode allocated: barcode=%s", barcode)
        return barcode

    async def book_article(
        self,
        barcode: str,
        app_or_order_id: str,
        receiver: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        payload = {
            "barcode": barcode,
            "order_id": app_or_order_id,
            "service_name": "letter",
            "receiver": receiver or {},
        }
        data = await self._post("/dms/book/article/", payload)
        logger.info("DMS article booked: barcode=%s, order=%s", barcode, app_or_order_id)
        return data

    async def deliver_article(self, barcode: str) -> dict[str, Any]:
        data = await self._post("/dms/deliver/article/", {"article_id": barcode})
        logger.info("DMS article delivered: barcode=%s", barcode)
        return data

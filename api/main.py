"""
Postbook — FastAPI Backend
Parcel booking delivery with OTP-verified handover
"""

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import settings
from db.database import SessionLocal, engine
from routers import bookings, delivery, otp
from services.errors import DeliveryError
from services.otp_sweeper import run_sweeper
from services.sms import wait_for_pending

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

ERROR_STATUS = {
    "VALIDATION": 400,
    "INVALID_CODE": 400,
    "NOT_FOUND": 404,
    "PRECONDITION_FAILED": 409,
    "EXPIRED": 410,
    "BLOCKED": 429,
    "STORAGE_ERROR": 500,
    "EXTERNAL_SERVICE_ERROR": 502,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    sweeper = None
    if settings.OTP_SWEEP_INTERVAL_SECONDS > 0:
        sweeper = asyncio.create_task(
            run_sweeper(SessionLocal, settings.OTP_SWEEP_INTERVAL_SECONDS)
        )
    logger.info("Postbook API starting")
    yield
    if sweeper is not None:
        sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweeper
    await wait_for_pending()
    await engine.dispose()
    logger.info("Postbook API shut down")


app = FastAPI(
    title="Postbook Delivery API",
    description="Parcel booking lifecycle with OTP-verified delivery",
    version="1.0.0",
    lifespan=lifespan,
)

# ── CORS ───────────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Restrict in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(DeliveryError)
async def delivery_error_handler(request: Request, exc: DeliveryError):
    status = ERROR_STATUS.get(exc.code, 500)
    if status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    # Storage failures stay generic for the caller
    body = {"error": exc.code, "message": "Internal error"} if exc.code == "STORAGE_ERROR" else exc.to_dict()
    return JSONResponse(status_code=status, content=body)


# ── Routers ────────────────────────────────────────────────
app.include_router(otp.router, prefix="/api/otp", tags=["OTP"])
app.include_router(bookings.router, prefix="/api/bookings", tags=["Bookings"])
app.include_router(delivery.router, prefix="/api/delivery", tags=["Delivery"])


@app.get("/health")
async def health_check():
    return {"status": "healthy", "service": "Postbook API"}

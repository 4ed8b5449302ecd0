# ============================================================
# app.py — Booking Service entry point
# ------------------------------------------------------------
#   - configures logging
#   - creates the tables on startup
#   - starts the RabbitMQ consumer in a daemon thread
#   - maps BookingError subclasses to HTTP responses
#   - mounts the API router
# ============================================================
import logging
import threading

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlmodel import SQLModel

from booking import models  # noqa: F401  (registers the tables)
from booking.api import engine, router
from booking.config import settings
from booking.consumer import start_consumer
from booking.errors import BookingError

logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s %(message)s")

app = FastAPI(title="Booking Service")


@app.on_event("startup")
def start():
    SQLModel.metadata.create_all(engine)
    if settings.consumer_enabled:
        threading.Thread(target=start_consumer, daemon=True).start()


# Every error carries the full list of reasons so a client can
# show them all at once.
@app.exception_handler(BookingError)
def booking_error_handler(request: Request, exc: BookingError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "violations": exc.violations},
    )


@app.get("/health")
def health():
    return {"ok": True}


app.include_router(router)

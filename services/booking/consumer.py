# ============================================================
# Booking Service — RabbitMQ Consumer
# ------------------------------------------------------------
# Listens on the "events" exchange for the clock-driven part of
# the lifecycle, published by the external scheduler:
#   - BookingStarted : approved -> active
#   - BookingEnded   : active -> completed
# Every message id is recorded in ProcessedMessage so redelivered
# messages are applied only once.
# ============================================================
import json
import logging
import time

import pika
from sqlmodel import Session

from booking.api import engine
from booking.config import settings
from booking.errors import BookingError
from booking.repository import BookingRepository
from booking.service import BookingService

logger = logging.getLogger(__name__)

HANDLERS = {
    "BookingStarted": BookingService.activate_booking,
    "BookingEnded": BookingService.complete_booking,
}


def handle_message(s: Session, msg: dict) -> str:
    """Apply one decoded message. Returns what happened, for logging and tests."""
    etype = msg.get("type")
    payload = msg.get("payload", {})
    handler = HANDLERS.get(etype)
    if handler is None:
        return "ignored"

    raw_id = payload.get("bookingId")
    if not raw_id:
        logger.warning("[consumer] %s without bookingId, skipping", etype)
        return "skipped"
    try:
        booking_id = int(raw_id)
    except (TypeError, ValueError):
        logger.warning("[consumer] %s with malformed bookingId %r, skipping", etype, raw_id)
        return "skipped"

    # use the broker's messageId when there is one, else "Type:bookingId"
    message_id = msg.get("messageId") or f"{etype}:{booking_id}"
    repo = BookingRepository(s)
    if repo.already_processed(message_id):
        logger.info("[consumer] %s already processed, skipping", message_id)
        return "duplicate"

    try:
        handler(BookingService(s, settings), booking_id)
        outcome = "applied"
    except BookingError as e:
        # stale or out-of-order event: record it so it is not retried
        s.rollback()
        logger.warning("[consumer] %s for booking %s rejected: %s", etype, booking_id, e.message)
        outcome = "rejected"
    repo.mark_processed(message_id)
    return outcome


def on_message(ch, method, properties, body):
    try:
        msg = json.loads(body)
    except json.JSONDecodeError as e:
        logger.warning("[consumer] bad payload: %s", e)
        return
    with Session(engine) as s:
        outcome = handle_message(s, msg)
    logger.debug("[consumer] %s -> %s", msg.get("type"), outcome)


def start_consumer():
    # retry loop while RabbitMQ is not reachable
    attempt = 0
    while True:
        try:
            logger.info("[consumer] connecting to rabbitmq at %s...", settings.rabbitmq_host)
            conn = pika.BlockingConnection(pika.ConnectionParameters(host=settings.rabbitmq_host, heartbeat=60))
            ch = conn.channel()
            ch.exchange_declare(exchange="events", exchange_type="fanout", durable=True)
            # anonymous queue, exclusive to this consumer
            q = ch.queue_declare(queue="", exclusive=True).method.queue
            ch.queue_bind(exchange="events", queue=q)
            logger.info("[consumer] bound to exchange 'events' queue='%s', waiting for messages", q)
            attempt = 0
            ch.basic_consume(queue=q, on_message_callback=on_message, auto_ack=True)
            ch.start_consuming()
        except Exception:
            attempt += 1
            wait = min(5 * attempt, 30)
            logger.exception("[consumer] consumer loop failed, retrying in %ss", wait)
            time.sleep(wait)

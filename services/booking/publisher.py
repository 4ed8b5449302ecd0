# ============================================================
# publisher.py — RabbitMQ event publication
# ------------------------------------------------------------
# Every lifecycle change is broadcast on the fanout exchange
# "events" as {"type": ..., "payload": ...}. Publication happens
# after the database commit: a broker failure is logged but does
# not undo a booking that is already stored.
# ============================================================
import json
import logging

import pika
from pika.exceptions import AMQPError

from booking.config import settings
from booking.models import Booking, as_utc

logger = logging.getLogger(__name__)

EXCHANGE = "events"


def publish_event(event_type: str, payload: dict):
    # opens a short-lived connection per event
    conn = pika.BlockingConnection(pika.ConnectionParameters(host=settings.rabbitmq_host))
    try:
        ch = conn.channel()
        # durable=True so the exchange survives a RabbitMQ restart
        ch.exchange_declare(exchange=EXCHANGE, exchange_type="fanout", durable=True)
        message = {"type": event_type, "payload": payload}
        ch.basic_publish(exchange=EXCHANGE, routing_key="", body=json.dumps(message))
        logger.info("[event] %s %s", event_type, payload)
    finally:
        conn.close()


def booking_payload(b: Booking) -> dict:
    return {
        "bookingId": b.id,
        "userId": b.user_id,
        "resourceId": b.resource_id,
        "status": b.status,
        "start": as_utc(b.start_time).isoformat(),  # includes +00:00
        "end": as_utc(b.end_time).isoformat(),
        "requestedQuantity": b.requested_quantity,
        "allocatedQuantity": b.allocated_quantity,
    }


def emit(event_type: str, b: Booking):
    try:
        publish_event(event_type, booking_payload(b))
    except AMQPError:
        logger.exception("[event] failed to publish %s for booking %s", event_type, b.id)

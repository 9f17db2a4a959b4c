import json
import logging
import time
from typing import Callable, Optional, Tuple

import pika
from pika.exceptions import AMQPError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from . import config
from .database import session_scope
from .models import ProcessedEvent

logger = logging.getLogger(__name__)

SERVICE_NAME = "notification-service"
BINDINGS = [
    ("q.notification.user-registered", "user.registered"),
    ("q.notification.order-paid", "order.paid"),
]


def ensure_exchange(ch):
    ch.exchange_declare(exchange=config.EVENTS_EXCHANGE, exchange_type="direct", durable=True)


def already_processed(db, event_id: str) -> bool:
    return db.get(ProcessedEvent, (SERVICE_NAME, event_id)) is not None


def mark_processed(db, event_id: str):
    db.add(ProcessedEvent(service_name=SERVICE_NAME, event_id=event_id))


def deliver_email(to: str, subject: str, body: str):
    logger.info("[notification] Email TO=%s SUBJECT=%s BODY=%s", to, subject, body)


def compose(evt_type: str, payload: dict) -> Optional[Tuple[str, str, str]]:
    to = payload.get("email")
    if not to:
        return None
    name = payload.get("name") or "there"
    if evt_type == "user.registered":
        return (to, "Verify your email",
                f"Hi {name}, confirm your account by opening {payload.get('verify_url')}")
    if evt_type == "order.paid":
        return (to, "Order confirmed",
                f"Hi {name}, order #{payload.get('order_id')} is paid: "
                f"{payload.get('total_amount')} {(payload.get('currency') or '').upper()}.")
    return None


def event_key(evt_type: str, message_id: Optional[str], payload: dict) -> str:
    if message_id:
        return message_id
    # publishers before message ids existed; fall back to the aggregate id
    ref = payload.get("order_id") if evt_type == "order.paid" else payload.get("user_id")
    return f"{evt_type}:{ref}"


def handle_event(db, evt_type: str, event_id: str, payload: dict,
                 send: Optional[Callable[[str, str, str], None]] = None) -> bool:
    """Send the email for one event unless it was handled before; True if sent."""
    send = send or deliver_email
    if already_processed(db, event_id):
        logger.info("[notification] duplicate event_id=%s skipped", event_id)
        return False

    message = compose(evt_type, payload)
    if message is None:
        logger.warning("[notification] nothing to send for %s event_id=%s", evt_type, event_id)
    else:
        send(*message)
    mark_processed(db, event_id)
    return message is not None


def on_message(expected_type: str):
    def _cb(ch_, method, props, body):
        try:
            payload = json.loads(body.decode("utf-8"))
        except ValueError as e:
            logger.error("[notification] dropping malformed %s message: %s", expected_type, e)
            payload = None
        if isinstance(payload, dict):
            key = event_key(expected_type, getattr(props, "message_id", None), payload)
            try:
                with session_scope() as db:
                    handle_event(db, expected_type, key, payload)
            except SQLAlchemyError as e:
                logger.error("[notification] failed to handle %s event_id=%s: %s", expected_type, key, e)
        # ack to avoid requeue loops
        ch_.basic_ack(delivery_tag=method.delivery_tag)
    return _cb


def connect_rabbit_with_retry():
    while True:
        try:
            params = pika.URLParameters(config.RABBITMQ_URL)
            params.heartbeat = 30
            conn = pika.BlockingConnection(params)
            ch = conn.channel()
            ensure_exchange(ch)
            return conn, ch
        except AMQPError as e:
            logger.warning("[notification] rabbit connect failed: %s; retrying...", e)
            time.sleep(2)


def consume_forever():
    while True:
        try:
            conn, ch = connect_rabbit_with_retry()
            ch.basic_qos(prefetch_count=10)
            for q, rk in BINDINGS:
                ch.queue_declare(queue=q, durable=True)
                ch.queue_bind(queue=q, exchange=config.EVENTS_EXCHANGE, routing_key=rk)
                ch.basic_consume(queue=q, on_message_callback=on_message(rk))

            logger.info("[notification] listening ...")
            ch.start_consuming()
        except AMQPError as e:
            logger.warning("[notification] error: %s; reconnecting...", e)
            time.sleep(2)


def main():
    logging.basicConfig(level=config.LOG_LEVEL, format=config.LOG_FORMAT)
    try:
        with session_scope() as db:
            db.execute(text("select 1"))
        logger.info("[notification] DB ready")
    except SQLAlchemyError as e:
        logger.warning("[notification] DB warm-up error: %s", e)
    logger.info("[notification] starting consumer...")
    consume_forever()


if __name__ == "__main__":
    main()

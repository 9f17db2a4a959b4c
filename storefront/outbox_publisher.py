"""Relays staged domain events from ``event_outbox`` to RabbitMQ.

Rows are claimed with ``FOR UPDATE SKIP LOCKED`` so several publishers can
run side by side. A row that fails to publish stays NEW and is retried on a
later pass after reconnecting; consumers dedupe on ``message_id``.
"""
import json
import logging
import time

import pika
from pika.exceptions import AMQPError
from sqlalchemy import text
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from . import config
from .database import SessionLocal, session_scope, utcnow
from .models import EventOutbox

logger = logging.getLogger(__name__)


def connect_rabbitmq_with_retry(max_wait_sec: int = 60):
    attempt = 0
    while True:
        try:
            params = pika.URLParameters(config.RABBITMQ_URL)
            params.heartbeat = 30
            params.blocked_connection_timeout = 300
            conn = pika.BlockingConnection(params)
            ch = conn.channel()
            ch.exchange_declare(exchange=config.EVENTS_EXCHANGE, exchange_type="direct", durable=True)
            return conn, ch
        except AMQPError as e:
            attempt += 1
            sleep = min(2 ** attempt, max_wait_sec)
            logger.warning("[publisher] RabbitMQ connect failed (%s); retrying in %ss", e, sleep)
            time.sleep(sleep)


def wait_for_db(max_wait_sec: int = 60):
    attempt = 0
    while True:
        try:
            with SessionLocal() as db:
                db.execute(text("select 1"))
            return
        except OperationalError as e:
            attempt += 1
            sleep = min(2 ** attempt, max_wait_sec)
            logger.warning("[publisher] DB connect failed (%s); retrying in %ss", e, sleep)
            time.sleep(sleep)


def fetch_pending(db, limit=None):
    return (
        db.query(EventOutbox)
        .filter(EventOutbox.status == "NEW")
        .order_by(EventOutbox.id)
        .with_for_update(skip_locked=True)
        .limit(limit or config.OUTBOX_BATCH_SIZE)
        .all()
    )


def publish_event(channel, row: EventOutbox):
    channel.basic_publish(
        exchange=config.EVENTS_EXCHANGE,
        routing_key=row.event_type,
        body=json.dumps(row.payload).encode("utf-8"),
        properties=pika.BasicProperties(
            content_type="application/json",
            delivery_mode=2,  # persistent
            message_id=row.event_id,
            type=row.event_type,
            timestamp=int(row.occurred_at.timestamp()) if row.occurred_at else None,
        ),
    )


def publish_batch(channel, rows, db) -> bool:
    """Publish ``rows`` in order, marking each PUBLISHED.

    Stops at the first failure and returns False; that row and the ones after
    it are left NEW for the next pass.
    """
    for row in rows:
        try:
            publish_event(channel, row)
        except AMQPError as e:
            logger.warning("[publisher] publish failed id=%s: %s; will retry on next loop", row.id, e)
            return False
        row.status = "PUBLISHED"
        row.published_at = utcnow()
        logger.info("[publisher] published id=%s type=%s event_id=%s", row.id, row.event_type, row.event_id)
    return True


def _close(conn, channel):
    for resource in (channel, conn):
        try:
            resource.close()
        except AMQPError as e:
            logger.debug("[publisher] close: %s", e)


def loop():
    conn, channel = connect_rabbitmq_with_retry()
    logger.info("[publisher] connected to RabbitMQ")
    wait_for_db()
    logger.info("[publisher] connected to DB")

    while True:
        healthy = True
        try:
            with session_scope() as db:
                rows = fetch_pending(db)
                if rows:
                    healthy = publish_batch(channel, rows, db)
        except SQLAlchemyError as e:
            logger.error("[publisher] loop error: %s", e)
        if not healthy:
            _close(conn, channel)
            conn, channel = connect_rabbitmq_with_retry()
        time.sleep(config.OUTBOX_POLL_SEC)


def main():
    logging.basicConfig(level=config.LOG_LEVEL, format=config.LOG_FORMAT)
    loop()


if __name__ == "__main__":
    main()

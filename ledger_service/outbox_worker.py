import logging, time
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from confluent_kafka import KafkaException
from common.kafka import get_producer
from ledger_service.db import SessionLocal
from ledger_service.models import Outbox

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.5
BATCH_SIZE = 50
MAX_ATTEMPTS = 5

def relay_batch(db, producer, limit: int = BATCH_SIZE) -> int:
    """Publish pending outbox rows in insertion order; returns how many were sent.

    A publish failure stops the batch so later rows never overtake it. The row
    is retried on the next pass and only parked as `failed` after MAX_ATTEMPTS.
    """
    rows = db.execute(
        select(Outbox).where(Outbox.status == "new").order_by(Outbox.id).limit(limit)
    ).scalars().all()
    sent = 0
    for row in rows:
        try:
            producer.produce(row.topic, value=row.payload.encode("utf-8"))
            producer.flush()
            db.execute(update(Outbox).where(Outbox.id == row.id).values(status="sent"))
            db.commit()
            sent += 1
        except KafkaException as e:
            attempts = (row.attempts or 0) + 1
            status = "failed" if attempts >= MAX_ATTEMPTS else "new"
            logger.error(f"Failed to publish outbox row {row.id} to {row.topic} "
                         f"(attempt {attempts}/{MAX_ATTEMPTS}): {e}")
            db.execute(update(Outbox).where(Outbox.id == row.id).values(status=status, attempts=attempts))
            db.commit()
            break
    return sent

def run():
    producer = get_producer()
    logger.info("📤 Outbox relay started")
    while True:
        try:
            with SessionLocal() as db:
                relay_batch(db, producer)
        except SQLAlchemyError as e:
            logger.error(f"Outbox relay database error: {e}")
        time.sleep(POLL_INTERVAL)

if __name__ == "__main__":
    run()

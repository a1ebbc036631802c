import json, logging, threading
import jwt
from contextlib import asynccontextmanager
from fastapi import FastAPI, Depends, Header, HTTPException
from sqlalchemy.exc import SQLAlchemyError
from confluent_kafka import TopicPartition
from common.error_handling import add_error_handlers
from common.kafka import get_consumer, TOPIC_POINTS_EVENTS
from common.redis_client import redis_client
from common.security import verify_token
from fraud_service.engine import FraudInsightEngine
from ledger_service.db import SessionLocal, engine
from ledger_service.models import Base

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

RETRY_BACKOFF_SECONDS = 2.0

def consume(stop: threading.Event, insight_engine: FraudInsightEngine = None):
    insight_engine = insight_engine or FraudInsightEngine()
    logger.info("🔍 Starting Kafka consumer for fraud service...")
    c = get_consumer("fraud-service", [TOPIC_POINTS_EVENTS])
    try:
        while not stop.is_set():
            msg = c.poll(1.0)
            if not msg or msg.error():
                continue
            try:
                evt = json.loads(msg.value())
            except ValueError:
                logger.warning(f"Skipping undecodable message at offset {msg.offset()}")
                c.commit(message=msg)
                continue
            with SessionLocal() as db:
                try:
                    insight_engine.handle_message(db, evt)
                except SQLAlchemyError:
                    # rewind so this message is polled again before anything later on its partition
                    logger.warning(f"Retrying message at {msg.topic()}[{msg.partition()}]@{msg.offset()}")
                    c.seek(TopicPartition(msg.topic(), msg.partition(), msg.offset()))
                    stop.wait(RETRY_BACKOFF_SECONDS)
                    continue
            c.commit(message=msg)
    finally:
        c.close()

@asynccontextmanager
async def lifespan(app: FastAPI):
    Base.metadata.create_all(bind=engine)
    stop = threading.Event()
    worker = threading.Thread(target=consume, args=(stop,), daemon=True)
    worker.start()
    logger.info("🚀 Fraud insight consumer thread started")
    yield
    stop.set()

app = FastAPI(title="Fraud Insight Service", lifespan=lifespan)
add_error_handlers(app)

async def admin_auth(authorization: str = Header(...)):
    if not authorization.startswith("Bearer "):
        raise HTTPException(401, "missing bearer token")
    token = authorization.split(" ", 1)[1]
    try:
        claims = verify_token(token)
    except jwt.PyJWTError as e:
        raise HTTPException(401, f"invalid token: {e}")
    if claims.get("scope") != "admin":
        raise HTTPException(403, "admin scope required")
    return claims

@app.get("/health")
async def health():
    return {"ok": True, "redis": redis_client.ping()}

@app.get("/alerts")
def recent_alerts(limit: int = 50, admin=Depends(admin_auth)):
    return {"alerts": redis_client.recent_fraud_alerts(limit)}

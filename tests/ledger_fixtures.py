"""Shared builders for the ledger test cases."""
import uuid
from datetime import datetime, timedelta
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from common.crypto import generate_nonce
from common.schemas import EventSubmission
from ledger_service.ledger import append_event, ensure_account, refresh_user_points
from ledger_service.models import Base, CouponTemplate, Event

NOW = datetime(2026, 1, 15, 12, 0, 0)
EPOCH = datetime(1970, 1, 1)


def memory_sessionmaker():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(engine)
    return engine, sessionmaker(bind=engine, expire_on_commit=False)


def file_sessionmaker(path: str):
    engine = create_engine(f"sqlite:///{path}", connect_args={"check_same_thread": False, "timeout": 30})
    Base.metadata.create_all(engine)
    return engine, sessionmaker(bind=engine, expire_on_commit=False)


def nonce_at(moment: datetime) -> str:
    return generate_nonce(now_ms=int((moment - EPOCH).total_seconds() * 1000))


def submission(event_type: str = "habit_completion", event_time: datetime = NOW, nonce: str = None,
               **fields) -> EventSubmission:
    return EventSubmission(
        event_type=event_type,
        event_time=event_time,
        nonce=nonce if nonce is not None else nonce_at(event_time),
        **fields,
    )


def open_account(db, user_id: str, age_days: float = 60, now: datetime = NOW):
    return ensure_account(db, user_id, created_at=now - timedelta(days=age_days))


def seed_event(db, user_id: str, delta: int, status: str = "validated", event_type: str = "admin_award",
               created_at: datetime = NOW, **fields) -> Event:
    event = append_event(db, Event(
        user_id=user_id,
        event_type=event_type,
        event_time=fields.pop("event_time", created_at),
        points_delta=delta,
        proof_type=fields.pop("proof_type", "manual_admin"),
        payload_hash=uuid.uuid4().hex + uuid.uuid4().hex,
        validation_status=status,
        trust_score=fields.pop("trust_score", 100),
        created_at=created_at,
        **fields,
    ))
    db.commit()
    return event


def fund(db, user_id: str, points: int) -> None:
    seed_event(db, user_id, points)
    refresh_user_points(db, user_id)
    db.commit()


def add_template(db, cost: int = 50, **fields) -> CouponTemplate:
    template = CouponTemplate(name=fields.pop("name", "Coffee voucher"), points_cost=cost, **fields)
    db.add(template)
    db.commit()
    return template


def count(db, model) -> int:
    return db.execute(select(func.count()).select_from(model)).scalar_one()

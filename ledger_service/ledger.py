"""
Ledger store: the append-only `points_events` log and its materialized
per-user projection in `user_points_cache`.

The cache is only ever written by `refresh_user_points`, which recomputes a
user's row from the ledger while holding that user's balance-row lock.
"""
import json
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta
from typing import Dict, List, Optional
from sqlalchemy import and_, case, func, select, update
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session
from common.crypto import utcnow
from common.error_handling import (BusinessLogicError, ConcurrencyConflict, ErrorCodes, NotFound,
                                   ServiceError, StorageFailure, ValidationError)
from ledger_service.models import (Account, Event, EVENT_TYPES, Outbox, PENDING_STATUSES,
                                   UserPointsCache)

logger = logging.getLogger(__name__)


@dataclass
class BalanceSnapshot:
    available_points: int = 0
    pending_points: int = 0
    lifetime_earned: int = 0
    lifetime_spent: int = 0
    last_event_id: Optional[str] = None

    def totals(self) -> Dict[str, int]:
        return {
            "available_points": self.available_points,
            "pending_points": self.pending_points,
            "lifetime_earned": self.lifetime_earned,
            "lifetime_spent": self.lifetime_spent,
        }


@dataclass
class ReconciliationReport:
    checked_users: int = 0
    discrepancies: List[Dict] = field(default_factory=list)
    repaired: int = 0

    @property
    def healthy(self) -> bool:
        return not self.discrepancies

    def to_dict(self) -> Dict:
        return {**asdict(self), "healthy": self.healthy}


def _is_lock_error(exc: OperationalError) -> bool:
    message = str(exc.orig).lower() if exc.orig is not None else str(exc).lower()
    return "lock" in message or "deadlock" in message or "busy" in message


@contextmanager
def atomic(db: Session, operation: str):
    """Roll back on every failure and translate database errors into the service taxonomy."""
    try:
        yield
    except (BusinessLogicError, ServiceError):
        db.rollback()
        raise
    except IntegrityError as e:
        db.rollback()
        logger.warning(f"{operation}: integrity conflict, rolled back: {e.orig}")
        raise ConcurrencyConflict(original_error=e) from e
    except OperationalError as e:
        db.rollback()
        if _is_lock_error(e):
            logger.warning(f"{operation}: lock contention, rolled back: {e.orig}")
            raise ConcurrencyConflict(original_error=e) from e
        logger.error(f"{operation}: database unavailable: {e.orig}")
        raise StorageFailure(original_error=e) from e
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"{operation}: storage failure, rolled back: {e}")
        raise StorageFailure(original_error=e) from e


def ensure_account(db: Session, user_id: str, created_at: datetime = None) -> Account:
    """Register the account and its zeroed cache row if missing; commits on creation."""
    account = db.get(Account, user_id)
    if account is not None:
        return account
    now = utcnow()
    account = Account(id=user_id, created_at=created_at or now)
    db.add(account)
    db.add(UserPointsCache(user_id=user_id, updated_at=now))
    try:
        db.commit()
        logger.info(f"Registered points account {user_id}")
    except IntegrityError:
        # registered concurrently by another request
        db.rollback()
        account = db.get(Account, user_id)
        if account is None:
            raise
    return account


def lock_balance_row(db: Session, user_id: str) -> UserPointsCache:
    """Take the exclusive per-user lock; it is held until the transaction ends.

    The version bump is a write, so every engine (including ones that ignore
    FOR UPDATE) serializes competing transactions on this row.
    """
    result = db.execute(
        update(UserPointsCache)
        .where(UserPointsCache.user_id == user_id)
        .values(lock_version=UserPointsCache.lock_version + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise NotFound(ErrorCodes.ACCOUNT_NOT_FOUND, f"No points account for user {user_id}")
    return db.execute(
        select(UserPointsCache)
        .where(UserPointsCache.user_id == user_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one()


def append_event(db: Session, event: Event) -> Event:
    """The single insert path into the ledger."""
    if event.event_type not in EVENT_TYPES:
        raise ValidationError(f"Unknown event type: {event.event_type}", field="event_type")
    if event.created_at is None:
        event.created_at = utcnow()
    db.add(event)
    db.flush()
    return event


def compute_balance(db: Session, user_id: str) -> BalanceSnapshot:
    validated = Event.validation_status == "validated"
    row = db.execute(
        select(
            func.coalesce(func.sum(case((validated, Event.points_delta), else_=0)), 0),
            func.coalesce(func.sum(case((Event.validation_status.in_(PENDING_STATUSES), Event.points_delta), else_=0)), 0),
            func.coalesce(func.sum(case((and_(validated, Event.points_delta > 0), Event.points_delta), else_=0)), 0),
            func.coalesce(func.sum(case((and_(validated, Event.points_delta < 0), -Event.points_delta), else_=0)), 0),
        ).where(Event.user_id == user_id)
    ).one()
    last_event_id = db.execute(
        select(Event.id)
        .where(Event.user_id == user_id)
        .order_by(Event.created_at.desc(), Event.id.desc())
        .limit(1)
    ).scalar_one_or_none()
    return BalanceSnapshot(
        available_points=int(row[0]),
        pending_points=int(row[1]),
        lifetime_earned=int(row[2]),
        lifetime_spent=int(row[3]),
        last_event_id=last_event_id,
    )


def refresh_user_points(db: Session, user_id: str, cache: UserPointsCache = None) -> UserPointsCache:
    """Recompute the user's cache row from the ledger.

    Pass the row returned by `lock_balance_row` when the caller already holds
    the lock; otherwise the lock is taken here. Idempotent. Does not commit.
    """
    if cache is None:
        cache = lock_balance_row(db, user_id)
    snapshot = compute_balance(db, user_id)
    cache.available_points = snapshot.available_points
    cache.pending_points = snapshot.pending_points
    cache.lifetime_earned = snapshot.lifetime_earned
    cache.lifetime_spent = snapshot.lifetime_spent
    cache.last_event_id = snapshot.last_event_id
    cache.updated_at = utcnow()
    db.flush()
    return cache


def get_balance(db: Session, user_id: str) -> BalanceSnapshot:
    cache = db.get(UserPointsCache, user_id, populate_existing=True)
    if cache is None:
        return BalanceSnapshot()
    return BalanceSnapshot(
        available_points=cache.available_points,
        pending_points=cache.pending_points,
        lifetime_earned=cache.lifetime_earned,
        lifetime_spent=cache.lifetime_spent,
        last_event_id=cache.last_event_id,
    )


def find_by_payload_hash(db: Session, payload_hash: str) -> Optional[Event]:
    return db.execute(select(Event).where(Event.payload_hash == payload_hash)).scalar_one_or_none()


def recent_activity(db: Session, user_id: str, since: datetime, event_types=None) -> List[Event]:
    stmt = select(Event).where(Event.user_id == user_id, Event.created_at > since)
    if event_types is not None:
        stmt = stmt.where(Event.event_type.in_(event_types))
    return list(db.execute(stmt.order_by(Event.created_at)).scalars())


def validated_streak_days(db: Session, user_id: str, related_entity_id: str, today: datetime) -> int:
    """Consecutive days, ending yesterday, with a validated habit completion for the entity."""
    if not related_entity_id:
        return 0
    times = db.execute(
        select(Event.event_time).where(
            Event.user_id == user_id,
            Event.event_type == "habit_completion",
            Event.related_entity_id == related_entity_id,
            Event.validation_status == "validated",
            Event.event_time >= today - timedelta(days=366),
        )
    ).scalars()
    days = {t.date() for t in times}
    streak = 0
    cursor = today.date() - timedelta(days=1)
    while cursor in days:
        streak += 1
        cursor -= timedelta(days=1)
    return streak


def publish_outbox(db: Session, topic: str, message: Dict) -> Outbox:
    """Queue a message in the caller's transaction; the outbox worker relays it."""
    row = Outbox(topic=topic, payload=json.dumps(message, default=str), created_at=utcnow())
    db.add(row)
    return row


def event_message(event: Event, kind: str = "EventRecorded", **extra) -> Dict:
    return {
        "type": kind,
        "event_id": event.id,
        "user_id": event.user_id,
        "event_type": event.event_type,
        "points_delta": event.points_delta,
        "validation_status": event.validation_status,
        "trust_score": event.trust_score,
        "device_id": event.device_id,
        "created_at": event.created_at.isoformat() if event.created_at else None,
        **extra,
    }


def reconcile(db: Session, repair: bool = False) -> ReconciliationReport:
    """Compare every cache row with a recomputation from the ledger."""
    report = ReconciliationReport()
    cached_users = set(db.execute(select(UserPointsCache.user_id)).scalars())
    ledger_users = set(db.execute(select(Event.user_id).distinct()).scalars())

    for user_id in sorted(cached_users | ledger_users):
        report.checked_users += 1
        expected = compute_balance(db, user_id).totals()
        if user_id not in cached_users:
            report.discrepancies.append({"user_id": user_id, "missing_cache_row": True, "expected": expected})
            continue
        actual = get_balance(db, user_id).totals()
        diff = {k: {"cached": actual[k], "ledger": v} for k, v in expected.items() if actual[k] != v}
        if diff:
            report.discrepancies.append({"user_id": user_id, "fields": diff})

    if report.discrepancies:
        logger.warning(f"Reconciliation found {len(report.discrepancies)} discrepancies")
    else:
        logger.info(f"Reconciliation clean across {report.checked_users} users")

    if repair:
        for item in report.discrepancies:
            with atomic(db, "reconcile.repair"):
                if item.get("missing_cache_row"):
                    db.add(UserPointsCache(user_id=item["user_id"], updated_at=utcnow()))
                    db.flush()
                refresh_user_points(db, item["user_id"])
                db.commit()
            report.repaired += 1
    db.rollback()
    return report

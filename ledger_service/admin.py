"""
Administrative mutations over events, fraud insights, and coupons.

Each operation locks the affected user's balance row, applies its change,
and refreshes the cache in one transaction, just like the intake and
redemption paths. Nothing here edits a finalized event: corrections are
new offsetting events.
"""
import logging
from datetime import datetime
from typing import Dict, List
from sqlalchemy import func, select
from sqlalchemy.orm import Session
from common.crypto import canonical_json, sha256_hex, utcnow
from common.error_handling import (BusinessLogicError, ErrorCodes, EventImmutable, InsufficientPoints,
                                   NotFound, ValidationError)
from common.kafka import TOPIC_FRAUD_EVENTS, TOPIC_POINTS_EVENTS
from ledger_service.ledger import (append_event, atomic, event_message, lock_balance_row,
                                   publish_outbox, refresh_user_points)
from ledger_service.models import Coupon, Event, FraudInsight, PENDING_STATUSES, new_id
from ledger_service.rate_limiter import DAY

logger = logging.getLogger(__name__)


def review_queue(db: Session, limit: int = 100) -> List[Event]:
    return list(db.execute(
        select(Event)
        .where(Event.validation_status.in_(PENDING_STATUSES))
        .order_by(Event.created_at)
        .limit(limit)
    ).scalars())


def open_insights(db: Session, limit: int = 100) -> List[FraudInsight]:
    return list(db.execute(
        select(FraudInsight)
        .where(FraudInsight.resolved.is_(False))
        .order_by(FraudInsight.created_at.desc())
        .limit(limit)
    ).scalars())


def _locked_pending_event(db: Session, event_id: str):
    event = db.get(Event, event_id)
    if event is None:
        raise NotFound(ErrorCodes.EVENT_NOT_FOUND, f"Event {event_id} not found")
    cache = lock_balance_row(db, event.user_id)
    event = db.execute(
        select(Event).where(Event.id == event_id).execution_options(populate_existing=True)
    ).scalar_one()
    if event.validation_status not in PENDING_STATUSES:
        raise EventImmutable(event_id, event.validation_status)
    return event, cache


def _decide(db: Session, event_id: str, status: str, admin_id: str, notes: str, now: datetime) -> Event:
    with atomic(db, f"review.{status}"):
        event, cache = _locked_pending_event(db, event_id)
        event.validation_status = status
        event.validated_at = now
        event.validated_by = admin_id
        event.validation_notes = notes
        db.flush()
        refresh_user_points(db, event.user_id, cache)
        publish_outbox(db, TOPIC_POINTS_EVENTS, event_message(event, "EventReviewed", reviewed_by=admin_id))
        db.commit()
    logger.info(f"Event {event_id} {status} by {admin_id}")
    return event


def approve_event(db: Session, event_id: str, admin_id: str, notes: str = None, now: datetime = None) -> Event:
    """Administrative override: the held points become available."""
    return _decide(db, event_id, "validated", admin_id, notes or "Approved by administrator", now or utcnow())


def reject_event(db: Session, event_id: str, admin_id: str, notes: str = None, now: datetime = None) -> Event:
    return _decide(db, event_id, "rejected", admin_id, notes or "Rejected by administrator", now or utcnow())


def resolve_insight(db: Session, insight_id: str, resolved: bool, admin_id: str, notes: str = None,
                    now: datetime = None) -> FraudInsight:
    """`resolved=True` closes the insight as a false positive; False confirms fraud.

    A confirmed insight stays in the open queue and keeps depressing the
    user's trust score on later submissions.
    """
    now = now or utcnow()
    with atomic(db, "resolve_insight"):
        insight = db.execute(
            select(FraudInsight).where(FraudInsight.id == insight_id).with_for_update()
        ).scalar_one_or_none()
        if insight is None:
            raise NotFound(ErrorCodes.INSIGHT_NOT_FOUND, f"Fraud insight {insight_id} not found")
        if insight.resolution is not None:
            raise BusinessLogicError(
                ErrorCodes.EVENT_IMMUTABLE,
                f"Fraud insight {insight_id} already resolved as {insight.resolution}",
            )
        insight.resolved = resolved
        insight.resolution = "false_positive" if resolved else "confirmed_fraud"
        insight.resolved_at = now
        insight.resolved_by = admin_id
        insight.resolution_notes = notes or ("Marked as false positive" if resolved else "Confirmed fraud")
        publish_outbox(db, TOPIC_FRAUD_EVENTS, {
            "type": "InsightResolved",
            "insight_id": insight.id,
            "user_id": insight.user_id,
            "resolution": insight.resolution,
            "resolved_by": admin_id,
        })
        db.commit()
    logger.info(f"Fraud insight {insight_id} resolved as {insight.resolution} by {admin_id}")
    return insight


def award_points(db: Session, user_id: str, points: int, admin_id: str, kind: str = "admin_award",
                 notes: str = None, now: datetime = None) -> Event:
    """Manual credit or debit, recorded as a validated offsetting event."""
    if points <= 0:
        raise ValidationError("Award amount must be positive", field="points")
    if kind not in ("admin_award", "admin_deduction"):
        raise ValidationError(f"Unsupported award kind {kind!r}", field="kind")
    now = now or utcnow()
    delta = points if kind == "admin_award" else -points

    with atomic(db, "award_points"):
        cache = lock_balance_row(db, user_id)
        if delta < 0 and cache.available_points < points:
            raise InsufficientPoints(cache.available_points, points)
        event = append_event(db, Event(
            user_id=user_id,
            event_type=kind,
            event_time=now,
            points_delta=delta,
            proof_type="manual_admin",
            proof_payload={"admin_id": admin_id},
            payload_hash=sha256_hex(canonical_json({
                "userId": user_id, "eventType": kind, "points": delta, "adminId": admin_id, "ref": new_id(),
            })),
            validation_status="validated",
            trust_score=100,
            created_at=now,
            validated_at=now,
            validated_by=admin_id,
            validation_notes=notes,
        ))
        refresh_user_points(db, user_id, cache)
        publish_outbox(db, TOPIC_POINTS_EVENTS, event_message(event))
        db.commit()
    logger.info(f"{kind} of {points} points for user {user_id} by {admin_id}")
    return event


def revoke_coupon(db: Session, coupon_id: str, admin_id: str, refund: bool = True, notes: str = None,
                  now: datetime = None) -> Coupon:
    now = now or utcnow()
    coupon = db.get(Coupon, coupon_id)
    if coupon is None:
        raise NotFound(ErrorCodes.COUPON_NOT_FOUND, f"Coupon {coupon_id} not found")
    user_id = coupon.issued_to

    with atomic(db, "revoke_coupon"):
        cache = lock_balance_row(db, user_id)
        coupon = db.execute(
            select(Coupon).where(Coupon.id == coupon_id).execution_options(populate_existing=True)
        ).scalar_one()
        if coupon.status != "issued":
            raise BusinessLogicError(ErrorCodes.COUPON_NOT_REDEEMABLE, f"Coupon is {coupon.status}")
        coupon.status = "revoked"
        coupon.revoked_at = now
        if refund:
            event = append_event(db, Event(
                user_id=user_id,
                event_type="coupon_refund",
                event_time=now,
                points_delta=coupon.issued_points_cost,
                proof_type="automatic",
                proof_payload={"coupon_id": coupon.id, "admin_id": admin_id},
                payload_hash=sha256_hex(canonical_json({"couponId": coupon.id, "action": "refund"})),
                validation_status="validated",
                trust_score=100,
                related_entity_type="coupon",
                related_entity_id=coupon.id,
                created_at=now,
                validated_at=now,
                validated_by=admin_id,
                validation_notes=notes,
            ))
            coupon.refund_event_id = event.id
            publish_outbox(db, TOPIC_POINTS_EVENTS, event_message(event, coupon_id=coupon.id))
        refresh_user_points(db, user_id, cache)
        db.commit()
    logger.info(f"Coupon {coupon_id} revoked by {admin_id} (refund={refund})")
    return coupon


def admin_stats(db: Session, now: datetime = None) -> Dict:
    now = now or utcnow()
    pending_count, avg_trust = db.execute(
        select(func.count(Event.id), func.avg(Event.trust_score))
        .where(Event.validation_status.in_(PENDING_STATUSES))
    ).one()
    open_count = db.execute(
        select(func.count(FraudInsight.id)).where(FraudInsight.resolved.is_(False))
    ).scalar_one()
    validated_24h = db.execute(
        select(func.count(Event.id)).where(
            Event.validation_status == "validated",
            Event.validated_at >= now - DAY,
        )
    ).scalar_one()
    return {
        "pending_review": pending_count,
        "open_fraud_insights": open_count,
        "average_pending_trust": round(float(avg_trust), 1) if avg_trust is not None else None,
        "validated_last_24h": validated_24h,
    }

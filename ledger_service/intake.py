"""
Event intake: the only path by which user activity enters the ledger.

Gates run in order (timestamp window, nonce format, idempotency, per-user
lock, nonce claim, rate limits, trust scoring) and everything after the
lock is one transaction: a submission either lands as exactly one event
with its cache refresh and outbox message, or leaves nothing behind.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from sqlalchemy import case, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from common.crypto import event_payload_hash, to_naive_utc, utcnow
from common.error_handling import ConcurrencyConflict, RateLimitExceeded, ValidationError
from common.kafka import TOPIC_POINTS_EVENTS
from common.redis_client import RedisClient, redis_client
from common.schemas import EventResult, EventSubmission
from common.security import attestation_seconds_left, verify_attestation_token, verify_third_party_proof
from common.settings import Settings, settings
from ledger_service.ledger import (append_event, atomic, ensure_account, event_message,
                                   find_by_payload_hash, lock_balance_row, publish_outbox,
                                   recent_activity, refresh_user_points, validated_streak_days)
from ledger_service.models import Account, Event, EVENT_POINTS, FraudInsight
from ledger_service.nonce_guard import check_nonce, claim_nonce
from ledger_service.rate_limiter import DAY, RecentEvent, check_rate_limit
from ledger_service.trust import (TrustFactors, calculate_trust_score, honeypot_triggered,
                                  status_for_score)

logger = logging.getLogger(__name__)

STREAK_MULTIPLIERS = ((90, 2.0), (30, 1.5), (14, 1.3), (7, 1.2))
AUTO_VALIDATOR = "trust_engine"


@dataclass
class ProofSignals:
    """Out-of-band verification results, gathered before the transaction opens."""
    attestation_valid: Optional[bool] = None
    third_party_confirmed: Optional[bool] = None


def collect_proof_signals(user_id: str, submission: EventSubmission,
                          cache: RedisClient = None) -> ProofSignals:
    cache = cache or redis_client
    signals = ProofSignals()

    token = submission.attestation_token
    if token:
        # a cached verdict never outlives the token it was issued for
        seconds_left = attestation_seconds_left(token)
        if seconds_left <= 0:
            signals.attestation_valid = False
        else:
            verdict = cache.get_attestation_verdict(token, submission.device_id or "")
            if verdict is None:
                verdict = verify_attestation_token(token, submission.device_id)
                cache.cache_attestation_verdict(
                    token, submission.device_id or "", verdict,
                    ttl_seconds=min(settings.attestation_cache_ttl_seconds, seconds_left),
                )
            signals.attestation_valid = verdict
    elif submission.proof_type == "attestation":
        signals.attestation_valid = False

    if submission.proof_type == "third_party":
        confirmation = (submission.proof_payload or {}).get("confirmation")
        signals.third_party_confirmed = bool(confirmation) and verify_third_party_proof(confirmation, user_id)

    return signals


def submission_data(submission: EventSubmission) -> Dict[str, Any]:
    """The hashed body of a submission, beyond user, type, time and nonce."""
    return {
        "proofType": submission.proof_type,
        "proofPayload": submission.proof_payload,
        "relatedEntityType": submission.related_entity_type,
        "relatedEntityId": submission.related_entity_id,
        "deviceId": submission.device_id,
        "deviceInfo": submission.device_info,
    }


def streak_multiplier(streak_days: int) -> float:
    for days, multiplier in STREAK_MULTIPLIERS:
        if streak_days >= days:
            return multiplier
    return 1.0


def points_for(db: Session, user_id: str, submission: EventSubmission, now: datetime) -> int:
    base = EVENT_POINTS[submission.event_type]
    if submission.event_type != "habit_completion":
        return base
    streak = validated_streak_days(db, user_id, submission.related_entity_id, now) + 1
    return int(base * streak_multiplier(streak))


def gather_trust_factors(db: Session, user_id: str, submission: EventSubmission, recent: List[Event],
                         signals: ProofSignals, now: datetime, config: Settings) -> TrustFactors:
    account = db.get(Account, user_id)
    age_days = max((now - account.created_at).total_seconds() / 86400.0, 0.0)

    spacing = None
    if recent:
        spacing = max((now - recent[-1].created_at).total_seconds(), 0.0)

    device_known = device_trusted = False
    if submission.device_id:
        seen, validated = db.execute(
            select(
                func.count(Event.id),
                func.coalesce(func.sum(case((Event.validation_status == "validated", 1), else_=0)), 0),
            ).where(Event.user_id == user_id, Event.device_id == submission.device_id)
        ).one()
        device_known = seen > 0
        device_trusted = int(validated) >= config.intake.trusted_device_events

    open_flags = db.execute(
        select(func.count(FraudInsight.id)).where(
            FraudInsight.user_id == user_id,
            FraudInsight.resolved.is_(False),
            FraudInsight.resolution.is_(None),
            FraudInsight.created_at >= now - DAY,
        )
    ).scalar_one()
    confirmed = db.execute(
        select(func.count(FraudInsight.id)).where(
            FraudInsight.user_id == user_id,
            FraudInsight.resolution == "confirmed_fraud",
        )
    ).scalar_one()

    return TrustFactors(
        attestation_valid=signals.attestation_valid,
        third_party_confirmed=signals.third_party_confirmed,
        device_known=device_known,
        device_trusted=device_trusted,
        account_age_days=age_days,
        seconds_since_last_event=spacing,
        open_fraud_flags=open_flags,
        confirmed_fraud=confirmed > 0,
        honeypot_triggered=honeypot_triggered(
            config.intake.honeypot_fields, submission.device_info, submission.proof_payload
        ),
    )


def _original_outcome(event: Event) -> EventResult:
    return EventResult(
        id=event.id,
        status=event.validation_status,
        points=event.points_delta,
        trust_score=event.trust_score,
        duplicate=True,
    )


def check_event_time(event_time: datetime, now: datetime, config: Settings) -> None:
    if event_time > now + timedelta(seconds=config.intake.max_future_seconds):
        raise ValidationError("Event timestamp is too far in the future", field="event_time")
    if event_time < now - timedelta(days=config.intake.max_past_days):
        raise ValidationError("Event timestamp is too old", field="event_time")


def submit_event(db: Session, user_id: str, submission: EventSubmission, signals: ProofSignals = None,
                 now: datetime = None, config: Settings = None) -> EventResult:
    config = config or settings
    now = now or utcnow()
    event_time = to_naive_utc(submission.event_time)

    if submission.event_type not in EVENT_POINTS:
        raise ValidationError(f"Event type {submission.event_type!r} cannot be submitted", field="event_type")
    check_event_time(event_time, now, config)
    check_nonce(submission.nonce, now, config.nonce)

    payload_hash = event_payload_hash(
        user_id, submission.event_type, event_time, submission.nonce, submission_data(submission)
    )
    original = find_by_payload_hash(db, payload_hash)
    if original is not None:
        logger.info(f"Duplicate submission for user {user_id}, returning event {original.id}")
        return _original_outcome(original)
    db.rollback()

    if signals is None:
        signals = collect_proof_signals(user_id, submission)
    ensure_account(db, user_id, created_at=now)

    try:
        with atomic(db, "submit_event"):
            cache = lock_balance_row(db, user_id)

            # an identical retry may have committed while we waited for the lock
            original = find_by_payload_hash(db, payload_hash)
            if original is not None:
                db.rollback()
                return _original_outcome(original)

            claim_nonce(db, user_id, submission.nonce, submission.event_type, now, config.nonce)

            points = points_for(db, user_id, submission, now)
            recent = recent_activity(db, user_id, now - DAY, event_types=tuple(EVENT_POINTS))
            decision = check_rate_limit(
                [RecentEvent(e.created_at, 0 if e.validation_status == "rejected" else e.points_delta)
                 for e in recent],
                points, now, config.rate_limits,
            )
            if not decision.allowed:
                logger.warning(f"Rate limit hit for user {user_id}: {decision.reason}")
                raise RateLimitExceeded(decision.reason, context={
                    "events_last_hour": decision.events_last_hour,
                    "events_last_day": decision.events_last_day,
                    "points_last_hour": decision.points_last_hour,
                    "points_last_day": decision.points_last_day,
                })

            factors = gather_trust_factors(db, user_id, submission, recent, signals, now, config)
            score = calculate_trust_score(factors, config.trust_weights)
            status = status_for_score(score, config.thresholds)

            event = append_event(db, Event(
                user_id=user_id,
                event_type=submission.event_type,
                event_time=event_time,
                points_delta=points,
                proof_type=submission.proof_type,
                proof_payload=submission.proof_payload,
                payload_hash=payload_hash,
                nonce=submission.nonce,
                validation_status=status,
                trust_score=score,
                device_id=submission.device_id,
                device_info=submission.device_info,
                related_entity_type=submission.related_entity_type,
                related_entity_id=submission.related_entity_id,
                created_at=now,
                validated_at=now if status != "pending_review" else None,
                validated_by=AUTO_VALIDATOR if status != "pending_review" else None,
            ))
            refresh_user_points(db, user_id, cache)
            publish_outbox(db, TOPIC_POINTS_EVENTS, event_message(
                event, honeypot=factors.honeypot_triggered
            ))
            db.commit()
    except ConcurrencyConflict as exc:
        if isinstance(exc.original_error, IntegrityError):
            original = find_by_payload_hash(db, payload_hash)
            if original is not None:
                return _original_outcome(original)
        raise

    if status == "validated":
        logger.info(f"Event {event.id} validated for user {user_id}: +{points} (trust {score})")
    else:
        logger.warning(f"Event {event.id} for user {user_id} is {status} (trust {score})")
    return EventResult(id=event.id, status=status, points=points, trust_score=score)

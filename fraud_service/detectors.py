"""
Fraud detectors, keyed by the insight type they produce.

A detector looks at one ledger message (plus whatever history it wants to
query) and returns a Finding or None. New heuristics register themselves
with `@detector(...)` and are picked up by the engine.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional
from sqlalchemy import func, select
from sqlalchemy.orm import Session
from common.settings import FraudSettings
from ledger_service.models import Event, EVENT_POINTS


@dataclass
class Finding:
    insight_type: str
    severity: str
    score: int
    details: Dict[str, Any] = field(default_factory=dict)
    related_event_ids: List[str] = field(default_factory=list)
    # suppress when an unresolved insight of this type exists inside the dedupe window
    windowed: bool = False


Detector = Callable[[Session, Dict[str, Any], datetime, FraudSettings], Optional[Finding]]

DETECTORS: Dict[str, Detector] = {}


def detector(insight_type: str):
    def register(fn: Detector) -> Detector:
        DETECTORS[insight_type] = fn
        return fn
    return register


@detector("velocity_anomaly")
def velocity_anomaly(db: Session, message: Dict[str, Any], now: datetime, config: FraudSettings) -> Optional[Finding]:
    user_id = message["user_id"]
    user_events = (Event.user_id == user_id, Event.event_type.in_(tuple(EVENT_POINTS)))

    burst_start = now - timedelta(seconds=config.burst_window_seconds)
    burst = db.execute(
        select(func.count(Event.id)).where(*user_events, Event.created_at >= burst_start)
    ).scalar_one()
    hourly = db.execute(
        select(func.count(Event.id)).where(*user_events, Event.created_at >= now - timedelta(hours=1))
    ).scalar_one()

    if burst >= config.burst_threshold:
        severity, window, count, threshold = "high", config.burst_window_seconds, burst, config.burst_threshold
    elif hourly >= config.hourly_threshold:
        severity, window, count, threshold = "medium", 3600, hourly, config.hourly_threshold
    else:
        return None

    related = db.execute(
        select(Event.id).where(*user_events, Event.created_at >= now - timedelta(seconds=window))
        .order_by(Event.created_at.desc()).limit(20)
    ).scalars().all()
    return Finding(
        insight_type="velocity_anomaly",
        severity=severity,
        score=min(100, int(count * 50 / threshold)),
        details={"events_in_window": count, "window_seconds": window, "threshold": threshold},
        related_event_ids=list(related),
        windowed=True,
    )


@detector("low_trust_score")
def low_trust_score(db: Session, message: Dict[str, Any], now: datetime, config: FraudSettings) -> Optional[Finding]:
    status = message.get("validation_status")
    if status not in ("pending_review", "rejected"):
        return None
    trust = message.get("trust_score") or 0
    return Finding(
        insight_type="low_trust_score",
        severity="medium" if status == "pending_review" else "high",
        score=100 - trust,
        details={"trust_score": trust, "status": status, "event_type": message.get("event_type")},
        related_event_ids=[message["event_id"]],
    )


@detector("honeypot_triggered")
def honeypot_triggered(db: Session, message: Dict[str, Any], now: datetime, config: FraudSettings) -> Optional[Finding]:
    if not message.get("honeypot"):
        return None
    return Finding(
        insight_type="honeypot_triggered",
        severity="critical",
        score=100,
        details={"device_id": message.get("device_id"), "event_type": message.get("event_type")},
        related_event_ids=[message["event_id"]],
    )

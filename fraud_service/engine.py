import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from common.crypto import utcnow
from common.redis_client import RedisClient, redis_client
from common.settings import FraudSettings, settings
from fraud_service.detectors import DETECTORS, Detector, Finding
from ledger_service.models import FraudInsight

logger = logging.getLogger(__name__)

ANALYZED_MESSAGES = ("EventRecorded",)


class FraudInsightEngine:
    """Turns ledger messages into FraudInsight rows; advisory only, never touches events."""

    def __init__(self, detectors: Dict[str, Detector] = None, config: FraudSettings = None,
                 alerts: RedisClient = None):
        self.detectors = detectors if detectors is not None else DETECTORS
        self.config = config or settings.fraud
        self.alerts = alerts or redis_client

    def _message_time(self, message: Dict[str, Any]) -> datetime:
        created_at = message.get("created_at")
        if created_at:
            try:
                return datetime.fromisoformat(created_at)
            except ValueError:
                pass
        return utcnow()

    def _already_recorded(self, db: Session, user_id: str, finding: Finding, source_event_id: str,
                          now: datetime) -> bool:
        redelivered = db.execute(
            select(FraudInsight.id).where(
                FraudInsight.insight_type == finding.insight_type,
                FraudInsight.source_event_id == source_event_id,
            ).limit(1)
        ).first()
        if redelivered is not None:
            return True
        if not finding.windowed:
            return False
        recent_open = db.execute(
            select(FraudInsight.id).where(
                FraudInsight.user_id == user_id,
                FraudInsight.insight_type == finding.insight_type,
                FraudInsight.resolved.is_(False),
                FraudInsight.created_at >= now - timedelta(seconds=self.config.dedupe_window_seconds),
            ).limit(1)
        ).first()
        return recent_open is not None

    def handle_message(self, db: Session, message: Dict[str, Any], now: datetime = None) -> List[FraudInsight]:
        if message.get("type") not in ANALYZED_MESSAGES or not message.get("user_id"):
            return []
        now = now or self._message_time(message)
        user_id = message["user_id"]
        source_event_id = message.get("event_id")

        created = []
        try:
            for insight_type, detect in self.detectors.items():
                finding = detect(db, message, now, self.config)
                if finding is None or self._already_recorded(db, user_id, finding, source_event_id, now):
                    continue
                insight = FraudInsight(
                    user_id=user_id,
                    insight_type=finding.insight_type,
                    severity=finding.severity,
                    score=finding.score,
                    details=finding.details,
                    related_event_ids=finding.related_event_ids,
                    source_event_id=source_event_id,
                    created_at=now,
                )
                db.add(insight)
                created.append(insight)
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            logger.exception(f"Failed to record fraud insights for event {source_event_id}")
            raise

        for insight in created:
            logger.warning(f"🚨 {insight.severity} {insight.insight_type} for user {user_id} (score {insight.score})")
            self.alerts.push_fraud_alert({
                "insight_id": insight.id,
                "user_id": user_id,
                "insight_type": insight.insight_type,
                "severity": insight.severity,
                "score": insight.score,
            }, self.config.alert_feed_size)
        return created

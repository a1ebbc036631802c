import json
import threading
import unittest
from datetime import timedelta
from unittest import mock
from sqlalchemy.exc import OperationalError
from common.settings import FraudSettings
from fraud_service.detectors import DETECTORS, Finding
from fraud_service import main as fraud_main
from fraud_service.engine import FraudInsightEngine
from ledger_service.models import FraudInsight
from ledger_fixtures import NOW, count, memory_sessionmaker, seed_event


def recorded(event_id, user_id="alice", status="validated", trust=80, honeypot=False, when=NOW):
    return {
        "type": "EventRecorded",
        "event_id": event_id,
        "user_id": user_id,
        "event_type": "habit_completion",
        "points_delta": 10,
        "validation_status": status,
        "trust_score": trust,
        "honeypot": honeypot,
        "created_at": when.isoformat(),
    }


class FraudEngineTestCase(unittest.TestCase):

    def setUp(self):
        self.engine, Session = memory_sessionmaker()
        self.db = Session()
        self.alerts = mock.MagicMock()
        self.insights = FraudInsightEngine(config=FraudSettings(), alerts=self.alerts)

    def tearDown(self):
        self.db.close()
        self.engine.dispose()

    def burst(self, n, user="alice", spacing=timedelta(seconds=5)):
        return [seed_event(self.db, user, 10, event_type="habit_completion", created_at=NOW - spacing * i)
                for i in range(n)]


class TestDetectors(FraudEngineTestCase):

    def test_clean_event_produces_nothing(self):
        event = self.burst(1)[0]
        self.assertEqual(self.insights.handle_message(self.db, recorded(event.id)), [])
        self.alerts.push_fraud_alert.assert_not_called()

    def test_burst_flags_velocity(self):
        events = self.burst(20)
        created = self.insights.handle_message(self.db, recorded(events[0].id))
        self.assertEqual([i.insight_type for i in created], ["velocity_anomaly"])
        insight = created[0]
        self.assertEqual(insight.severity, "high")
        self.assertEqual(insight.details["events_in_window"], 20)
        self.assertIn(events[0].id, insight.related_event_ids)
        self.alerts.push_fraud_alert.assert_called_once()

    def test_sustained_hourly_volume(self):
        events = self.burst(60, spacing=timedelta(seconds=55))
        created = self.insights.handle_message(self.db, recorded(events[0].id))
        self.assertEqual(created[0].insight_type, "velocity_anomaly")
        self.assertEqual(created[0].severity, "medium")

    def test_velocity_deduplicated_within_window(self):
        events = self.burst(25)
        self.insights.handle_message(self.db, recorded(events[0].id))
        again = self.insights.handle_message(self.db, recorded(events[1].id, when=NOW + timedelta(seconds=1)))
        self.assertEqual(again, [])
        self.assertEqual(count(self.db, FraudInsight), 1)

    def test_low_trust_severity(self):
        review = self.insights.handle_message(self.db, recorded("e1", status="pending_review", trust=40))
        rejected = self.insights.handle_message(self.db, recorded("e2", status="rejected", trust=10))
        self.assertEqual((review[0].insight_type, review[0].severity, review[0].score),
                         ("low_trust_score", "medium", 60))
        self.assertEqual((rejected[0].severity, rejected[0].score), ("high", 90))

    def test_honeypot_is_critical(self):
        created = self.insights.handle_message(self.db, recorded("e1", status="rejected", trust=0, honeypot=True))
        by_type = {i.insight_type: i for i in created}
        self.assertEqual(by_type["honeypot_triggered"].severity, "critical")
        self.assertIn("low_trust_score", by_type)

    def test_redelivered_message_is_idempotent(self):
        message = recorded("e1", status="rejected", trust=5)
        self.insights.handle_message(self.db, message)
        self.assertEqual(self.insights.handle_message(self.db, message), [])
        self.assertEqual(count(self.db, FraudInsight), 1)

    def test_other_message_types_ignored(self):
        message = {**recorded("e1", status="rejected"), "type": "CouponIssued"}
        self.assertEqual(self.insights.handle_message(self.db, message), [])


class TestRegistry(FraudEngineTestCase):

    def test_builtin_detectors_registered(self):
        self.assertTrue({"velocity_anomaly", "low_trust_score", "honeypot_triggered"} <= set(DETECTORS))

    def test_custom_detector(self):
        def night_owl(db, message, now, config):
            return Finding("suspicious_pattern", "low", 20, details={"hour": now.hour})

        engine = FraudInsightEngine(detectors={"suspicious_pattern": night_owl}, alerts=self.alerts)
        created = engine.handle_message(self.db, recorded("e1"))
        self.assertEqual(created[0].insight_type, "suspicious_pattern")
        self.assertEqual(created[0].details, {"hour": 12})


def kafka_message(offset, payload, partition=0):
    msg = mock.MagicMock()
    msg.error.return_value = None
    msg.value.return_value = json.dumps(payload).encode("utf-8")
    msg.topic.return_value = "points_events"
    msg.partition.return_value = partition
    msg.offset.return_value = offset
    return msg


class TestConsumerLoop(unittest.TestCase):

    def run_consumer(self, deliveries, outcomes):
        stop = threading.Event()
        queue = list(deliveries)

        def poll(timeout):
            if not queue:
                stop.set()
                return None
            return queue.pop(0)

        consumer = mock.MagicMock()
        consumer.poll.side_effect = poll
        insight_engine = mock.MagicMock()
        insight_engine.handle_message.side_effect = outcomes
        with mock.patch("fraud_service.main.get_consumer", return_value=consumer), \
                mock.patch("fraud_service.main.SessionLocal"), \
                mock.patch("fraud_service.main.RETRY_BACKOFF_SECONDS", 0):
            fraud_main.consume(stop, insight_engine)
        return consumer, insight_engine

    def test_failed_message_is_retried_before_later_offsets_commit(self):
        first = kafka_message(7, recorded("e1"))
        second = kafka_message(8, recorded("e2"))
        # the rewind makes the broker hand back offset 7 before 8
        consumer, insight_engine = self.run_consumer(
            [first, first, second],
            [OperationalError("INSERT", {}, Exception("server has gone away")), [], []],
        )

        rewind = consumer.seek.call_args.args[0]
        self.assertEqual((rewind.topic, rewind.partition, rewind.offset), ("points_events", 0, 7))
        committed = [c.kwargs["message"].offset() for c in consumer.commit.call_args_list]
        self.assertEqual(committed, [7, 8])
        self.assertEqual(insight_engine.handle_message.call_count, 3)
        consumer.close.assert_called_once()

    def test_undecodable_message_is_skipped(self):
        bad = kafka_message(3, {})
        bad.value.return_value = b"not json"
        consumer, insight_engine = self.run_consumer([bad], [])
        insight_engine.handle_message.assert_not_called()
        consumer.commit.assert_called_once_with(message=bad)
        consumer.seek.assert_not_called()


if __name__ == "__main__":
    unittest.main()

import json
import os
import tempfile
import threading
import time
import unittest
from datetime import timedelta
from unittest import mock
from common.error_handling import InvalidNonce, RateLimitExceeded, ReplayDetected, ValidationError
from common.security import mint_attestation_token, mint_third_party_proof
from common.settings import RateLimits, settings
from ledger_service.intake import ProofSignals, collect_proof_signals, submit_event
from ledger_service.ledger import get_balance, reconcile
from ledger_service.models import Account, Event, Outbox, UsedNonce
from ledger_fixtures import (NOW, count, file_sessionmaker, memory_sessionmaker, nonce_at, open_account,
                             seed_event, submission)

ATTESTED = ProofSignals(attestation_valid=True)


class VerdictCache:
    """In-process stand-in for the Redis verdict cache whose entries never expire on their own."""

    def __init__(self):
        self.verdicts = {}
        self.ttls = {}

    def get_attestation_verdict(self, token, device_id):
        return self.verdicts.get((token, device_id))

    def cache_attestation_verdict(self, token, device_id, valid, ttl_seconds=None):
        self.verdicts[(token, device_id)] = valid
        self.ttls[(token, device_id)] = ttl_seconds
        return True


class IntakeTestCase(unittest.TestCase):

    def setUp(self):
        self.engine, Session = memory_sessionmaker()
        self.db = Session()
        open_account(self.db, "alice", age_days=60)

    def tearDown(self):
        self.db.close()
        self.engine.dispose()

    def submit(self, sub=None, user="alice", signals=ATTESTED, now=NOW):
        return submit_event(self.db, user, sub or submission(), signals=signals, now=now)


class TestAcceptance(IntakeTestCase):

    def test_attested_event_is_validated_and_credited(self):
        result = self.submit()
        self.assertEqual(result.status, "validated")
        self.assertEqual(result.points, 10)
        self.assertGreaterEqual(result.trust_score, 60)
        self.assertFalse(result.duplicate)
        balance = get_balance(self.db, "alice")
        self.assertEqual(balance.available_points, 10)
        self.assertEqual(balance.lifetime_earned, 10)

    def test_points_come_from_the_event_type(self):
        result = self.submit(submission("goal_achieved"))
        self.assertEqual(result.points, 50)

    def test_outbox_message_written_with_event(self):
        result = self.submit()
        rows = self.db.query(Outbox).all()
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0].topic, "points_events")
        payload = json.loads(rows[0].payload)
        self.assertEqual(payload["event_id"], result.id)
        self.assertEqual(payload["validation_status"], "validated")
        self.assertFalse(payload["honeypot"])

    def test_duplicate_submission_returns_original(self):
        sub = submission()
        first = self.submit(sub)
        second = self.submit(sub, now=NOW + timedelta(seconds=5))
        self.assertEqual(first.id, second.id)
        self.assertEqual(first.status, second.status)
        self.assertTrue(second.duplicate)
        self.assertEqual(count(self.db, Event), 1)
        self.assertEqual(get_balance(self.db, "alice").available_points, 10)

    def test_new_account_is_held_for_review(self):
        result = self.submit(user="newbie")
        self.assertEqual(result.status, "pending_review")
        self.assertIsNotNone(self.db.get(Account, "newbie"))
        balance = get_balance(self.db, "newbie")
        self.assertEqual(balance.available_points, 0)
        self.assertEqual(balance.pending_points, 10)

    def test_unproven_new_account_is_rejected_but_recorded(self):
        result = self.submit(user="newbie", signals=ProofSignals())
        self.assertEqual(result.status, "rejected")
        self.assertEqual(self.db.get(Event, result.id).validation_status, "rejected")
        self.assertEqual(get_balance(self.db, "newbie").available_points, 0)

    def test_streak_multiplier_for_habits(self):
        for days_ago in range(1, 8):
            seed_event(self.db, "alice", 10, event_type="habit_completion",
                       created_at=NOW - timedelta(days=days_ago), related_entity_id="habit-1")
        result = self.submit(submission(related_entity_type="habit", related_entity_id="habit-1"))
        self.assertEqual(result.points, 12)


class TestRejections(IntakeTestCase):

    def test_future_timestamp(self):
        with self.assertRaises(ValidationError) as ctx:
            self.submit(submission(event_time=NOW + timedelta(minutes=20), nonce=nonce_at(NOW)))
        self.assertIn("future", ctx.exception.message)
        self.assertEqual(count(self.db, Event), 0)

    def test_old_timestamp(self):
        with self.assertRaises(ValidationError) as ctx:
            self.submit(submission(event_time=NOW - timedelta(days=8), nonce=nonce_at(NOW)))
        self.assertIn("old", ctx.exception.message)

    def test_malformed_nonce(self):
        for bad in ("invalid", "12345", "", nonce_at(NOW) + "\n"):
            with self.subTest(nonce=bad):
                with self.assertRaises(InvalidNonce):
                    self.submit(submission(nonce=bad))
        self.assertEqual(count(self.db, UsedNonce), 0)

    def test_system_event_types_cannot_be_submitted(self):
        with self.assertRaises(ValidationError):
            self.submit(submission("admin_award"))

    def test_nonce_replay_with_different_payload(self):
        nonce = nonce_at(NOW)
        self.submit(submission("habit_completion", nonce=nonce))
        with self.assertRaises(ReplayDetected):
            self.submit(submission("workout_completion", nonce=nonce), now=NOW + timedelta(minutes=2))
        self.assertEqual(count(self.db, Event), 1)

    def test_trust_rejected_event_still_consumes_nonce(self):
        nonce = nonce_at(NOW)
        self.submit(submission(nonce=nonce, device_info={"hp_token": "1"}))
        with self.assertRaises(ReplayDetected):
            self.submit(submission("workout_completion", nonce=nonce), now=NOW + timedelta(minutes=2))

    def test_honeypot_zeroes_trust(self):
        result = self.submit(submission(device_info={"hp_token": "bot"}),
                             signals=ProofSignals(attestation_valid=True, third_party_confirmed=True))
        self.assertEqual(result.trust_score, 0)
        self.assertEqual(result.status, "rejected")
        payload = json.loads(self.db.query(Outbox).one().payload)
        self.assertTrue(payload["honeypot"])

    def test_hourly_event_limit_leaves_no_state(self):
        for i in range(100):
            seed_event(self.db, "alice", 0, status="rejected", event_type="habit_completion",
                       created_at=NOW - timedelta(seconds=30 * (i + 1)))
        before = count(self.db, Event)
        with self.assertRaises(RateLimitExceeded) as ctx:
            self.submit()
        self.assertIn("Hourly event limit", ctx.exception.message)
        self.assertEqual(count(self.db, Event), before)
        self.assertEqual(count(self.db, UsedNonce), 0)
        self.assertEqual(count(self.db, Outbox), 0)

    def test_rapid_fire_scores_low(self):
        first = self.submit()
        second = self.submit(submission("workout_completion", nonce=nonce_at(NOW)),
                             now=NOW + timedelta(milliseconds=500))
        self.assertEqual(first.status, "validated")
        self.assertEqual(second.status, "rejected")


class TestProofSignals(unittest.TestCase):

    def setUp(self):
        self.cache = mock.MagicMock()
        self.cache.get_attestation_verdict.return_value = None

    def test_valid_attestation_is_verified_and_cached(self):
        token = mint_attestation_token("device-1")
        signals = collect_proof_signals("alice", submission(device_id="device-1", attestation_token=token),
                                        cache=self.cache)
        self.assertTrue(signals.attestation_valid)
        self.cache.cache_attestation_verdict.assert_called_once()
        args, kwargs = self.cache.cache_attestation_verdict.call_args
        self.assertEqual(args, (token, "device-1", True))
        self.assertLessEqual(kwargs["ttl_seconds"], 300)

    def test_attestation_for_another_device_is_invalid(self):
        token = mint_attestation_token("device-1")
        signals = collect_proof_signals("alice", submission(device_id="device-2", attestation_token=token),
                                        cache=self.cache)
        self.assertFalse(signals.attestation_valid)

    def test_forged_attestation_is_invalid(self):
        token = mint_attestation_token("device-1", secret="not-the-real-secret")
        signals = collect_proof_signals("alice", submission(device_id="device-1", attestation_token=token),
                                        cache=self.cache)
        self.assertFalse(signals.attestation_valid)

    def test_cached_verdict_short_circuits(self):
        self.cache.get_attestation_verdict.return_value = True
        token = mint_attestation_token("d")
        signals = collect_proof_signals("alice", submission(device_id="d", attestation_token=token),
                                        cache=self.cache)
        self.assertTrue(signals.attestation_valid)
        self.cache.cache_attestation_verdict.assert_not_called()

    def test_expired_token_ignores_cached_verdict(self):
        self.cache.get_attestation_verdict.return_value = True
        token = mint_attestation_token("device-1", ttl_seconds=-5)
        signals = collect_proof_signals("alice", submission(device_id="device-1", attestation_token=token),
                                        cache=self.cache)
        self.assertFalse(signals.attestation_valid)
        self.cache.get_attestation_verdict.assert_not_called()

    def test_verdict_does_not_outlive_token(self):
        cache = VerdictCache()
        token = mint_attestation_token("device-1", ttl_seconds=60)
        sub = submission(device_id="device-1", attestation_token=token)
        self.assertTrue(collect_proof_signals("alice", sub, cache=cache).attestation_valid)
        self.assertLessEqual(cache.ttls[(token, "device-1")], 60)

        later = time.time() + 120
        with mock.patch("common.security.time.time", return_value=later):
            self.assertFalse(collect_proof_signals("alice", sub, cache=cache).attestation_valid)

    def test_unreadable_token_is_invalid(self):
        signals = collect_proof_signals("alice", submission(device_id="d", attestation_token="opaque"),
                                        cache=self.cache)
        self.assertFalse(signals.attestation_valid)

    def test_claimed_attestation_without_token(self):
        signals = collect_proof_signals("alice", submission(proof_type="attestation"), cache=self.cache)
        self.assertFalse(signals.attestation_valid)

    def test_third_party_confirmation(self):
        good = mint_third_party_proof("alice", "fitbit")
        signals = collect_proof_signals("alice", submission(proof_type="third_party",
                                                            proof_payload={"confirmation": good}),
                                        cache=self.cache)
        self.assertTrue(signals.third_party_confirmed)
        stolen = collect_proof_signals("mallory", submission(proof_type="third_party",
                                                             proof_payload={"confirmation": good}),
                                       cache=self.cache)
        self.assertFalse(stolen.third_party_confirmed)

    def test_no_signals_for_plain_submission(self):
        signals = collect_proof_signals("alice", submission(), cache=self.cache)
        self.assertIsNone(signals.attestation_valid)
        self.assertIsNone(signals.third_party_confirmed)


class TestConcurrentIntake(unittest.TestCase):

    def setUp(self):
        fd, self.path = tempfile.mkstemp(suffix=".db")
        os.close(fd)
        self.engine, self.Session = file_sessionmaker(self.path)
        with self.Session() as db:
            open_account(db, "alice")

    def tearDown(self):
        self.engine.dispose()
        os.remove(self.path)

    def race(self, submissions, config=None):
        barrier = threading.Barrier(len(submissions))
        outcomes = []
        lock = threading.Lock()

        def attempt(sub):
            with self.Session() as db:
                barrier.wait()
                try:
                    outcome = submit_event(db, "alice", sub, signals=ATTESTED, now=NOW, config=config)
                except RateLimitExceeded as e:
                    outcome = e
            with lock:
                outcomes.append(outcome)

        threads = [threading.Thread(target=attempt, args=(sub,)) for sub in submissions]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60)
        return outcomes

    def test_rate_ceiling_holds_under_concurrent_submissions(self):
        config = settings.model_copy(update={"rate_limits": RateLimits(events_per_hour=1)})
        outcomes = self.race([submission("habit_completion"), submission("workout_completion")], config)

        self.assertEqual(len(outcomes), 2)
        accepted = [o for o in outcomes if not isinstance(o, RateLimitExceeded)]
        limited = [o for o in outcomes if isinstance(o, RateLimitExceeded)]
        self.assertEqual(len(accepted), 1)
        self.assertEqual(len(limited), 1)
        with self.Session() as db:
            self.assertEqual(count(db, Event), 1)
            self.assertEqual(count(db, UsedNonce), 1)
            self.assertTrue(reconcile(db).healthy)

    def test_identical_concurrent_submissions_land_once(self):
        sub = submission()
        outcomes = self.race([sub, sub])

        self.assertEqual(len(outcomes), 2)
        self.assertEqual(outcomes[0].id, outcomes[1].id)
        self.assertEqual(sorted(o.duplicate for o in outcomes), [False, True])
        with self.Session() as db:
            self.assertEqual(count(db, Event), 1)
            self.assertEqual(get_balance(db, "alice").available_points, 10)


if __name__ == "__main__":
    unittest.main()

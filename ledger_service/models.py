import uuid
from sqlalchemy import (Column, Integer, String, BigInteger, DateTime, Boolean, JSON, Text,
                        ForeignKey, CheckConstraint, Index)
from sqlalchemy.orm import declarative_base
from common.crypto import utcnow

Base = declarative_base()

def new_id() -> str:
    return str(uuid.uuid4())

# Points awarded per user-submittable event type
EVENT_POINTS = {
    "habit_completion": 10,
    "workout_completion": 20,
    "morning_reflection": 15,
    "evening_reflection": 15,
    "goal_achieved": 50,
    "streak_milestone": 25,
    "activity_completion": 10,
}
SYSTEM_EVENT_TYPES = ("admin_award", "admin_deduction", "redeem_coupon", "coupon_refund")
EVENT_TYPES = tuple(EVENT_POINTS) + SYSTEM_EVENT_TYPES

USER_PROOF_TYPES = ("internal", "attestation", "third_party")

PENDING_STATUSES = ("pending", "pending_review")
FINAL_STATUSES = ("validated", "rejected")

class Account(Base):
    __tablename__ = "accounts"
    id = Column(String(64), primary_key=True)
    status = Column(String(16), nullable=False, default="active")
    created_at = Column(DateTime, nullable=False, default=utcnow)

class Event(Base):
    __tablename__ = "points_events"
    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(64), ForeignKey("accounts.id"), nullable=False, index=True)
    event_type = Column(String(32), nullable=False)
    event_time = Column(DateTime, nullable=False)
    points_delta = Column(Integer, nullable=False)
    proof_type = Column(String(16), nullable=False, default="internal")
    proof_payload = Column(JSON)
    payload_hash = Column(String(64), nullable=False, unique=True)
    nonce = Column(String(64))
    validation_status = Column(String(16), nullable=False, default="pending")  # pending|pending_review|validated|rejected
    trust_score = Column(Integer)
    device_id = Column(String(128), index=True)
    device_info = Column(JSON)
    related_entity_type = Column(String(32))
    related_entity_id = Column(String(64))
    created_at = Column(DateTime, nullable=False, default=utcnow)
    validated_at = Column(DateTime)
    validated_by = Column(String(64))
    validation_notes = Column(Text)

    __table_args__ = (
        Index("ix_points_events_user_created", "user_id", "created_at"),
        Index("ix_points_events_status", "validation_status"),
    )

class UserPointsCache(Base):
    __tablename__ = "user_points_cache"
    user_id = Column(String(64), ForeignKey("accounts.id"), primary_key=True)
    available_points = Column(BigInteger, nullable=False, default=0)
    pending_points = Column(BigInteger, nullable=False, default=0)
    lifetime_earned = Column(BigInteger, nullable=False, default=0)
    lifetime_spent = Column(BigInteger, nullable=False, default=0)
    last_event_id = Column(String(36))
    lock_version = Column(BigInteger, nullable=False, default=0)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("available_points >= 0", name="ck_available_points_non_negative"),
    )

class UsedNonce(Base):
    __tablename__ = "used_nonces"
    user_id = Column(String(64), primary_key=True)
    nonce = Column(String(64), primary_key=True)
    event_type = Column(String(32))
    created_at = Column(DateTime, nullable=False, default=utcnow)
    expires_at = Column(DateTime, nullable=False, index=True)

class CouponTemplate(Base):
    __tablename__ = "coupon_templates"
    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(128), nullable=False)
    description = Column(Text)
    points_cost = Column(Integer, nullable=False)
    value_type = Column(String(16), nullable=False, default="fixed_amount")  # percentage|fixed_amount|product
    value = Column(Integer)
    partner_name = Column(String(128))
    terms = Column(Text)
    expires_after_days = Column(Integer, default=30)
    is_active = Column(Boolean, nullable=False, default=True)
    max_redemptions_per_user = Column(Integer, default=1)
    extra = Column("metadata", JSON)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("points_cost > 0", name="ck_template_cost_positive"),
    )

class Coupon(Base):
    __tablename__ = "coupons"
    id = Column(String(36), primary_key=True, default=new_id)
    code_hash = Column(String(64), nullable=False, unique=True)
    template_id = Column(String(36), ForeignKey("coupon_templates.id"), nullable=False)
    issued_to = Column(String(64), ForeignKey("accounts.id"), nullable=False, index=True)
    issued_points_cost = Column(Integer, nullable=False)
    points_event_id = Column(String(36), nullable=False)
    status = Column(String(16), nullable=False, default="issued")  # issued|redeemed|revoked|expired
    issued_at = Column(DateTime, nullable=False, default=utcnow)
    expires_at = Column(DateTime, nullable=False)
    redeemed_at = Column(DateTime)
    redeemed_by = Column(String(64))
    revoked_at = Column(DateTime)
    refund_event_id = Column(String(36))
    extra = Column("metadata", JSON)

class FraudInsight(Base):
    __tablename__ = "fraud_insights"
    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(64), nullable=False, index=True)
    insight_type = Column(String(32), nullable=False)
    severity = Column(String(16), nullable=False)  # low|medium|high|critical
    score = Column(Integer, nullable=False, default=0)
    details = Column(JSON)
    related_event_ids = Column(JSON)
    source_event_id = Column(String(36), index=True)
    resolved =Column(Boolean, nullable=False, default=False)
    resolution = Column(String(16))  # false_positive|confirmed_fraud
    resolved_at = Column(DateTime)
    resolved_by = Column(String(64))
    resolution_notes = Column(Text)
    created_at = Column(DateTime, nullable=False, default=utcnow)

class Outbox(Base):
    __tablename__ = "outbox"
    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    topic = Column(String(64), nullable=False)
    payload = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    status = Column(String(16), nullable=False, default="new")  # new|sent|failed
    attempts = Column(Integer, nullable=False, default=0)

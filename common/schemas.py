from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, Literal, Optional

EventStatus = Literal["pending", "pending_review", "validated", "rejected"]

class EventSubmission(BaseModel):
    event_type: str
    event_time: datetime
    nonce: str
    proof_type: Literal["internal", "attestation", "third_party"] = "internal"
    proof_payload: Optional[Dict[str, Any]] = None
    related_entity_type: Optional[str] = None
    related_entity_id: Optional[str] = None
    device_id: Optional[str] = None
    device_info: Optional[Dict[str, Any]] = None
    attestation_token: Optional[str] = None

class EventResult(BaseModel):
    id: str
    status: EventStatus
    points: int = 0
    trust_score: Optional[int] = None
    duplicate: bool = False

class Balance(BaseModel):
    available_points: int = 0
    pending_points: int = 0
    lifetime_earned: int = 0
    lifetime_spent: int = 0

class RedeemRequest(BaseModel):
    template_id: str
    idempotency_key: Optional[str] = Field(default=None, max_length=128)

class RedemptionResult(BaseModel):
    success: bool = True
    coupon_id: Optional[str] = None
    coupon_code: Optional[str] = None
    expires_at: Optional[datetime] = None
    points_remaining: int = 0
    replayed: bool = False

class CouponTemplateOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    description: Optional[str] = None
    points_cost: int
    value_type: str
    value: Optional[int] = None
    partner_name: Optional[str] = None
    terms: Optional[str] = None
    expires_after_days: Optional[int] = None
    max_redemptions_per_user: Optional[int] = None

class CouponOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    template_id: str
    status: str
    issued_points_cost: int
    issued_at: datetime
    expires_at: datetime
    redeemed_at: Optional[datetime] = None

class ConsumeRequest(BaseModel):
    code: str

class ReviewDecision(BaseModel):
    notes: Optional[str] = None

class ResolveInsightRequest(BaseModel):
    resolved: bool
    notes: Optional[str] = None

class AccountCreate(BaseModel):
    user_id: str
    created_at: Optional[datetime] = None

class AwardRequest(BaseModel):
    user_id: str
    points: int = Field(..., gt=0)
    kind: Literal["admin_award", "admin_deduction"] = "admin_award"
    notes: Optional[str] = None

class RevokeRequest(BaseModel):
    refund: bool = True
    notes: Optional[str] = None

class ReviewQueueItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    event_type: str
    event_time: datetime
    points_delta: int
    proof_type: str
    validation_status: str
    trust_score: Optional[int] = None
    device_id: Optional[str] = None
    created_at: datetime

class FraudInsightOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    insight_type: str
    severity: str
    score: int
    details: Optional[Dict[str, Any]] = None
    resolved: bool
    resolution: Optional[str] = None
    created_at: datetime

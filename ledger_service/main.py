import logging
import jwt
from contextlib import asynccontextmanager
from typing import List
from fastapi import FastAPI, Depends, Header, HTTPException
from sqlalchemy.orm import Session
from common.error_handling import add_error_handlers
from common.redis_client import redis_client
from common.schemas import (AccountCreate, AwardRequest, Balance, ConsumeRequest, CouponOut,
                            CouponTemplateOut, EventResult, EventSubmission, FraudInsightOut,
                            RedeemRequest, RedemptionResult, ResolveInsightRequest, ReviewDecision,
                            ReviewQueueItem, RevokeRequest)
from common.security import verify_token
from common.crypto import to_naive_utc
from ledger_service import admin
from ledger_service.db import engine, get_db
from ledger_service.intake import collect_proof_signals, submit_event
from ledger_service.ledger import ensure_account, get_balance, reconcile
from ledger_service.models import Base
from ledger_service.redemption import (consume_coupon_code, list_active_templates, list_user_coupons,
                                       redeem_coupon)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    Base.metadata.create_all(bind=engine)
    logger.info("🚀 Points ledger service started")
    yield

app = FastAPI(title="Points Ledger Service", lifespan=lifespan)
add_error_handlers(app)

# Bearer auth; `sub` is the acting user, `scope` gates admin and partner routes
async def current_user(authorization: str = Header(...)) -> dict:
    if not authorization.startswith("Bearer "):
        raise HTTPException(401, "missing bearer token")
    token = authorization.split(" ", 1)[1]
    try:
        return verify_token(token)
    except jwt.PyJWTError as e:
        raise HTTPException(401, f"invalid token: {e}")

async def admin_user(user: dict = Depends(current_user)) -> dict:
    if user.get("scope") != "admin":
        raise HTTPException(403, "admin scope required")
    return user

async def partner_user(user: dict = Depends(current_user)) -> dict:
    if user.get("scope") not in ("partner", "admin"):
        raise HTTPException(403, "partner scope required")
    return user

@app.get("/health")
async def health():
    return {"ok": True, "redis": redis_client.ping()}

@app.post("/events", response_model=EventResult)
def post_event(submission: EventSubmission, user: dict = Depends(current_user), db: Session = Depends(get_db)):
    """Record a user action; safe to retry with the same body."""
    signals = collect_proof_signals(user["sub"], submission)
    return submit_event(db, user["sub"], submission, signals=signals)

@app.get("/balance", response_model=Balance)
def read_balance(user: dict = Depends(current_user), db: Session = Depends(get_db)):
    return Balance(**get_balance(db, user["sub"]).totals())

@app.get("/coupon-templates", response_model=List[CouponTemplateOut])
def coupon_templates(db: Session = Depends(get_db)):
    return list_active_templates(db)

@app.post("/coupons/redeem", response_model=RedemptionResult)
def redeem(body: RedeemRequest, user: dict = Depends(current_user), db: Session = Depends(get_db)):
    return redeem_coupon(db, user["sub"], body.template_id, body.idempotency_key)

@app.get("/coupons", response_model=List[CouponOut])
def my_coupons(user: dict = Depends(current_user), db: Session = Depends(get_db)):
    return list_user_coupons(db, user["sub"])

@app.post("/coupons/consume", response_model=CouponOut)
def consume(body: ConsumeRequest, partner: dict = Depends(partner_user), db: Session = Depends(get_db)):
    return consume_coupon_code(db, body.code, partner["sub"])

# Admin

@app.post("/admin/accounts")
def create_account(body: AccountCreate, staff: dict = Depends(admin_user), db: Session = Depends(get_db)):
    created_at = to_naive_utc(body.created_at) if body.created_at else None
    account = ensure_account(db, body.user_id, created_at=created_at)
    return {"user_id": account.id, "created_at": account.created_at}

@app.get("/admin/review-queue", response_model=List[ReviewQueueItem])
def review_queue(limit: int = 100, staff: dict = Depends(admin_user), db: Session = Depends(get_db)):
    return admin.review_queue(db, limit)

@app.post("/admin/events/{event_id}/approve", response_model=EventResult)
def approve(event_id: str, body: ReviewDecision = None, staff: dict = Depends(admin_user),
            db: Session = Depends(get_db)):
    event = admin.approve_event(db, event_id, staff["sub"], body.notes if body else None)
    return EventResult(id=event.id, status=event.validation_status, points=event.points_delta,
                       trust_score=event.trust_score)

@app.post("/admin/events/{event_id}/reject", response_model=EventResult)
def reject(event_id: str, body: ReviewDecision = None, staff: dict = Depends(admin_user),
           db: Session = Depends(get_db)):
    event = admin.reject_event(db, event_id, staff["sub"], body.notes if body else None)
    return EventResult(id=event.id, status=event.validation_status, points=event.points_delta,
                       trust_score=event.trust_score)

@app.get("/admin/fraud-insights", response_model=List[FraudInsightOut])
def fraud_insights(limit: int = 100, staff: dict = Depends(admin_user), db: Session = Depends(get_db)):
    return admin.open_insights(db, limit)

@app.post("/admin/fraud-insights/{insight_id}/resolve", response_model=FraudInsightOut)
def resolve(insight_id: str, body: ResolveInsightRequest, staff: dict = Depends(admin_user),
            db: Session = Depends(get_db)):
    return admin.resolve_insight(db, insight_id, body.resolved, staff["sub"], body.notes)

@app.post("/admin/awards", response_model=EventResult)
def award(body: AwardRequest, staff: dict = Depends(admin_user), db: Session = Depends(get_db)):
    event = admin.award_points(db, body.user_id, body.points, staff["sub"], body.kind, body.notes)
    return EventResult(id=event.id, status=event.validation_status, points=event.points_delta,
                       trust_score=event.trust_score)

@app.post("/admin/coupons/{coupon_id}/revoke", response_model=CouponOut)
def revoke(coupon_id: str, body: RevokeRequest = None, staff: dict = Depends(admin_user),
           db: Session = Depends(get_db)):
    body = body or RevokeRequest()
    return admin.revoke_coupon(db, coupon_id, staff["sub"], body.refund, body.notes)

@app.post("/admin/reconcile")
def run_reconcile(repair: bool = False, staff: dict = Depends(admin_user), db: Session = Depends(get_db)):
    return reconcile(db, repair=repair).to_dict()

@app.get("/admin/stats")
def stats(staff: dict = Depends(admin_user), db: Session = Depends(get_db)):
    return admin.admin_stats(db)

"""
Coupon redemption: points are exchanged for a single-use code inside one
transaction that holds the user's balance-row lock from the balance check
through the coupon insert and cache refresh.
"""
import logging
import secrets
from datetime import datetime, timedelta
from typing import List
from sqlalchemy import func, select, update
from sqlalchemy.orm import Session
from common.crypto import generate_coupon_code, hash_coupon_code, redemption_payload_hash, utcnow
from common.error_handling import BusinessLogicError, ErrorCodes, InsufficientPoints, NotFound
from common.kafka import TOPIC_POINTS_EVENTS
from common.schemas import RedemptionResult
from common.settings import Settings, settings
from ledger_service.ledger import (append_event, atomic, event_message, find_by_payload_hash,
                                   lock_balance_row, publish_outbox, refresh_user_points)
from ledger_service.models import Coupon, CouponTemplate, Event, new_id

logger = logging.getLogger(__name__)

SYSTEM_VALIDATOR = "system"


def list_active_templates(db: Session) -> List[CouponTemplate]:
    return list(db.execute(
        select(CouponTemplate).where(CouponTemplate.is_active.is_(True)).order_by(CouponTemplate.points_cost)
    ).scalars())


def list_user_coupons(db: Session, user_id: str) -> List[Coupon]:
    return list(db.execute(
        select(Coupon).where(Coupon.issued_to == user_id).order_by(Coupon.issued_at.desc())
    ).scalars())


def redeem_coupon(db: Session, user_id: str, template_id: str, idempotency_key: str = None,
                  now: datetime = None, config: Settings = None) -> RedemptionResult:
    config = config or settings
    now = now or utcnow()

    template = db.get(CouponTemplate, template_id)
    if template is None or not template.is_active:
        raise NotFound(ErrorCodes.TEMPLATE_NOT_FOUND, f"Coupon template {template_id} not found or inactive")
    cost = template.points_cost
    max_per_user = template.max_redemptions_per_user
    expires_at = now + timedelta(days=template.expires_after_days or config.coupon_expiry_days)

    key = idempotency_key or secrets.token_hex(16)
    payload_hash = redemption_payload_hash(user_id, template_id, key)
    db.rollback()

    with atomic(db, "redeem_coupon"):
        try:
            cache = lock_balance_row(db, user_id)
        except NotFound:
            raise InsufficientPoints(0, cost)

        prior = find_by_payload_hash(db, payload_hash)
        if prior is not None:
            coupon = db.execute(select(Coupon).where(Coupon.points_event_id == prior.id)).scalar_one_or_none()
            result = RedemptionResult(
                success=True,
                coupon_id=coupon.id if coupon else None,
                expires_at=coupon.expires_at if coupon else None,
                points_remaining=cache.available_points,
                replayed=True,
            )
            db.rollback()
            logger.info(f"Redemption replay for user {user_id} (key {key[:8]}...)")
            return result

        if max_per_user is not None:
            issued = db.execute(
                select(func.count(Coupon.id)).where(
                    Coupon.issued_to == user_id,
                    Coupon.template_id == template_id,
                    Coupon.status != "revoked",
                )
            ).scalar_one()
            if issued >= max_per_user:
                raise BusinessLogicError(
                    ErrorCodes.REDEMPTION_LIMIT_REACHED,
                    "Maximum redemptions reached for this coupon",
                    context={"template_id": template_id, "limit": max_per_user},
                )

        if cache.available_points < cost:
            logger.warning(f"Insufficient points for user {user_id}: {cache.available_points} < {cost}")
            raise InsufficientPoints(cache.available_points, cost)

        code = generate_coupon_code()
        coupon_id = new_id()
        event = append_event(db, Event(
            user_id=user_id,
            event_type="redeem_coupon",
            event_time=now,
            points_delta=-cost,
            proof_type="automatic",
            proof_payload={"template_id": template_id, "idempotency_key": key},
            payload_hash=payload_hash,
            validation_status="validated",
            trust_score=100,
            related_entity_type="coupon",
            related_entity_id=coupon_id,
            created_at=now,
            validated_at=now,
            validated_by=SYSTEM_VALIDATOR,
        ))
        db.add(Coupon(
            id=coupon_id,
            code_hash=hash_coupon_code(code, config.coupon_secret),
            template_id=template_id,
            issued_to=user_id,
            issued_points_cost=cost,
            points_event_id=event.id,
            status="issued",
            issued_at=now,
            expires_at=expires_at,
        ))
        cache = refresh_user_points(db, user_id, cache)
        remaining = cache.available_points
        publish_outbox(db, TOPIC_POINTS_EVENTS, event_message(event, "CouponIssued", coupon_id=coupon_id))
        db.commit()

    logger.info(f"Issued coupon {coupon_id} to user {user_id} for {cost} points, {remaining} remaining")
    return RedemptionResult(
        success=True,
        coupon_id=coupon_id,
        coupon_code=code,
        expires_at=expires_at,
        points_remaining=remaining,
    )


def consume_coupon_code(db: Session, code: str, partner_id: str, now: datetime = None,
                        config: Settings = None) -> Coupon:
    """Partner-side redemption of a plaintext code."""
    config = config or settings
    now = now or utcnow()
    code_hash = hash_coupon_code(code, config.coupon_secret)

    with atomic(db, "consume_coupon"):
        coupon = db.execute(
            select(Coupon).where(Coupon.code_hash == code_hash).with_for_update()
        ).scalar_one_or_none()
        if coupon is None:
            raise NotFound(ErrorCodes.COUPON_NOT_FOUND, "Unknown coupon code")
        if coupon.status != "issued":
            raise BusinessLogicError(ErrorCodes.COUPON_NOT_REDEEMABLE, f"Coupon is {coupon.status}")
        if coupon.expires_at <= now:
            raise BusinessLogicError(ErrorCodes.COUPON_NOT_REDEEMABLE, "Coupon has expired")
        coupon.status = "redeemed"
        coupon.redeemed_at = now
        coupon.redeemed_by = partner_id
        publish_outbox(db, TOPIC_POINTS_EVENTS, {
            "type": "CouponRedeemed",
            "coupon_id": coupon.id,
            "user_id": coupon.issued_to,
            "partner_id": partner_id,
        })
        db.commit()

    logger.info(f"Coupon {coupon.id} redeemed by partner {partner_id}")
    return coupon


def expire_coupons(db: Session, now: datetime = None) -> int:
    now = now or utcnow()
    with atomic(db, "expire_coupons"):
        result = db.execute(
            update(Coupon)
            .where(Coupon.status == "issued", Coupon.expires_at < now)
            .values(status="expired")
            .execution_options(synchronize_session=False)
        )
        db.commit()
    if result.rowcount:
        logger.info(f"Marked {result.rowcount} coupons expired")
    return result.rowcount

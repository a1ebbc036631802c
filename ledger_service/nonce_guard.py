"""
Nonce / replay guard.

A nonce is `<base36 ms timestamp>-<16 lowercase hex>`. Format and age make a
nonce *valid*; the (user, nonce) row in `used_nonces` makes it *spent*.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional
from sqlalchemy import delete, select
from sqlalchemy.orm import Session
from common.crypto import generate_nonce, nonce_timestamp_ms, utcnow
from common.error_handling import InvalidNonce, ReplayDetected
from common.settings import NonceSettings, settings
from ledger_service.ledger import atomic
from ledger_service.models import UsedNonce

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1)

__all__ = ["generate_nonce", "nonce_issued_at", "validate_nonce", "check_nonce", "claim_nonce",
           "purge_expired_nonces"]


def nonce_issued_at(nonce: str) -> Optional[datetime]:
    ms = nonce_timestamp_ms(nonce)
    if ms is None:
        return None
    try:
        return EPOCH + timedelta(milliseconds=ms)
    except OverflowError:
        return None


def validate_nonce(nonce: str, now: datetime = None, config: NonceSettings = None) -> bool:
    config = config or settings.nonce
    now = now or utcnow()
    issued_at = nonce_issued_at(nonce)
    if issued_at is None:
        return False
    age = now - issued_at
    if age > timedelta(days=config.max_age_days):
        return False
    return age >= -timedelta(seconds=config.max_clock_skew_seconds)


def check_nonce(nonce: str, now: datetime = None, config: NonceSettings = None) -> datetime:
    """Raise InvalidNonce unless the nonce is well formed and fresh; returns its embedded time."""
    if not validate_nonce(nonce, now, config):
        if nonce_issued_at(nonce) is None:
            raise InvalidNonce("Invalid nonce format")
        raise InvalidNonce("Nonce expired or issued in the future")
    return nonce_issued_at(nonce)


def claim_nonce(db: Session, user_id: str, nonce: str, event_type: str,
                now: datetime = None, config: NonceSettings = None) -> UsedNonce:
    """Record (user, nonce) as spent inside the caller's transaction.

    Callers hold the user's balance-row lock, so the existence check and the
    insert cannot interleave with another submission from the same user. The
    primary key still rejects a racing insert from a path without the lock.
    """
    config = config or settings.nonce
    issued_at = check_nonce(nonce, now, config)
    existing = db.execute(
        select(UsedNonce).where(UsedNonce.user_id == user_id, UsedNonce.nonce == nonce)
    ).scalar_one_or_none()
    if existing is not None:
        logger.warning(f"Replay attempt: user={user_id} nonce={nonce}")
        raise ReplayDetected()
    row = UsedNonce(
        user_id=user_id,
        nonce=nonce,
        event_type=event_type,
        created_at=now or utcnow(),
        expires_at=issued_at + timedelta(days=config.max_age_days),
    )
    db.add(row)
    db.flush()
    return row


def purge_expired_nonces(db: Session, now: datetime = None) -> int:
    """Delete spent-nonce rows whose nonce can no longer pass `validate_nonce`."""
    now = now or utcnow()
    with atomic(db, "purge_expired_nonces"):
        result = db.execute(delete(UsedNonce).where(UsedNonce.expires_at < now))
        db.commit()
    if result.rowcount:
        logger.info(f"Purged {result.rowcount} expired nonces")
    return result.rowcount

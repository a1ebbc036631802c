"""
Hashing, nonce and coupon-code primitives shared by the ledger services.
"""
import hashlib
import hmac
import json
import re
import secrets
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

COUPON_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
COUPON_CODE_LENGTH = 16
COUPON_GROUP_SIZE = 4
COUPON_CODE_RE = re.compile(r"^[%s]{4}(-[%s]{4}){3}$" % (COUPON_ALPHABET, COUPON_ALPHABET))

NONCE_RE = re.compile(r"([0-9a-z]+)-([0-9a-f]{16})")
BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def utcnow() -> datetime:
    """Naive UTC now, the representation stored in every timestamp column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def isoformat_utc(value: datetime) -> str:
    return to_naive_utc(value).isoformat(timespec="milliseconds") + "Z"


def canonical_json(data: Any) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)


def sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def event_payload_hash(user_id: str, event_type: str, event_time: datetime, nonce: str,
                       data: Optional[Dict[str, Any]] = None) -> str:
    """Content address of a submission; identical submissions hash identically."""
    return sha256_hex(canonical_json({
        "userId": user_id,
        "eventType": event_type,
        "eventTime": isoformat_utc(event_time),
        "nonce": nonce,
        "data": data or {},
    }))


def redemption_payload_hash(user_id: str, template_id: str, idempotency_key: str) -> str:
    return sha256_hex(canonical_json({
        "userId": user_id,
        "templateId": template_id,
        "idempotencyKey": idempotency_key,
        "action": "redeem",
    }))


def to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(BASE36[rem])
    return "".join(reversed(digits))


def generate_nonce(now_ms: Optional[int] = None) -> str:
    """`<base36 millisecond timestamp>-<16 lowercase hex>`"""
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    return f"{to_base36(now_ms)}-{secrets.token_hex(8)}"


def nonce_timestamp_ms(nonce: str) -> Optional[int]:
    """Embedded millisecond timestamp, or None when the nonce is malformed."""
    if not isinstance(nonce, str):
        return None
    match = NONCE_RE.fullmatch(nonce)
    if not match:
        return None
    return int(match.group(1), 36)


def generate_coupon_code() -> str:
    chars = "".join(secrets.choice(COUPON_ALPHABET) for _ in range(COUPON_CODE_LENGTH))
    groups = [chars[i:i + COUPON_GROUP_SIZE] for i in range(0, COUPON_CODE_LENGTH, COUPON_GROUP_SIZE)]
    return "-".join(groups)


def hash_coupon_code(code: str, secret: str) -> str:
    normalized = code.strip().upper()
    return hmac.new(secret.encode("utf-8"), normalized.encode("utf-8"), hashlib.sha256).hexdigest()

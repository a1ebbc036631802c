"""
Redis client utilities for verdict caching and the fraud alert feed
"""
import json
import logging
import redis
from typing import Optional, Dict, Any, List
from .crypto import sha256_hex, utcnow
from .settings import settings

logger = logging.getLogger(__name__)

FRAUD_ALERTS_KEY = "fraud_alerts"

class RedisClient:
    """Redis client wrapper; every helper fails open when Redis is unreachable"""

    def __init__(self, url: str = None):
        self.client = redis.Redis.from_url(url or settings.redis_url, decode_responses=True)

    def ping(self) -> bool:
        """Check Redis connectivity"""
        try:
            return bool(self.client.ping())
        except redis.RedisError:
            return False

    # Attestation verdicts
    def cache_attestation_verdict(self, token: str, device_id: str, valid: bool,
                                  ttl_seconds: int = None) -> bool:
        """Remember a verification result so retried submissions skip re-verification"""
        try:
            key = f"attestation:{sha256_hex(f'{device_id}:{token}')}"
            ttl = ttl_seconds or settings.attestation_cache_ttl_seconds
            return bool(self.client.setex(key, ttl, "1" if valid else "0"))
        except redis.RedisError as e:
            logger.warning(f"Failed to cache attestation verdict: {e}")
            return False

    def get_attestation_verdict(self, token: str, device_id: str) -> Optional[bool]:
        try:
            value = self.client.get(f"attestation:{sha256_hex(f'{device_id}:{token}')}")
            if value is None:
                return None
            return value == "1"
        except redis.RedisError as e:
            logger.warning(f"Failed to read attestation verdict: {e}")
            return None

    # Fraud alert feed
    def push_fraud_alert(self, alert: Dict[str, Any], max_size: int = None) -> bool:
        """Prepend an alert and cap the feed length"""
        try:
            payload = json.dumps({**alert, "pushed_at": utcnow().isoformat()}, default=str)
            pipe = self.client.pipeline()
            pipe.lpush(FRAUD_ALERTS_KEY, payload)
            pipe.ltrim(FRAUD_ALERTS_KEY, 0, (max_size or settings.fraud.alert_feed_size) - 1)
            pipe.execute()
            return True
        except redis.RedisError as e:
            logger.warning(f"Failed to push fraud alert: {e}")
            return False

    def recent_fraud_alerts(self, limit: int = 50) -> List[Dict[str, Any]]:
        try:
            return [json.loads(item) for item in self.client.lrange(FRAUD_ALERTS_KEY, 0, limit - 1)]
        except redis.RedisError as e:
            logger.warning(f"Failed to read fraud alerts: {e}")
            return []

# Global Redis client instance
redis_client = RedisClient()

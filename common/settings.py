import os
from typing import Optional
from pydantic import BaseModel
from pydantic_settings import BaseSettings, SettingsConfigDict


class TrustWeights(BaseModel):
    """Additive contributions used by the trust scorer."""
    baseline: int = 0
    attestation_valid: int = 40
    attestation_invalid: int = -20
    third_party_confirmed: int = 30
    third_party_unconfirmed: int = -10
    device_trusted: int = 15
    device_known: int = 5
    device_unknown: int = 5
    new_account: int = -20
    young_account: int = 5
    established_account: int = 10
    new_account_days: float = 1.0
    established_account_days: float = 30.0
    spacing_burst: int = -40
    spacing_rapid: int = -20
    spacing_quick: int = 0
    spacing_normal: int = 5
    open_fraud_flags: int = -30


class ValidationThresholds(BaseModel):
    validated: int = 60
    pending_review: int = 30


class RateLimits(BaseModel):
    events_per_hour: int = 100
    events_per_day: int = 500
    points_per_hour: int = 1000
    points_per_day: int = 5000


class NonceSettings(BaseModel):
    max_age_days: int = 7
    max_clock_skew_seconds: int = 600


class IntakeWindow(BaseModel):
    max_future_seconds: int = 600
    max_past_days: int = 7
    trusted_device_events: int = 3
    honeypot_fields: list[str] = ["hp_token", "debug_award"]


class FraudSettings(BaseModel):
    burst_window_seconds: int = 300
    burst_threshold: int = 20
    hourly_threshold: int = 60
    dedupe_window_seconds: int = 3600
    alert_feed_size: int = 1000


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_nested_delimiter="__", extra="ignore")

    kafka_bootstrap: str = os.getenv("KAFKA_BOOTSTRAP", "kafka:9092")
    jwt_issuer: str = os.getenv("JWT_ISSUER", "points-ledger")
    jwt_secret: str = os.getenv("JWT_SECRET", "dev-secret-change")
    jwt_ttl_seconds: int = int(os.getenv("JWT_TTL_SECONDS", "3600"))

    database_url: Optional[str] = os.getenv("DATABASE_URL")
    mysql_user: str = os.getenv("MYSQL_USER", "root")
    mysql_password: str = os.getenv("MYSQL_PASSWORD", "root")
    mysql_host: str = os.getenv("MYSQL_HOST", "mysql")
    mysql_db: str = os.getenv("MYSQL_DB", "points")
    mysql_port: int = int(os.getenv("MYSQL_PORT", "3306"))

    redis_url: str = os.getenv("REDIS_URL", "redis://redis:6379/0")

    coupon_secret: str = os.getenv("COUPON_SECRET", "dev-coupon-secret-change")
    coupon_expiry_days: int = int(os.getenv("COUPON_EXPIRY_DAYS", "30"))
    attestation_secret: str = os.getenv("ATTESTATION_SECRET", "dev-attestation-secret")
    third_party_secret: str = os.getenv("THIRD_PARTY_SECRET", "dev-third-party-secret")
    attestation_cache_ttl_seconds: int = int(os.getenv("ATTESTATION_CACHE_TTL_SECONDS", "3600"))

    maintenance_interval_seconds: int = int(os.getenv("MAINTENANCE_INTERVAL_SECONDS", "3600"))

    trust_weights: TrustWeights = TrustWeights()
    thresholds: ValidationThresholds = ValidationThresholds()
    rate_limits: RateLimits = RateLimits()
    nonce: NonceSettings = NonceSettings()
    intake: IntakeWindow = IntakeWindow()
    fraud: FraudSettings = FraudSettings()

settings = Settings()

import os

# Settings read the environment at import time
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("REDIS_URL", "redis://127.0.0.1:6399/0")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("COUPON_SECRET", "test-coupon-secret")
os.environ.setdefault("ATTESTATION_SECRET", "test-attestation-secret")
os.environ.setdefault("THIRD_PARTY_SECRET", "test-third-party-secret")

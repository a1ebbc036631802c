import time, jwt
from typing import Dict, Optional
from common.settings import settings

ALGO = "HS256"
ATTESTATION_ISSUER = "device-attestation"
THIRD_PARTY_ISSUER = "proof-provider"

def mint_user_jwt(sub: str, scope: str = "user", claims: Optional[Dict] = None) -> str:
    now = int(time.time())
    payload = {
        "iss": settings.jwt_issuer,
        "sub": sub,
        "scope": scope,
        "iat": now,
        "exp": now + settings.jwt_ttl_seconds,
        **(claims or {}),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=ALGO)

def verify_token(token: str, audience: Optional[str] = None) -> Dict:
    options = {"require": ["exp", "iat", "iss", "sub"]}
    return jwt.decode(
        token,
        settings.jwt_secret,
        algorithms=[ALGO],
        audience=audience,
        options=options,
        issuer=settings.jwt_issuer,
    )

# Device attestation and third-party proofs arrive as JWTs signed by the
# attesting party with a shared secret.

def mint_attestation_token(device_id: str, ttl_seconds: int = 300, secret: Optional[str] = None) -> str:
    now = int(time.time())
    payload = {"iss": ATTESTATION_ISSUER, "device_id": device_id, "iat": now, "exp": now + ttl_seconds}
    return jwt.encode(payload, secret or settings.attestation_secret, algorithm=ALGO)

def verify_attestation_token(token: str, device_id: Optional[str]) -> bool:
    try:
        claims = jwt.decode(
            token,
            settings.attestation_secret,
            algorithms=[ALGO],
            options={"require": ["exp", "iat", "iss"]},
            issuer=ATTESTATION_ISSUER,
        )
    except jwt.PyJWTError:
        return False
    return bool(device_id) and claims.get("device_id") == device_id

def attestation_seconds_left(token: str) -> int:
    """Seconds until the token's `exp`; 0 when expired or unreadable. Signature is not checked here."""
    try:
        claims = jwt.decode(token, options={"verify_signature": False})
    except jwt.PyJWTError:
        return 0
    exp = claims.get("exp")
    if not isinstance(exp, (int, float)):
        return 0
    return max(int(exp - time.time()), 0)

def mint_third_party_proof(user_id: str, provider: str, ttl_seconds: int = 300, secret: Optional[str] = None) -> str:
    now = int(time.time())
    payload = {"iss": THIRD_PARTY_ISSUER, "sub": user_id, "provider": provider, "iat": now, "exp": now + ttl_seconds}
    return jwt.encode(payload, secret or settings.third_party_secret, algorithm=ALGO)

def verify_third_party_proof(token: str, user_id: str) -> bool:
    try:
        claims = jwt.decode(
            token,
            settings.third_party_secret,
            algorithms=[ALGO],
            options={"require": ["exp", "iat", "iss", "sub"]},
            issuer=THIRD_PARTY_ISSUER,
        )
    except jwt.PyJWTError:
        return False
    return claims.get("sub") == user_id and bool(claims.get("provider"))

"""
Bearer tokens for the guard service.

User tokens identify the payer (``sub``), carry a ``role`` and optionally the
``account_created_at`` unix timestamp. Service tokens carry no subject and are
scoped to one audience, e.g. the outcome callback of the payment executor.
"""
import time, jwt
from datetime import datetime, timezone
from typing import Dict, Optional
from .settings import Settings

ALGO = "HS256"

ROLES = {"USER", "SUPPLIER", "ADMIN"}

# Audience of the outcome callback token
AUD_OUTCOME = "payguard-outcome"

def _mint(config: Settings, ttl_seconds: int, claims: Dict) -> str:
    now = int(time.time())
    payload = {"iss": config.jwt_issuer, "iat": now, "exp": now + ttl_seconds, **claims}
    return jwt.encode(payload, config.jwt_secret, algorithm=ALGO)

def mint_user_jwt(config: Settings, sub: str, claims: Optional[Dict] = None) -> str:
    return _mint(config, config.jwt_ttl_seconds, {"sub": sub, **(claims or {})})

def mint_internal_jwt(config: Settings, aud: str, claims: Optional[Dict] = None) -> str:
    return _mint(config, config.internal_jwt_ttl_seconds, {"aud": aud, **(claims or {})})

def _decode(config: Settings, token: str, audience: Optional[str], required) -> Dict:
    return jwt.decode(
        token,
        config.jwt_secret,
        algorithms=[ALGO],
        audience=audience,
        options={"require": required},
        issuer=config.jwt_issuer,
    )

def verify_user_token(config: Settings, token: str) -> Dict:
    """
    Verify a user token and normalise its role claim.
    Tokens minted with an audience are service tokens and are rejected here.
    """
    claims = _decode(config, token, None, ["exp", "iat", "iss", "sub"])
    role = str(claims.get("role") or "USER").upper()
    if role not in ROLES:
        raise jwt.InvalidTokenError(f"unknown role {role}")
    claims["role"] = role
    return claims

def verify_service_token(config: Settings, token: str, audience: str) -> Dict:
    return _decode(config, token, audience, ["exp", "iat", "iss", "aud"])

def has_role(claims: Dict, *roles: str) -> bool:
    return claims.get("role") in roles

def account_created_at(claims: Dict) -> Optional[datetime]:
    value = claims.get("account_created_at")
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None

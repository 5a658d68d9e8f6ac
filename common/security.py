import time, jwt
from typing import Dict, Optional
from common.settings import settings

ALGO = "HS256"

def mint_user_jwt(sub: str, claims: Optional[Dict] = None) -> str:
    now = int(time.time())
    payload = {
        "iss": settings.jwt_issuer,
        "sub": str(sub),
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

def actor_from_token(token: str) -> int:
    """Return the numeric user id carried in the token subject."""
    claims = verify_token(token)
    try:
        actor_id = int(claims["sub"])
    except (TypeError, ValueError):
        raise jwt.InvalidTokenError("token subject is not a user id")
    if actor_id <= 0:
        raise jwt.InvalidTokenError("token subject is not a user id")
    return actor_id

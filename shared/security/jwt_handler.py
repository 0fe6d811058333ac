"""
Bearer tokens are issued by the platform's identity service; this cluster
only verifies them. Claims read here: `sub` (user id), `email`, `role`.
"""
from datetime import datetime, timedelta, timezone

import structlog
from jose import ExpiredSignatureError, JWTError, jwt

from shared.config.settings import ACCESS_TOKEN_EXPIRE_MINUTES, JWT_ALGORITHM, JWT_ISSUER, JWT_SECRET_KEY

logger = structlog.get_logger(__name__)

if not JWT_SECRET_KEY:
    raise ValueError("FATAL ERROR: JWT_SECRET_KEY is not set in the environment!")


def create_access_token(claims: dict, expires_delta: timedelta | None = None) -> str:
    """Signs a token the same way the identity service does; used by internal tooling and tests."""
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode = {**claims, "exp": expire}
    if JWT_ISSUER:
        to_encode.setdefault("iss", JWT_ISSUER)
    return jwt.encode(to_encode, JWT_SECRET_KEY, algorithm=JWT_ALGORITHM)


def verify_access_token(token: str) -> dict | None:
    """Returns the claims of a valid token, None when it is expired, forged or not for us."""
    try:
        return jwt.decode(
            token,
            JWT_SECRET_KEY,
            algorithms=[JWT_ALGORITHM],
            issuer=JWT_ISSUER or None,
        )
    except ExpiredSignatureError:
        logger.info("access_token_expired")
        return None
    except JWTError as e:
        logger.warning("access_token_rejected", error=str(e))
        return None

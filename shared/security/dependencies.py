from dataclasses import dataclass

from fastapi import Depends, HTTPException, status, Request
from fastapi.security import OAuth2PasswordBearer, APIKeyHeader
from .jwt_handler import verify_access_token
from .api_key import verify_api_key

# Defines the expected header format (Bearer <token>)
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="auth/login", auto_error=False)

# Defines the expected internal service header
api_key_header = APIKeyHeader(name="X-Internal-API-Key", auto_error=False)


@dataclass(frozen=True)
class CurrentUser:
    id: int
    email: str | None = None
    role: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def _credentials_exception() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )


def _user_from_token(token: str | None) -> CurrentUser | None:
    if not token:
        return None
    payload = verify_access_token(token)
    if payload is None or payload.get("sub") is None:
        return None
    try:
        user_id = int(payload["sub"])
    except (TypeError, ValueError):
        return None
    return CurrentUser(id=user_id, email=payload.get("email"), role=payload.get("role"))


async def get_current_user(request: Request, token: str = Depends(oauth2_scheme)) -> CurrentUser:
    """Dependency to validate the JWT and return the authenticated user."""
    user = _user_from_token(token)
    if user is None:
        raise _credentials_exception()

    # Store in request state for downstream use (logging context)
    request.state.user_id = user.id
    return user


async def get_optional_user(request: Request, token: str = Depends(oauth2_scheme)) -> CurrentUser | None:
    """Like get_current_user, but anonymous callers (guest carts) get None."""
    if not token:
        return None
    user = _user_from_token(token)
    if user is None:
        raise _credentials_exception()
    request.state.user_id = user.id
    return user


async def verify_internal_api_key(api_key: str = Depends(api_key_header)) -> bool:
    """Dependency to validate service-to-service internal requests."""
    if not verify_api_key(api_key):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid or missing X-Internal-API-Key header"
        )
    return True


async def require_admin(
    token: str = Depends(oauth2_scheme),
    api_key: str = Depends(api_key_header),
) -> CurrentUser | None:
    """Privileged endpoints: an admin JWT or the internal API key."""
    if api_key and verify_api_key(api_key):
        return None
    user = _user_from_token(token)
    if user is None:
        raise _credentials_exception()
    if not user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return user

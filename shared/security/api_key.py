"""
Internal API key for service-to-service calls and privileged operations
(refunds, provider administration, catalog writes, cart cleanup jobs).

An unset key falls back to a placeholder with a loud warning so local
development starts without a .env file; production misconfiguration stays
visible in the logs.
"""
import secrets
import warnings

from shared.config.settings import INTERNAL_API_KEY as _CONFIGURED_KEY

_PLACEHOLDER_KEY = "insecure-default-change-me"

if not _CONFIGURED_KEY:
    warnings.warn(
        "INTERNAL_API_KEY is not set; privileged endpoints accept a placeholder key. "
        "Set this env var in production!",
        stacklevel=2,
    )

INTERNAL_API_KEY: str = _CONFIGURED_KEY or _PLACEHOLDER_KEY


def verify_api_key(provided_key: str | None) -> bool:
    """Constant-time comparison against the configured key."""
    if not provided_key:
        return False
    return secrets.compare_digest(provided_key.encode(), INTERNAL_API_KEY.encode())

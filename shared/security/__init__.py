from .jwt_handler import create_access_token, verify_access_token
from .api_key import verify_api_key
from .dependencies import (
    CurrentUser,
    get_current_user,
    get_optional_user,
    require_admin,
    verify_internal_api_key,
)
from .encryption import encrypt_secret, decrypt_secret, DecryptionError

__all__ = [
    "create_access_token",
    "verify_access_token",
    "verify_api_key",
    "CurrentUser",
    "get_current_user",
    "get_optional_user",
    "require_admin",
    "verify_internal_api_key",
    "encrypt_secret",
    "decrypt_secret",
    "DecryptionError",
]

"""
Encryption of payment provider credentials at rest.

Secrets are stored as Fernet tokens; the Fernet key is derived from
PAYMENT_ENCRYPTION_KEY with scrypt so operators can configure any passphrase.
"""
import base64
from functools import lru_cache

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from shared.config.settings import PAYMENT_ENCRYPTION_KEY

_SALT = b"academy-payment-providers"


class DecryptionError(Exception):
    pass


@lru_cache(maxsize=4)
def _fernet(passphrase: str) -> Fernet:
    kdf = Scrypt(salt=_SALT, length=32, n=2**14, r=8, p=1)
    key = kdf.derive(passphrase.encode("utf-8"))
    return Fernet(base64.urlsafe_b64encode(key))


def encrypt_secret(plain: str | None, passphrase: str = PAYMENT_ENCRYPTION_KEY) -> str:
    if not plain or not plain.strip():
        return ""
    return _fernet(passphrase).encrypt(plain.encode("utf-8")).decode("ascii")


def decrypt_secret(token: str | None, passphrase: str = PAYMENT_ENCRYPTION_KEY) -> str:
    if not token or not token.strip():
        return ""
    try:
        return _fernet(passphrase).decrypt(token.encode("ascii")).decode("utf-8")
    except InvalidToken as exc:
        raise DecryptionError("Stored credential cannot be decrypted with the configured key") from exc

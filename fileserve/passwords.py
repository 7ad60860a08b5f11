import secrets
from functools import lru_cache

from werkzeug.security import check_password_hash, generate_password_hash

from .errors import InvalidInputError

# scrypt is memory-hard; werkzeug encodes the cost parameters and a random
# salt into the returned string.
PASSWORD_HASH_METHOD = "scrypt"
PASSWORD_SALT_LENGTH = 16
MAX_PASSWORD_LENGTH = 4096


def hash_password(password: str) -> str:
    """Return a self-contained, randomly salted credential for *password*."""

    if not isinstance(password, str):
        raise InvalidInputError("Password must be a string")
    if len(password) > MAX_PASSWORD_LENGTH:
        raise InvalidInputError(
            f"Password must be {MAX_PASSWORD_LENGTH} characters or less"
        )
    return generate_password_hash(
        password, method=PASSWORD_HASH_METHOD, salt_length=PASSWORD_SALT_LENGTH
    )


def verify_password(password: str, credential: str) -> bool:
    """Check *password* against *credential*; never raises.

    Malformed credentials and oversized or non-string passwords simply fail
    to verify.
    """

    if not isinstance(password, str) or not isinstance(credential, str):
        return False
    if len(password) > MAX_PASSWORD_LENGTH:
        return False
    try:
        return check_password_hash(credential, password)
    except (ValueError, TypeError):
        return False


@lru_cache(maxsize=1)
def _dummy_credential() -> str:
    return hash_password(secrets.token_urlsafe(16))


def burn_verification(password: str) -> None:
    """Spend one verification's worth of KDF work without a real credential."""

    verify_password(password if isinstance(password, str) else "", _dummy_credential())

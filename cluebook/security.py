"""Password hashing and admin-passphrase helpers for Cluebook."""

from __future__ import annotations

import hmac

import bcrypt

BCRYPT_ROUNDS = 10


def hash_password(plaintext: str) -> str:
    """Return a salted bcrypt hash for the provided password."""
    if not plaintext:
        raise ValueError("Password must be provided.")

    hashed = bcrypt.hashpw(plaintext.encode("utf-8"), bcrypt.gensalt(rounds=BCRYPT_ROUNDS))
    return hashed.decode("utf-8")


def verify_password(plaintext: str, password_hash: str) -> bool:
    """Check a login attempt against the stored hash."""
    if not plaintext or not password_hash:
        return False

    try:
        return bcrypt.checkpw(plaintext.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # malformed stored hash
        return False


def grants_admin(supplied: str | None, configured: str | None) -> bool:
    """True when the registration form carries the configured admin passphrase."""
    if not supplied or not configured:
        return False
    return hmac.compare_digest(supplied.encode("utf-8"), configured.encode("utf-8"))

"""Password hashing (bcrypt, 12 rounds)."""

import bcrypt

BCRYPT_ROUNDS = 12
_BCRYPT_PREFIXES = ("$2a$", "$2b$", "$2y$")


def hash_password(plain_password: str) -> str:
    return bcrypt.hashpw(plain_password.encode("utf-8"), bcrypt.gensalt(rounds=BCRYPT_ROUNDS)).decode("utf-8")


def verify_password(plain_password: str, password_hash: str | None) -> bool:
    """False for an empty hash (OAuth-only accounts) or anything that is not bcrypt."""
    if not plain_password or not password_hash or not password_hash.startswith(_BCRYPT_PREFIXES):
        return False
    return bcrypt.checkpw(plain_password.encode("utf-8"), password_hash.encode("utf-8"))

from __future__ import annotations

import secrets
from typing import List, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError

from marketsphere.service.errors import ValidationError

_hasher = PasswordHasher(type=Type.ID)

_SPECIAL_CHARACTERS = set("!@#$%^&*()_+-=[]{}|;':\",./<>?`~\\")
MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128


def hash_password(password: str) -> str:
    return _hasher.hash(password)


def verify_password(stored_hash: Optional[str], password: str) -> bool:
    """One-way comparison; unknown or corrupt hashes never verify."""
    if not stored_hash:
        return False
    try:
        return _hasher.verify(stored_hash, password)
    except (InvalidHashError, VerificationError):
        return False


def random_password_hash() -> str:
    """Hash of a random secret nobody knows, for accounts created through Google sign-in."""
    return hash_password(secrets.token_urlsafe(32))


# Verified against when the account does not exist so both failures cost one argon2 check
DUMMY_PASSWORD_HASH = random_password_hash()


def password_strength_problems(password: str) -> List[str]:
    problems: List[str] = []
    if len(password) < MIN_PASSWORD_LENGTH:
        problems.append(f"password must be at least {MIN_PASSWORD_LENGTH} characters")
    if len(password) > MAX_PASSWORD_LENGTH:
        problems.append(f"password must be at most {MAX_PASSWORD_LENGTH} characters")
    if not any(c.isupper() for c in password):
        problems.append("password must contain an uppercase letter")
    if not any(c.islower() for c in password):
        problems.append("password must contain a lowercase letter")
    if not any(c.isdigit() for c in password):
        problems.append("password must contain a digit")
    if not any(c in _SPECIAL_CHARACTERS for c in password):
        problems.append("password must contain a special character")
    return problems


def validate_password_strength(password: str) -> str:
    problems = password_strength_problems(password)
    if problems:
        raise ValidationError("password is too weak", detail={"problems": problems})
    return password

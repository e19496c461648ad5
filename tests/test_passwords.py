import pytest

from marketsphere.service.errors import ValidationError
from marketsphere.service.passwords import (
    hash_password,
    password_strength_problems,
    random_password_hash,
    validate_password_strength,
    verify_password,
)


def test_hash_and_verify():
    stored = hash_password("Corr3ct!Horse")
    assert stored.startswith("$argon2id$")
    assert verify_password(stored, "Corr3ct!Horse")
    assert not verify_password(stored, "wrong")


def test_missing_or_corrupt_hash_never_verifies():
    assert not verify_password(None, "anything")
    assert not verify_password("", "anything")
    assert not verify_password("not-an-argon2-hash", "anything")


def test_random_password_hash_is_unguessable():
    first = random_password_hash()
    assert first != random_password_hash()
    assert not verify_password(first, "")


def test_strength_problems():
    problems = password_strength_problems("short")
    assert any("at least 8" in p for p in problems)
    assert any("uppercase" in p for p in problems)
    assert password_strength_problems("Str0ng!Pass") == []


def test_validate_password_strength_raises():
    with pytest.raises(ValidationError) as excinfo:
        validate_password_strength("weakpassword")
    assert excinfo.value.status_code == 400
    assert excinfo.value.detail["problems"]

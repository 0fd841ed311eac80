"""
Unit tests for temporary passwords and scrypt hashing.
"""
import pytest

from ciliosclick.core.crypto import (
    PASSWORD_ALPHABET,
    PasswordHasher,
    generate_temporary_password,
    get_password_hasher,
)


def test_generate_temporary_password_length_and_alphabet():
    """Test generated passwords use the configured length and alphabet."""
    password = generate_temporary_password(16)
    assert len(password) == 16
    assert set(password) <= set(PASSWORD_ALPHABET)


def test_generate_temporary_password_is_random():
    """Test two passwords differ."""
    assert generate_temporary_password() != generate_temporary_password()


def test_generate_temporary_password_minimum_length():
    with pytest.raises(ValueError):
        generate_temporary_password(4)


def test_hash_and_verify():
    """Test a password verifies against its own hash only."""
    hasher = PasswordHasher(n=2 ** 4)
    encoded = hasher.hash("Abc123!@")

    assert encoded.startswith("scrypt$16$8$1$")
    assert "Abc123!@" not in encoded
    assert hasher.verify("Abc123!@", encoded) is True
    assert hasher.verify("wrong", encoded) is False


def test_hash_is_salted():
    hasher = PasswordHasher(n=2 ** 4)
    assert hasher.hash("same") != hasher.hash("same")


def test_verify_uses_parameters_from_hash():
    """Test hashes made with other parameters still verify."""
    encoded = PasswordHasher(n=2 ** 5).hash("pw123456")
    assert PasswordHasher(n=2 ** 4).verify("pw123456", encoded) is True


@pytest.mark.parametrize("encoded", [None, "", "bcrypt$x", "scrypt$a$b$c$d$e", "scrypt$16$8$1$!!$!!"])
def test_verify_malformed_hash(encoded):
    """Test malformed hashes are rejected, not raised."""
    assert PasswordHasher(n=2 ** 4).verify("pw", encoded) is False


def test_get_password_hasher_singleton():
    assert get_password_hasher() is get_password_hasher()

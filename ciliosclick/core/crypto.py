"""
Temporary password generation and scrypt hashing for pre-provisioned accounts.
"""
import base64
import os
import secrets
import string
from typing import Optional

from cryptography.exceptions import InvalidKey
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

PASSWORD_ALPHABET = string.ascii_letters + string.digits + "!@#$%^&*"


def generate_temporary_password(length: int = 12) -> str:
    """Random password drawn from letters, digits and a few symbols."""
    if length < 8:
        raise ValueError("Temporary passwords must be at least 8 characters")
    return "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))


def _b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _b64decode(data: str) -> bytes:
    return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))


class PasswordHasher:
    """
    Hashes passwords with scrypt.

    Encoded form: ``scrypt$<n>$<r>$<p>$<salt>$<hash>`` so parameters can be
    raised later without invalidating stored hashes.
    """

    def __init__(self, n: int = 2 ** 14, r: int = 8, p: int = 1, salt_size: int = 16):
        self.n = n
        self.r = r
        self.p = p
        self.salt_size = salt_size

    def _kdf(self, salt: bytes, n: int, r: int, p: int) -> Scrypt:
        return Scrypt(salt=salt, length=32, n=n, r=r, p=p)

    def hash(self, password: str) -> str:
        """Hash a plaintext password."""
        salt = os.urandom(self.salt_size)
        derived = self._kdf(salt, self.n, self.r, self.p).derive(password.encode("utf-8"))
        return "$".join((
            "scrypt",
            str(self.n),
            str(self.r),
            str(self.p),
            _b64encode(salt),
            _b64encode(derived),
        ))

    def verify(self, password: str, encoded: Optional[str]) -> bool:
        """Check a plaintext password against an encoded hash."""
        if not encoded:
            return False

        parts = encoded.split("$")
        if len(parts) != 6 or parts[0] != "scrypt":
            return False

        try:
            n, r, p = int(parts[1]), int(parts[2]), int(parts[3])
            salt = _b64decode(parts[4])
            expected = _b64decode(parts[5])
        except ValueError:
            return False

        try:
            self._kdf(salt, n, r, p).verify(password.encode("utf-8"), expected)
        except (InvalidKey, ValueError):
            return False
        return True


# Global instance
_password_hasher: Optional[PasswordHasher] = None


def get_password_hasher() -> PasswordHasher:
    """Get or create the global password hasher instance."""
    global _password_hasher
    if _password_hasher is None:
        _password_hasher = PasswordHasher()
    return _password_hasher

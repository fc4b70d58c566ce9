"""
Credential hashing.
"""

from typing import Iterable

from passlib.context import CryptContext


class PasswordHasher:
    """One-way password hashing backed by a passlib context."""

    def __init__(self, schemes: Iterable[str] = ("pbkdf2_sha256",)):
        self.context = CryptContext(schemes=list(schemes), deprecated="auto")

    def hash(self, plain_password: str) -> str:
        return self.context.hash(plain_password)

    def verify(self, plain_password: str, hashed_password: str) -> bool:
        return self.context.verify(plain_password, hashed_password)

    def needs_rehash(self, hashed_password: str) -> bool:
        return self.context.needs_update(hashed_password)

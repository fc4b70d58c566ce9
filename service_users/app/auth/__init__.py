"""
Authentication for the Users service: bearer JWT verification, role
checks and credential hashing.
"""

from .jwt import AuthContext, JWTAuthenticator
from .passwords import PasswordHasher

__all__ = ["AuthContext", "JWTAuthenticator", "PasswordHasher"]

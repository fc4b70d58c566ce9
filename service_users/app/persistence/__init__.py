"""
Persistence package for the Users service.

SQLAlchemy async ORM over any async driver (asyncpg in production,
aiosqlite locally and in tests).
"""

from .database import Database
from .models import Base, Client, User
from .repositories import ClientRepository, UserRepository

__all__ = ["Base", "Client", "ClientRepository", "Database", "User", "UserRepository"]

"""
Repositories for the Users service.
"""

from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .models import Client, User


# Largest value a 64-bit signed INTEGER column (SQLite, PostgreSQL BIGINT) can hold
MAX_ROW_ID = 2**63 - 1


def is_storable_id(value: int) -> bool:
    return 1 <= value <= MAX_ROW_ID


class ClientRepository:
    """Lookup access to clients."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def find(self, client_id: int) -> Optional[Client]:
        if not is_storable_id(client_id):
            return None
        return await self.session.get(Client, client_id)


class UserRepository:
    """Query and unit-of-work helpers for users."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def find(self, user_id: int) -> Optional[User]:
        if not is_storable_id(user_id):
            return None
        return await self.session.get(User, user_id)

    async def find_all_with_pagination(self, page: int, limit: int) -> List[User]:
        """Return one page of users in primary key order. ``page`` is 1-based."""
        offset = (page - 1) * limit
        if offset + limit > MAX_ROW_ID:
            return []

        statement = (
            select(User)
            .order_by(User.id)
            .offset(offset)
            .limit(limit)
        )
        result = await self.session.execute(statement)
        return list(result.scalars().all())

    async def count(self) -> int:
        result = await self.session.execute(select(func.count()).select_from(User))
        return int(result.scalar_one())

    async def email_exists(self, email: str, exclude_id: Optional[int] = None) -> bool:
        statement = select(User.id).where(func.lower(User.email) == email.lower())
        if exclude_id is not None:
            statement = statement.where(User.id != exclude_id)
        result = await self.session.execute(statement.limit(1))
        return result.first() is not None

    def add(self, user: User) -> None:
        self.session.add(user)

    async def remove(self, user: User) -> None:
        await self.session.delete(user)

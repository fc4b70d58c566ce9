"""
User management orchestration.

Reads go through the tag-aware cache; every successful create, update or
delete drops the whole users tag. By default the tag is dropped before the
write is attempted (``eager``), so a rejected write still empties the cache;
``post_commit`` defers the invalidation until the commit has succeeded.
"""

import json
from typing import Any, Dict, List, Optional, Tuple, TYPE_CHECKING

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from shared.errors import BadRequestError, NotFoundError, ValidationError
from shared.logging import get_logger
from ..auth.passwords import PasswordHasher
from ..caching.tag_cache import TagAwareCache
from ..persistence.models import Client, User
from ..persistence.repositories import MAX_ROW_ID, ClientRepository, UserRepository
from .schemas import UserCreate, UserUpdate, serialize_user, serialize_users, violations_from

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


INVALIDATION_MODES = ("eager", "post_commit")
EMPTY_UPDATE_MESSAGE = "No data provided for the update (email or password)"
EMAIL_TAKEN_MESSAGE = "This email is already in use."


def parse_positive_int(raw: Any, default: int) -> int:
    """Coerce a query value to a positive int, falling back to ``default``."""
    if raw is None:
        return default
    try:
        value = int(str(raw).strip())
    except (TypeError, ValueError):
        return default
    return value if value >= 1 else default


class UserService:
    """Orchestrates cache, validation, hashing and persistence for users."""

    def __init__(
        self,
        cache: TagAwareCache,
        password_hasher: PasswordHasher,
        *,
        cache_tag: str = "usersCache",
        cache_ttl: int = 240,
        default_role: str = "ROLE_USER",
        invalidation: str = "eager",
        default_page: int = 1,
        default_limit: int = 10,
        max_page_size: int = 100,
        metrics: Optional["MetricsCollector"] = None,
    ):
        if invalidation not in INVALIDATION_MODES:
            raise ValueError(f"Unknown cache invalidation mode: {invalidation}")

        self.cache = cache
        self.password_hasher = password_hasher
        self.cache_tag = cache_tag
        self.cache_ttl = cache_ttl
        self.default_role = default_role
        self.invalidation = invalidation
        self.default_page = default_page
        self.default_limit = default_limit
        self.max_page_size = max_page_size
        self.metrics = metrics
        self.logger = get_logger("users.service")

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    def resolve_pagination(self, page: Any, limit: Any) -> Tuple[int, int]:
        page_number = parse_positive_int(page, self.default_page)
        page_size = min(parse_positive_int(limit, self.default_limit), self.max_page_size)
        # Pages past the last addressable row all resolve to the same empty page
        page_number = min(page_number, MAX_ROW_ID // page_size + 1)
        return page_number, page_size

    async def list_users(self, session: AsyncSession, page: Any = None, limit: Any = None) -> str:
        """Return the serialized page of users, from cache when possible."""
        page_number, page_size = self.resolve_pagination(page, limit)
        cache_key = f"getAllUsers-{page_number}-{page_size}"
        users = UserRepository(session)

        async def produce() -> str:
            return serialize_users(await users.find_all_with_pagination(page_number, page_size))

        return await self.cache.get(cache_key, produce, tags=[self.cache_tag], ttl=self.cache_ttl)

    async def get_user(self, session: AsyncSession, user_id: int) -> str:
        """Return one serialized user, from cache when possible."""
        cache_key = f"getDetailUser-{user_id}"
        users = UserRepository(session)

        async def produce() -> str:
            user = await users.find(user_id)
            if user is None:
                raise NotFoundError("User not found", details={"user_id": user_id})
            return serialize_user(user)

        return await self.cache.get(cache_key, produce, tags=[self.cache_tag], ttl=self.cache_ttl)

    # ------------------------------------------------------------------
    # Mutation path
    # ------------------------------------------------------------------

    async def create_user(self, session: AsyncSession, client_id: int, body: bytes) -> Tuple[User, str]:
        """Create a user under ``client_id``; returns the entity and its projection."""
        await self._invalidate("eager")

        payload = self._decode_object(body)
        try:
            data = UserCreate.model_validate(payload)
        except PydanticValidationError as e:
            raise self._validation_error(violations_from(e))

        users = UserRepository(session)
        await self._check_email_available(users, data.email)

        client = await self._resolve_client(session, client_id)

        user = User(
            email=data.email,
            first_name=data.first_name,
            last_name=data.last_name,
            password=self.password_hasher.hash(data.password),
            roles=[self.default_role],
        )
        user.client = client
        users.add(user)
        await session.commit()

        await self._invalidate("post_commit")
        self._record_event("user_created")
        self.logger.info("User created", user_id=user.id, client_id=client.id)
        return user, serialize_user(user)

    async def update_user(self, session: AsyncSession, client_id: int, user_id: int, body: bytes) -> User:
        """Merge ``body`` onto an existing user and reassign it to ``client_id``."""
        users = UserRepository(session)
        user = await self._resolve_user(users, user_id)

        await self._invalidate("eager")

        try:
            payload = json.loads(body) if body else None
        except (ValueError, UnicodeDecodeError):
            payload = None
        if not payload or not isinstance(payload, dict):
            raise BadRequestError(EMPTY_UPDATE_MESSAGE)

        # Fields absent from the body keep their stored value
        merged: Dict[str, Any] = {
            "email": user.email,
            "first_name": user.first_name,
            "last_name": user.last_name,
        }
        merged.update({key: value for key, value in payload.items() if key in UserUpdate.model_fields})

        client = await self._resolve_client(session, client_id)

        try:
            data = UserUpdate.model_validate(merged)
        except PydanticValidationError as e:
            raise self._validation_error(violations_from(e))
        await self._check_email_available(users, data.email, exclude_id=user.id)

        user.email = data.email
        user.first_name = data.first_name
        user.last_name = data.last_name
        user.client = client
        if payload.get("password"):
            user.password = self.password_hasher.hash(data.password)

        await session.commit()

        await self._invalidate("post_commit")
        self._record_event("user_updated")
        self.logger.info("User updated", user_id=user.id, client_id=client.id)
        return user

    async def delete_user(self, session: AsyncSession, client_id: int, user_id: int) -> None:
        """Delete a user. ``client_id`` only scopes the route."""
        users = UserRepository(session)
        user = await self._resolve_user(users, user_id)

        await self._invalidate("eager")

        await users.remove(user)
        await session.commit()

        await self._invalidate("post_commit")
        self._record_event("user_deleted")
        self.logger.info("User deleted", user_id=user_id, client_id=client_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _invalidate(self, stage: str) -> None:
        if stage == self.invalidation:
            await self.cache.invalidate_tags([self.cache_tag])

    async def _resolve_user(self, users: UserRepository, user_id: int) -> User:
        user = await users.find(user_id)
        if user is None:
            raise NotFoundError("User not found", details={"user_id": user_id})
        return user

    async def _resolve_client(self, session: AsyncSession, client_id: int) -> Client:
        client = await ClientRepository(session).find(client_id)
        if client is None:
            raise NotFoundError("Client not found", details={"client_id": client_id})
        return client

    async def _check_email_available(
        self, users: UserRepository, email: str, exclude_id: Optional[int] = None
    ) -> None:
        if await users.email_exists(email, exclude_id=exclude_id):
            raise self._validation_error([{"field": "email", "message": EMAIL_TAKEN_MESSAGE}])

    def _decode_object(self, body: bytes) -> Dict[str, Any]:
        try:
            payload = json.loads(body)
        except (ValueError, UnicodeDecodeError):
            raise BadRequestError("Request body is not valid JSON")
        if not isinstance(payload, dict):
            raise BadRequestError("Request body must be a JSON object")
        return payload

    def _validation_error(self, violations: List[Dict[str, Any]]) -> ValidationError:
        self.logger.info("User validation failed", violations=violations)
        return ValidationError(violations=violations)

    def _record_event(self, event_type: str) -> None:
        if self.metrics:
            self.metrics.record_business_event(event_type)

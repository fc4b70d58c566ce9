"""
Users service for the Client Users API.
"""

from typing import AsyncIterator, Optional

from fastapi import Depends, Query, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from shared.base_service import BaseService
from shared.config import ServiceConfig, get_config
from shared.logging import set_user_context

from .auth import AuthContext, JWTAuthenticator, PasswordHasher
from .caching import create_tag_cache
from .persistence import Database
from .users import UserService


JSON_MEDIA_TYPE = "application/json"


class UsersService(BaseService):
    """Users service implementation."""

    def __init__(self, config: Optional[ServiceConfig] = None):
        super().__init__("users", 8013, config or get_config("users", 8013))

        self.database = Database(
            self.config.database_url,
            echo=self.config.database_echo,
            create_tables=self.config.create_tables,
        )
        self.cache = create_tag_cache(self.config, self.metrics)
        self.password_hasher = PasswordHasher(self.config.password_schemes)
        self.authenticator = JWTAuthenticator(
            self.config.jwt_secret,
            algorithm=self.config.jwt_algorithm,
            audience=self.config.jwt_audience,
            issuer=self.config.jwt_issuer,
        )
        self.user_service = UserService(
            self.cache,
            self.password_hasher,
            cache_tag=self.config.users_cache_tag,
            cache_ttl=self.config.users_cache_ttl,
            default_role=self.config.default_user_role,
            invalidation=self.config.cache_invalidation,
            default_page=self.config.default_page,
            default_limit=self.config.default_limit,
            max_page_size=self.config.max_page_size,
            metrics=self.metrics,
        )

        self._setup_users_routes()

    def _setup_users_routes(self):
        """Set up users-specific routes."""
        role = self.config.required_role
        can_list = self.authenticator.require_role(role, "You do not have the rights to view users")
        can_view = self.authenticator.require_role(role, "You do not have the rights to view a user's details")
        can_delete = self.authenticator.require_role(role, "You do not have the rights to delete a user")
        can_create = self.authenticator.require_role(role, "You do not have the rights to create a user")
        can_update = self.authenticator.require_role(role, "You do not have the rights to update a user")

        async def get_session() -> AsyncIterator[AsyncSession]:
            async with self.database.session() as session:
                yield session

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "users",
                "message": "Client Users API - Users Service",
                "version": "1.0.0",
                "capabilities": ["users", "caching", "persistence"]
            }

        @self.app.get("/stats")
        async def get_stats():
            """Cache statistics."""
            return {"cache": await self.cache.get_stats()}

        @self.app.get("/api/users", name="users")
        async def list_users(
            page: Optional[str] = Query(None, description="Page number, 1-based"),
            limit: Optional[str] = Query(None, description="Users per page"),
            auth: AuthContext = Depends(can_list),
            session: AsyncSession = Depends(get_session),
        ):
            """List users one page at a time."""
            payload = await self.user_service.list_users(session, page, limit)
            return Response(content=payload, media_type=JSON_MEDIA_TYPE)

        @self.app.get("/api/users/{user_id}", name="detail_user")
        async def get_user(
            user_id: int,
            auth: AuthContext = Depends(can_view),
            session: AsyncSession = Depends(get_session),
        ):
            """Get one user."""
            payload = await self.user_service.get_user(session, user_id)
            return Response(content=payload, media_type=JSON_MEDIA_TYPE)

        @self.app.delete("/api/clients/{client_id}/users/{user_id}", name="delete_user", status_code=204)
        async def delete_user(
            client_id: int,
            user_id: int,
            auth: AuthContext = Depends(can_delete),
            session: AsyncSession = Depends(get_session),
        ):
            """Delete a client's user."""
            set_user_context(client_id=str(client_id))
            await self.user_service.delete_user(session, client_id, user_id)
            return Response(status_code=204)

        @self.app.post("/api/clients/{client_id}/users", name="create_user", status_code=201)
        async def create_user(
            client_id: int,
            request: Request,
            auth: AuthContext = Depends(can_create),
            session: AsyncSession = Depends(get_session),
        ):
            """Create a user for a client."""
            set_user_context(client_id=str(client_id))
            user, payload = await self.user_service.create_user(session, client_id, await request.body())
            location = str(request.url_for("detail_user", user_id=user.id))
            return Response(
                content=payload,
                status_code=201,
                headers={"Location": location},
                media_type=JSON_MEDIA_TYPE,
            )

        @self.app.put("/api/clients/{client_id}/users/{user_id}", name="update_user", status_code=204)
        async def update_user(
            client_id: int,
            user_id: int,
            request: Request,
            auth: AuthContext = Depends(can_update),
            session: AsyncSession = Depends(get_session),
        ):
            """Update a client's user."""
            set_user_context(client_id=str(client_id))
            await self.user_service.update_user(session, client_id, user_id, await request.body())
            return Response(status_code=204)

    async def _check_dependencies(self):
        """Check users service dependencies."""
        dependencies = {}

        try:
            dependencies["database"] = "ok" if await self.database.health_check() else "error"
        except Exception:
            dependencies["database"] = "error"

        try:
            dependencies["cache"] = "ok" if await self.cache.health_check() else "error"
        except Exception:
            dependencies["cache"] = "error"

        return dependencies

    async def start(self):
        """Start users service components."""
        await self.database.initialize()
        await self.cache.start()
        self.logger.info(
            "Users service started",
            cache_backend=self.config.cache_backend,
            cache_invalidation=self.config.cache_invalidation,
        )

    async def stop(self):
        """Stop users service components."""
        await self.cache.stop()
        await self.database.close()
        self.logger.info("Users service stopped")


def create_app(config: Optional[ServiceConfig] = None):
    """Create users service application."""
    service = UsersService(config)
    return service.app


if __name__ == "__main__":
    service = UsersService()
    service.run()

"""
Bearer token authentication and role checks for the Users service.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from fastapi import Request
from jose import JWTError, jwt

from shared.errors import AuthenticationError, AuthorizationError
from shared.logging import get_logger, set_user_context


@dataclass(frozen=True)
class AuthContext:
    """Authenticated request context derived from a verified JWT."""

    subject: str
    roles: Set[str]
    claims: Dict[str, Any]

    def has_role(self, role: str) -> bool:
        return role in self.roles


class JWTAuthenticator:
    """Validates HMAC/RSA signed JWTs issued by an external identity provider."""

    def __init__(
        self,
        key: str,
        algorithm: str = "HS256",
        audience: Optional[str] = None,
        issuer: Optional[str] = None,
    ) -> None:
        self.key = key
        self.algorithm = algorithm
        self.audience = audience
        self.issuer = issuer
        self.logger = get_logger("users.auth.jwt")

    async def authenticate(self, request: Request) -> AuthContext:
        """Authenticate the incoming request using the Authorization bearer token."""
        authorization = request.headers.get("Authorization")
        if not authorization or not authorization.lower().startswith("bearer "):
            raise AuthenticationError("Missing or invalid Authorization header")

        token = authorization[7:].strip()
        if not token:
            raise AuthenticationError("Authorization header contained empty bearer token")

        claims = self._validate_token(token)
        subject = claims.get("sub")
        if subject is None or subject == "":
            raise AuthenticationError("JWT missing subject claim")

        context = AuthContext(
            subject=str(subject),
            roles=self._extract_roles(claims),
            claims=claims,
        )

        request.state.auth_context = context
        set_user_context(user_id=context.subject)
        return context

    def require_role(self, role: str, message: Optional[str] = None) -> Callable[[Request], Awaitable[AuthContext]]:
        """Build a FastAPI dependency that rejects callers lacking ``role``."""

        async def dependency(request: Request) -> AuthContext:
            context = await self.authenticate(request)
            if not context.has_role(role):
                self.logger.warning(
                    "Role check failed",
                    subject=context.subject,
                    required_role=role,
                    path=request.url.path,
                )
                raise AuthorizationError(
                    message or f"Missing required role '{role}'",
                    details={"required_role": role},
                )
            return context

        return dependency

    def _validate_token(self, token: str) -> Dict[str, Any]:
        """Validate the JWT and return its claims."""
        options: Dict[str, Any] = {"verify_aud": self.audience is not None}

        try:
            return jwt.decode(
                token,
                self.key,
                algorithms=[self.algorithm],
                audience=self.audience,
                issuer=self.issuer,
                options=options,
            )
        except JWTError as exc:
            self.logger.warning("JWT validation failed", error=str(exc))
            raise AuthenticationError("JWT validation failed", details={"error": str(exc)}) from exc

    def _extract_roles(self, claims: Dict[str, Any]) -> Set[str]:
        """Extract roles from flat and Keycloak-style token structures."""
        roles: Set[str] = set()

        direct_roles = claims.get("roles")
        if isinstance(direct_roles, list):
            roles.update(role for role in direct_roles if isinstance(role, str))

        realm_access = claims.get("realm_access", {})
        if isinstance(realm_access, dict):
            realm_roles = realm_access.get("roles")
            if isinstance(realm_roles, list):
                roles.update(role for role in realm_roles if isinstance(role, str))

        resource_access = claims.get("resource_access", {})
        if isinstance(resource_access, dict):
            for resource in resource_access.values():
                if isinstance(resource, dict):
                    resource_roles = resource.get("roles")
                    if isinstance(resource_roles, list):
                        roles.update(role for role in resource_roles if isinstance(role, str))

        return roles

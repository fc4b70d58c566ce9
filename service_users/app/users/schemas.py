"""
Request and response models for the Users API.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, TypeAdapter, field_serializer, field_validator
from pydantic import ValidationError as PydanticValidationError


BLANK_MESSAGE = "This value should not be blank."
EMAIL_MAX_LENGTH = 180


class UserWrite(BaseModel):
    """Fields a caller may set on a user. Unknown fields are ignored."""

    model_config = ConfigDict(extra="ignore")

    email: EmailStr
    first_name: Optional[str] = Field(default=None, max_length=255)
    last_name: Optional[str] = Field(default=None, max_length=255)

    @field_validator("email", mode="before")
    @classmethod
    def email_not_blank(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            raise ValueError(BLANK_MESSAGE)
        return value

    @field_validator("email")
    @classmethod
    def email_fits_column(cls, value: str) -> str:
        if len(value) > EMAIL_MAX_LENGTH:
            raise ValueError(f"This value is too long. It should have {EMAIL_MAX_LENGTH} characters or less.")
        return value


class UserCreate(UserWrite):
    """Payload of ``POST /api/clients/{client_id}/users``."""

    password: str = Field(max_length=4096)

    @field_validator("password")
    @classmethod
    def password_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError(BLANK_MESSAGE)
        return value


class UserUpdate(UserWrite):
    """A user after an update body has been merged onto it."""

    password: Optional[str] = Field(default=None, max_length=4096)

    @field_validator("password")
    @classmethod
    def password_not_blank(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.strip():
            raise ValueError(BLANK_MESSAGE)
        return value


class ClientRef(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str


class UserView(BaseModel):
    """Public projection of a user; the password hash is never part of it."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    roles: List[str] = Field(default_factory=list)
    client: ClientRef
    created_at: datetime

    @field_serializer("created_at")
    def serialize_created_at(self, value: datetime) -> str:
        # SQLite hands back naive datetimes; everything is stored as UTC
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat()


_user_list_adapter = TypeAdapter(List[UserView])


def serialize_user(user: Any) -> str:
    return UserView.model_validate(user).model_dump_json()


def serialize_users(users: List[Any]) -> str:
    views = [UserView.model_validate(user) for user in users]
    return _user_list_adapter.dump_json(views).decode("utf-8")


def violations_from(error: PydanticValidationError) -> List[Dict[str, Any]]:
    """Flatten pydantic errors into ``{field, message}`` violations."""
    violations = []
    for item in error.errors():
        field = ".".join(str(part) for part in item.get("loc", ())) or "body"
        message = item.get("msg", "Invalid value")
        # pydantic prefixes custom validator messages
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        violations.append({"field": field, "message": message})
    return violations

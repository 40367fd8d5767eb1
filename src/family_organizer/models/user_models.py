"""
Pydantic models for users and the authenticated actor.

A User is a family member record. An Actor is the already-authenticated
identity handed to the managers by the request layer: just enough of the
user (id, role, family) for access decisions.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from family_organizer.utils.datetime_utils import ensure_timezone_aware, utc_now

PASSWORD_MIN_LENGTH = 6


class UserRole(str, Enum):
    """Roles a user can hold inside a family."""

    ADMIN = "admin"
    MEMBER = "member"


class Actor(BaseModel):
    """The identity performing an operation."""

    model_config = ConfigDict(frozen=True)

    id: str
    role: UserRole = UserRole.MEMBER
    family_id: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


class User(BaseModel):
    """Stored user record."""

    id: str = Field(..., description="Stable user handle")
    unique_id: str = Field(..., description="Globally unique identity")
    email: Optional[EmailStr] = None
    name: str = Field(..., min_length=2, max_length=100)
    role: UserRole = UserRole.MEMBER
    avatar: str = ""
    family_id: Optional[str] = None
    joined_family_at: Optional[datetime] = None
    is_active: bool = True
    password_hash: Optional[str] = None
    login_attempts: int = Field(0, ge=0)
    locked_until: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator("name")
    @classmethod
    def strip_name(cls, v):
        v = v.strip()
        if len(v) < 2:
            raise ValueError("Name must be at least 2 characters long")
        return v

    def is_locked(self, now: Optional[datetime] = None) -> bool:
        if self.locked_until is None:
            return False
        return ensure_timezone_aware(self.locked_until) > ensure_timezone_aware(now or utc_now())

    def to_actor(self) -> Actor:
        return Actor(id=self.id, role=self.role, family_id=self.family_id)

    def to_document(self) -> Dict[str, Any]:
        document = self.model_dump(mode="python")
        document["role"] = self.role.value
        return document

    def safe_view(self) -> Dict[str, Any]:
        """User data safe to return to clients (no credentials or lockout counters)."""
        return self.model_dump(
            mode="json",
            exclude={"password_hash", "login_attempts", "locked_until"},
        )

    def member_preview(self) -> Dict[str, Any]:
        """Public preview shown to prospective members (no email)."""
        joined = self.joined_family_at or self.created_at
        return {
            "name": self.name,
            "avatar": self.avatar,
            "role": self.role.value,
            "joined_at": joined.isoformat(),
        }


class RegisterUserRequest(BaseModel):
    """Request model for registering a user."""

    email: EmailStr = Field(..., description="Login email address")
    name: str = Field(..., min_length=2, max_length=100)
    password: str = Field(..., min_length=PASSWORD_MIN_LENGTH, description="Plain-text password, hashed on storage")
    role: UserRole = UserRole.MEMBER
    avatar: str = ""
    family_id: Optional[str] = None

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v):
        return v.strip().lower()

    @field_validator("name")
    @classmethod
    def validate_name(cls, v):
        v = v.strip()
        if len(v) < 2:
            raise ValueError("Name must be at least 2 characters long")
        return v

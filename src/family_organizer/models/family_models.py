"""
Pydantic models for families.

This module contains the stored Family record, its admission settings,
request models for creating and updating families, and the redacted views
returned to non-admin callers.
"""

from datetime import datetime
import string
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from family_organizer.config import settings
from family_organizer.utils.datetime_utils import utc_now

FAMILY_CODE_ALPHABET = string.ascii_uppercase + string.digits
FAMILY_CODE_LENGTH = 6
FAMILY_NAME_MIN_LENGTH = 2
FAMILY_NAME_MAX_LENGTH = 50
FAMILY_DESCRIPTION_MAX_LENGTH = 200


def _clean_family_name(v: str) -> str:
    v = v.strip()
    if len(v) < FAMILY_NAME_MIN_LENGTH:
        raise ValueError("Family name must be at least 2 characters long")
    if len(v) > FAMILY_NAME_MAX_LENGTH:
        raise ValueError("Family name must be less than 50 characters")
    return v


def _clean_description(v: Optional[str]) -> str:
    v = (v or "").strip()
    if len(v) > FAMILY_DESCRIPTION_MAX_LENGTH:
        raise ValueError("Description must be less than 200 characters")
    return v


def is_valid_family_code(code: str, length: int = FAMILY_CODE_LENGTH) -> bool:
    return isinstance(code, str) and len(code) == length and all(c in FAMILY_CODE_ALPHABET for c in code)


class FamilySettings(BaseModel):
    """Admission settings for a family."""

    allow_member_invites: bool = True
    require_admin_approval: bool = False
    max_members: int = Field(default_factory=lambda: settings.DEFAULT_MAX_MEMBERS, ge=1)


class Family(BaseModel):
    """Stored family record."""

    family_id: str
    family_name: str = Field(..., min_length=FAMILY_NAME_MIN_LENGTH, max_length=FAMILY_NAME_MAX_LENGTH)
    family_code: str
    admin_user_id: Optional[str] = None
    description: str = Field("", max_length=FAMILY_DESCRIPTION_MAX_LENGTH)
    member_count: int = Field(0, ge=0)
    is_active: bool = True
    settings: FamilySettings = Field(default_factory=FamilySettings)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator("family_code")
    @classmethod
    def validate_family_code(cls, v):
        v = v.strip().upper()
        if not is_valid_family_code(v):
            raise ValueError("Family code must be 6 uppercase alphanumeric characters")
        return v

    def can_accept_new_members(self) -> bool:
        return self.is_active and self.member_count < self.settings.max_members

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(mode="python")

    def public_view(self) -> Dict[str, Any]:
        """Family data safe for non-admin callers (no code, admin or settings)."""
        return {
            "family_id": self.family_id,
            "family_name": self.family_name,
            "description": self.description,
            "member_count": self.member_count,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat(),
        }


class CreateFamilyRequest(BaseModel):
    """Request model for creating a new family."""

    family_name: str = Field(..., description="Display name of the family")
    description: str = Field("", description="Optional description")
    settings: Optional[FamilySettings] = None

    @field_validator("family_name")
    @classmethod
    def validate_family_name(cls, v):
        return _clean_family_name(v)

    @field_validator("description", mode="before")
    @classmethod
    def validate_description(cls, v):
        return _clean_description(v)


class UpdateFamilyRequest(BaseModel):
    """Partial update of a family. Settings are merged shallowly."""

    family_name: Optional[str] = None
    description: Optional[str] = None
    settings: Optional[Dict[str, Any]] = None

    @field_validator("family_name")
    @classmethod
    def validate_family_name(cls, v):
        if v is None:
            return v
        return _clean_family_name(v)

    @field_validator("description")
    @classmethod
    def validate_description(cls, v):
        if v is None:
            return v
        return _clean_description(v)

    @field_validator("settings")
    @classmethod
    def validate_settings_keys(cls, v):
        if v is None:
            return v
        unknown = set(v) - set(FamilySettings.model_fields)
        if unknown:
            raise ValueError(f"Unknown family settings: {', '.join(sorted(unknown))}")
        return v


class FamilyPreview(BaseModel):
    """Result of looking a family up by its join code."""

    family: Dict[str, Any]
    members: List[Dict[str, Any]] = Field(default_factory=list)


class InviteData(BaseModel):
    """Shareable invitation payload for a family."""

    family_code: str
    family_name: str
    member_count: int
    share_url: str
    qr_code_data: str
    whatsapp_message: str
    email_subject: str
    email_body: str

    @classmethod
    def for_family(cls, family: Family, frontend_url: str, deep_link_scheme: str) -> "InviteData":
        join_url = f"{frontend_url.rstrip('/')}/join/{family.family_code}"
        return cls(
            family_code=family.family_code,
            family_name=family.family_name,
            member_count=family.member_count,
            share_url=join_url,
            qr_code_data=f"{deep_link_scheme}://join/{family.family_code}",
            whatsapp_message=f"Join our family organizer! Use code: {family.family_code} or visit: {join_url}",
            email_subject=f"You're invited to join {family.family_name}",
            email_body=(
                f'You\'ve been invited to join "{family.family_name}" on the family organizer!\n\n'
                f"Family Code: {family.family_code}\n\n"
                f"Join here: {join_url}\n\n"
                "This app helps families organize tasks, meetings, and stay connected."
            ),
        )

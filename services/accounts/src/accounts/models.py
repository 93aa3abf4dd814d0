from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, EmailStr, Field

LOGIN_PATHS = ("/login", "/register")
HOME_PATHS = {"employer": "/dashboard", "applicant": "/jobs"}


class UserType(str, Enum):
    APPLICANT = "applicant"
    EMPLOYER = "employer"


class AuthEventType(str, Enum):
    INITIAL_SESSION = "INITIAL_SESSION"
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"
    USER_UPDATED = "USER_UPDATED"
    PASSWORD_RECOVERY = "PASSWORD_RECOVERY"


class AuthUser(BaseModel):
    id: str
    email: str | None = None
    user_metadata: dict[str, Any] = Field(default_factory=dict)


class UserSession(BaseModel):
    user: AuthUser
    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None

    @property
    def user_id(self) -> str:
        return self.user.id


class UserProfile(BaseModel):
    id: str
    email: EmailStr
    full_name: str
    user_type: UserType
    phone: str | None = None
    location: str | None = None
    skills: list[str] | None = None
    experience: str | None = None
    resume_url: str | None = None
    company_name: str | None = None
    company_description: str | None = None
    avatar_url: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


class ProfileUpdate(BaseModel):
    full_name: str | None = Field(default=None, min_length=1)
    user_type: UserType | None = None
    phone: str | None = None
    location: str | None = None
    skills: list[str] | None = None
    experience: str | None = None
    resume_url: str | None = None
    company_name: str | None = None
    company_description: str | None = None
    avatar_url: str | None = None

    def changes(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_unset=True)


@dataclass(frozen=True)
class AuthEvent:
    event: AuthEventType
    session: UserSession | None = None


class NavigationIntent(BaseModel):
    model_config = ConfigDict(frozen=True)

    path: str
    replace: bool = True


class SessionState(BaseModel):
    model_config = ConfigDict(frozen=True)

    session: UserSession | None = None
    profile: UserProfile | None = None
    loading: bool = False
    error: str | None = None
    error_kind: str | None = None
    error_fatal: bool = False
    is_authenticated: bool = False


def home_path_for(user_type: UserType) -> str:
    return HOME_PATHS[user_type.value]


def profile_seed(user: AuthUser) -> dict[str, Any] | None:
    """Profile fields carried in sign-up metadata, or None if they cannot seed a row."""
    metadata = user.user_metadata
    if not user.email or not metadata.get("full_name"):
        return None
    if metadata.get("user_type") not in HOME_PATHS:
        return None
    return {
        field: metadata[field]
        for field in ProfileUpdate.model_fields
        if metadata.get(field) is not None
    }

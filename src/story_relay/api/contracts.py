"""Typed contracts shared by API handlers and Python interfaces."""

from __future__ import annotations

import re
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MAX_SNIPPET_CHARS = 1_000_000

AccessLevelName = Literal["no_access", "reader", "writer", "owner"]
LockStateName = Literal["unlocked", "locked_by_self", "expired", "active"]


class ContractModel(BaseModel):
    """Base model config used by all API contracts."""

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)


def _normalize_email(value: str) -> str:
    normalized = value.strip().lower()
    if not EMAIL_PATTERN.match(normalized):
        raise ValueError("Email must be a valid address.")
    return normalized


class AuthRegisterRequest(ContractModel):
    """Register a user account for local bearer-token authentication."""

    email: str = Field(min_length=5, max_length=320)
    password: SecretStr = Field(min_length=8, max_length=200)
    display_name: str = Field(min_length=1, max_length=120)

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value: str) -> str:
        return _normalize_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: SecretStr) -> SecretStr:
        raw = value.get_secret_value()
        if raw.strip() != raw:
            raise ValueError("Password must not start or end with whitespace.")
        if not any(char.isalpha() for char in raw) or not any(char.isdigit() for char in raw):
            raise ValueError("Password must include at least one letter and one number.")
        return value


class AuthLoginRequest(ContractModel):
    """Authenticate and request an access token."""

    email: str = Field(min_length=5, max_length=320)
    password: SecretStr = Field(min_length=8, max_length=200)

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value: str) -> str:
        return _normalize_email(value)


class AuthTokenResponse(ContractModel):
    """Bearer token payload used by web and Python clients."""

    access_token: str
    token_type: str = Field(default="bearer", pattern=r"^bearer$")
    expires_at_utc: str


class UserResponse(ContractModel):
    """Public user profile returned from authenticated endpoints."""

    user_id: str
    email: str
    display_name: str
    created_at_utc: str


class StoryCreateRequest(ContractModel):
    """Begin a story, optionally with a title and an opening snippet."""

    title: str | None = Field(default=None, min_length=1, max_length=300)
    opening: str | None = Field(default=None, min_length=1, max_length=MAX_SNIPPET_CHARS)


class StoryUpdateRequest(ContractModel):
    """Owner-only story settings; omitted fields are left unchanged."""

    title: str | None = Field(default=None, min_length=1, max_length=300)
    published: bool | None = None
    world_readable: bool | None = None
    lock_duration_s: int | None = Field(default=None, ge=60, le=7 * 24 * 3600)


class LockResponse(ContractModel):
    """Lock fields of a story as seen by the requesting user."""

    state: LockStateName
    holder_id: str | None = None
    expires_at_utc: str | None = None


class StoryResponse(ContractModel):
    """Story settings, revision counter and lock status."""

    story_id: int
    title: str | None
    published: bool
    world_readable: bool
    lock_duration_s: int
    revision_count: int
    created_at_utc: str
    updated_at_utc: str
    published_at_utc: str | None = None
    lock: LockResponse


class SnippetCreateRequest(ContractModel):
    """Text appended to a story by the current lock holder."""

    content: str = Field(min_length=1, max_length=MAX_SNIPPET_CHARS)


class SnippetResponse(ContractModel):
    """One stored snippet."""

    snippet_id: int
    story_id: int
    user_id: str | None
    ordinal: int
    content: str
    created_at_utc: str


class LockGrantResponse(ContractModel):
    """Granted lock plus the snippet the holder continues from."""

    state: Literal["granted"] = "granted"
    expires_at_utc: str
    story: StoryResponse
    prior_snippet: SnippetResponse | None = None


class StoryDetailResponse(ContractModel):
    """Readable story with its most recent snippet."""

    story: StoryResponse
    latest_snippet: SnippetResponse | None = None


class AccessResponse(ContractModel):
    """Effective access a user holds on a story."""

    story_id: int
    user_id: str
    level: AccessLevelName
    can_read: bool
    can_write: bool
    can_admin: bool


class AccessGrantRequest(ContractModel):
    """Set another user's access level; `no_access` revokes it."""

    level: AccessLevelName

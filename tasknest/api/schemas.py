from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from tasknest.logging import get_correlation_id

# Upper bound on free-text request fields
MAX_STRING_LENGTH = 65536

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
})


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """Response envelope shared by every endpoint."""

    success: bool
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    message: Optional[str] = None
    request_id: str = Field(default_factory=_request_id)


def _coerce_otp(value: Any) -> Any:
    # Some clients send the code as a JSON number
    if isinstance(value, int) and not isinstance(value, bool):
        return f"{value:06d}"
    return value


# auth
class RegisterRequest(BaseModel):
    name: str = Field(..., max_length=200)
    email: str = Field(..., max_length=320)
    password: str = Field(..., max_length=1024)


class RegisterResponse(BaseModel):
    account_id: str
    email: str
    message: str


class VerifyOtpRequest(BaseModel):
    email: str = Field(..., max_length=320)
    otp: str = Field(..., max_length=16)

    @field_validator("otp", mode="before")
    @classmethod
    def _coerce_numeric_otp(cls, value: Any) -> Any:
        return _coerce_otp(value)


class LoginRequest(BaseModel):
    email: str = Field(..., max_length=320)
    password: str = Field(..., max_length=1024)


class AccountSummary(BaseModel):
    id: str
    email: str
    full_name: Optional[str] = None
    is_verified: bool


class LoginResponse(BaseModel):
    token: str
    token_type: str = "bearer"
    expires_at: datetime
    user: AccountSummary


class ResendOtpRequest(BaseModel):
    email: str = Field(..., max_length=320)


class ForgotPasswordRequest(BaseModel):
    email: str = Field(..., max_length=320)


class ResetPasswordRequest(BaseModel):
    email: str = Field(..., max_length=320)
    otp: str = Field(..., max_length=16)
    new_password: str = Field(..., max_length=1024)

    @field_validator("otp", mode="before")
    @classmethod
    def _coerce_numeric_otp(cls, value: Any) -> Any:
        return _coerce_otp(value)


class ChangePasswordRequest(BaseModel):
    old_password: str = Field(..., max_length=1024)
    new_password: str = Field(..., max_length=1024)


class SessionCheckResponse(BaseModel):
    valid: bool
    user_id: str
    email: str
    expires_at: Optional[datetime] = None


# profile
class ProfileStats(BaseModel):
    total_tasks: int = 0
    tasks_completed: int = 0
    pending_tasks: int = 0
    overdue_tasks: int = 0
    streak: int = 0


class ProfileResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    email: str
    full_name: str
    avatar_url: Optional[str] = None
    bio: str = ""
    stats: ProfileStats
    ai_features: bool
    created_at: datetime
    updated_at: datetime


class ProfileCreateRequest(BaseModel):
    full_name: Optional[str] = Field(default=None, max_length=200)
    bio: str = Field(default="", max_length=200)
    avatar_url: Optional[str] = Field(default=None, max_length=2048)

    @model_validator(mode="before")
    @classmethod
    def _reject_user_id(cls, data: Any) -> Any:
        # The owner always comes from the bearer token
        if isinstance(data, dict) and "user_id" in data:
            raise ValueError("user_id is derived from the session and cannot be provided")
        return data


class ProfileUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    full_name: Optional[str] = Field(default=None, max_length=200)
    bio: Optional[str] = Field(default=None, max_length=200)
    avatar_url: Optional[str] = Field(default=None, max_length=2048)
    ai_features: Optional[bool] = None
    stats: Optional[Dict[str, int]] = None


# tasks
class Reminder(BaseModel):
    enabled: bool = False
    remind_at: Optional[datetime] = None


class Repeat(BaseModel):
    frequency: Optional[Literal["daily", "weekly", "monthly", "yearly"]] = None
    interval: int = Field(default=1, ge=1)
    days_of_week: List[Literal["sun", "mon", "tue", "wed", "thu", "fri", "sat"]] = Field(
        default_factory=list
    )
    until: Optional[datetime] = None


class _TaskFields(BaseModel):
    model_config = ConfigDict(extra="forbid")

    notes: Optional[str] = Field(default=None, max_length=MAX_STRING_LENGTH)
    status: Optional[Literal["pending", "completed"]] = None
    is_archived: Optional[bool] = None
    priority: Optional[Literal["low", "medium", "high"]] = None
    completed_at: Optional[datetime] = None
    due_date: Optional[datetime] = None
    reminder: Optional[Reminder] = None
    repeat: Optional[Repeat] = None
    task_list_id: Optional[str] = Field(default=None, max_length=64)

    def to_fields(self) -> Dict[str, Any]:
        """Fields the client actually sent, with nested objects as plain JSON."""
        values = self.model_dump(exclude_unset=True)
        for key in ("reminder", "repeat"):
            nested = getattr(self, key)
            if key in values and nested is not None:
                values[key] = nested.model_dump(mode="json")
        for key in ("status", "priority", "is_archived"):
            # Explicit nulls on non-nullable columns mean "leave as is"
            if key in values and values[key] is None:
                values.pop(key)
        return values


class TaskCreateRequest(_TaskFields):
    title: str = Field(..., max_length=500)


class TaskUpdateRequest(_TaskFields):
    title: Optional[str] = Field(default=None, max_length=500)


class TaskResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    task_list_id: str
    title: str
    notes: Optional[str] = None
    status: str
    is_archived: bool
    priority: str
    completed_at: Optional[datetime] = None
    due_date: Optional[datetime] = None
    reminder: Optional[Dict[str, Any]] = None
    repeat: Optional[Dict[str, Any]] = None
    created_at: datetime
    updated_at: datetime


class TaskListCreateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: str = Field(..., max_length=200)
    is_default: bool = False


class TaskListUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: Optional[str] = Field(default=None, max_length=200)
    is_default: Optional[bool] = None


class TaskListResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    title: str
    task_ids: List[str]
    is_default: bool
    created_at: datetime
    updated_at: datetime


class HealthResponse(BaseModel):
    status: str
    store: str

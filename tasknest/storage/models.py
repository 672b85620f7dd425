from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

OTP_PURPOSE_VERIFY_EMAIL = "verify_email"
OTP_PURPOSE_RESET_PASSWORD = "reset_password"

TASK_STATUSES = ("pending", "completed")
TASK_PRIORITIES = ("low", "medium", "high")
REPEAT_FREQUENCIES = ("daily", "weekly", "monthly", "yearly")
WEEKDAYS = ("sun", "mon", "tue", "wed", "thu", "fri", "sat")

DEFAULT_TASK_LIST_TITLE = "My Tasks"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def default_profile_stats() -> Dict[str, int]:
    return {
        "total_tasks": 0,
        "tasks_completed": 0,
        "pending_tasks": 0,
        "overdue_tasks": 0,
        "streak": 0,
    }


@dataclass
class Account:
    id: str
    email: str
    password_hash: str
    is_verified: bool = False
    otp_hash: Optional[str] = None
    otp_expires_at: Optional[datetime] = None
    otp_purpose: Optional[str] = None
    session_epoch: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def has_outstanding_code(self) -> bool:
        return bool(self.otp_hash and self.otp_expires_at)


@dataclass
class Profile:
    id: str
    user_id: str
    email: str
    full_name: str = "User"
    avatar_url: Optional[str] = None
    bio: str = ""
    stats: Dict[str, int] = field(default_factory=default_profile_stats)
    ai_features: bool = True
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class TaskList:
    id: str
    user_id: str
    title: str
    task_ids: List[str] = field(default_factory=list)
    is_default: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Task:
    id: str
    user_id: str
    task_list_id: str
    title: str
    notes: Optional[str] = None
    status: str = "pending"
    is_archived: bool = False
    priority: str = "medium"
    completed_at: Optional[datetime] = None
    due_date: Optional[datetime] = None
    reminder: Optional[dict] = None
    repeat: Optional[dict] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from tasknest.logging import get_logger
from tasknest.service.errors import NotFoundError, ValidationError
from tasknest.service.validation import require_text
from tasknest.storage.errors import ConstraintViolation
from tasknest.storage.models import (
    DEFAULT_TASK_LIST_TITLE,
    Task,
    TaskList,
    utcnow,
)

logger = get_logger(__name__)

_TASK_FIELDS = {
    "title",
    "notes",
    "status",
    "is_archived",
    "priority",
    "completed_at",
    "due_date",
    "reminder",
    "repeat",
    "task_list_id",
}


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class TaskService:
    """Tasks and task lists owned by a single account.

    Every lookup is scoped to the caller, so someone else's record reads
    as missing. Each account keeps exactly one default list.
    """

    def __init__(self, store) -> None:
        self.store = store
        self.logger = logger

    # task lists
    def list_task_lists(self, user_id: str) -> List[TaskList]:
        return self.store.list_task_lists(user_id)

    def get_task_list(self, user_id: str, task_list_id: str) -> TaskList:
        task_list = self.store.get_task_list(task_list_id, user_id)
        if not task_list:
            raise NotFoundError("task list not found")
        return task_list

    def create_task_list(
        self, user_id: str, title: Optional[str], *, is_default: bool = False
    ) -> TaskList:
        clean_title = require_text(title, "title", max_length=200)
        with self.store.transaction():
            task_list = self.store.create_task_list(user_id, clean_title, is_default=is_default)
        self.logger.info(
            "task_list_created", user_id=user_id, task_list_id=task_list.id, is_default=is_default
        )
        return task_list

    def update_task_list(
        self, user_id: str, task_list_id: str, updates: Dict[str, Any]
    ) -> TaskList:
        current = self.get_task_list(user_id, task_list_id)
        cleaned: Dict[str, Any] = {}
        if "title" in updates:
            cleaned["title"] = require_text(updates["title"], "title", max_length=200)
        if "is_default" in updates:
            if current.is_default and updates["is_default"] is False:
                raise ValidationError(
                    "mark another list as default instead", detail={"field": "is_default"}
                )
            cleaned["is_default"] = bool(updates["is_default"])
        if not cleaned:
            return current
        with self.store.transaction():
            task_list = self.store.update_task_list(task_list_id, user_id, cleaned)
        if not task_list:
            raise NotFoundError("task list not found")
        return task_list

    def delete_task_list(self, user_id: str, task_list_id: str) -> None:
        task_list = self.get_task_list(user_id, task_list_id)
        if task_list.is_default:
            raise ValidationError("the default task list cannot be deleted")
        with self.store.transaction():
            deleted = self.store.delete_task_list(task_list_id, user_id)
        if not deleted:
            raise NotFoundError("task list not found")
        self.logger.info(
            "task_list_deleted",
            user_id=user_id,
            task_list_id=task_list_id,
            task_count=len(task_list.task_ids),
        )

    def _default_list(self, user_id: str) -> TaskList:
        task_list = self.store.get_default_task_list(user_id)
        if task_list:
            return task_list
        # Only reachable if the list was removed outside the API
        with self.store.transaction():
            task_list = self.store.create_task_list(
                user_id, DEFAULT_TASK_LIST_TITLE, is_default=True
            )
        self.logger.warning("default_task_list_restored", user_id=user_id)
        return task_list

    # tasks
    def list_tasks(
        self,
        user_id: str,
        *,
        status: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> List[Task]:
        # The due date filter applies only when both ends are given
        if start_date is None or end_date is None:
            start_date = end_date = None
        return self.store.list_tasks(
            user_id,
            status=status,
            due_from=_as_utc(start_date),
            due_to=_as_utc(end_date),
        )

    def get_task(self, user_id: str, task_id: str) -> Task:
        task = self.store.get_task(task_id, user_id)
        if not task:
            raise NotFoundError("task not found")
        return task

    def _clean_task_fields(self, values: Dict[str, Any], *, current: Optional[Task] = None) -> Dict[str, Any]:
        unknown = set(values) - _TASK_FIELDS
        if unknown:
            raise ValidationError("unknown task fields", detail={"fields": sorted(unknown)})
        cleaned = dict(values)
        if "title" in cleaned:
            cleaned["title"] = require_text(cleaned["title"], "title", max_length=500)
        if "notes" in cleaned and isinstance(cleaned["notes"], str):
            cleaned["notes"] = cleaned["notes"].strip() or None
        for key in ("due_date", "completed_at"):
            if key in cleaned:
                cleaned[key] = _as_utc(cleaned[key])
        status = cleaned.get("status")
        if status == "completed":
            already_done = current is not None and current.status == "completed"
            if not cleaned.get("completed_at") and not already_done:
                cleaned["completed_at"] = utcnow()
        elif status == "pending":
            cleaned["completed_at"] = None
        return cleaned

    def create_task(self, user_id: str, values: Dict[str, Any]) -> Task:
        if "title" not in values:
            raise ValidationError("title is required", detail={"field": "title"})
        cleaned = self._clean_task_fields(values)
        task_list_id = cleaned.pop("task_list_id", None)
        if task_list_id:
            self.get_task_list(user_id, task_list_id)
        else:
            task_list_id = self._default_list(user_id).id
        title = cleaned.pop("title")
        try:
            with self.store.transaction():
                task = self.store.create_task(user_id, task_list_id, title, **cleaned)
        except ConstraintViolation as exc:
            raise NotFoundError("task list not found") from exc
        self.logger.info("task_created", user_id=user_id, task_id=task.id, task_list_id=task_list_id)
        return task

    def update_task(self, user_id: str, task_id: str, updates: Dict[str, Any]) -> Task:
        current = self.get_task(user_id, task_id)
        cleaned = self._clean_task_fields(updates, current=current)
        if "task_list_id" in cleaned:
            if not cleaned["task_list_id"]:
                raise ValidationError("task_list_id cannot be empty", detail={"field": "task_list_id"})
            self.get_task_list(user_id, cleaned["task_list_id"])
        if not cleaned:
            return current
        try:
            with self.store.transaction():
                task = self.store.update_task(task_id, user_id, cleaned)
        except ConstraintViolation as exc:
            raise NotFoundError("task list not found") from exc
        if not task:
            raise NotFoundError("task not found")
        return task

    def delete_task(self, user_id: str, task_id: str) -> None:
        with self.store.transaction():
            deleted = self.store.delete_task(task_id, user_id)
        if not deleted:
            raise NotFoundError("task not found")
        self.logger.info("task_deleted", user_id=user_id, task_id=task_id)

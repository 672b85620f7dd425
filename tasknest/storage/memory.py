from __future__ import annotations

import contextlib
import copy
import json
import threading
import uuid
from dataclasses import asdict, fields
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from tasknest.logging import get_logger
from tasknest.storage.errors import ConstraintViolation
from tasknest.storage.models import (
    Account,
    Profile,
    Task,
    TaskList,
    default_profile_stats,
    utcnow,
)

_DATETIME_FIELDS = {"created_at", "updated_at", "otp_expires_at", "completed_at", "due_date"}


class MemoryStore:
    """In-process backing store used for development and tests.

    State is snapshotted to ``<fs_root>/state/memory_store.json`` after every
    committed write so a restarted dev server keeps its accounts.
    """

    def __init__(self, fs_root: str = "/tmp/tasknest") -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.profiles: Dict[str, Profile] = {}
        self.task_lists: Dict[str, TaskList] = {}
        self.tasks: Dict[str, Task] = {}
        # RLock so transaction() can wrap the individual write methods
        self._data_lock = threading.RLock()
        self._tx_depth = 0
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def verify_connection(self) -> None:
        self._state_path()

    @contextlib.contextmanager
    def transaction(self) -> Iterator["MemoryStore"]:
        """Group writes so they are all kept or all discarded.

        The data lock is held for the whole block, so concurrent requests
        never observe a half-finished group.
        """
        with self._data_lock:
            if self._tx_depth:
                self._tx_depth += 1
                try:
                    yield self
                finally:
                    self._tx_depth -= 1
                return
            snapshot = copy.deepcopy(
                (self.accounts, self.profiles, self.task_lists, self.tasks)
            )
            self._tx_depth = 1
            try:
                yield self
                self._tx_depth = 0
                # A group that cannot be written out is discarded like any other failure
                self._persist_state()
            except BaseException:
                self.accounts, self.profiles, self.task_lists, self.tasks = snapshot
                self.logger.info("memory_transaction_rolled_back")
                raise
            finally:
                self._tx_depth = 0

    # accounts
    def create_account(
        self,
        email: str,
        password_hash: str,
        *,
        otp_hash: Optional[str] = None,
        otp_expires_at: Optional[datetime] = None,
        otp_purpose: Optional[str] = None,
    ) -> Account:
        with self._data_lock:
            if any(existing.email == email for existing in self.accounts.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            account = Account(
                id=str(uuid.uuid4()),
                email=email,
                password_hash=password_hash,
                otp_hash=otp_hash,
                otp_expires_at=otp_expires_at,
                otp_purpose=otp_purpose,
            )
            self.accounts[account.id] = account
            self._persist_state()
            return account

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            return self.accounts.get(account_id)

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._data_lock:
            return next((a for a in self.accounts.values() if a.email == email), None)

    def set_account_otp(
        self,
        account_id: str,
        otp_hash: str,
        expires_at: datetime,
        purpose: str,
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.otp_hash = otp_hash
            account.otp_expires_at = expires_at
            account.otp_purpose = purpose
            account.updated_at = utcnow()
            self._persist_state()
            return account

    def consume_account_otp(
        self, account_id: str, otp_hash: str, *, mark_verified: bool = False
    ) -> Optional[Account]:
        """Clear the outstanding code only if it is still ``otp_hash``."""
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account or not account.otp_hash or account.otp_hash != otp_hash:
                return None
            account.otp_hash = None
            account.otp_expires_at = None
            account.otp_purpose = None
            if mark_verified:
                account.is_verified = True
            account.updated_at = utcnow()
            self._persist_state()
            return account

    def set_account_password(self, account_id: str, password_hash: str) -> Optional[Account]:
        """Replace the password hash and bump the session epoch."""
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.password_hash = password_hash
            account.session_epoch += 1
            account.updated_at = utcnow()
            self._persist_state()
            return account

    # profiles
    def create_profile(
        self,
        user_id: str,
        email: str,
        full_name: str,
        *,
        avatar_url: Optional[str] = None,
        bio: str = "",
    ) -> Profile:
        with self._data_lock:
            if user_id not in self.accounts:
                raise ConstraintViolation("profile owner missing", {"user_id": user_id})
            if any(p.user_id == user_id for p in self.profiles.values()):
                raise ConstraintViolation("profile already exists", {"field": "user_id"})
            profile = Profile(
                id=str(uuid.uuid4()),
                user_id=user_id,
                email=email,
                full_name=full_name,
                avatar_url=avatar_url,
                bio=bio,
            )
            self.profiles[profile.id] = profile
            self._persist_state()
            return profile

    def get_profile(self, user_id: str) -> Optional[Profile]:
        with self._data_lock:
            return next((p for p in self.profiles.values() if p.user_id == user_id), None)

    def update_profile(self, user_id: str, updates: Dict[str, Any]) -> Optional[Profile]:
        with self._data_lock:
            profile = self.get_profile(user_id)
            if not profile:
                return None
            for key, value in updates.items():
                if key == "stats":
                    value = {**(profile.stats or default_profile_stats()), **value}
                setattr(profile, key, value)
            profile.updated_at = utcnow()
            self._persist_state()
            return profile

    def delete_profile(self, user_id: str) -> bool:
        with self._data_lock:
            profile = self.get_profile(user_id)
            if not profile:
                return False
            self.profiles.pop(profile.id, None)
            self._persist_state()
            return True

    # task lists
    def _clear_default_lists(self, user_id: str, *, keep: Optional[str] = None) -> None:
        for task_list in self.task_lists.values():
            if task_list.user_id == user_id and task_list.is_default and task_list.id != keep:
                task_list.is_default = False
                task_list.updated_at = utcnow()

    def create_task_list(
        self,
        user_id: str,
        title: str,
        *,
        is_default: bool = False,
        task_ids: Optional[List[str]] = None,
    ) -> TaskList:
        with self._data_lock:
            if user_id not in self.accounts:
                raise ConstraintViolation("task list owner missing", {"user_id": user_id})
            if is_default:
                self._clear_default_lists(user_id)
            task_list = TaskList(
                id=str(uuid.uuid4()),
                user_id=user_id,
                title=title,
                task_ids=list(task_ids or []),
                is_default=is_default,
            )
            self.task_lists[task_list.id] = task_list
            self._persist_state()
            return task_list

    def get_task_list(self, task_list_id: str, user_id: str) -> Optional[TaskList]:
        with self._data_lock:
            task_list = self.task_lists.get(task_list_id)
            if not task_list or task_list.user_id != user_id:
                return None
            return task_list

    def get_default_task_list(self, user_id: str) -> Optional[TaskList]:
        with self._data_lock:
            return next(
                (
                    tl
                    for tl in self.task_lists.values()
                    if tl.user_id == user_id and tl.is_default
                ),
                None,
            )

    def list_task_lists(self, user_id: str) -> List[TaskList]:
        with self._data_lock:
            results = [tl for tl in self.task_lists.values() if tl.user_id == user_id]
            return sorted(results, key=lambda tl: tl.created_at, reverse=True)

    def update_task_list(
        self, task_list_id: str, user_id: str, updates: Dict[str, Any]
    ) -> Optional[TaskList]:
        with self._data_lock:
            task_list = self.get_task_list(task_list_id, user_id)
            if not task_list:
                return None
            if updates.get("is_default"):
                self._clear_default_lists(user_id, keep=task_list_id)
            for key, value in updates.items():
                setattr(task_list, key, list(value) if key == "task_ids" else value)
            task_list.updated_at = utcnow()
            self._persist_state()
            return task_list

    def delete_task_list(self, task_list_id: str, user_id: str) -> bool:
        with self._data_lock:
            task_list = self.get_task_list(task_list_id, user_id)
            if not task_list:
                return False
            self.task_lists.pop(task_list_id, None)
            for task_id, task in list(self.tasks.items()):
                if task.task_list_id == task_list_id:
                    self.tasks.pop(task_id, None)
            self._persist_state()
            return True

    # tasks
    def create_task(
        self, user_id: str, task_list_id: str, title: str, **values: Any
    ) -> Task:
        with self._data_lock:
            task_list = self.get_task_list(task_list_id, user_id)
            if not task_list:
                raise ConstraintViolation(
                    "task list not found", {"task_list_id": task_list_id}
                )
            task = Task(
                id=str(uuid.uuid4()),
                user_id=user_id,
                task_list_id=task_list_id,
                title=title,
                **values,
            )
            self.tasks[task.id] = task
            task_list.task_ids.append(task.id)
            task_list.updated_at = utcnow()
            self._persist_state()
            return task

    def get_task(self, task_id: str, user_id: str) -> Optional[Task]:
        with self._data_lock:
            task = self.tasks.get(task_id)
            if not task or task.user_id != user_id:
                return None
            return task

    def list_tasks(
        self,
        user_id: str,
        *,
        status: Optional[str] = None,
        due_from: Optional[datetime] = None,
        due_to: Optional[datetime] = None,
    ) -> List[Task]:
        with self._data_lock:
            results = []
            for task in self.tasks.values():
                if task.user_id != user_id:
                    continue
                if status and task.status != status:
                    continue
                if due_from is not None and due_to is not None:
                    if task.due_date is None or not (due_from <= task.due_date <= due_to):
                        continue
                results.append(task)
            # Undated tasks sort last
            return sorted(
                results,
                key=lambda t: (t.due_date is None, t.due_date or t.created_at),
            )

    def update_task(
        self, task_id: str, user_id: str, updates: Dict[str, Any]
    ) -> Optional[Task]:
        with self._data_lock:
            task = self.get_task(task_id, user_id)
            if not task:
                return None
            target_list_id = updates.get("task_list_id")
            if target_list_id and target_list_id != task.task_list_id:
                target = self.get_task_list(target_list_id, user_id)
                if not target:
                    raise ConstraintViolation(
                        "task list not found", {"task_list_id": target_list_id}
                    )
                source = self.task_lists.get(task.task_list_id)
                if source and task.id in source.task_ids:
                    source.task_ids.remove(task.id)
                target.task_ids.append(task.id)
            for key, value in updates.items():
                setattr(task, key, value)
            task.updated_at = utcnow()
            self._persist_state()
            return task

    def delete_task(self, task_id: str, user_id: str) -> bool:
        with self._data_lock:
            task = self.get_task(task_id, user_id)
            if not task:
                return False
            self.tasks.pop(task_id, None)
            task_list = self.task_lists.get(task.task_list_id)
            if task_list and task_id in task_list.task_ids:
                task_list.task_ids.remove(task_id)
            self._persist_state()
            return True

    # persistence
    @staticmethod
    def _serialize(obj: Any) -> dict:
        data = asdict(obj)
        for key in _DATETIME_FIELDS & data.keys():
            if isinstance(data[key], datetime):
                data[key] = data[key].isoformat()
        return data

    @staticmethod
    def _deserialize(cls: type, raw: dict) -> Any:
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in raw.items() if k in known}
        for key in _DATETIME_FIELDS & values.keys():
            if isinstance(values[key], str):
                values[key] = datetime.fromisoformat(values[key])
        return cls(**values)

    def _persist_state(self) -> None:
        if self._tx_depth:
            # Written once when the outermost transaction commits
            return
        state = {
            "accounts": [self._serialize(a) for a in self.accounts.values()],
            "profiles": [self._serialize(p) for p in self.profiles.values()],
            "task_lists": [self._serialize(tl) for tl in self.task_lists.values()],
            "tasks": [self._serialize(t) for t in self.tasks.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except Exception as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}")

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {
            a["id"]: self._deserialize(Account, a) for a in data.get("accounts", [])
        }
        self.profiles = {
            p["id"]: self._deserialize(Profile, p) for p in data.get("profiles", [])
        }
        self.task_lists = {
            tl["id"]: self._deserialize(TaskList, tl) for tl in data.get("task_lists", [])
        }
        self.tasks = {t["id"]: self._deserialize(Task, t) for t in data.get("tasks", [])}
        self.logger.info(
            "memory_state_loaded",
            accounts=len(self.accounts),
            task_lists=len(self.task_lists),
            tasks=len(self.tasks),
        )
        return True

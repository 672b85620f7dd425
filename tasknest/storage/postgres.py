from __future__ import annotations

import contextlib
import json
import uuid
from contextvars import ContextVar
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS account (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        is_verified BOOLEAN NOT NULL DEFAULT false,
        otp_hash TEXT,
        otp_expires_at TIMESTAMPTZ,
        otp_purpose TEXT,
        session_epoch INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS profile (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL UNIQUE REFERENCES account(id) ON DELETE CASCADE,
        email TEXT NOT NULL,
        full_name TEXT NOT NULL DEFAULT 'User',
        avatar_url TEXT,
        bio TEXT NOT NULL DEFAULT '',
        stats JSONB NOT NULL DEFAULT '{}'::jsonb,
        ai_features BOOLEAN NOT NULL DEFAULT true,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS task_list (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES account(id) ON DELETE CASCADE,
        title TEXT NOT NULL,
        task_ids TEXT[] NOT NULL DEFAULT '{}',
        is_default BOOLEAN NOT NULL DEFAULT false,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS task_list_user_idx ON task_list (user_id)",
    "CREATE UNIQUE INDEX IF NOT EXISTS task_list_one_default_idx ON task_list (user_id) WHERE is_default",
    """
    CREATE TABLE IF NOT EXISTS task (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES account(id) ON DELETE CASCADE,
        task_list_id UUID NOT NULL REFERENCES task_list(id) ON DELETE CASCADE,
        title TEXT NOT NULL,
        notes TEXT,
        status TEXT NOT NULL DEFAULT 'pending',
        is_archived BOOLEAN NOT NULL DEFAULT false,
        priority TEXT NOT NULL DEFAULT 'medium',
        completed_at TIMESTAMPTZ,
        due_date TIMESTAMPTZ,
        reminder JSONB,
        repeat JSONB,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS task_user_due_idx ON task (user_id, due_date)",
]

_PROFILE_COLUMNS = {"full_name", "bio", "avatar_url", "ai_features"}
_TASK_LIST_COLUMNS = {"title", "is_default"}
_TASK_COLUMNS = {
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
_JSON_COLUMNS = {"reminder", "repeat"}


def _json_or_none(value: Any) -> Optional[str]:
    return json.dumps(value) if value is not None else None


class PostgresStore:
    """Postgres-backed store for accounts, profiles, tasks and task lists."""

    def __init__(self, dsn: str, fs_root: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        # Connection owned by the transaction() block running in this context
        self._tx_conn: ContextVar = ContextVar(f"tasknest_pg_tx_{id(self)}", default=None)
        self._ensure_schema()

    def _connect(self):
        conn = self._tx_conn.get()
        if conn is not None:
            return contextlib.nullcontext(conn)
        return self.pool.connection()

    @contextlib.contextmanager
    def transaction(self) -> Iterator["PostgresStore"]:
        """Run every store call in the block on one connection and commit once.

        An exception anywhere in the block rolls all of it back.
        """
        if self._tx_conn.get() is not None:
            yield self
            return
        with self.pool.connection() as conn:
            token = self._tx_conn.set(conn)
            try:
                yield self
            finally:
                self._tx_conn.reset(token)

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # row mapping
    @staticmethod
    def _account_from_row(row: dict) -> Account:
        return Account(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            is_verified=bool(row.get("is_verified")),
            otp_hash=row.get("otp_hash"),
            otp_expires_at=row.get("otp_expires_at"),
            otp_purpose=row.get("otp_purpose"),
            session_epoch=int(row.get("session_epoch") or 0),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _profile_from_row(row: dict) -> Profile:
        return Profile(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            email=row["email"],
            full_name=row.get("full_name") or "User",
            avatar_url=row.get("avatar_url"),
            bio=row.get("bio") or "",
            stats={**default_profile_stats(), **(row.get("stats") or {})},
            ai_features=bool(row.get("ai_features", True)),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _task_list_from_row(row: dict) -> TaskList:
        return TaskList(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            title=row["title"],
            task_ids=list(row.get("task_ids") or []),
            is_default=bool(row.get("is_default")),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _task_from_row(row: dict) -> Task:
        return Task(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            task_list_id=str(row["task_list_id"]),
            title=row["title"],
            notes=row.get("notes"),
            status=row.get("status") or "pending",
            is_archived=bool(row.get("is_archived")),
            priority=row.get("priority") or "medium",
            completed_at=row.get("completed_at"),
            due_date=row.get("due_date"),
            reminder=row.get("reminder"),
            repeat=row.get("repeat"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _valid_uuid(value: str) -> bool:
        try:
            uuid.UUID(str(value))
        except ValueError:
            return False
        return True

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
        account_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO account (id, email, password_hash, otp_hash, otp_expires_at, otp_purpose)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (account_id, email, password_hash, otp_hash, otp_expires_at, otp_purpose),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._account_from_row(row)

    def get_account(self, account_id: str) -> Optional[Account]:
        if not self._valid_uuid(account_id):
            return None
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM account WHERE id = %s", (account_id,)).fetchone()
        return self._account_from_row(row) if row else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM account WHERE email = %s", (email,)).fetchone()
        return self._account_from_row(row) if row else None

    def set_account_otp(
        self,
        account_id: str,
        otp_hash: str,
        expires_at: datetime,
        purpose: str,
    ) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account
                SET otp_hash = %s, otp_expires_at = %s, otp_purpose = %s, updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (otp_hash, expires_at, purpose, account_id),
            ).fetchone()
        return self._account_from_row(row) if row else None

    def consume_account_otp(
        self, account_id: str, otp_hash: str, *, mark_verified: bool = False
    ) -> Optional[Account]:
        """Clear the outstanding code only if it is still ``otp_hash``."""
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account
                SET otp_hash = NULL, otp_expires_at = NULL, otp_purpose = NULL,
                    is_verified = is_verified OR %s, updated_at = now()
                WHERE id = %s AND otp_hash = %s
                RETURNING *
                """,
                (mark_verified, account_id, otp_hash),
            ).fetchone()
        return self._account_from_row(row) if row else None

    def set_account_password(self, account_id: str, password_hash: str) -> Optional[Account]:
        """Replace the password hash and bump the session epoch."""
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account
                SET password_hash = %s, session_epoch = session_epoch + 1, updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (password_hash, account_id),
            ).fetchone()
        return self._account_from_row(row) if row else None

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO profile (id, user_id, email, full_name, avatar_url, bio, stats)
                    VALUES (%s, %s, %s, %s, %s, %s, %s::jsonb)
                    RETURNING *
                    """,
                    (
                        str(uuid.uuid4()),
                        user_id,
                        email,
                        full_name,
                        avatar_url,
                        bio,
                        json.dumps(default_profile_stats()),
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("profile already exists", {"field": "user_id"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("profile owner missing", {"user_id": user_id})
        return self._profile_from_row(row)

    def get_profile(self, user_id: str) -> Optional[Profile]:
        if not self._valid_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM profile WHERE user_id = %s", (user_id,)).fetchone()
        return self._profile_from_row(row) if row else None

    def update_profile(self, user_id: str, updates: Dict[str, Any]) -> Optional[Profile]:
        assignments = []
        params: List[Any] = []
        for key, value in updates.items():
            if key == "stats":
                assignments.append("stats = stats || %s::jsonb")
                params.append(json.dumps(value))
            elif key in _PROFILE_COLUMNS:
                assignments.append(f"{key} = %s")
                params.append(value)
        assignments.append("updated_at = now()")
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE profile SET {', '.join(assignments)} WHERE user_id = %s RETURNING *",
                (*params, user_id),
            ).fetchone()
        return self._profile_from_row(row) if row else None

    def delete_profile(self, user_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM profile WHERE user_id = %s", (user_id,))
            return result.rowcount > 0

    # task lists
    def create_task_list(
        self,
        user_id: str,
        title: str,
        *,
        is_default: bool = False,
        task_ids: Optional[List[str]] = None,
    ) -> TaskList:
        try:
            with self._connect() as conn:
                if is_default:
                    conn.execute(
                        "UPDATE task_list SET is_default = false, updated_at = now() WHERE user_id = %s AND is_default",
                        (user_id,),
                    )
                row = conn.execute(
                    """
                    INSERT INTO task_list (id, user_id, title, task_ids, is_default)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (str(uuid.uuid4()), user_id, title, list(task_ids or []), is_default),
                ).fetchone()
        except errors.UniqueViolation:
            # A concurrent request claimed the default slot first
            raise ConstraintViolation("default task list already exists", {"field": "is_default"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("task list owner missing", {"user_id": user_id})
        return self._task_list_from_row(row)

    def get_task_list(self, task_list_id: str, user_id: str) -> Optional[TaskList]:
        if not self._valid_uuid(task_list_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM task_list WHERE id = %s AND user_id = %s",
                (task_list_id, user_id),
            ).fetchone()
        return self._task_list_from_row(row) if row else None

    def get_default_task_list(self, user_id: str) -> Optional[TaskList]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM task_list WHERE user_id = %s AND is_default",
                (user_id,),
            ).fetchone()
        return self._task_list_from_row(row) if row else None

    def list_task_lists(self, user_id: str) -> List[TaskList]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM task_list WHERE user_id = %s ORDER BY created_at DESC",
                (user_id,),
            ).fetchall()
        return [self._task_list_from_row(row) for row in rows]

    def update_task_list(
        self, task_list_id: str, user_id: str, updates: Dict[str, Any]
    ) -> Optional[TaskList]:
        if not self._valid_uuid(task_list_id):
            return None
        assignments = []
        params: List[Any] = []
        for key, value in updates.items():
            if key in _TASK_LIST_COLUMNS:
                assignments.append(f"{key} = %s")
                params.append(value)
        assignments.append("updated_at = now()")
        with self._connect() as conn:
            if updates.get("is_default"):
                conn.execute(
                    """
                    UPDATE task_list SET is_default = false, updated_at = now()
                    WHERE user_id = %s AND is_default AND id <> %s
                    """,
                    (user_id, task_list_id),
                )
            row = conn.execute(
                f"UPDATE task_list SET {', '.join(assignments)} WHERE id = %s AND user_id = %s RETURNING *",
                (*params, task_list_id, user_id),
            ).fetchone()
        return self._task_list_from_row(row) if row else None

    def delete_task_list(self, task_list_id: str, user_id: str) -> bool:
        if not self._valid_uuid(task_list_id):
            return False
        with self._connect() as conn:
            # Tasks in the list go with it (ON DELETE CASCADE)
            result = conn.execute(
                "DELETE FROM task_list WHERE id = %s AND user_id = %s",
                (task_list_id, user_id),
            )
            return result.rowcount > 0

    # tasks
    def create_task(
        self, user_id: str, task_list_id: str, title: str, **values: Any
    ) -> Task:
        if not self._valid_uuid(task_list_id):
            raise ConstraintViolation("task list not found", {"task_list_id": task_list_id})
        task_id = str(uuid.uuid4())
        with self._connect() as conn:
            owned = conn.execute(
                """
                UPDATE task_list SET task_ids = array_append(task_ids, %s), updated_at = now()
                WHERE id = %s AND user_id = %s
                RETURNING id
                """,
                (task_id, task_list_id, user_id),
            ).fetchone()
            if not owned:
                raise ConstraintViolation("task list not found", {"task_list_id": task_list_id})
            row = conn.execute(
                """
                INSERT INTO task (
                    id, user_id, task_list_id, title, notes, status, is_archived, priority,
                    completed_at, due_date, reminder, repeat
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s::jsonb, %s::jsonb)
                RETURNING *
                """,
                (
                    task_id,
                    user_id,
                    task_list_id,
                    title,
                    values.get("notes"),
                    values.get("status", "pending"),
                    values.get("is_archived", False),
                    values.get("priority", "medium"),
                    values.get("completed_at"),
                    values.get("due_date"),
                    _json_or_none(values.get("reminder")),
                    _json_or_none(values.get("repeat")),
                ),
            ).fetchone()
        return self._task_from_row(row)

    def get_task(self, task_id: str, user_id: str) -> Optional[Task]:
        if not self._valid_uuid(task_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM task WHERE id = %s AND user_id = %s", (task_id, user_id)
            ).fetchone()
        return self._task_from_row(row) if row else None

    def list_tasks(
        self,
        user_id: str,
        *,
        status: Optional[str] = None,
        due_from: Optional[datetime] = None,
        due_to: Optional[datetime] = None,
    ) -> List[Task]:
        clauses = ["user_id = %s"]
        params: List[Any] = [user_id]
        if status:
            clauses.append("status = %s")
            params.append(status)
        if due_from is not None and due_to is not None:
            clauses.append("due_date BETWEEN %s AND %s")
            params.extend([due_from, due_to])
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM task WHERE {' AND '.join(clauses)} "
                "ORDER BY due_date ASC NULLS LAST, created_at ASC",
                params,
            ).fetchall()
        return [self._task_from_row(row) for row in rows]

    def update_task(
        self, task_id: str, user_id: str, updates: Dict[str, Any]
    ) -> Optional[Task]:
        current = self.get_task(task_id, user_id)
        if not current:
            return None
        assignments = []
        params: List[Any] = []
        for key, value in updates.items():
            if key not in _TASK_COLUMNS:
                continue
            if key in _JSON_COLUMNS:
                assignments.append(f"{key} = %s::jsonb")
                params.append(_json_or_none(value))
            else:
                assignments.append(f"{key} = %s")
                params.append(value)
        assignments.append("updated_at = now()")
        target_list_id = updates.get("task_list_id")
        with self._connect() as conn:
            if target_list_id and target_list_id != current.task_list_id:
                moved = conn.execute(
                    """
                    UPDATE task_list SET task_ids = array_append(task_ids, %s), updated_at = now()
                    WHERE id = %s AND user_id = %s
                    RETURNING id
                    """,
                    (task_id, target_list_id, user_id),
                ).fetchone()
                if not moved:
                    raise ConstraintViolation(
                        "task list not found", {"task_list_id": target_list_id}
                    )
                conn.execute(
                    "UPDATE task_list SET task_ids = array_remove(task_ids, %s), updated_at = now() WHERE id = %s",
                    (task_id, current.task_list_id),
                )
            row = conn.execute(
                f"UPDATE task SET {', '.join(assignments)} WHERE id = %s AND user_id = %s RETURNING *",
                (*params, task_id, user_id),
            ).fetchone()
        return self._task_from_row(row) if row else None

    def delete_task(self, task_id: str, user_id: str) -> bool:
        if not self._valid_uuid(task_id):
            return False
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM task WHERE id = %s AND user_id = %s RETURNING task_list_id",
                (task_id, user_id),
            ).fetchone()
            if not row:
                return False
            conn.execute(
                "UPDATE task_list SET task_ids = array_remove(task_ids, %s), updated_at = now() WHERE id = %s",
                (task_id, row["task_list_id"]),
            )
        return True

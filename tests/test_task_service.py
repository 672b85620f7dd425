"""Tests for TaskService: ownership, default list rules and status bookkeeping."""

from datetime import datetime, timedelta, timezone

import pytest

from tasknest.service.errors import NotFoundError, ValidationError
from tasknest.service.tasks import TaskService
from tasknest.storage.models import DEFAULT_TASK_LIST_TITLE


@pytest.fixture
def service(memory_store):
    return TaskService(memory_store)


@pytest.fixture
def alice(memory_store):
    account = memory_store.create_account("alice@example.com", "hash")
    memory_store.create_task_list(account.id, DEFAULT_TASK_LIST_TITLE, is_default=True)
    return account.id


@pytest.fixture
def bob(memory_store):
    account = memory_store.create_account("bob@example.com", "hash")
    memory_store.create_task_list(account.id, DEFAULT_TASK_LIST_TITLE, is_default=True)
    return account.id


class TestTaskLists:
    def test_create_and_list(self, service, alice):
        work = service.create_task_list(alice, "  Work  ")
        service.create_task_list(alice, "Home")

        titles = [tl.title for tl in service.list_task_lists(alice)]

        assert work.title == "Work"
        assert work.is_default is False
        assert sorted(titles) == sorted(["Work", "Home", DEFAULT_TASK_LIST_TITLE])

    def test_blank_title_rejected(self, service, alice):
        with pytest.raises(ValidationError):
            service.create_task_list(alice, "   ")

    def test_new_default_replaces_old(self, service, memory_store, alice):
        work = service.create_task_list(alice, "Work", is_default=True)

        defaults = [tl.id for tl in service.list_task_lists(alice) if tl.is_default]
        assert defaults == [work.id]

    def test_rename(self, service, alice):
        work = service.create_task_list(alice, "Work")

        updated = service.update_task_list(alice, work.id, {"title": "Job"})

        assert updated.title == "Job"

    def test_default_cannot_be_unset_directly(self, service, memory_store, alice):
        default_list = memory_store.get_default_task_list(alice)

        with pytest.raises(ValidationError):
            service.update_task_list(alice, default_list.id, {"is_default": False})

    def test_promote_other_list(self, service, memory_store, alice):
        original = memory_store.get_default_task_list(alice)
        work = service.create_task_list(alice, "Work")

        service.update_task_list(alice, work.id, {"is_default": True})

        assert memory_store.get_default_task_list(alice).id == work.id
        assert service.get_task_list(alice, original.id).is_default is False

    def test_default_list_cannot_be_deleted(self, service, memory_store, alice):
        default_list = memory_store.get_default_task_list(alice)

        with pytest.raises(ValidationError):
            service.delete_task_list(alice, default_list.id)

    def test_delete_removes_list_and_tasks(self, service, alice):
        work = service.create_task_list(alice, "Work")
        task = service.create_task(alice, {"title": "Report", "task_list_id": work.id})

        service.delete_task_list(alice, work.id)

        with pytest.raises(NotFoundError):
            service.get_task_list(alice, work.id)
        with pytest.raises(NotFoundError):
            service.get_task(alice, task.id)

    def test_other_users_lists_are_not_found(self, service, alice, bob):
        work = service.create_task_list(alice, "Work")

        with pytest.raises(NotFoundError):
            service.get_task_list(bob, work.id)
        with pytest.raises(NotFoundError):
            service.update_task_list(bob, work.id, {"title": "Mine now"})
        with pytest.raises(NotFoundError):
            service.delete_task_list(bob, work.id)


class TestTasks:
    def test_create_defaults_into_default_list(self, service, memory_store, alice):
        task = service.create_task(alice, {"title": "Buy milk"})

        default_list = memory_store.get_default_task_list(alice)
        assert task.task_list_id == default_list.id
        assert default_list.task_ids == [task.id]
        assert task.status == "pending"
        assert task.priority == "medium"

    def test_create_restores_missing_default_list(self, service, memory_store, alice):
        default_list = memory_store.get_default_task_list(alice)
        memory_store.delete_task_list(default_list.id, alice)

        task = service.create_task(alice, {"title": "Buy milk"})

        restored = memory_store.get_default_task_list(alice)
        assert restored is not None
        assert task.task_list_id == restored.id

    def test_title_required(self, service, alice):
        with pytest.raises(ValidationError):
            service.create_task(alice, {"notes": "no title"})
        with pytest.raises(ValidationError):
            service.create_task(alice, {"title": "   "})

    def test_unknown_fields_rejected(self, service, alice):
        with pytest.raises(ValidationError):
            service.create_task(alice, {"title": "x", "user_id": "someone"})

    def test_cannot_create_in_foreign_list(self, service, memory_store, alice, bob):
        bobs_list = memory_store.get_default_task_list(bob)

        with pytest.raises(NotFoundError):
            service.create_task(alice, {"title": "x", "task_list_id": bobs_list.id})

    def test_completed_sets_timestamp(self, service, alice):
        task = service.create_task(alice, {"title": "x"})

        done = service.update_task(alice, task.id, {"status": "completed"})

        assert done.status == "completed"
        assert done.completed_at is not None

    def test_completing_twice_keeps_first_timestamp(self, service, alice):
        task = service.create_task(alice, {"title": "x"})
        first = service.update_task(alice, task.id, {"status": "completed"}).completed_at

        again = service.update_task(alice, task.id, {"status": "completed"})

        assert again.completed_at == first

    def test_reopening_clears_timestamp(self, service, alice):
        task = service.create_task(alice, {"title": "x", "status": "completed"})
        assert task.completed_at is not None

        reopened = service.update_task(alice, task.id, {"status": "pending"})

        assert reopened.completed_at is None

    def test_naive_due_date_treated_as_utc(self, service, alice):
        task = service.create_task(alice, {"title": "x", "due_date": datetime(2030, 5, 1, 12, 0)})

        assert task.due_date == datetime(2030, 5, 1, 12, 0, tzinfo=timezone.utc)

    def test_move_to_another_list(self, service, memory_store, alice):
        work = service.create_task_list(alice, "Work")
        task = service.create_task(alice, {"title": "x"})

        moved = service.update_task(alice, task.id, {"task_list_id": work.id})

        assert moved.task_list_id == work.id
        assert memory_store.get_default_task_list(alice).task_ids == []

    def test_move_to_empty_list_id_rejected(self, service, alice):
        task = service.create_task(alice, {"title": "x"})

        with pytest.raises(ValidationError):
            service.update_task(alice, task.id, {"task_list_id": ""})

    def test_empty_update_is_noop(self, service, alice):
        task = service.create_task(alice, {"title": "x"})

        assert service.update_task(alice, task.id, {}).id == task.id

    def test_other_users_tasks_are_not_found(self, service, alice, bob):
        task = service.create_task(alice, {"title": "private"})

        with pytest.raises(NotFoundError):
            service.get_task(bob, task.id)
        with pytest.raises(NotFoundError):
            service.update_task(bob, task.id, {"title": "hijacked"})
        with pytest.raises(NotFoundError):
            service.delete_task(bob, task.id)
        assert service.list_tasks(bob) == []
        assert service.get_task(alice, task.id).title == "private"

    def test_delete(self, service, alice):
        task = service.create_task(alice, {"title": "x"})

        service.delete_task(alice, task.id)

        with pytest.raises(NotFoundError):
            service.delete_task(alice, task.id)

    def test_date_filter_needs_both_ends(self, service, alice):
        base = datetime(2030, 1, 1, tzinfo=timezone.utc)
        inside = service.create_task(alice, {"title": "in", "due_date": base + timedelta(days=1)})
        service.create_task(alice, {"title": "out", "due_date": base + timedelta(days=30)})
        service.create_task(alice, {"title": "undated"})

        ranged = service.list_tasks(alice, start_date=base, end_date=base + timedelta(days=7))
        half_open = service.list_tasks(alice, start_date=base)

        assert [t.id for t in ranged] == [inside.id]
        assert len(half_open) == 3

    def test_status_filter(self, service, alice):
        service.create_task(alice, {"title": "open"})
        done = service.create_task(alice, {"title": "done", "status": "completed"})

        assert [t.id for t in service.list_tasks(alice, status="completed")] == [done.id]

"""Integration tests for profile, task and task list endpoints."""

import pytest
from fastapi.testclient import TestClient

from tasknest import app as app_module


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _login(client, email, fixed_code, name="Test User"):
    password = "TestPassword123"
    client.post("/api/auth/register", json={"name": name, "email": email, "password": password})
    client.post("/api/auth/verify-otp", json={"email": email, "otp": fixed_code})
    response = client.post("/api/auth/login", json={"email": email, "password": password})
    return {"Authorization": f"Bearer {response.json()['data']['token']}"}


@pytest.fixture
def alice(client, fixed_code):
    return _login(client, "alice@example.com", fixed_code, name="Alice")


@pytest.fixture
def bob(client, fixed_code):
    return _login(client, "bob@example.com", fixed_code, name="Bob")


@pytest.mark.parametrize(
    "method,path",
    [
        ("get", "/api/profile"),
        ("put", "/api/profile"),
        ("delete", "/api/profile"),
        ("get", "/api/task"),
        ("post", "/api/task"),
        ("get", "/api/taskList"),
        ("post", "/api/taskList"),
    ],
)
def test_endpoints_require_token(client, method, path):
    kwargs = {"json": {}} if method in ("post", "put") else {}
    response = getattr(client, method)(path, **kwargs)

    assert response.status_code == 401


class TestProfile:
    def test_get_own_profile(self, client, alice):
        response = client.get("/api/profile", headers=alice)

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["full_name"] == "Alice"
        assert data["email"] == "alice@example.com"
        assert data["stats"]["total_tasks"] == 0

    def test_update_profile(self, client, alice):
        response = client.put(
            "/api/profile",
            json={"full_name": "Alice Smith", "bio": "Planner", "stats": {"streak": 3}},
            headers=alice,
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["full_name"] == "Alice Smith"
        assert data["bio"] == "Planner"
        assert data["stats"]["streak"] == 3
        assert data["stats"]["total_tasks"] == 0

    def test_update_rejects_owner_fields(self, client, alice):
        response = client.put("/api/profile", json={"email": "x@example.com"}, headers=alice)

        assert response.status_code == 400

    def test_bio_limit(self, client, alice):
        response = client.put("/api/profile", json={"bio": "x" * 201}, headers=alice)

        assert response.status_code == 400

    def test_delete_and_recreate(self, client, alice):
        assert client.delete("/api/profile", headers=alice).status_code == 200
        assert client.get("/api/profile", headers=alice).status_code == 404

        created = client.post("/api/profile", json={"full_name": "Alice Again"}, headers=alice)

        assert created.status_code == 201
        assert created.json()["data"]["full_name"] == "Alice Again"
        assert client.get("/api/profile", headers=alice).status_code == 200

    def test_create_when_exists(self, client, alice):
        response = client.post("/api/profile", json={"full_name": "Dup"}, headers=alice)

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "conflict"

    def test_create_rejects_user_id(self, client, alice):
        client.delete("/api/profile", headers=alice)

        response = client.post(
            "/api/profile", json={"full_name": "X", "user_id": "someone"}, headers=alice
        )

        assert response.status_code == 400


class TestProfilePhoto:
    def test_upload_and_fetch(self, client, alice):
        response = client.post(
            "/api/profile/photo",
            files={"file": ("me.png", b"\x89PNG fake image", "image/png")},
            headers=alice,
        )

        assert response.status_code == 200
        avatar_url = response.json()["data"]["avatar_url"]
        assert avatar_url.endswith("/photo")

        photo = client.get(avatar_url)
        assert photo.status_code == 200
        assert photo.content == b"\x89PNG fake image"
        assert photo.headers["content-type"] == "image/png"

    def test_rejects_non_image(self, client, alice):
        response = client.post(
            "/api/profile/photo",
            files={"file": ("notes.txt", b"hello", "text/plain")},
            headers=alice,
        )

        assert response.status_code == 400

    def test_rejects_empty_file(self, client, alice):
        response = client.post(
            "/api/profile/photo",
            files={"file": ("me.png", b"", "image/png")},
            headers=alice,
        )

        assert response.status_code == 400

    def test_rejects_oversize(self, client, alice, monkeypatch):
        from tasknest.service.runtime import get_runtime

        runtime = get_runtime()
        monkeypatch.setattr(runtime.settings, "max_avatar_bytes", 10)
        monkeypatch.setattr(runtime.profiles, "max_avatar_bytes", 10)

        response = client.post(
            "/api/profile/photo",
            files={"file": ("me.png", b"x" * 11, "image/png")},
            headers=alice,
        )

        assert response.status_code == 400

    def test_missing_photo(self, client, alice):
        response = client.get("/api/profile/nobody/photo")

        assert response.status_code == 404

    def test_delete_profile_removes_photo(self, client, alice):
        response = client.post(
            "/api/profile/photo",
            files={"file": ("me.png", b"img", "image/png")},
            headers=alice,
        )
        avatar_url = response.json()["data"]["avatar_url"]

        client.delete("/api/profile", headers=alice)

        assert client.get(avatar_url).status_code == 404


class TestTasks:
    def test_create_lands_in_default_list(self, client, alice):
        response = client.post("/api/task", json={"title": "Buy milk"}, headers=alice)

        assert response.status_code == 201
        task = response.json()["data"]
        lists = client.get("/api/taskList", headers=alice).json()["data"]["items"]
        default = next(tl for tl in lists if tl["is_default"])
        assert task["task_list_id"] == default["id"]
        assert default["task_ids"] == [task["id"]]

    def test_list_with_filters(self, client, alice):
        client.post(
            "/api/task", json={"title": "Soon", "due_date": "2030-01-02T09:00:00Z"}, headers=alice
        )
        client.post(
            "/api/task", json={"title": "Later", "due_date": "2030-03-01T09:00:00Z"}, headers=alice
        )
        client.post("/api/task", json={"title": "Done", "status": "completed"}, headers=alice)

        everything = client.get("/api/task", headers=alice).json()["data"]
        ranged = client.get(
            "/api/task",
            params={"start_date": "2030-01-01T00:00:00Z", "end_date": "2030-01-31T00:00:00Z"},
            headers=alice,
        ).json()["data"]
        completed = client.get(
            "/api/task", params={"status": "completed"}, headers=alice
        ).json()["data"]

        assert everything["count"] == 3
        assert [t["title"] for t in everything["items"]] == ["Soon", "Later", "Done"]
        assert [t["title"] for t in ranged["items"]] == ["Soon"]
        assert [t["title"] for t in completed["items"]] == ["Done"]

    def test_invalid_status_filter(self, client, alice):
        response = client.get("/api/task", params={"status": "archived"}, headers=alice)

        assert response.status_code == 400

    def test_update_and_complete(self, client, alice):
        task_id = client.post("/api/task", json={"title": "x"}, headers=alice).json()["data"]["id"]

        response = client.put(
            f"/api/task/{task_id}",
            json={
                "status": "completed",
                "priority": "high",
                "reminder": {"enabled": True, "remind_at": "2030-01-01T08:00:00Z"},
                "repeat": {"frequency": "weekly", "days_of_week": ["mon", "fri"]},
            },
            headers=alice,
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["status"] == "completed"
        assert data["completed_at"] is not None
        assert data["priority"] == "high"
        assert data["reminder"]["enabled"] is True
        assert data["repeat"]["days_of_week"] == ["mon", "fri"]

    def test_invalid_fields_rejected(self, client, alice):
        bad_priority = client.post(
            "/api/task", json={"title": "x", "priority": "urgent"}, headers=alice
        )
        extra = client.post("/api/task", json={"title": "x", "user_id": "u"}, headers=alice)
        missing_title = client.post("/api/task", json={"notes": "n"}, headers=alice)

        assert bad_priority.status_code == 400
        assert extra.status_code == 400
        assert missing_title.status_code == 400

    def test_delete(self, client, alice):
        task_id = client.post("/api/task", json={"title": "x"}, headers=alice).json()["data"]["id"]

        assert client.delete(f"/api/task/{task_id}", headers=alice).status_code == 200
        assert client.delete(f"/api/task/{task_id}", headers=alice).status_code == 404

    def test_other_users_task_is_invisible(self, client, alice, bob):
        task_id = client.post("/api/task", json={"title": "mine"}, headers=alice).json()["data"]["id"]

        assert client.put(f"/api/task/{task_id}", json={"title": "t"}, headers=bob).status_code == 404
        assert client.delete(f"/api/task/{task_id}", headers=bob).status_code == 404
        assert client.get("/api/task", headers=bob).json()["data"]["count"] == 0


class TestTaskLists:
    def test_create_and_move_task(self, client, alice):
        work = client.post("/api/taskList", json={"title": "Work"}, headers=alice)
        assert work.status_code == 201
        work_id = work.json()["data"]["id"]
        task_id = client.post("/api/task", json={"title": "x"}, headers=alice).json()["data"]["id"]

        moved = client.put(f"/api/task/{task_id}", json={"task_list_id": work_id}, headers=alice)

        assert moved.json()["data"]["task_list_id"] == work_id
        lists = {tl["id"]: tl for tl in client.get("/api/taskList", headers=alice).json()["data"]["items"]}
        assert lists[work_id]["task_ids"] == [task_id]

    def test_new_default_moves_flag(self, client, alice):
        work_id = client.post(
            "/api/taskList", json={"title": "Work", "is_default": True}, headers=alice
        ).json()["data"]["id"]

        lists = client.get("/api/taskList", headers=alice).json()["data"]["items"]

        assert [tl["id"] for tl in lists if tl["is_default"]] == [work_id]

    def test_rename(self, client, alice):
        work_id = client.post("/api/taskList", json={"title": "Work"}, headers=alice).json()["data"]["id"]

        response = client.put(f"/api/taskList/{work_id}", json={"title": "Job"}, headers=alice)

        assert response.json()["data"]["title"] == "Job"

    def test_client_cannot_set_task_ids(self, client, alice):
        response = client.post(
            "/api/taskList", json={"title": "Work", "task_ids": ["x"]}, headers=alice
        )

        assert response.status_code == 400

    def test_default_list_protected(self, client, alice):
        lists = client.get("/api/taskList", headers=alice).json()["data"]["items"]
        default_id = next(tl["id"] for tl in lists if tl["is_default"])

        delete = client.delete(f"/api/taskList/{default_id}", headers=alice)
        unset = client.put(
            f"/api/taskList/{default_id}", json={"is_default": False}, headers=alice
        )

        assert delete.status_code == 400
        assert unset.status_code == 400

    def test_delete_cascades(self, client, alice):
        work_id = client.post("/api/taskList", json={"title": "Work"}, headers=alice).json()["data"]["id"]
        client.post("/api/task", json={"title": "x", "task_list_id": work_id}, headers=alice)

        response = client.delete(f"/api/taskList/{work_id}", headers=alice)

        assert response.status_code == 200
        assert client.get("/api/task", headers=alice).json()["data"]["count"] == 0

    def test_other_users_list_is_invisible(self, client, alice, bob):
        work_id = client.post("/api/taskList", json={"title": "Work"}, headers=alice).json()["data"]["id"]

        assert client.put(f"/api/taskList/{work_id}", json={"title": "x"}, headers=bob).status_code == 404
        assert client.delete(f"/api/taskList/{work_id}", headers=bob).status_code == 404
        stolen = client.post("/api/task", json={"title": "x", "task_list_id": work_id}, headers=bob)
        assert stolen.status_code == 404

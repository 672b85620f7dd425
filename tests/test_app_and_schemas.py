import importlib

import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from tasknest import app as app_module
from tasknest.api import schemas
from tasknest.config import reset_settings_cache


@pytest.fixture
def fresh_app(monkeypatch):
    """Reload the app module to respect env overrides for CORS tests."""

    monkeypatch.delenv("CORS_ALLOW_ORIGINS", raising=False)
    reset_settings_cache()
    reloaded = importlib.reload(app_module)
    try:
        yield reloaded.app
    finally:
        importlib.reload(app_module)


def test_security_headers_and_cors(fresh_app):
    client = TestClient(fresh_app)
    response = client.get("/healthz", headers={"Origin": "http://localhost:3000"})

    assert response.status_code == 200
    assert response.headers["X-Frame-Options"] == "DENY"
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["API-Version"] == app_module.__version__
    assert response.headers["access-control-allow-origin"] == "http://localhost:3000"


def test_photo_responses_are_cacheable():
    client = TestClient(app_module.app)
    response = client.get("/api/profile/nobody/photo")

    assert "Cache-Control" not in response.headers


def test_allowed_origins_default(monkeypatch):
    monkeypatch.delenv("CORS_ALLOW_ORIGINS", raising=False)
    reset_settings_cache()
    origins = app_module._allowed_origins()
    assert "http://localhost" in origins
    assert "http://127.0.0.1:5173" in origins


def test_allowed_origins_override(monkeypatch):
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://example.com, https://demo.local")
    reset_settings_cache()
    origins = app_module._allowed_origins()
    assert origins == ["https://example.com", "https://demo.local"]


def test_envelope_requires_success_flag():
    with pytest.raises(ValidationError):
        schemas.Envelope(data={"x": 1})


def test_numeric_otp_is_zero_padded():
    req = schemas.VerifyOtpRequest(email="a@example.com", otp=42)
    assert req.otp == "000042"

    reset = schemas.ResetPasswordRequest(email="a@example.com", otp=7, new_password="Password1")
    assert reset.otp == "000007"


def test_profile_create_rejects_user_id():
    with pytest.raises(ValidationError):
        schemas.ProfileCreateRequest(full_name="A", user_id="someone")

    assert schemas.ProfileCreateRequest().bio == ""


def test_profile_update_forbids_unknown_fields():
    with pytest.raises(ValidationError):
        schemas.ProfileUpdateRequest(email="x@example.com")


def test_task_fields_only_include_sent_values():
    req = schemas.TaskUpdateRequest(title="New", status=None, notes=None)

    assert req.to_fields() == {"title": "New", "notes": None}


def test_task_nested_objects_become_json():
    req = schemas.TaskCreateRequest(
        title="Standup",
        reminder={"enabled": True, "remind_at": "2030-01-01T08:00:00Z"},
        repeat={"frequency": "daily"},
    )
    fields = req.to_fields()

    assert fields["reminder"]["remind_at"].startswith("2030-01-01T08:00:00")
    assert fields["repeat"] == {
        "frequency": "daily",
        "interval": 1,
        "days_of_week": [],
        "until": None,
    }


def test_task_enums_validated():
    with pytest.raises(ValidationError):
        schemas.TaskCreateRequest(title="x", priority="urgent")
    with pytest.raises(ValidationError):
        schemas.TaskCreateRequest(title="x", repeat={"frequency": "hourly"})
    with pytest.raises(ValidationError):
        schemas.TaskCreateRequest(title="x", repeat={"interval": 0})

import pytest
from pydantic import ValidationError

from tasknest.config import Settings, get_settings, reset_settings_cache
from tasknest.service.runtime import _mask_url_password, reset_runtime_for_tests


def test_defaults():
    settings = Settings()

    assert settings.access_token_ttl_minutes == 24 * 60
    assert settings.verification_code_ttl_minutes == 5
    assert settings.reset_code_ttl_minutes == 10
    assert settings.require_email_verification is True
    assert settings.jwt_secret is None


def test_from_env_reads_named_variables(monkeypatch):
    monkeypatch.setenv("ACCESS_TOKEN_TTL_MINUTES", "60")
    monkeypatch.setenv("REQUIRE_EMAIL_VERIFICATION", "false")
    monkeypatch.setenv("SMTP_HOST", "smtp.example.com")

    settings = Settings.from_env()

    assert settings.access_token_ttl_minutes == 60
    assert settings.require_email_verification is False
    assert settings.smtp_host == "smtp.example.com"


def test_from_env_reads_dotenv(monkeypatch, tmp_path):
    (tmp_path / ".env").write_text("RESET_CODE_TTL_MINUTES=15\nJWT_ISSUER=from-dotenv\n")
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("RESET_CODE_TTL_MINUTES", raising=False)
    monkeypatch.setenv("JWT_ISSUER", "from-environment")

    settings = Settings.from_env()

    assert settings.reset_code_ttl_minutes == 15
    # Real environment variables win over the file
    assert settings.jwt_issuer == "from-environment"


@pytest.mark.parametrize(
    "field", ["access_token_ttl_minutes", "verification_code_ttl_minutes", "reset_code_ttl_minutes"]
)
def test_ttls_must_be_positive(field):
    with pytest.raises(ValidationError):
        Settings(**{field: 0})


def test_empty_secret_becomes_none():
    assert Settings(jwt_secret="").jwt_secret is None


def test_settings_are_cached_until_reset(monkeypatch):
    reset_settings_cache()
    first = get_settings()
    monkeypatch.setenv("JWT_ISSUER", "changed")

    assert get_settings() is first
    reset_settings_cache()
    assert get_settings().jwt_issuer == "changed"


def test_runtime_reset_requires_test_mode(monkeypatch):
    monkeypatch.setenv("TEST_MODE", "false")

    with pytest.raises(RuntimeError):
        reset_runtime_for_tests()

    monkeypatch.setenv("TEST_MODE", "true")


@pytest.mark.parametrize(
    "url,expected",
    [
        ("postgresql://user:secret@db:5432/app", "postgresql://user:***@db:5432/app"),
        ("postgresql://db/app", "postgresql://db/app"),
        (None, None),
    ],
)
def test_database_password_masked(url, expected):
    assert _mask_url_password(url) == expected

import os
import sys
import tempfile
from pathlib import Path

# Configure the environment before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="tasknest_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Cheap argon2 parameters keep the suite fast
os.environ.setdefault("PASSWORD_HASH_TIME_COST", "1")
os.environ.setdefault("PASSWORD_HASH_MEMORY_COST", "1024")
os.environ.setdefault("PASSWORD_HASH_PARALLELISM", "1")
os.environ.pop("SMTP_HOST", None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from tasknest.service.email import DeliveryStatus, EmailService  # noqa: E402
from tasknest.service.hashing import SecretHasher  # noqa: E402
from tasknest.service.runtime import reset_runtime_for_tests  # noqa: E402
from tasknest.service.verification import VerificationEngine  # noqa: E402
from tasknest.storage.memory import MemoryStore  # noqa: E402

FIXED_CODE = "123456"


class RecordingEmailService(EmailService):
    """Collects outgoing mail instead of talking to an SMTP server."""

    def __init__(self, status: DeliveryStatus = DeliveryStatus.DELIVERED):
        super().__init__(smtp_host="smtp.test", from_email="noreply@tasknest.test")
        self.status = status
        self.outbox = []

    def send(self, to_email, subject, text_body, html_body=None):
        self.outbox.append({"to": to_email, "subject": subject, "text": text_body})
        return self.status


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # Each test gets its own state file so persisted accounts never leak between tests
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "shared"))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def fixed_code(monkeypatch):
    """Make every issued verification or reset code predictable."""
    monkeypatch.setattr(VerificationEngine, "_generate_code", lambda self: FIXED_CODE)
    return FIXED_CODE


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path / "store"))


@pytest.fixture
def hasher():
    return SecretHasher(time_cost=1, memory_cost=1024, parallelism=1)


@pytest.fixture
def email_service():
    return RecordingEmailService()


@pytest.fixture
def failing_email_service():
    return RecordingEmailService(status=DeliveryStatus.FAILED)

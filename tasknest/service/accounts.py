from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from tasknest.logging import get_logger, redact_email
from tasknest.service.errors import ConflictError, DuplicateAccountError, ServerError
from tasknest.service.hashing import SecretHasher
from tasknest.service.validation import require_text, validate_email
from tasknest.service.verification import IssuedCode, VerificationEngine
from tasknest.storage.errors import ConstraintViolation
from tasknest.storage.models import (
    DEFAULT_TASK_LIST_TITLE,
    OTP_PURPOSE_VERIFY_EMAIL,
    Account,
    Profile,
    TaskList,
)

logger = get_logger(__name__)


@dataclass
class Registration:
    account: Account
    profile: Profile
    task_list: TaskList
    issued: IssuedCode


class AccountProvisioner:
    """Creates an account together with its profile and default task list.

    The three records are written in one store transaction. The
    verification code is stored with the account and sent only after the
    transaction commits.
    """

    def __init__(
        self,
        store,
        hasher: SecretHasher,
        verification: VerificationEngine,
        *,
        default_avatar_url: Optional[str] = None,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.verification = verification
        self.default_avatar_url = default_avatar_url
        self.logger = logger

    def register(
        self, name: Optional[str], email: Optional[str], password: Optional[str]
    ) -> Registration:
        full_name = require_text(name, "name")
        normalized = validate_email(email)
        require_text(password, "password")
        if self.store.get_account_by_email(normalized):
            raise DuplicateAccountError("email already registered", detail={"field": "email"})

        password_hash = self.hasher.hash(password)
        issued = self.verification.new_code(normalized, OTP_PURPOSE_VERIFY_EMAIL)
        try:
            with self.store.transaction():
                account = self.store.create_account(
                    normalized,
                    password_hash,
                    otp_hash=issued.code_hash,
                    otp_expires_at=issued.expires_at,
                    otp_purpose=issued.purpose,
                )
                profile, task_list = self._create_profile_records(account, full_name)
        except ConstraintViolation as exc:
            if exc.field == "email":
                # Lost a race with a concurrent registration for the same address
                raise DuplicateAccountError(
                    "email already registered", detail={"field": "email"}
                ) from exc
            self.logger.error("account_provisioning_failed", error=exc.message)
            raise ServerError("failed to create account") from exc

        issued.account_id = account.id
        self.logger.info(
            "account_registered",
            user_id=account.id,
            recipient=redact_email(normalized),
            task_list_id=task_list.id,
        )
        return Registration(account=account, profile=profile, task_list=task_list, issued=issued)

    def _create_profile_records(self, account: Account, full_name: str):
        profile = self.store.create_profile(
            account.id,
            account.email,
            full_name,
            avatar_url=self.default_avatar_url,
        )
        task_list = self.store.create_task_list(
            account.id, DEFAULT_TASK_LIST_TITLE, is_default=True
        )
        return profile, task_list

    def recreate_profile(
        self,
        account: Account,
        full_name: Optional[str] = None,
        *,
        bio: str = "",
        avatar_url: Optional[str] = None,
    ) -> Profile:
        """Recreate a deleted profile, and the default list if it is missing too."""
        if self.store.get_profile(account.id):
            raise ConflictError("profile already exists", detail={"field": "user_id"})
        name = (full_name or "").strip() or "User"
        with self.store.transaction():
            profile = self.store.create_profile(
                account.id,
                account.email,
                name,
                avatar_url=avatar_url or self.default_avatar_url,
                bio=bio,
            )
            if not self.store.get_default_task_list(account.id):
                self.store.create_task_list(
                    account.id, DEFAULT_TASK_LIST_TITLE, is_default=True
                )
        self.logger.info("profile_recreated", user_id=account.id)
        return profile

    def dispatch_verification(self, registration: Registration) -> None:
        self.verification.dispatch(registration.issued)

from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from tasknest.logging import get_logger, redact_email
from tasknest.service.email import DeliveryStatus, EmailService
from tasknest.service.errors import (
    AccountNotFoundError,
    AlreadyVerifiedError,
    CodeExpiredError,
    CodeInvalidError,
    ServerError,
)
from tasknest.service.hashing import SecretHasher
from tasknest.service.validation import check_password_policy, require_text, validate_email
from tasknest.storage.models import (
    OTP_PURPOSE_RESET_PASSWORD,
    OTP_PURPOSE_VERIFY_EMAIL,
    Account,
)

logger = get_logger(__name__)

CODE_DIGITS = 6


@dataclass
class IssuedCode:
    """A freshly issued code, kept in plaintext only until it is dispatched."""

    account_id: str
    email: str
    code: str
    code_hash: str
    purpose: str
    expires_at: datetime


class VerificationEngine:
    """Issues and checks the six-digit codes used for email verification and
    password resets.

    Only an argon2 hash of a code is stored. An account holds at most one
    outstanding code; issuing another replaces it, and a successful check
    clears it.
    """

    def __init__(
        self,
        store,
        hasher: SecretHasher,
        email_service: EmailService,
        *,
        verification_ttl: timedelta = timedelta(minutes=5),
        reset_ttl: timedelta = timedelta(minutes=10),
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.email_service = email_service
        self.verification_ttl = verification_ttl
        self.reset_ttl = reset_ttl
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _generate_code(self) -> str:
        return f"{secrets.randbelow(10 ** CODE_DIGITS):0{CODE_DIGITS}d}"

    def ttl_for(self, purpose: str) -> timedelta:
        if purpose == OTP_PURPOSE_RESET_PASSWORD:
            return self.reset_ttl
        return self.verification_ttl

    def new_code(self, email: str, purpose: str, *, account_id: str = "") -> IssuedCode:
        """Generate and hash a code without storing it.

        The provisioner stores it as part of account creation.
        """
        code = self._generate_code()
        return IssuedCode(
            account_id=account_id,
            email=email,
            code=code,
            code_hash=self.hasher.hash(code),
            purpose=purpose,
            expires_at=self._now() + self.ttl_for(purpose),
        )

    def issue_code(self, account: Account, purpose: str) -> IssuedCode:
        """Store a new code for ``account``, replacing any outstanding one."""
        issued = self.new_code(account.email, purpose, account_id=account.id)
        updated = self.store.set_account_otp(
            account.id, issued.code_hash, issued.expires_at, purpose
        )
        if not updated:
            raise ServerError("failed to store verification code")
        self.logger.info(
            "otp_issued",
            user_id=account.id,
            purpose=purpose,
            expires_at=issued.expires_at.isoformat(),
        )
        return issued

    def _check_code(
        self, account: Account, code: str, purpose: str, otp_hash: Optional[str]
    ) -> None:
        if not otp_hash or not account.has_outstanding_code or account.otp_purpose != purpose:
            raise CodeInvalidError("invalid code")
        expires_at = account.otp_expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        if self._now() >= expires_at:
            self.logger.info("otp_expired", user_id=account.id, purpose=purpose)
            raise CodeExpiredError("code has expired, request a new one")
        if not self.hasher.verify(code, otp_hash):
            self.logger.info("otp_mismatch", user_id=account.id, purpose=purpose)
            raise CodeInvalidError("invalid code")

    def verify_code(self, email: Optional[str], code: Optional[str]) -> Account:
        """Confirm an email address with the code sent at registration."""
        normalized = validate_email(email)
        submitted = require_text(code, "otp")
        account = self.store.get_account_by_email(normalized)
        if not account:
            raise AccountNotFoundError("account not found")
        if account.is_verified:
            raise AlreadyVerifiedError("account is already verified")
        # The code checked is the one consumed, even if a new one is issued meanwhile
        expected_hash = account.otp_hash
        self._check_code(account, submitted, OTP_PURPOSE_VERIFY_EMAIL, expected_hash)
        verified = self.store.consume_account_otp(
            account.id, expected_hash, mark_verified=True
        )
        if not verified:
            # Another request consumed or replaced the code first
            raise CodeInvalidError("invalid code")
        self.logger.info("email_verified", user_id=account.id)
        return verified

    def resend_verification(self, email: Optional[str]) -> IssuedCode:
        """Replace the verification code of an unverified account with a fresh one."""
        normalized = validate_email(email)
        account = self.store.get_account_by_email(normalized)
        if not account:
            raise AccountNotFoundError("account not found")
        if account.is_verified:
            raise AlreadyVerifiedError("account is already verified")
        return self.issue_code(account, OTP_PURPOSE_VERIFY_EMAIL)

    def request_password_reset(self, email: Optional[str]) -> Optional[IssuedCode]:
        """Issue a reset code if the address belongs to an account.

        Callers answer the same way whether or not a code was issued.
        """
        normalized = validate_email(email)
        account = self.store.get_account_by_email(normalized)
        if not account:
            self.logger.info("password_reset_unknown_email", recipient=redact_email(normalized))
            # Same hashing work as a real issue so response time does not reveal the account
            self.hasher.hash(self._generate_code())
            return None
        return self.issue_code(account, OTP_PURPOSE_RESET_PASSWORD)

    def reset_password(
        self, email: Optional[str], code: Optional[str], new_password: Optional[str]
    ) -> Account:
        normalized = validate_email(email)
        submitted = require_text(code, "otp")
        check_password_policy(new_password)
        account = self.store.get_account_by_email(normalized)
        if not account:
            # Same answer as a wrong code so addresses cannot be probed
            raise CodeInvalidError("invalid code")
        expected_hash = account.otp_hash
        self._check_code(account, submitted, OTP_PURPOSE_RESET_PASSWORD, expected_hash)
        new_hash = self.hasher.hash(new_password)
        with self.store.transaction():
            if not self.store.consume_account_otp(account.id, expected_hash):
                raise CodeInvalidError("invalid code")
            updated = self.store.set_account_password(account.id, new_hash)
        if not updated:
            raise ServerError("failed to update password")
        self.logger.info(
            "password_reset_completed", user_id=account.id, session_epoch=updated.session_epoch
        )
        return updated

    def dispatch(self, issued: IssuedCode) -> DeliveryStatus:
        """Send a code by email. Failures are logged, never raised."""
        ttl_minutes = int(self.ttl_for(issued.purpose).total_seconds() // 60)
        try:
            if issued.purpose == OTP_PURPOSE_RESET_PASSWORD:
                status = self.email_service.send_password_reset_code(
                    issued.email, issued.code, ttl_minutes=ttl_minutes
                )
            else:
                status = self.email_service.send_verification_code(
                    issued.email, issued.code, ttl_minutes=ttl_minutes
                )
        except Exception as exc:
            self.logger.error(
                "otp_dispatch_failed",
                user_id=issued.account_id,
                purpose=issued.purpose,
                error_type=type(exc).__name__,
            )
            return DeliveryStatus.FAILED
        if status == DeliveryStatus.FAILED:
            self.logger.warning(
                "otp_dispatch_failed", user_id=issued.account_id, purpose=issued.purpose
            )
        return status

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Protocol

from tasknest.logging import get_logger, redact_email
from tasknest.service.errors import (
    AuthenticationError,
    ServerError,
    UnverifiedAccountError,
    ValidationError,
)
from tasknest.service.hashing import SecretHasher
from tasknest.service.tokens import TokenSigner
from tasknest.service.validation import check_password_policy, normalize_email
from tasknest.storage.models import Account

logger = get_logger(__name__)


class CredentialStore(Protocol):
    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def set_account_password(
        self, account_id: str, password_hash: str
    ) -> Optional[Account]: ...


@dataclass
class AuthContext:
    user_id: str
    email: str
    session_epoch: int
    token_id: Optional[str] = None
    expires_at: Optional[datetime] = None


@dataclass
class LoginResult:
    token: str
    account: Account
    expires_at: datetime


class AuthService:
    """Password login and bearer-token sessions.

    Tokens carry the account's session epoch. Any password change bumps the
    epoch, so every token issued before it stops authenticating.
    """

    def __init__(
        self,
        store: CredentialStore,
        hasher: SecretHasher,
        signer: TokenSigner,
        *,
        token_ttl: timedelta = timedelta(hours=24),
        require_verification: bool = True,
    ) -> None:
        self.store: CredentialStore = store
        self.hasher = hasher
        self.signer = signer
        self.token_ttl = token_ttl
        self.require_verification = require_verification
        self.logger = logger

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        return datetime.now(timezone.utc)

    def issue_token(self, account: Account) -> LoginResult:
        now = self._now()
        token = self.signer.sign(
            {
                "sub": account.id,
                "epoch": account.session_epoch,
                "token_type": "access",
            },
            self.token_ttl,
            now=now,
        )
        return LoginResult(token=token, account=account, expires_at=now + self.token_ttl)

    def login(self, email: Optional[str], password: Optional[str]) -> LoginResult:
        normalized = normalize_email(email)
        if not normalized or not isinstance(password, str) or not password:
            raise ValidationError("email and password are required")
        account = self.store.get_account_by_email(normalized)
        if account:
            password_ok = self.hasher.verify(password, account.password_hash)
        else:
            password_ok = self.hasher.dummy_verify(password)
        if not password_ok:
            self.logger.info("login_failed", recipient=redact_email(normalized))
            raise AuthenticationError("invalid email or password")
        if self.require_verification and not account.is_verified:
            self.logger.info("login_unverified", user_id=account.id)
            raise UnverifiedAccountError("verify your email before logging in")
        result = self.issue_token(account)
        self.logger.info("login_succeeded", user_id=account.id)
        return result

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        lower = header.lower()
        if not lower.startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip() or None

    def authenticate(self, authorization: Optional[str]) -> Optional[AuthContext]:
        """Resolve an ``Authorization`` header to the caller, or None.

        Read-only: checks signature, expiry, that the account still exists
        and that its epoch matches the token's.
        """
        token = self._extract_bearer(authorization)
        if not token:
            return None
        payload = self.signer.verify(token, now=self._now())
        if not payload or payload.get("token_type") != "access":
            return None
        account_id = payload.get("sub")
        if not isinstance(account_id, str):
            return None
        account = self.store.get_account(account_id)
        if not account:
            self.logger.info("token_account_missing", user_id=account_id)
            return None
        if payload.get("epoch") != account.session_epoch:
            self.logger.info(
                "token_epoch_stale",
                user_id=account_id,
                token_epoch=payload.get("epoch"),
                current_epoch=account.session_epoch,
            )
            return None
        return AuthContext(
            user_id=account.id,
            email=account.email,
            session_epoch=account.session_epoch,
            token_id=payload.get("jti"),
            expires_at=_timestamp(payload.get("exp")),
        )

    def change_password(
        self, account_id: str, old_password: Optional[str], new_password: Optional[str]
    ) -> Account:
        account = self.store.get_account(account_id)
        if not account:
            raise AuthenticationError("invalid session")
        if not isinstance(old_password, str) or not self.hasher.verify(
            old_password, account.password_hash
        ):
            self.logger.info("password_change_rejected", user_id=account_id)
            raise AuthenticationError("current password is incorrect")
        check_password_policy(new_password)
        updated = self.store.set_account_password(account_id, self.hasher.hash(new_password))
        if not updated:
            raise ServerError("failed to update password")
        self.logger.info(
            "password_changed", user_id=account_id, session_epoch=updated.session_epoch
        )
        return updated


def _timestamp(value: Any) -> Optional[datetime]:
    try:
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None

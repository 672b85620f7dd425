from __future__ import annotations

import secrets

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from tasknest.logging import get_logger

logger = get_logger(__name__)


class SecretHasher:
    """argon2id hashing for passwords and one-time codes.

    The stored digest carries its own salt and parameters, so raising the
    cost later does not invalidate existing hashes.
    """

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost: int = 65536,
        parallelism: int = 4,
    ) -> None:
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )
        self._dummy_digest: str | None = None

    def hash(self, secret: str) -> str:
        return self._hasher.hash(secret)

    def verify(self, secret: str, digest: str | None) -> bool:
        if not digest or secret is None:
            return False
        try:
            return self._hasher.verify(digest, secret)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("secret_hash_unreadable")
            return False

    def dummy_verify(self, secret: str | None) -> bool:
        """Spend the cost of a real verify when there is no stored digest to check."""
        if self._dummy_digest is None:
            self._dummy_digest = self.hash(secrets.token_urlsafe(16))
        self.verify(secret if isinstance(secret, str) else "", self._dummy_digest)
        return False

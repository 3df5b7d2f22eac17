from __future__ import annotations

from typing import List

from argon2 import PasswordHasher as Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from tenantauth.logging import get_logger
from tenantauth.service.errors import PasswordPolicyError

logger = get_logger(__name__)


class PasswordPolicy:
    """Length and character-class rules applied before a password is hashed."""

    def __init__(self, *, min_length: int = 8, max_length: int = 128) -> None:
        self.min_length = min_length
        self.max_length = max_length

    def violations(self, password: str) -> List[str]:
        problems: List[str] = []
        if len(password) < self.min_length:
            problems.append(f"must be at least {self.min_length} characters")
        if len(password) > self.max_length:
            problems.append(f"must be at most {self.max_length} characters")
        if not any(ch.isupper() for ch in password):
            problems.append("must contain an uppercase letter")
        if not any(ch.islower() for ch in password):
            problems.append("must contain a lowercase letter")
        if not any(ch.isdigit() for ch in password):
            problems.append("must contain a digit")
        if all(ch.isalnum() for ch in password):
            problems.append("must contain a special character")
        return problems

    def check(self, password: str) -> None:
        problems = self.violations(password)
        if problems:
            raise PasswordPolicyError(
                "password does not meet policy", detail={"violations": problems}
            )


class PasswordHasher:
    """argon2id hashing with a configurable work factor."""

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost: int = 64 * 1024,
        policy: PasswordPolicy | None = None,
    ) -> None:
        self._hasher = Argon2Hasher(time_cost=time_cost, memory_cost=memory_cost, type=Type.ID)
        self.policy = policy or PasswordPolicy()

    @classmethod
    def from_settings(cls, settings) -> "PasswordHasher":
        return cls(
            time_cost=settings.password_hash_time_cost,
            memory_cost=settings.password_hash_memory_cost,
            policy=PasswordPolicy(
                min_length=settings.password_min_length,
                max_length=settings.password_max_length,
            ),
        )

    def hash(self, password: str, *, enforce_policy: bool = True) -> str:
        if enforce_policy:
            self.policy.check(password)
        return self._hasher.hash(password)

    def verify(self, stored_hash: str, password: str) -> bool:
        """Constant-time check; malformed hashes count as a mismatch."""
        try:
            return self._hasher.verify(stored_hash, password)
        except VerifyMismatchError:
            return False
        except InvalidHash:
            logger.warning("password_hash_invalid")
            return False

    def needs_rehash(self, stored_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(stored_hash)
        except InvalidHash:
            return True

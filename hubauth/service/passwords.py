from __future__ import annotations

import re
import secrets
import string
from dataclasses import dataclass, field
from typing import List, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from hubauth.config import Settings
from hubauth.logging import get_logger

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128
_SPECIAL_RE = re.compile(r"[!@#$%^&*()_+\-=\[\]{};':\"\\|,.<>/?]")


@dataclass
class PasswordStrength:
    valid: bool
    errors: List[str] = field(default_factory=list)


def validate_password_strength(password: str) -> PasswordStrength:
    errors: List[str] = []
    if len(password) < MIN_PASSWORD_LENGTH:
        errors.append(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")
    if len(password) > MAX_PASSWORD_LENGTH:
        errors.append(f"Password must be less than {MAX_PASSWORD_LENGTH} characters")
    if not re.search(r"[a-z]", password):
        errors.append("Password must contain at least one lowercase letter")
    if not re.search(r"[A-Z]", password):
        errors.append("Password must contain at least one uppercase letter")
    if not re.search(r"\d", password):
        errors.append("Password must contain at least one number")
    if not _SPECIAL_RE.search(password):
        errors.append("Password must contain at least one special character")
    return PasswordStrength(valid=not errors, errors=errors)


def generate_secure_password(length: int = 16) -> str:
    """Random password that always satisfies ``validate_password_strength``."""
    if length < MIN_PASSWORD_LENGTH:
        raise ValueError(f"length must be at least {MIN_PASSWORD_LENGTH}")
    special = "!@#$%^&*"
    pools = [string.ascii_lowercase, string.ascii_uppercase, string.digits, special]
    alphabet = "".join(pools)
    chars = [secrets.choice(pool) for pool in pools]
    chars.extend(secrets.choice(alphabet) for _ in range(length - len(chars)))
    secrets.SystemRandom().shuffle(chars)
    return "".join(chars)


class CredentialVerifier:
    """argon2id hashing and constant-time verification.

    Every hash embeds its own cost parameters, so hashes made under older
    settings keep verifying; ``needs_rehash`` reports them for upgrade.
    """

    def __init__(self, settings: Settings) -> None:
        if settings.test_mode:
            # Cheap parameters keep the suite fast; still argon2id
            self._hasher = PasswordHasher(
                time_cost=1, memory_cost=1024, parallelism=1, type=Type.ID
            )
        else:
            self._hasher = PasswordHasher(
                time_cost=settings.argon2_time_cost,
                memory_cost=settings.argon2_memory_cost,
                parallelism=settings.argon2_parallelism,
                type=Type.ID,
            )
        self._dummy_hash = self._hasher.hash(secrets.token_urlsafe(16))

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, password: str, stored_hash: Optional[str]) -> bool:
        """Check ``password`` against ``stored_hash``.

        A missing hash is checked against a throwaway hash so the call costs
        the same whether or not the account exists.
        """
        target = stored_hash or self._dummy_hash
        try:
            matched = self._hasher.verify(target, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unusable")
            return False
        return matched and stored_hash is not None

    def needs_rehash(self, stored_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(stored_hash)
        except InvalidHash:
            return True

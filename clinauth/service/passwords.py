from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from clinauth.logging import get_logger
from clinauth.service.errors import InvalidEmail, WeakPassword

logger = get_logger(__name__)

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_SPECIAL_CHARS = set("!@#$%^&*()_+-=[]{}|;':\",./<>?`~\\")
MAX_PASSWORD_LENGTH = 256


class Hasher(Protocol):
    def hash(self, plain: str) -> str: ...

    def verify(self, plain: str, digest: str) -> bool: ...


class Argon2Hasher:
    """argon2id password hashing."""

    def __init__(self, hasher: PasswordHasher | None = None) -> None:
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)

    def hash(self, plain: str) -> str:
        return self._pwd_hasher.hash(plain)

    def verify(self, plain: str, digest: str) -> bool:
        try:
            return self._pwd_hasher.verify(digest, plain)
        except VerifyMismatchError:
            return False
        except (InvalidHashError, VerificationError):
            logger.warning("password_hash_unverifiable")
            return False


@dataclass(frozen=True)
class PasswordPolicy:
    min_length: int = 8
    require_upper: bool = True
    require_lower: bool = True
    require_digit: bool = True
    require_special: bool = True

    def unmet_requirements(self, password: str) -> List[str]:
        failed: List[str] = []
        if len(password) < self.min_length:
            failed.append(f"min_length:{self.min_length}")
        if len(password) > MAX_PASSWORD_LENGTH:
            failed.append(f"max_length:{MAX_PASSWORD_LENGTH}")
        if self.require_upper and not any(c.isupper() for c in password):
            failed.append("uppercase")
        if self.require_lower and not any(c.islower() for c in password):
            failed.append("lowercase")
        if self.require_digit and not any(c.isdigit() for c in password):
            failed.append("digit")
        if self.require_special and not any(c in _SPECIAL_CHARS for c in password):
            failed.append("special")
        return failed

    def validate(self, password: str) -> None:
        if not isinstance(password, str):
            raise WeakPassword()
        failed = self.unmet_requirements(password)
        if failed:
            raise WeakPassword(failed=failed)


def normalize_email(email: str) -> str:
    return email.strip().lower()


def validate_email(email: str) -> str:
    """Return the normalized address or raise ``InvalidEmail``."""
    if not isinstance(email, str):
        raise InvalidEmail()
    normalized = normalize_email(email)
    if len(normalized) > 254 or not _EMAIL_RE.match(normalized):
        raise InvalidEmail()
    return normalized

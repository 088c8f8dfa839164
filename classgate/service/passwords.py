"""Password strength policy and argon2id hashing."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import List, Mapping, Optional, Tuple

from argon2 import PasswordHasher as _Argon2Hasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from classgate.config import Settings
from classgate.logging import get_logger

logger = get_logger(__name__)

SPECIAL_CHARACTERS = "!@#$%^&*()_+-=[]{};':\"\\|,.<>/?"
_EXTENDED_SPECIAL = re.compile(r"[~`!@#$%^&*()_+=\[\]{};':\"\\|,.<>/?-]")

COMMON_PASSWORDS = frozenset(
    {
        "password", "password123", "123456", "123456789", "qwerty", "abc123",
        "password1", "admin", "letmein", "welcome", "monkey", "dragon",
        "master", "hello", "freedom", "whatever", "qazwsx", "trustno1",
        "654321", "jordan23", "harley", "password!", "1234567890", "superman",
        "iloveyou", "sunshine", "princess", "football", "baseball", "shadow",
        "welcome1", "passw0rd", "p@ssw0rd", "p@ssword", "qwerty123",
        "admin123", "letmein1", "changeme", "secret", "teacher", "student",
        "school", "school123", "classroom", "password1!", "welcome123",
        "qwertyuiop", "1q2w3e4r", "abcd1234", "abcdef", "111111", "000000",
    }
)

_SEQUENCES = ("abcdefghijklmnopqrstuvwxyz", "0123456789", "qwertyuiop", "asdfghjkl", "zxcvbnm")
_KEYBOARD_PATTERNS = ("qwerty", "asdf", "zxcv", "1234", "abcd")
_REPEATED = re.compile(r"(.)\1{2,}")
_PERSONAL_SPLIT = re.compile(r"[._\-+]")


def _has_sequence(lowered: str, run: int = 3) -> bool:
    for seq in _SEQUENCES:
        for source in (seq, seq[::-1]):
            for i in range(len(source) - run + 1):
                if source[i : i + run] in lowered:
                    return True
    return False


def _has_keyboard_pattern(lowered: str) -> bool:
    return any(p in lowered for p in _KEYBOARD_PATTERNS)


@dataclass
class PasswordCheck:
    ok: bool
    score: int
    strength: str
    violations: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


def strength_label(score: int) -> str:
    if score < 40:
        return "very_weak"
    if score < 60:
        return "weak"
    if score < 80:
        return "moderate"
    return "strong"


class PasswordPolicy:
    """Stateless strength rules; ``validate`` is pure."""

    def __init__(
        self,
        *,
        min_length: int = 8,
        max_length: int = 128,
        require_uppercase: bool = True,
        require_lowercase: bool = True,
        require_numbers: bool = True,
        require_special: bool = True,
        common_passwords: frozenset[str] = COMMON_PASSWORDS,
    ) -> None:
        self.min_length = min_length
        self.max_length = max_length
        self.require_uppercase = require_uppercase
        self.require_lowercase = require_lowercase
        self.require_numbers = require_numbers
        self.require_special = require_special
        self.common_passwords = frozenset(p.lower() for p in common_passwords)

    @classmethod
    def from_settings(cls, settings: Settings) -> "PasswordPolicy":
        return cls(
            min_length=settings.password_min_length,
            max_length=settings.password_max_length,
            require_uppercase=settings.password_require_uppercase,
            require_lowercase=settings.password_require_lowercase,
            require_numbers=settings.password_require_numbers,
            require_special=settings.password_require_special,
        )

    @staticmethod
    def personal_tokens(user_info: Optional[Mapping[str, Optional[str]]]) -> List[Tuple[str, str]]:
        """(label, token) pairs longer than two characters drawn from the account."""
        if not user_info:
            return []
        tokens: List[Tuple[str, str]] = []
        email = user_info.get("email")
        if email:
            local = email.split("@", 1)[0].lower()
            candidates = [local] + [piece for piece in _PERSONAL_SPLIT.split(local) if piece]
            for piece in candidates:
                tokens.append(("email address", piece))
        for key, label in (
            ("username", "username"),
            ("first_name", "first name"),
            ("last_name", "last name"),
        ):
            value = user_info.get(key)
            if value:
                tokens.append((label, value.lower()))
        return [(label, tok) for label, tok in tokens if len(tok) > 2]

    def validate(
        self,
        password: str,
        user_info: Optional[Mapping[str, Optional[str]]] = None,
    ) -> PasswordCheck:
        violations: List[str] = []
        warnings: List[str] = []
        password = password or ""
        lowered = password.lower()
        score = 0

        if len(password) < self.min_length:
            violations.append(f"Password must be at least {self.min_length} characters long")
        else:
            score += 20
        if len(password) > self.max_length:
            violations.append(f"Password must not exceed {self.max_length} characters")

        has_upper = any(c.isupper() for c in password)
        has_lower = any(c.islower() for c in password)
        has_digit = any(c.isdigit() for c in password)
        has_special = any(c in SPECIAL_CHARACTERS for c in password)

        for required, present, message in (
            (self.require_uppercase, has_upper, "uppercase letter"),
            (self.require_lowercase, has_lower, "lowercase letter"),
            (self.require_numbers, has_digit, "number"),
            (self.require_special, has_special, "special character"),
        ):
            if present:
                score += 15
            elif required:
                violations.append(f"Password must contain at least one {message}")

        if lowered in self.common_passwords:
            violations.append(
                "This password is too common. Please choose a more unique password"
            )
        else:
            score += 10

        leaked = sorted({label for label, tok in self.personal_tokens(user_info) if tok in lowered})
        if leaked:
            violations.append("Password should not contain personal information")
            warnings.extend(f"Contains {label}" for label in leaked)
        else:
            score += 10

        has_repeat = bool(_REPEATED.search(password))
        has_sequence = _has_sequence(lowered)
        has_keyboard = _has_keyboard_pattern(lowered)
        if has_repeat:
            warnings.append("Avoid repeating characters")
        if has_sequence:
            warnings.append("Avoid sequential characters")
        if has_keyboard:
            warnings.append("Avoid keyboard patterns")

        bonus = 0
        if len(password) >= 12:
            bonus += 5
        if len(password) >= 16:
            bonus += 5
        bonus += 2 * sum((has_upper, has_lower, has_digit, has_special))
        if _EXTENDED_SPECIAL.search(password):
            bonus += 3
        bonus -= 5 * sum((has_repeat, has_sequence, has_keyboard))
        score = min(100, score + max(0, bonus))

        strength = strength_label(score)
        if strength in ("very_weak", "weak"):
            warnings.append(f"Password strength is {strength.replace('_', ' ')}")

        return PasswordCheck(
            ok=not violations,
            score=score,
            strength=strength,
            violations=violations,
            warnings=warnings,
        )


class PasswordHasher:
    """argon2id hashing; verification never raises on mismatch or bad hashes."""

    ALGO = "argon2id"

    def __init__(self) -> None:
        self._hasher = _Argon2Hasher(type=Type.ID)
        # Verified against when no account exists so both paths cost one argon2 run
        self._dummy_hash = self._hasher.hash("classgate-timing-equalizer")

    def hash(self, password: str) -> Tuple[str, str]:
        return self._hasher.hash(password), self.ALGO

    def verify(self, stored_hash: Optional[str], algo: Optional[str], password: str) -> bool:
        if not stored_hash or algo != self.ALGO:
            logger.warning("password_algo_mismatch", algo=algo)
            self.burn(password)
            return False
        try:
            return self._hasher.verify(stored_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unverifiable")
            return False

    def burn(self, password: str) -> None:
        """Spend one verification on a fixed hash to equalize timing."""
        try:
            self._hasher.verify(self._dummy_hash, password)
        except VerifyMismatchError:
            pass

    def needs_rehash(self, stored_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(stored_hash)
        except InvalidHash:
            return True

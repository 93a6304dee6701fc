"""
Password generation and complexity checks.
"""

import secrets
from dataclasses import dataclass, field
from typing import List, Optional

from migrationkit.core.settings import PasswordPolicy

UPPERCASE = "ABCDEFGHJKLMNPQRSTUVWXYZ"
LOWERCASE = "abcdefghijkmnpqrstuvwxyz"
DIGITS = "23456789"
SPECIAL = "!@#$%^&*"
ALL_CHARACTERS = UPPERCASE + LOWERCASE + DIGITS + SPECIAL

GENERATED_PASSWORD_LENGTH = 16

_random = secrets.SystemRandom()


def generate_random_password(length: int = GENERATED_PASSWORD_LENGTH) -> str:
    """
    Random password with at least one upper, lower, digit and special
    character, shuffled so the guaranteed characters have no fixed position.
    Ambiguous glyphs (I, O, l, o, 0, 1) are left out.
    """
    if length < 4:
        raise ValueError("Password length must be at least 4")

    password = [
        _random.choice(UPPERCASE),
        _random.choice(LOWERCASE),
        _random.choice(DIGITS),
        _random.choice(SPECIAL),
    ]
    password.extend(_random.choice(ALL_CHARACTERS) for _ in range(length - 4))

    # Fisher-Yates
    for i in range(len(password) - 1, 0, -1):
        j = _random.randint(0, i)
        password[i], password[j] = password[j], password[i]

    return "".join(password)


@dataclass
class PasswordValidationResult:
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    meets_length_requirement: bool = False
    has_uppercase: bool = False
    has_lowercase: bool = False
    has_digit: bool = False
    has_special_character: bool = False


def validate_password_complexity(
    password: Optional[str],
    policy: Optional[PasswordPolicy] = None,
) -> PasswordValidationResult:
    """Check a password against the target tenant's complexity policy."""
    policy = policy or PasswordPolicy()
    password = password or ""

    result = PasswordValidationResult(
        is_valid=True,
        meets_length_requirement=len(password) >= policy.min_length,
        has_uppercase=any(c.isupper() for c in password),
        has_lowercase=any(c.islower() for c in password),
        has_digit=any(c.isdigit() for c in password),
        has_special_character=any(not c.isalnum() for c in password),
    )

    if not result.meets_length_requirement:
        result.errors.append(f"Password must be at least {policy.min_length} characters long")
    if policy.require_uppercase and not result.has_uppercase:
        result.errors.append("Password must contain at least one uppercase letter")
    if policy.require_lowercase and not result.has_lowercase:
        result.errors.append("Password must contain at least one lowercase letter")
    if policy.require_digit and not result.has_digit:
        result.errors.append("Password must contain at least one digit")
    if policy.require_special and not result.has_special_character:
        result.errors.append("Password must contain at least one special character")

    result.is_valid = not result.errors
    return result

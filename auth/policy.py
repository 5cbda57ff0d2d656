"""
auth/policy.py -- Password strength policy.

A password is accepted only when it is at least 8 characters long and has an
upper-case letter, a lower-case letter, a digit and a special character.
Passwords over 72 UTF-8 bytes are refused because bcrypt ignores everything
past that point.
"""

from __future__ import annotations

from auth.errors import WeakPassword

MIN_LENGTH = 8
MAX_BYTES = 72
SPECIAL_CHARACTERS = frozenset('!@#$%^&*(),.?":{}|<>')


def password_policy_failures(password: str) -> list[str]:
    """Return the list of unmet rules (empty list means the password is acceptable)."""
    failures: list[str] = []
    if len(password) < MIN_LENGTH:
        failures.append(f"at least {MIN_LENGTH} characters")
    if len(password.encode("utf-8")) > MAX_BYTES:
        failures.append(f"at most {MAX_BYTES} bytes")
    if not any(c.isupper() for c in password):
        failures.append("an uppercase letter")
    if not any(c.islower() for c in password):
        failures.append("a lowercase letter")
    if not any(c.isdigit() for c in password):
        failures.append("a number")
    if not any(c in SPECIAL_CHARACTERS for c in password):
        failures.append("a special character")
    return failures


def validate_password_strength(password: str) -> None:
    """Raise WeakPassword listing every unmet rule."""
    failures = password_policy_failures(password)
    if failures:
        raise WeakPassword(failures)

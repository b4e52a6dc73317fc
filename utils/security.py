from __future__ import annotations

import re
import secrets
import string
from datetime import datetime, timedelta
from typing import Optional

from werkzeug.security import generate_password_hash, check_password_hash

MAX_INPUT_LENGTH = 1000
_UNSAFE_CHARS = re.compile(r"[<>'\"&]")
_SPECIALS = "!@#$%^&*()_+-=[]{}|;:,.<>?"


def hash_password(plain: str, method: str = "pbkdf2:sha256", salt_length: int = 16) -> str:
    plain = (plain or "").strip()
    return generate_password_hash(plain, method=method, salt_length=salt_length)


def is_hashed(value: Optional[str]) -> bool:
    if not value:
        return False
    v = str(value)
    return v.startswith("pbkdf2:") or v.startswith("scrypt:")


def verify_password(stored_value: str, candidate: str) -> bool:
    """Check ``candidate`` against a Werkzeug hash. Non-hashed values never match."""
    if not is_hashed(stored_value):
        return False
    return check_password_hash(stored_value, (candidate or "").strip())


def sanitize_input(value) -> str:
    """Strip HTML-significant characters, trim, and cap the length."""
    if value is None:
        return ""
    text = _UNSAFE_CHARS.sub("", str(value)).strip()
    return text[:MAX_INPUT_LENGTH]


def password_problems(password: str) -> list[str]:
    """Return the unmet strength rules for ``password`` (empty when strong)."""
    password = password or ""
    problems = []
    if len(password) < 8:
        problems.append("at least 8 characters")
    if not re.search(r"[A-Z]", password):
        problems.append("an uppercase letter")
    if not re.search(r"[a-z]", password):
        problems.append("a lowercase letter")
    if not re.search(r"\d", password):
        problems.append("a digit")
    if not re.search(r"[^A-Za-z0-9]", password):
        problems.append("a special character")
    return problems


def is_strong_password(password: str) -> bool:
    return not password_problems(password)


def generate_secure_password(length: int = 16) -> str:
    length = max(length, 8)
    pools = [string.ascii_uppercase, string.ascii_lowercase, string.digits, _SPECIALS]
    chars = [secrets.choice(pool) for pool in pools]
    everything = "".join(pools)
    chars += [secrets.choice(everything) for _ in range(length - len(chars))]
    # Fisher-Yates with a CSPRNG
    for i in range(len(chars) - 1, 0, -1):
        j = secrets.randbelow(i + 1)
        chars[i], chars[j] = chars[j], chars[i]
    return "".join(chars)


def is_locked(profile, now: datetime | None = None) -> bool:
    now = now or datetime.utcnow()
    return bool(profile.locked_until and profile.locked_until > now)


def minutes_left(profile, now: datetime | None = None) -> int:
    now = now or datetime.utcnow()
    if not profile.locked_until:
        return 0
    seconds = (profile.locked_until - now).total_seconds()
    return max(0, int((seconds + 59) // 60))


def register_failure(profile, max_attempts: int, lockout_minutes: int, now: datetime | None = None) -> bool:
    """Count a failed sign-in. Returns True when the account just got locked."""
    now = now or datetime.utcnow()
    profile.failed_attempts = (profile.failed_attempts or 0) + 1
    if profile.failed_attempts >= max_attempts:
        profile.locked_until = now + timedelta(minutes=lockout_minutes)
        profile.failed_attempts = 0
        return True
    return False


def register_success(profile, now: datetime | None = None) -> None:
    profile.failed_attempts = 0
    profile.locked_until = None
    profile.last_login_at = now or datetime.utcnow()

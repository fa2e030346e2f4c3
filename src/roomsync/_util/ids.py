"""Update and session ID generation utilities."""

from __future__ import annotations

import os
import string
import time

_ALPHABET = string.digits + string.ascii_lowercase


def _base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_ALPHABET[rem])
    return "".join(reversed(digits))


def _random_suffix(length: int) -> str:
    return "".join(_ALPHABET[b % 36] for b in os.urandom(length))


def generate_update_id(now_ms: int | None = None) -> str:
    """Generate a time-based update ID with a random suffix, e.g. ``lq3k9x2a-4f8z0c1qp``."""
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    return f"{_base36(now_ms)}-{_random_suffix(9)}"


def generate_session_id() -> str:
    """Generate a session ID used to name per-session documents such as clock calibration documents."""
    return f"session-{_base36(int(time.time() * 1000))}-{_random_suffix(6)}"

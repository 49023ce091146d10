"""Demo database names: ``demo-{random base36}-{creation epoch ms in base36}``.

The timestamp inside the name is the only record of when a demo database
was created; the reaper reads it back to decide what has expired.
"""
from __future__ import annotations

import secrets
import string
import time
from typing import Optional

DEMO_PREFIX = "demo"
_BASE36 = string.digits + string.ascii_lowercase


def to_base36(value: int) -> str:
    if value < 0:
        raise ValueError("base36 encoding needs a non-negative integer")
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def generate_demo_name(now_ms: Optional[int] = None, random_length: int = 11) -> str:
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    random_part = "".join(secrets.choice(_BASE36) for _ in range(random_length))
    return f"{DEMO_PREFIX}-{random_part}-{to_base36(now_ms)}"


def parse_creation_time(name: str) -> Optional[int]:
    """Creation epoch ms encoded in ``name``, or ``None`` if it is not a demo name."""
    parts = name.split("-")
    if len(parts) != 3 or parts[0] != DEMO_PREFIX or not parts[1]:
        return None
    try:
        created = int(parts[2], 36)
    except ValueError:
        return None
    return created or None

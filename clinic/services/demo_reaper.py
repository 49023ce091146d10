from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import List, Optional

from clinic.services.demo_names import DEMO_PREFIX, parse_creation_time

logger = logging.getLogger("clinic.reaper")


@dataclass
class ReapResult:
    deleted: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    kept: List[str] = field(default_factory=list)


def is_expired(name: str, now_ms: int, ttl_minutes: float) -> bool:
    """A name that does not parse counts as expired."""
    created = parse_creation_time(name)
    if created is None:
        return True
    return now_ms - created > ttl_minutes * 60 * 1000


def reap_expired(platform, ttl_minutes: float, now_ms: Optional[int] = None) -> ReapResult:
    """Delete demo databases older than ``ttl_minutes``; one failed delete does not stop the sweep."""
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    result = ReapResult()
    candidates = [name for name in platform.list_databases() if name.startswith(f"{DEMO_PREFIX}-")]
    for name in candidates:
        if not is_expired(name, now_ms, ttl_minutes):
            result.kept.append(name)
            continue
        try:
            platform.delete_database(name)
        except Exception as exc:
            logger.warning("event=reaper_delete_failed name=%s error=%s", name, exc)
            result.failed.append(name)
            continue
        logger.info("event=reaper_deleted name=%s", name)
        result.deleted.append(name)

    logger.info(
        "event=reaper_complete deleted=%d failed=%d kept=%d",
        len(result.deleted), len(result.failed), len(result.kept),
    )
    return result

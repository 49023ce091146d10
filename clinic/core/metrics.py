from __future__ import annotations

import threading
from typing import Dict


class MetricsStore:
    """Thread-safe in-memory metrics."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = {
            "backups_created": 0,
            "backups_pruned": 0,
            "restores": 0,
            "demo_provisioned": 0,
            "demo_failed": 0,
            "demo_rate_limited": 0,
        }

    def increment(self, name: str, amount: int = 1) -> None:
        if amount <= 0:
            return
        with self._lock:
            self._counters[name] = self._counters.get(name, 0) + amount

    def record_backup(self, pruned: int = 0) -> None:
        with self._lock:
            self._counters["backups_created"] += 1
            self._counters["backups_pruned"] += max(pruned, 0)

    def record_restore(self) -> None:
        self.increment("restores")

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._counters)


metrics = MetricsStore()

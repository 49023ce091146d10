from __future__ import annotations

import dataclasses
import gzip
import logging
import os
import shutil
import tempfile
import threading
import zlib
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Optional

from clinic.core.exceptions import BackupNotFoundError, RestoreError
from clinic.services.backup_store import (
    BACKUP_PREFIX,
    PRE_RESTORE_PREFIX,
    backup_filename,
    ensure_directory_exists,
    get_backup_stats,
    list_backups,
)

logger = logging.getLogger("clinic.backup")


@dataclass(frozen=True)
class BackupConfig:
    enabled: bool = True
    interval_hours: float = 24
    max_backups: int = 10
    backup_dir: Path = Path("backups")
    auto_backup_on_shutdown: bool = True
    compress_backups: bool = False

    def validate(self) -> "BackupConfig":
        if self.interval_hours <= 0:
            raise ValueError("interval_hours must be positive")
        if self.max_backups < 1:
            raise ValueError("max_backups must be at least 1")
        return self

    def to_dict(self) -> dict:
        data = dataclasses.asdict(self)
        data["backup_dir"] = str(self.backup_dir)
        return data


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BackupManager:
    """Backup policy for the live database file.

    Every operation that reads or replaces the live file holds one lock, so
    a scheduled backup never copies a database that a restore is writing.
    """

    def __init__(
        self,
        config: BackupConfig,
        database_path: Path,
        scheduler=None,
        clock: Callable[[], datetime] = _utcnow,
        metrics=None,
        on_restore: Optional[Callable[[], None]] = None,
    ) -> None:
        self._config = config.validate()
        self.database_path = Path(database_path)
        self._scheduler = scheduler
        self._clock = clock
        self._metrics = metrics
        self._on_restore = on_restore
        self._lock = threading.Lock()

    # configuration / lifecycle

    def get_config(self) -> BackupConfig:
        return self._config

    @property
    def state(self) -> str:
        if self._scheduler is not None and self._scheduler.running:
            return "scheduled"
        return "stopped"

    def start_auto_backup(self) -> bool:
        if not self._config.enabled:
            logger.info("event=auto_backup_disabled")
            return False
        if self._scheduler is None:
            logger.warning("event=auto_backup_unavailable reason=no_scheduler")
            return False
        self._scheduler.start(self._config.interval_hours)
        return True

    def stop_auto_backup(self) -> None:
        if self._scheduler is not None:
            self._scheduler.stop()

    def update_config(self, **changes) -> BackupConfig:
        if "backup_dir" in changes and changes["backup_dir"] is not None:
            changes["backup_dir"] = Path(changes["backup_dir"])
        self._config = dataclasses.replace(self._config, **changes).validate()
        logger.info("event=backup_config_updated %s", " ".join(f"{k}={v}" for k, v in changes.items()))
        if self._scheduler is not None:
            self._scheduler.reconfigure(self._config.enabled, self._config.interval_hours)
        return self._config

    def shutdown(self) -> Optional[Path]:
        """Stop scheduling and take one last backup if configured. Never raises."""
        if self._scheduler is not None:
            try:
                self._scheduler.shutdown()
            except Exception as exc:
                logger.warning("event=scheduler_shutdown_failed error=%s", exc)
        if not self._config.auto_backup_on_shutdown:
            return None
        try:
            return self.create_backup()
        except Exception as exc:
            logger.error("event=shutdown_backup_failed error=%s", exc)
            return None

    # backups

    def list_backups(self):
        return list_backups(self._config.backup_dir)

    def get_backup_stats(self) -> dict:
        return get_backup_stats(self._config.backup_dir)

    def resolve_backup_path(self, file_name: str) -> Path:
        """Path of a backup by file name; names outside the backup directory are rejected."""
        if not file_name or Path(file_name).name != file_name:
            raise BackupNotFoundError(file_name)
        return self._config.backup_dir / file_name

    def create_backup(self) -> Optional[Path]:
        """Copy the live database into the backup directory and prune.

        Returns ``None`` when there is nothing to back up or the copy failed.
        """
        with self._lock:
            source = self.database_path
            if not source.exists():
                logger.info("event=backup_skipped reason=no_database path=%s", source)
                return None

            config = self._config
            if not ensure_directory_exists(config.backup_dir):
                return None

            try:
                target = self._unique_path(config.backup_dir, BACKUP_PREFIX, config.compress_backups)
                self._copy_atomic(source, target, compress=config.compress_backups)
            except OSError as exc:
                logger.error("event=backup_failed source=%s error=%s", source, exc)
                return None

            deleted = self.prune_retention(config.backup_dir, config.max_backups)

        if self._metrics is not None:
            self._metrics.record_backup(len(deleted))
        logger.info("event=backup_created path=%s pruned=%d", target, len(deleted))
        return target

    def prune_retention(self, directory: Path, max_backups: int) -> List[Path]:
        """Delete all but the ``max_backups`` most recently modified backups."""
        stale = list_backups(directory)[max(max_backups, 0):]
        deleted = []
        for record in stale:
            try:
                record.file_path.unlink()
            except FileNotFoundError:
                continue
            except OSError as exc:
                logger.warning("event=backup_prune_failed file=%s error=%s", record.file_name, exc)
                continue
            deleted.append(record.file_path)
            logger.info("event=backup_pruned file=%s", record.file_name)
        return deleted

    def restore_from_backup(self, backup_path) -> Optional[Path]:
        """Replace the live database with ``backup_path``.

        The current database is first copied to a ``clinic-pre-restore-``
        snapshot; that snapshot path is returned (``None`` when there was no
        live database to preserve).
        """
        backup = Path(backup_path)
        if not backup.is_file():
            raise BackupNotFoundError(backup)

        with self._lock:
            live = self.database_path
            snapshot = None
            try:
                if live.exists():
                    backup_dir = self._config.backup_dir
                    backup_dir.mkdir(parents=True, exist_ok=True)
                    snapshot = self._unique_path(backup_dir, PRE_RESTORE_PREFIX, compressed=False)
                    self._copy_atomic(live, snapshot)
                    logger.info("event=pre_restore_snapshot path=%s", snapshot)

                live.parent.mkdir(parents=True, exist_ok=True)
                self._copy_atomic(backup, live, decompress=backup.name.endswith(".gz"))
            except (OSError, EOFError, zlib.error) as exc:
                logger.error("event=restore_failed backup=%s error=%s", backup, exc)
                raise RestoreError(f"Restore from {backup} failed: {exc}") from exc

        logger.info("event=restore_complete backup=%s database=%s", backup, live)
        if self._on_restore is not None:
            self._on_restore()
        if self._metrics is not None:
            self._metrics.record_restore()
        return snapshot

    # helpers

    def _unique_path(self, directory: Path, prefix: str, compressed: bool) -> Path:
        name = backup_filename(self._clock(), prefix, compressed)
        candidate = directory / name
        stem, dot, suffix = name.partition(".")
        counter = 1
        while candidate.exists():
            candidate = directory / f"{stem}-{counter}{dot}{suffix}"
            counter += 1
        return candidate

    @staticmethod
    def _copy_atomic(source: Path, target: Path, compress: bool = False, decompress: bool = False) -> None:
        """Write ``source`` to a temporary file beside ``target`` then rename it into place."""
        fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
        os.close(fd)
        tmp = Path(tmp_name)
        try:
            if compress:
                with open(source, "rb") as src, gzip.open(tmp, "wb") as dst:
                    shutil.copyfileobj(src, dst)
            elif decompress:
                with gzip.open(source, "rb") as src, open(tmp, "wb") as dst:
                    shutil.copyfileobj(src, dst)
            else:
                shutil.copyfile(source, tmp)
            os.replace(tmp, target)
        except BaseException:
            tmp.unlink(missing_ok=True)
            raise

"""Backup files on disk.

The backup directory is the only record of which backups exist: every
listing reads the directory again and derives size and time from the
file's own metadata.
"""
from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Mapping, Optional, Tuple

logger = logging.getLogger("clinic.backup")

BACKUP_PREFIX = "clinic-backup-"
PRE_RESTORE_PREFIX = "clinic-pre-restore-"
BACKUP_SUFFIX = ".db"
COMPRESSED_SUFFIX = ".db.gz"


@dataclass(frozen=True)
class BackupRecord:
    file_name: str
    file_path: Path
    size_bytes: int
    timestamp: datetime

    def to_dict(self) -> dict:
        return {
            "file_name": self.file_name,
            "file_path": str(self.file_path),
            "size_bytes": self.size_bytes,
            "timestamp": self.timestamp.isoformat(),
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def user_data_directory(
    env: Mapping[str, str],
    app_dir_name: str,
    *parts: str,
    cwd: Optional[Path] = None,
    fallback: str = "",
) -> Path:
    """First user-writable location for ``app_dir_name``.

    Order: LOCALAPPDATA, APPDATA, USERPROFILE\\AppData\\Local, XDG_DATA_HOME,
    HOME/.local/share, then ``cwd/fallback``.
    """
    if env.get("LOCALAPPDATA"):
        return Path(env["LOCALAPPDATA"], app_dir_name, *parts)
    if env.get("APPDATA"):
        return Path(env["APPDATA"], app_dir_name, *parts)
    if env.get("USERPROFILE"):
        return Path(env["USERPROFILE"], "AppData", "Local", app_dir_name, *parts)
    if env.get("XDG_DATA_HOME"):
        return Path(env["XDG_DATA_HOME"], app_dir_name, *parts)
    if env.get("HOME"):
        return Path(env["HOME"], ".local", "share", app_dir_name, *parts)

    base = Path(cwd) if cwd is not None else Path.cwd()
    logger.warning("event=user_data_dir_missing fallback=%s", base)
    return base / fallback if fallback else base


def resolve_backup_directory(
    env: Mapping[str, str], app_dir_name: str = "ClinicSystem", cwd: Optional[Path] = None
) -> Path:
    return user_data_directory(env, app_dir_name, "Backups", cwd=cwd, fallback="backups")


def ensure_directory_exists(path: Path) -> bool:
    """Create ``path`` and its parents. Failures are logged, never raised."""
    try:
        Path(path).mkdir(parents=True, exist_ok=True)
        return True
    except OSError as exc:
        logger.error("event=backup_dir_create_failed path=%s error=%s", path, exc)
        return False


def timestamp_slug(moment: datetime) -> str:
    """ISO-8601 UTC instant with ':' and '.' replaced by '-', e.g. 2026-01-02T03-04-05-678Z."""
    moment = moment.astimezone(timezone.utc)
    iso = moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"
    return iso.replace(":", "-").replace(".", "-")


def backup_filename(moment: datetime, prefix: str = BACKUP_PREFIX, compressed: bool = False) -> str:
    suffix = COMPRESSED_SUFFIX if compressed else BACKUP_SUFFIX
    return f"{prefix}{timestamp_slug(moment)}{suffix}"


def is_backup_name(name: str, prefix: str = BACKUP_PREFIX) -> bool:
    return name.startswith(prefix) and (name.endswith(BACKUP_SUFFIX) or name.endswith(COMPRESSED_SUFFIX))


# "-N" that the manager appends when a timestamped name is already taken
_COPY_COUNTER = re.compile(r"(?<=Z)-(\d+)(?=\.db(?:\.gz)?$)")


def _name_order(name: str) -> Tuple[str, int]:
    match = _COPY_COUNTER.search(name)
    if match is None:
        return name, 0
    return name[:match.start()] + name[match.end():], int(match.group(1))


def list_backups(
    directory: Path, prefix: str = BACKUP_PREFIX, clock: Callable[[], datetime] = _utcnow
) -> List[BackupRecord]:
    """Backups in ``directory``, newest first."""
    try:
        entries = list(os.scandir(directory))
    except FileNotFoundError:
        return []
    except OSError as exc:
        logger.error("event=backup_list_failed path=%s error=%s", directory, exc)
        return []

    records = []
    for entry in entries:
        if not is_backup_name(entry.name, prefix):
            continue
        try:
            if not entry.is_file():
                continue
            stat = entry.stat()
            size = stat.st_size
            modified = datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc)
        except OSError as exc:
            logger.warning("event=backup_stat_failed file=%s error=%s", entry.name, exc)
            size, modified = 0, clock()
        records.append(BackupRecord(entry.name, Path(entry.path), size, modified))

    records.sort(key=lambda r: (r.timestamp, _name_order(r.file_name)), reverse=True)
    return records


def get_backup_stats(directory: Path, prefix: str = BACKUP_PREFIX) -> dict:
    backups = list_backups(directory, prefix)
    if not backups:
        return {"total_backups": 0, "total_size": 0, "oldest_backup": None, "newest_backup": None}
    return {
        "total_backups": len(backups),
        "total_size": sum(b.size_bytes for b in backups),
        "oldest_backup": backups[-1].timestamp,
        "newest_backup": backups[0].timestamp,
    }

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, MutableMapping, Optional

from sqlalchemy.engine import Engine

from clinic.core.exceptions import DatabaseInitError
from clinic.db import make_engine, sqlite_url
from clinic.migrations import migrate
from clinic.seed import seed_database
from clinic.services.backup_store import ensure_directory_exists, user_data_directory

logger = logging.getLogger("clinic.bundler")

DATABASE_FILE = "clinic.db"


@dataclass(frozen=True)
class BundlerConfig:
    production: bool = False
    db_file_name: str = "./clinic.db"
    app_dir_name: str = "ClinicSystem"
    cwd: Optional[Path] = None


class DatabaseBundler:
    """Decides which database file the process uses and gets it ready.

    Development keeps the database in the working tree; a packaged install
    keeps it in a user-writable data directory because the install location
    may be read-only. ``initialize`` must finish before anything opens a
    connection to the database.
    """

    def __init__(
        self,
        config: BundlerConfig,
        env: MutableMapping[str, str],
        migrate_fn: Callable[[Engine], object] = migrate,
        seed_fn: Callable[[Engine], object] = seed_database,
        engine_factory: Callable[[str], Engine] = make_engine,
    ) -> None:
        self.config = config
        self._env = env
        self._migrate = migrate_fn
        self._seed = seed_fn
        self._engine_factory = engine_factory
        self.database_path = self.resolve_database_path()

    def resolve_database_path(self) -> Path:
        if not self.config.production:
            path = Path(self.config.db_file_name.replace("file:", "", 1))
            if not path.is_absolute() and self.config.cwd is not None:
                path = self.config.cwd / path
            return path
        return user_data_directory(
            self._env, self.config.app_dir_name, DATABASE_FILE, cwd=self.config.cwd, fallback=DATABASE_FILE
        )

    def initialize(self) -> Path:
        path = self.database_path
        logger.info("event=bundler_init path=%s production=%s", path, self.config.production)
        if self.config.production:
            ensure_directory_exists(path.parent)

        first_run = not path.exists()
        engine = self._engine_factory(sqlite_url(path))
        try:
            if first_run:
                logger.info("event=database_missing action=create path=%s", path)
                try:
                    self._run("migration", lambda: self._migrate(engine))
                    self._run("seed", lambda: self._seed(engine))
                except DatabaseInitError:
                    # a half-built file would look like an existing install next start
                    engine.dispose()
                    path.unlink(missing_ok=True)
                    raise
            else:
                logger.info("event=database_found action=migrate path=%s", path)
                self._run("migration", lambda: self._migrate(engine))
        finally:
            engine.dispose()

        self._env["DB_FILE_NAME"] = str(path)
        logger.info("event=bundler_ready path=%s first_run=%s", path, first_run)
        return path

    def database_stats(self) -> dict:
        path = self.database_path
        try:
            stat = path.stat()
        except OSError:
            return {"path": str(path), "exists": False, "size_bytes": 0, "last_modified": None}
        return {
            "path": str(path),
            "exists": True,
            "size_bytes": stat.st_size,
            "last_modified": datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc).isoformat(),
        }

    @staticmethod
    def _run(step: str, action: Callable[[], object]) -> None:
        try:
            action()
        except Exception as exc:
            logger.error("event=bundler_%s_failed error=%s", step, exc)
            raise DatabaseInitError(f"Database {step} failed: {exc}") from exc

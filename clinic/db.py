from collections import OrderedDict
import logging
import threading
from typing import Optional

from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlmodel import create_engine

logger = logging.getLogger("clinic.db")

_engine: Optional[Engine] = None


def sqlite_url(path) -> str:
    return f"sqlite:///{path}"


def make_engine(url: str, auth_token: Optional[str] = None) -> Engine:
    """Create an engine for a local SQLite file or a remote libSQL database.

    ``libsql://host`` URLs need the ``sqlalchemy-libsql`` dialect (the
    ``turso`` extra).
    """
    if url.startswith("libsql://"):
        host = url[len("libsql://"):]
        connect_args = {"auth_token": auth_token} if auth_token else {}
        return create_engine(
            f"sqlite+libsql://{host}?secure=true",
            connect_args=connect_args,
            pool_pre_ping=True,
            echo=False,
        )
    if url.startswith("file:"):
        url = sqlite_url(url[len("file:"):])
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, connect_args=connect_args, pool_pre_ping=True, echo=False)


def init_engine(url: str) -> Engine:
    """Point the default engine at ``url``; must run after the database is bundled."""
    global _engine
    if _engine is not None:
        _engine.dispose()
    _engine = make_engine(url)
    return _engine


def get_engine() -> Engine:
    if _engine is None:
        raise RuntimeError("Database engine is not initialised; call init_engine() at startup")
    return _engine


def dispose_engine() -> None:
    """Drop pooled connections, e.g. after the database file was replaced."""
    if _engine is not None:
        _engine.dispose()


def ensure_connection(engine: Optional[Engine] = None) -> bool:
    """Verify that the database connection is alive."""
    try:
        with (engine or get_engine()).connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except OperationalError as exc:
        logger.error("event=database_unreachable error=%s", exc)
        return False


class EngineRegistry:
    """Caches one engine per demo database URL."""

    def __init__(self, max_engines: int = 32, factory=make_engine) -> None:
        self.max_engines = max_engines
        self._factory = factory
        self._engines: "OrderedDict[str, Engine]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, url: str, auth_token: Optional[str] = None) -> Engine:
        with self._lock:
            engine = self._engines.get(url)
            if engine is not None:
                self._engines.move_to_end(url)
                return engine
            engine = self._factory(url, auth_token)
            self._engines[url] = engine
            while len(self._engines) > self.max_engines:
                _, stale = self._engines.popitem(last=False)
                stale.dispose()
            return engine

    def dispose_all(self) -> None:
        with self._lock:
            for engine in self._engines.values():
                engine.dispose()
            self._engines.clear()

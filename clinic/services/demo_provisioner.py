from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable

from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError

from clinic.core.exceptions import ProvisioningError, RateLimitExceeded
from clinic.db import make_engine
from clinic.migrations import migrate
from clinic.seed import seed_database
from clinic.services.demo_names import generate_demo_name

logger = logging.getLogger("clinic.demo")


@dataclass(frozen=True)
class DemoConfig:
    ttl_minutes: int = 30
    database_token_expiration: str = "1d"
    connect_attempts: int = 5
    retry_base_delay: float = 0.5


class DemoProvisioner:
    """Creates one isolated, migrated and seeded database per demo visitor.

    Steps run strictly in order: rate limit, create database, mint its
    credential, migrate, seed, sign the session token. A failure after the
    database exists deletes it again before the error is raised.
    """

    def __init__(
        self,
        platform,
        issuer,
        rate_limiter,
        config: DemoConfig = DemoConfig(),
        engine_factory: Callable[[str, str], Engine] = make_engine,
        migrate_fn: Callable[[Engine], object] = migrate,
        seed_fn: Callable[[Engine], object] = seed_database,
        name_factory: Callable[[], str] = generate_demo_name,
        sleep: Callable[[float], None] = time.sleep,
        metrics=None,
    ) -> None:
        self.platform = platform
        self.issuer = issuer
        self.rate_limiter = rate_limiter
        self.config = config
        self._engine_factory = engine_factory
        self._migrate = migrate_fn
        self._seed = seed_fn
        self._name_factory = name_factory
        self._sleep = sleep
        self._metrics = metrics

    def _count(self, name: str) -> None:
        if self._metrics is not None:
            self._metrics.increment(name)

    def provision(self, client_ip: str) -> str:
        allowed, retry_after = self.rate_limiter.hit(client_ip)
        if not allowed:
            self._count("demo_rate_limited")
            logger.warning("event=demo_rate_limited ip=%s retry_after=%s", client_ip, retry_after)
            raise RateLimitExceeded(retry_after)

        name = self._name_factory()
        try:
            database = self.platform.create_database(name)
        except Exception as exc:
            self._count("demo_failed")
            logger.error("event=demo_create_failed name=%s error=%s", name, exc)
            raise ProvisioningError(f"could not create demo database {name}") from exc

        try:
            db_token = self.platform.create_token(name, expiration=self.config.database_token_expiration)
            engine = self._engine_factory(database.url, db_token)
            try:
                self._with_retry(name, lambda: self._migrate(engine))
                self._seed(engine)
            finally:
                engine.dispose()
            token = self.issuer.issue(database.url, db_token)
        except Exception as exc:
            self._count("demo_failed")
            logger.error("event=demo_provision_failed name=%s error=%s", name, exc)
            self._discard(name)
            raise ProvisioningError(f"could not prepare demo database {name}") from exc

        self._count("demo_provisioned")
        logger.info("event=demo_provisioned name=%s ip=%s", name, client_ip)
        return token

    def _with_retry(self, name: str, action: Callable[[], object]) -> None:
        # a freshly created database may refuse connections for a moment
        attempts = max(self.config.connect_attempts, 1)
        for attempt in range(attempts):
            try:
                action()
                return
            except OperationalError as exc:
                if attempt == attempts - 1:
                    raise
                delay = self.config.retry_base_delay * (2 ** attempt)
                logger.warning(
                    "event=demo_connect_retry name=%s attempt=%d delay_seconds=%s error=%s",
                    name, attempt + 1, delay, exc,
                )
                self._sleep(delay)

    def _discard(self, name: str) -> None:
        try:
            self.platform.delete_database(name)
            logger.info("event=demo_rollback_deleted name=%s", name)
        except Exception as exc:
            logger.error("event=demo_rollback_failed name=%s error=%s", name, exc)

"""Versioned schema migrations.

Every step is recorded in ``schema_migrations`` and runs at most once per
database. Steps must be safe on a database that already has the change,
because the initial step creates tables from the current models.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable, List

from sqlalchemy import inspect, insert, select, text
from sqlalchemy.engine import Connection, Engine
from sqlmodel import SQLModel

from clinic import models  # noqa: F401  registers the tables on SQLModel.metadata
from clinic.models import SchemaMigration

logger = logging.getLogger("clinic.migrations")


@dataclass(frozen=True)
class Migration:
    version: int
    name: str
    apply: Callable[[Connection], None]


def _create_tables(conn: Connection) -> None:
    SQLModel.metadata.create_all(conn)


def _add_column(table: str, column: str, ddl: str) -> Callable[[Connection], None]:
    def apply(conn: Connection) -> None:
        existing = {col["name"] for col in inspect(conn).get_columns(table)}
        if column not in existing:
            conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}"))

    return apply


MIGRATIONS: List[Migration] = [
    Migration(1, "initial_schema", _create_tables),
    Migration(2, "patient_allergies", _add_column("patient", "allergies", "VARCHAR DEFAULT NULL")),
    Migration(3, "medication_minimum_stock", _add_column("medication", "minimum_stock", "INTEGER DEFAULT 10")),
    Migration(4, "system_setting_is_public", _add_column("systemsetting", "is_public", "BOOLEAN DEFAULT FALSE")),
]


def applied_versions(engine: Engine) -> set[int]:
    table = SchemaMigration.__table__
    with engine.begin() as conn:
        table.create(conn, checkfirst=True)
        return set(conn.execute(select(table.c.version)).scalars())


def migrate(engine: Engine, migrations: Iterable[Migration] = MIGRATIONS) -> List[int]:
    """Apply pending migrations in version order; returns the versions applied."""
    table = SchemaMigration.__table__
    done = applied_versions(engine)
    applied: List[int] = []
    for migration in sorted(migrations, key=lambda m: m.version):
        if migration.version in done:
            continue
        with engine.begin() as conn:
            migration.apply(conn)
            conn.execute(
                insert(table).values(
                    version=migration.version,
                    name=migration.name,
                    applied_at=datetime.utcnow(),
                )
            )
        logger.info("event=migration_applied version=%s name=%s", migration.version, migration.name)
        applied.append(migration.version)

    if not applied:
        logger.info("event=migrations_up_to_date")
    return applied

from sqlalchemy import inspect, text
from sqlmodel import Session, select

from clinic.core.auth import hash_password, verify_password
from clinic.db import make_engine, sqlite_url
from clinic.migrations import MIGRATIONS, applied_versions, migrate
from clinic.models import SystemSetting, User
from clinic.seed import seed_database


def test_migrate_fresh_database(tmp_path):
    engine = make_engine(sqlite_url(tmp_path / "clinic.db"))

    assert migrate(engine) == [m.version for m in MIGRATIONS]
    assert migrate(engine) == []
    assert applied_versions(engine) == {m.version for m in MIGRATIONS}
    assert {"user", "patient", "appointment", "medication", "systemsetting"} <= set(
        inspect(engine).get_table_names()
    )
    engine.dispose()


def test_migrate_adds_columns_to_older_schema(tmp_path):
    engine = make_engine(sqlite_url(tmp_path / "legacy.db"))
    with engine.begin() as conn:
        conn.execute(text("CREATE TABLE patient (id INTEGER PRIMARY KEY, first_name VARCHAR, last_name VARCHAR)"))
        conn.execute(text("CREATE TABLE medication (id INTEGER PRIMARY KEY, name VARCHAR)"))
        conn.execute(text("CREATE TABLE systemsetting (id INTEGER PRIMARY KEY, key VARCHAR)"))
        conn.execute(text("CREATE TABLE schema_migrations (version INTEGER PRIMARY KEY, name VARCHAR, applied_at DATETIME)"))
        conn.execute(text("INSERT INTO schema_migrations VALUES (1, 'initial_schema', '2025-01-01 00:00:00')"))

    assert migrate(engine) == [2, 3, 4]

    columns = {col["name"] for col in inspect(engine).get_columns("patient")}
    assert "allergies" in columns
    assert "minimum_stock" in {col["name"] for col in inspect(engine).get_columns("medication")}
    engine.dispose()


def test_seed_is_idempotent(tmp_path):
    engine = make_engine(sqlite_url(tmp_path / "clinic.db"))
    migrate(engine)

    first = seed_database(engine)
    second = seed_database(engine)

    assert first["users"] == 4 and first["patients"] == 3
    assert all(count == 0 for count in second.values())
    with Session(engine) as session:
        admin = session.exec(select(User).where(User.username == "admin")).one()
        assert admin.role == "admin"
        assert verify_password(admin.password_hash, "admin123")
        assert "admin123" not in admin.password_hash
        assert session.exec(select(SystemSetting).where(SystemSetting.is_public == True)).all()  # noqa: E712
    engine.dispose()


def test_hash_password_is_salted():
    assert hash_password("secret") != hash_password("secret")
    assert verify_password(hash_password("secret"), "secret")
    assert not verify_password(hash_password("secret"), "Secret")

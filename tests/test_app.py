import gzip
import importlib
import sys
import time
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session

from clinic.core.auth import SESSION_COOKIE, SessionIssuer, hash_password
from clinic.core.exceptions import ProvisioningError, RateLimitExceeded
from clinic.db import EngineRegistry, make_engine, sqlite_url
from clinic.migrations import migrate
from clinic.models import Patient, User

ADMIN = {"x-admin-password": "test-admin"}


def _prepare_client(tmp_path, monkeypatch, *, strict="false", demo_enabled="false"):
    project_root = Path(__file__).resolve().parents[1]
    project_root_str = str(project_root)
    if project_root_str not in sys.path:
        sys.path.insert(0, project_root_str)

    monkeypatch.setenv("CLINIC_ENV", "development")
    monkeypatch.setenv("DB_FILE_NAME", str(tmp_path / "clinic.db"))
    monkeypatch.setenv("BACKUP_DIR", str(tmp_path / "backups"))
    monkeypatch.setenv("BACKUP_MAX_BACKUPS", "3")
    monkeypatch.setenv("ENABLE_BACKUP_SCHEDULER", "false")
    monkeypatch.setenv("BACKUP_ON_SHUTDOWN", "false")
    monkeypatch.setenv("ADMIN_PASSWORD", "test-admin")
    monkeypatch.setenv("SESSION_SECRET", "session-secret")
    monkeypatch.setenv("DEMO_JWT_SECRET", "demo-secret")
    monkeypatch.setenv("DEMO_TOKEN_STRICT", strict)
    monkeypatch.setenv("DEMO_ENABLED", demo_enabled)
    monkeypatch.setenv("REDIS_URL", "")

    # Reload modules so configuration changes take effect cleanly.
    module_order = [
        "clinic.config",
        "clinic.core.metrics",
        "clinic.core.rate_limit",
        "clinic.db",
        "clinic.api.deps",
        "clinic.api.routes",
        "clinic.main",
    ]

    for module_name in module_order:
        module = importlib.import_module(module_name)
        # Restore the original module namespace on teardown so other test
        # modules keep matching class identities after the reload.
        for attr, value in list(vars(module).items()):
            monkeypatch.setattr(module, attr, value)
        importlib.reload(module)

    main = sys.modules["clinic.main"]

    test_client = TestClient(main.app)
    test_client.data_dir = tmp_path  # type: ignore[attr-defined]
    return test_client


def _login(client, username="admin", password="admin123", headers=None):
    response = client.post("/api/auth/login", json={"username": username, "password": password}, headers=headers)
    assert response.status_code == 200, response.text
    return response


@pytest.fixture
def client(tmp_path, monkeypatch):
    test_client = _prepare_client(tmp_path, monkeypatch)
    with test_client as c:
        _login(c)
        yield c


def test_health(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json()["status"] == "OK"
    assert response.json()["database"] == "connected"


def test_health_reports_unreachable_database(client, monkeypatch):
    monkeypatch.setattr(sys.modules["clinic.api.routes"], "ensure_connection", lambda: False)

    response = client.get("/api/health")

    assert response.status_code == 503
    assert response.json()["database"] == "unavailable"


def test_data_routes_require_login(client):
    client.cookies.clear()
    for path in ("/api/stats", "/api/patients", "/api/patients/1", "/api/appointments", "/api/medications"):
        response = client.get(path)
        assert response.status_code == 401, path
        assert response.json()["detail"] == "Not authenticated"
    assert client.post("/api/patients", json={"first_name": "No", "last_name": "Session"}).status_code == 401


def test_login_rejects_bad_password(client):
    client.cookies.clear()
    response = client.post("/api/auth/login", json={"username": "admin", "password": "wrong"})
    assert response.status_code == 401
    assert client.get("/api/auth/me").status_code == 401


def test_current_user_and_logout(client):
    me = client.get("/api/auth/me").json()["user"]
    assert me["username"] == "admin"
    assert me["role"] == "admin"

    assert client.post("/api/auth/logout").status_code == 200
    assert client.get("/api/auth/me").status_code == 401


def test_expired_session_is_rejected(client):
    stale = SessionIssuer("session-secret", ttl_hours=1, clock=lambda: time.time() - 7200)
    client.cookies.clear()

    response = client.get(
        "/api/stats", headers={"cookie": f"{SESSION_COOKIE}={stale.issue(1, 'admin', 'admin', 'default')}"}
    )

    assert response.status_code == 401
    assert response.json()["detail"] == "Session expired"


def test_first_run_seeds_database(client):
    assert (client.data_dir / "clinic.db").exists()  # type: ignore[attr-defined]
    stats = client.get("/api/stats").json()
    assert stats["patients"] == 3
    assert stats["users"] == 4
    assert stats["low_stock_medications"] == 1


def test_patient_create_and_fetch(client):
    response = client.post("/api/patients", json={"first_name": "Dana", "last_name": "Lee", "allergies": "penicillin"})
    assert response.status_code == 201
    patient = response.json()
    assert patient["patient_code"] == "P00004"

    fetched = client.get(f"/api/patients/{patient['id']}")
    assert fetched.json()["allergies"] == "penicillin"

    found = client.get("/api/patients", params={"search": "Dana"}).json()["patients"]
    assert [p["id"] for p in found] == [patient["id"]]


def test_missing_patient_is_json_404(client):
    response = client.get("/api/patients/9999", headers={"accept": "text/html"})
    assert response.status_code == 404
    assert response.json()["detail"] == "Patient not found"


def test_low_stock_filter(client):
    medications = client.get("/api/medications", params={"low_stock": "true"}).json()["medications"]
    assert [m["name"] for m in medications] == ["Ibuprofen"]


def test_admin_api_requires_password(client):
    response = client.get("/api/admin/backups")
    assert response.status_code == 401
    assert "Admin password required" in response.json()["detail"]

    response = client.get("/api/admin/backups", headers={"x-admin-password": "bad"})
    assert response.status_code == 401
    assert "Invalid admin password" in response.json()["detail"]


def test_backup_and_restore_round_trip(client):
    created = client.post("/api/admin/backups", headers=ADMIN)
    assert created.status_code == 201
    assert created.json()["status"] == "created"
    file_name = created.json()["file_name"]
    assert file_name.startswith("clinic-backup-")

    client.post("/api/patients", json={"first_name": "Temp", "last_name": "Person"})
    assert client.get("/api/stats").json()["patients"] == 4

    restored = client.post("/api/admin/backups/restore", headers=ADMIN, json={"file_name": file_name})
    assert restored.status_code == 200
    assert restored.json()["pre_restore_snapshot"].startswith("clinic-pre-restore-")
    assert client.get("/api/stats").json()["patients"] == 3

    listed = client.get("/api/admin/backups", headers=ADMIN).json()["backups"]
    assert file_name in [b["file_name"] for b in listed]


def test_restore_unknown_backup(client):
    response = client.post("/api/admin/backups/restore", headers=ADMIN, json={"file_name": "nope.db"})
    assert response.status_code == 404
    assert "Backup file not found" in response.json()["error"]

    response = client.post("/api/admin/backups/restore", headers=ADMIN, json={"file_name": "../clinic.db"})
    assert response.status_code == 404


def test_restore_of_corrupt_archive_reports_json_error(client):
    payload = gzip.compress(bytes(range(256)) * 64)
    middle = len(payload) // 2
    backups = client.data_dir / "backups"  # type: ignore[attr-defined]
    backups.mkdir(exist_ok=True)
    (backups / "clinic-backup-corrupt.db.gz").write_bytes(payload[:middle] + b"\xff" * 64 + payload[middle + 64:])

    response = client.post(
        "/api/admin/backups/restore", headers=ADMIN, json={"file_name": "clinic-backup-corrupt.db.gz"}
    )

    assert response.status_code == 500
    assert response.json() == {"error": "Restore failed"}
    assert client.get("/api/stats").json()["patients"] == 3


def test_retention_applies_through_api(client):
    for _ in range(5):
        client.post("/api/admin/backups", headers=ADMIN)

    stats = client.get("/api/admin/backups/stats", headers=ADMIN).json()
    assert stats["total_backups"] == 3
    assert stats["state"] == "stopped"
    metrics = client.get("/api/admin/metrics", headers=ADMIN).json()
    assert metrics["backups_created"] == 5
    assert metrics["backups_pruned"] == 2


def test_backup_config_update(client):
    config = client.get("/api/admin/backups/config", headers=ADMIN).json()
    assert config["max_backups"] == 3

    updated = client.put("/api/admin/backups/config", headers=ADMIN, json={"max_backups": 7})
    assert updated.status_code == 200
    assert updated.json()["max_backups"] == 7

    invalid = client.put("/api/admin/backups/config", headers=ADMIN, json={"interval_hours": 0})
    assert invalid.status_code == 400


def test_database_info(client):
    info = client.get("/api/admin/database", headers=ADMIN).json()
    assert info["path"].endswith("clinic.db")
    assert info["size_bytes"] > 0


def _demo_engines(tmp_path):
    demo_path = tmp_path / "demo.db"
    engine = make_engine(sqlite_url(demo_path))
    migrate(engine)
    with Session(engine) as session:
        session.add(Patient(patient_code="D00001", first_name="Demo", last_name="Visitor"))
        session.add(
            User(
                username="demo",
                email="demo@clinic.local",
                first_name="Demo",
                last_name="User",
                role="doctor",
                password_hash=hash_password("demo123"),
            )
        )
        session.commit()
    engine.dispose()
    opened = []

    def factory(url, auth_token=None):
        opened.append((url, auth_token))
        return make_engine(sqlite_url(demo_path))

    registry = EngineRegistry(factory=factory)
    registry.opened = opened  # type: ignore[attr-defined]
    return registry


def test_demo_token_binds_requests_to_demo_database(client, tmp_path):
    registry = _demo_engines(tmp_path)
    client.app.state.engines = registry
    token = client.app.state.demo_tokens.issue("libsql://demo-abc-xyz.turso.io", "scoped")
    demo = {"authorization": f"Bearer {token}"}

    # a session from the clinic database does not carry over to the demo database
    assert client.get("/api/patients", headers=demo).status_code == 401

    _login(client, "demo", "demo123", headers=demo)
    patients = client.get("/api/patients", headers=demo).json()["patients"]
    assert [p["first_name"] for p in patients] == ["Demo"]
    assert registry.opened == [("libsql://demo-abc-xyz.turso.io", "scoped")]

    # nor does a demo session open the clinic database
    assert client.get("/api/stats").status_code == 401


def test_invalid_demo_token_falls_back_to_default_database(client):
    response = client.get("/api/stats", headers={"authorization": "Bearer not-a-jwt"})
    assert response.status_code == 200
    assert response.json()["patients"] == 3


def test_invalid_demo_token_without_session_gets_no_data(client):
    client.cookies.clear()
    response = client.get("/api/patients", headers={"authorization": "Bearer not-a-jwt"})
    assert response.status_code == 401


def test_invalid_demo_token_rejected_in_strict_mode(tmp_path, monkeypatch):
    with _prepare_client(tmp_path, monkeypatch, strict="true") as c:
        response = c.get("/api/stats", headers={"authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401


def test_demo_init_disabled(client):
    response = client.post("/demo/init")
    assert response.status_code == 404
    assert response.json()["detail"] == "Demo mode is disabled"


class _StubProvisioner:
    def __init__(self, error=None):
        self.error = error
        self.ips = []

    def provision(self, client_ip):
        self.ips.append(client_ip)
        if self.error is not None:
            raise self.error
        return "signed-token"


def test_demo_init_returns_token(client):
    stub = _StubProvisioner()
    client.app.state.demo_provisioner = stub

    response = client.post("/demo/init", headers={"x-forwarded-for": "198.51.100.7, 10.0.0.1"})

    assert response.status_code == 200
    assert response.json() == {"token": "signed-token"}
    assert stub.ips == ["198.51.100.7"]


def test_demo_init_rate_limited(client):
    client.app.state.demo_provisioner = _StubProvisioner(RateLimitExceeded(42))

    response = client.post("/demo/init")

    assert response.status_code == 429
    assert response.headers["retry-after"] == "42"
    assert "error" in response.json()


def test_demo_init_provisioning_failure(client):
    client.app.state.demo_provisioner = _StubProvisioner(ProvisioningError("could not prepare demo database"))

    response = client.post("/demo/init")

    assert response.status_code == 500
    assert response.json() == {"error": "Internal server error"}

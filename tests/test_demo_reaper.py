import time

import httpx
import pytest

from clinic import reaper
from clinic.services.demo_names import generate_demo_name, parse_creation_time, to_base36
from clinic.services.demo_reaper import is_expired, reap_expired

MINUTE_MS = 60 * 1000


class _FakePlatform:
    def __init__(self, names, failing=()):
        self.names = list(names)
        self.failing = set(failing)
        self.deleted = []

    def list_databases(self):
        return list(self.names)

    def delete_database(self, name):
        if name in self.failing:
            raise RuntimeError(f"cannot delete {name}")
        self.deleted.append(name)


def test_generated_names_round_trip():
    for _ in range(20):
        now_ms = int(time.time() * 1000)
        name = generate_demo_name()
        created = parse_creation_time(name)
        assert name.startswith("demo-")
        assert len(name.split("-")) == 3
        assert abs(created - now_ms) < 1000


def test_to_base36():
    assert to_base36(0) == "0"
    assert to_base36(35) == "z"
    assert int(to_base36(1_767_225_600_000), 36) == 1_767_225_600_000


@pytest.mark.parametrize(
    "name",
    ["demo", "demo-abc", "demo-abc-def-ghi", "prod-abc-lx0", "demo--lx0", "demo-abc-!!", "demo-abc-0"],
)
def test_unparseable_names_are_expired(name):
    assert parse_creation_time(name) is None
    assert is_expired(name, now_ms=0, ttl_minutes=10**6)


def test_expiry_uses_ttl():
    now_ms = 1_800_000_000_000
    fresh = f"demo-abc-{to_base36(now_ms - 10 * MINUTE_MS)}"
    stale = f"demo-abc-{to_base36(now_ms - 31 * MINUTE_MS)}"

    assert not is_expired(fresh, now_ms, 30)
    assert is_expired(stale, now_ms, 30)


def test_reap_deletes_only_expired_demo_databases():
    now_ms = 1_800_000_000_000
    fresh = f"demo-aaa-{to_base36(now_ms - MINUTE_MS)}"
    stale = f"demo-bbb-{to_base36(now_ms - 60 * MINUTE_MS)}"
    platform = _FakePlatform(["clinic-prod", fresh, stale, "demo-broken"])

    result = reap_expired(platform, ttl_minutes=30, now_ms=now_ms)

    assert sorted(platform.deleted) == sorted([stale, "demo-broken"])
    assert result.kept == [fresh]
    assert "clinic-prod" not in platform.deleted


def test_reap_continues_past_delete_failures():
    now_ms = 1_800_000_000_000
    old = [f"demo-x{i}-{to_base36(now_ms - 90 * MINUTE_MS)}" for i in range(3)]
    platform = _FakePlatform(old, failing={old[0]})

    result = reap_expired(platform, ttl_minutes=30, now_ms=now_ms)

    assert result.failed == [old[0]]
    assert result.deleted == old[1:]


def _turso_transport(databases, deleted):
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["authorization"] == "Bearer api-token"
        if request.method == "GET":
            return httpx.Response(200, json={"databases": [{"Name": n} for n in databases]})
        if request.method == "DELETE":
            deleted.append(request.url.path.rsplit("/", 1)[-1])
            return httpx.Response(200, json={"database": "gone"})
        return httpx.Response(405)

    return httpx.MockTransport(handler)


def test_cli_requires_configuration():
    assert reaper.main([], env={}) == 1


def test_cli_sweeps_once(capsys):
    stale = f"demo-old-{to_base36(int(time.time() * 1000) - 120 * MINUTE_MS)}"
    fresh = generate_demo_name()
    deleted = []
    client = httpx.Client(transport=_turso_transport([stale, fresh, "main"], deleted))

    code = reaper.main(
        ["--ttl-minutes", "60"],
        env={"TURSO_ORG": "acme", "TURSO_AUTH_TOKEN": "api-token"},
        http_client=client,
    )

    assert code == 0
    assert deleted == [stale]
    assert "Removed 1 databases" in capsys.readouterr().out


def test_cli_reports_listing_failure():
    client = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(500, text="down")))

    code = reaper.main([], env={"TURSO_ORG": "acme", "TURSO_AUTH_TOKEN": "api-token"}, http_client=client)

    assert code == 1

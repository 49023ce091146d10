from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional

import httpx

from clinic.core.exceptions import PlatformError

logger = logging.getLogger("clinic.demo")


@dataclass(frozen=True)
class DemoDatabase:
    name: str
    hostname: str
    auth_token: str = ""

    @property
    def url(self) -> str:
        return f"libsql://{self.hostname}"


class TursoClient:
    """The parts of the Turso platform API used for demo branches."""

    def __init__(
        self,
        org: str,
        api_token: str,
        base_url: str = "https://api.turso.tech/v1",
        group: str = "default",
        http_client: Optional[httpx.Client] = None,
        timeout: float = 30.0,
    ) -> None:
        if not org or not api_token:
            raise ValueError("TURSO_ORG and TURSO_AUTH_TOKEN must be set")
        self.org = org
        self.group = group
        self._client = http_client or httpx.Client(timeout=timeout)
        self._base = f"{base_url.rstrip('/')}/organizations/{org}/databases"
        self._headers = {"Authorization": f"Bearer {api_token}"}

    def _request(self, method: str, path: str = "", **kwargs) -> httpx.Response:
        url = f"{self._base}{path}"
        try:
            response = self._client.request(method, url, headers=self._headers, **kwargs)
        except httpx.HTTPError as exc:
            raise PlatformError(f"{method} {url} failed: {exc}") from exc
        if response.is_error:
            raise PlatformError(
                f"{method} {url} failed: {response.status_code} {response.text}",
                status_code=response.status_code,
            )
        return response

    def create_database(self, name: str) -> DemoDatabase:
        response = self._request("POST", json={"name": name, "group": self.group})
        database = response.json().get("database") or {}
        hostname = database.get("Hostname") or f"{name}-{self.org}.turso.io"
        return DemoDatabase(name=name, hostname=hostname)

    def create_token(self, name: str, expiration: str = "1d", authorization: str = "full-access") -> str:
        response = self._request(
            "POST",
            f"/{name}/auth/tokens",
            params={"expiration": expiration, "authorization": authorization},
        )
        token = response.json().get("jwt")
        if not token:
            raise PlatformError(f"token response for {name} has no jwt")
        return token

    def list_databases(self) -> List[str]:
        response = self._request("GET")
        return [db["Name"] for db in response.json().get("databases") or [] if db.get("Name")]

    def delete_database(self, name: str) -> None:
        self._request("DELETE", f"/{name}")

    def close(self) -> None:
        self._client.close()

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import timedelta

import jwt

ALGORITHM = "HS256"


@dataclass(frozen=True)
class DemoSession:
    database_url: str
    database_token: str
    expiry: int  # epoch milliseconds


class DemoTokenError(Exception):
    pass


class DemoTokenIssuer:
    """Signs and verifies the capability token bound to one demo database."""

    def __init__(self, secret: str, ttl_minutes: int = 30, clock=time.time) -> None:
        if not secret:
            raise ValueError("DEMO_JWT_SECRET must be set when demo mode is enabled")
        self._secret = secret
        self.ttl = timedelta(minutes=ttl_minutes)
        self._clock = clock

    def issue(self, database_url: str, database_token: str) -> str:
        now = self._clock()
        expires_at = now + self.ttl.total_seconds()
        payload = {
            "branchUrl": database_url,
            "branchToken": database_token,
            "expiry": int(expires_at * 1000),
            "iat": int(now),
            "exp": int(expires_at),
        }
        return jwt.encode(payload, self._secret, algorithm=ALGORITHM)

    def decode(self, token: str) -> DemoSession:
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[ALGORITHM],
                options={"require": ["exp"]},
            )
        except jwt.PyJWTError as exc:
            raise DemoTokenError(str(exc)) from exc

        branch_url = payload.get("branchUrl")
        if not isinstance(branch_url, str) or not branch_url:
            raise DemoTokenError("token payload has no branchUrl")
        return DemoSession(
            database_url=branch_url,
            database_token=str(payload.get("branchToken") or ""),
            expiry=int(payload.get("expiry") or payload["exp"] * 1000),
        )


def bearer_token(authorization: str | None) -> str | None:
    if authorization and authorization.startswith("Bearer "):
        return authorization[7:].strip() or None
    return None

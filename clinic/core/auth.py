from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import timedelta

import jwt
from werkzeug.security import check_password_hash, generate_password_hash

SESSION_COOKIE = "clinic_session"
DEFAULT_SCOPE = "default"
ALGORITHM = "HS256"


def hash_password(password: str) -> str:
    return generate_password_hash(password)


def verify_password(password_hash: str, password: str) -> bool:
    return check_password_hash(password_hash, password)


@dataclass(frozen=True)
class UserSession:
    user_id: int
    username: str
    role: str
    scope: str
    expires_at: int  # epoch seconds


class SessionError(Exception):
    pass


class SessionIssuer:
    """Signs login sessions.

    A session is only valid against the database it was created on; the
    scope is ``default`` for the clinic database and the branch URL for a
    demo database.
    """

    def __init__(self, secret: str, ttl_hours: float = 12, clock=time.time) -> None:
        if not secret:
            raise ValueError("a session secret is required")
        self._secret = secret
        self.ttl = timedelta(hours=ttl_hours)
        self._clock = clock

    @property
    def max_age(self) -> int:
        return int(self.ttl.total_seconds())

    def issue(self, user_id: int, username: str, role: str, scope: str) -> str:
        now = int(self._clock())
        payload = {
            "sub": str(user_id),
            "username": username,
            "role": role,
            "scope": scope,
            "iat": now,
            "exp": now + self.max_age,
        }
        return jwt.encode(payload, self._secret, algorithm=ALGORITHM)

    def decode(self, token: str) -> UserSession:
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[ALGORITHM],
                options={"require": ["exp", "sub", "scope"]},
            )
            return UserSession(
                user_id=int(payload["sub"]),
                username=str(payload.get("username") or ""),
                role=str(payload.get("role") or ""),
                scope=str(payload["scope"]),
                expires_at=int(payload["exp"]),
            )
        except (jwt.PyJWTError, ValueError) as exc:
            raise SessionError(str(exc)) from exc

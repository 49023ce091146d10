from __future__ import annotations

import logging
import secrets
from collections.abc import Iterator

from fastapi import Depends, HTTPException, Request
from sqlalchemy.engine import Engine
from sqlmodel import Session

from clinic.config import ADMIN_PASSWORD
from clinic.core.auth import DEFAULT_SCOPE, SESSION_COOKIE, SessionError
from clinic.core.demo_token import DemoTokenError, bearer_token
from clinic.db import get_engine
from clinic.models import User

logger = logging.getLogger("clinic.api")


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("cf-connecting-ip") or request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def bound_engine(request: Request) -> Engine:
    """The engine this request should use.

    A valid demo token selects that demo database. A missing token, or an
    invalid one while strict mode is off, selects the default database.
    The choice is recorded as ``request.state.database_scope``.
    """
    state = request.app.state
    request.state.database_scope = DEFAULT_SCOPE
    issuer = getattr(state, "demo_tokens", None)
    token = bearer_token(request.headers.get("authorization"))
    if token and issuer is not None:
        try:
            demo = issuer.decode(token)
        except DemoTokenError as exc:
            if getattr(state, "demo_token_strict", False):
                raise HTTPException(status_code=401, detail="Invalid or expired demo token")
            logger.warning("event=demo_token_ignored error=%s", exc)
        else:
            request.state.database_scope = demo.database_url
            return state.engines.get(demo.database_url, demo.database_token)
    return get_engine()


def get_db_session(request: Request) -> Iterator[Session]:
    with Session(bound_engine(request)) as session:
        yield session


def require_user(request: Request, session: Session = Depends(get_db_session)) -> User:
    """The signed-in user, looked up in the database this request is bound to."""
    token = request.cookies.get(SESSION_COOKIE)
    if not token:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        claims = request.app.state.sessions.decode(token)
    except SessionError:
        raise HTTPException(status_code=401, detail="Session expired")
    if claims.scope != request.state.database_scope:
        logger.warning("event=session_scope_mismatch user=%s scope=%s", claims.username, claims.scope)
        raise HTTPException(status_code=401, detail="Not authenticated")
    user = session.get(User, claims.user_id)
    if user is None or not user.is_active or user.username != claims.username:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return user


def require_admin(request: Request) -> None:
    password = request.headers.get("x-admin-password")
    if not password:
        raise HTTPException(status_code=401, detail="Admin password required")
    if not secrets.compare_digest(password, ADMIN_PASSWORD):
        raise HTTPException(status_code=401, detail="Invalid admin password")


def backup_manager(request: Request):
    return request.app.state.backup_manager


def demo_provisioner(request: Request):
    provisioner = getattr(request.app.state, "demo_provisioner", None)
    if provisioner is None:
        raise HTTPException(status_code=404, detail="Demo mode is disabled")
    return provisioner

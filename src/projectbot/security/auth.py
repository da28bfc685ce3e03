from __future__ import annotations

"""Session management for dashboard users.

A session is a server-side record (``sessions`` table) addressed by a signed
JWT carrying its id. The same JWT is accepted from the session cookie or from
an ``Authorization: Bearer`` header, so both transports resolve to an
identical ``AuthSession``. Deleting the record (logout) invalidates the token
even before it expires.

Env vars:
- JWT_SECRET (required in prod; default for dev)
- JWT_EXPIRES_MIN (default 720)
- PROJECTBOT_SESSION_COOKIE (default "projectbot_session")
- PROJECTBOT_COOKIE_SECURE (default off)
"""

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Optional, Tuple

import logging
import os
import secrets

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ..domain.errors import InvalidCredentials
from ..domain.models import AuthSession
from ..infrastructure.db import Database, SessionRow, UserRow, get_database
from ..infrastructure.user_store import SqlUserStore, UserRecord, UserStore, verify_password


logger = logging.getLogger("projectbot.auth")
bearer_scheme = HTTPBearer(auto_error=False)


def _get_env(name: str, default: Optional[str] = None) -> str:
    val = os.getenv(name, default)
    if val is None:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return val


@dataclass
class JwtConfig:
    secret: str
    algorithm: str = "HS256"
    expires_min: int = 720

    @staticmethod
    def from_env() -> "JwtConfig":
        secret = _get_env("JWT_SECRET", "dev-secret-change-me")
        expires = int(os.getenv("JWT_EXPIRES_MIN", "720"))
        return JwtConfig(secret=secret, expires_min=expires)


@dataclass
class CookieConfig:
    name: str = "projectbot_session"
    secure: bool = False
    samesite: str = "lax"

    @staticmethod
    def from_env() -> "CookieConfig":
        return CookieConfig(
            name=os.getenv("PROJECTBOT_SESSION_COOKIE", "projectbot_session"),
            secure=os.getenv("PROJECTBOT_COOKIE_SECURE", "0").lower() in ("1", "true", "yes"),
        )


def _as_utc(value: datetime) -> datetime:
    # SQLite drops tzinfo on round trip.
    return value if value.tzinfo else value.replace(tzinfo=UTC)


class SessionStore:
    """Owns creation, lookup and destruction of ``AuthSession`` records."""

    def __init__(
        self,
        database: Optional[Database] = None,
        users: Optional[UserStore] = None,
        cfg: Optional[JwtConfig] = None,
    ) -> None:
        self._db = database or get_database()
        self._users = users or SqlUserStore(self._db)
        self._cfg = cfg or JwtConfig.from_env()

    @property
    def expires_in(self) -> int:
        return self._cfg.expires_min * 60

    def login(self, username: str, password: str) -> Tuple[AuthSession, str]:
        record = self._users.get_by_username(username)
        if record is None or not verify_password(password, record.password):
            logger.info("login_failed")
            raise InvalidCredentials()
        return self.open_session(record)

    def register(
        self,
        username: str,
        password: str,
        display_name: str,
        initial: Optional[str] = None,
    ) -> Tuple[AuthSession, str]:
        """Create a ``user``-role account and log it in.

        Open registration never grants ``admin``; promotion is an operator action.
        """
        record = self._users.create(
            username=username,
            password=password,
            display_name=display_name,
            role="user",
            initial=initial,
        )
        return self.open_session(record)

    def open_session(self, record: UserRecord) -> Tuple[AuthSession, str]:
        sid = secrets.token_urlsafe(24)
        now = datetime.now(UTC)
        expires = now + timedelta(minutes=self._cfg.expires_min)
        with self._db.session_scope() as session:
            session.add(SessionRow(sid=sid, user_id=record.id, issued_at=now, expires_at=expires))
        payload = {
            "sid": sid,
            "sub": str(record.id),
            "iat": int(now.timestamp()),
            "exp": int(expires.timestamp()),
        }
        token = jwt.encode(payload, self._cfg.secret, algorithm=self._cfg.algorithm)
        logger.info("session_opened", extra={"user_id": record.id})
        return self._auth_session(sid, now, record), token

    def current_session(self, token: Optional[str]) -> Optional[AuthSession]:
        sid = self._session_id(token, verify_exp=True)
        if sid is None:
            return None
        with self._db.session_scope() as session:
            row = session.get(SessionRow, sid)
            if row is None:
                return None
            if _as_utc(row.expires_at) <= datetime.now(UTC):
                session.delete(row)
                return None
            user = session.get(UserRow, row.user_id)
            if user is None:
                return None
            record = UserRecord(
                id=user.id,
                username=user.username,
                password=user.password,
                display_name=user.display_name,
                role=user.role,
                initial=user.initial,
            )
            return self._auth_session(row.sid, _as_utc(row.issued_at), record)

    def logout(self, token: Optional[str]) -> None:
        """Destroy the session behind ``token``. Succeeds silently when there is none."""

        sid = self._session_id(token, verify_exp=False)
        if sid is None:
            return
        with self._db.session_scope() as session:
            row = session.get(SessionRow, sid)
            if row is not None:
                session.delete(row)
                logger.info("session_closed", extra={"user_id": row.user_id})

    def _session_id(self, token: Optional[str], *, verify_exp: bool) -> Optional[str]:
        if not token:
            return None
        try:
            data = jwt.decode(
                token,
                self._cfg.secret,
                algorithms=[self._cfg.algorithm],
                options={"verify_exp": verify_exp},
            )
        except jwt.ExpiredSignatureError:
            return None
        except jwt.InvalidTokenError:
            return None
        sid = data.get("sid")
        return sid if isinstance(sid, str) else None

    @staticmethod
    def _auth_session(sid: str, issued_at: datetime, record: UserRecord) -> AuthSession:
        return AuthSession(
            session_id=sid,
            user_id=record.id,
            username=record.username,
            display_name=record.display_name,
            initials=record.initial,
            role=record.role,  # type: ignore[arg-type]
            issued_at=issued_at,
        )


def get_session_store() -> SessionStore:
    return SessionStore(get_database())


def session_credential(
    request: Request,
    creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Optional[str]:
    """Extract the session token from the bearer header, else from the cookie."""

    if creds is not None and creds.scheme and creds.scheme.lower() == "bearer":
        return creds.credentials
    return request.cookies.get(CookieConfig.from_env().name)


def get_optional_session(
    credential: Optional[str] = Depends(session_credential),
    store: SessionStore = Depends(get_session_store),
) -> Optional[AuthSession]:
    return store.current_session(credential)


def get_current_session(session: Optional[AuthSession] = Depends(get_optional_session)) -> AuthSession:
    if session is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return session

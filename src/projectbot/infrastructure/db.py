from __future__ import annotations

"""Relational storage: table definitions and the shared database handle.

The same schema serves SQLite (local development and tests) and PostgreSQL.
Stores open short-lived ORM sessions through ``Database.session_scope``; the
emergency write path uses ``Database.engine`` directly for raw SQL.
"""

from contextlib import contextmanager
from datetime import UTC, datetime
from threading import RLock
from typing import Iterator, Optional
import logging
import os

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    create_engine,
    func,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool


LOG = logging.getLogger("projectbot.db")

DEFAULT_DATABASE_URL = "sqlite:///./projectbot.db"


def utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    pass


class UserRow(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    password: Mapped[str] = mapped_column(Text, nullable=False)
    display_name: Mapped[str] = mapped_column(String(120), nullable=False)
    role: Mapped[str] = mapped_column(String(16), nullable=False, default="user")
    initial: Mapped[str] = mapped_column(String(3), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )


class ChatbotRow(Base):
    __tablename__ = "chatbots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), unique=True, nullable=False)
    slack_channel_id: Mapped[str] = mapped_column(String(64), nullable=False)
    asana_project_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_by_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    public_token: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    require_auth: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    system_prompt: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    output_format: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    summary_schedule: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )


class MessageRow(Base):
    __tablename__ = "messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    chatbot_id: Mapped[int] = mapped_column(ForeignKey("chatbots.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id"), nullable=True)
    public_token: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    sender: Mapped[str] = mapped_column(String(16), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    citation: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )


class SessionRow(Base):
    __tablename__ = "sessions"

    sid: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    issued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


class Database:
    def __init__(self, url: str) -> None:
        self.url = url
        self.engine: Engine = _build_engine(url)
        self._sessionmaker = sessionmaker(bind=self.engine, expire_on_commit=False)

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    def create_all(self) -> None:
        Base.metadata.create_all(self.engine)

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        session = self._sessionmaker()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def dispose(self) -> None:
        self.engine.dispose()


def _build_engine(url: str) -> Engine:
    kwargs: dict = {"future": True}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    else:
        kwargs["pool_pre_ping"] = True
    return create_engine(url, **kwargs)


_db: Database | None = None
_db_lock = RLock()


def get_database() -> Database:
    global _db
    if _db is not None:
        return _db
    with _db_lock:
        if _db is None:
            url = os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL)
            database = Database(url)
            database.create_all()
            LOG.info("database_ready", extra={"dialect": database.dialect})
            _db = database
            _seed_admin_from_env(database)
    return _db


def reset_database() -> None:
    """Drop the cached handle so the next ``get_database`` re-reads DATABASE_URL (tests)."""

    global _db
    with _db_lock:
        if _db is not None:
            _db.dispose()
        _db = None


def _seed_admin_from_env(database: Database) -> None:
    username = os.getenv("PROJECTBOT_ADMIN_USERNAME")
    password = os.getenv("PROJECTBOT_ADMIN_PASSWORD")
    if not username or not password:
        return
    from .user_store import SqlUserStore

    store = SqlUserStore(database)
    if store.get_by_username(username) is None:
        store.create(username=username, password=password, display_name="Admin User", role="admin")
        LOG.info("admin_seeded", extra={"username": username})

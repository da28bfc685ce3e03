from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol

from passlib.context import CryptContext
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from ..domain.errors import ValidationConflict
from .db import Database, UserRow, get_database


pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

# Placeholder for rows created without a usable password (emergency bootstrap).
UNUSABLE_PASSWORD = "!"


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(supplied: str, stored: str) -> bool:
    if not stored or stored == UNUSABLE_PASSWORD:
        return False
    try:
        return pwd_context.verify(supplied, stored)
    except ValueError:
        # Stored value is not a recognised hash.
        return False


def initials_for(display_name: str) -> str:
    parts = [p for p in display_name.split() if p]
    if not parts:
        return "?"
    letters = "".join(p[0] for p in parts[:2])
    return letters.upper()


@dataclass
class UserRecord:
    id: int
    username: str
    password: str
    display_name: str
    role: str
    initial: str


class UserStore(Protocol):
    def create(
        self,
        *,
        username: str,
        password: str,
        display_name: str,
        role: str = "user",
        initial: Optional[str] = None,
    ) -> UserRecord: ...

    def get_by_username(self, username: str) -> Optional[UserRecord]: ...


class SqlUserStore:
    def __init__(self, database: Optional[Database] = None) -> None:
        self._db = database or get_database()

    @staticmethod
    def _record(row: UserRow) -> UserRecord:
        return UserRecord(
            id=row.id,
            username=row.username,
            password=row.password,
            display_name=row.display_name,
            role=row.role,
            initial=row.initial,
        )

    def create(
        self,
        *,
        username: str,
        password: str,
        display_name: str,
        role: str = "user",
        initial: Optional[str] = None,
    ) -> UserRecord:
        row = UserRow(
            username=username,
            password=hash_password(password),
            display_name=display_name,
            role=role,
            initial=(initial or initials_for(display_name))[:3],
        )
        try:
            with self._db.session_scope() as session:
                session.add(row)
                session.flush()
                return self._record(row)
        except IntegrityError as exc:
            raise ValidationConflict("Username already exists", cause="users.username") from exc

    def get_by_username(self, username: str) -> Optional[UserRecord]:
        with self._db.session_scope() as session:
            row = session.scalars(select(UserRow).where(UserRow.username == username)).first()
            return self._record(row) if row else None

    def set_role(self, user_id: int, role: str) -> Optional[UserRecord]:
        with self._db.session_scope() as session:
            row = session.get(UserRow, user_id)
            if row is None:
                return None
            row.role = role
            session.flush()
            return self._record(row)


def get_user_store() -> SqlUserStore:
    return SqlUserStore(get_database())

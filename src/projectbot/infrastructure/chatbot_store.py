from __future__ import annotations

from typing import List, Optional, Protocol

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from ..domain.errors import ValidationConflict
from ..domain.models import Chatbot, ChatbotCreate, ChatbotUpdate
from .db import ChatbotRow, Database, get_database


class ChatbotStore(Protocol):
    def create(self, payload: ChatbotCreate, *, created_by_id: int, public_token: str) -> Chatbot: ...

    def get(self, chatbot_id: int) -> Optional[Chatbot]: ...

    def get_by_token(self, token: str) -> Optional[Chatbot]: ...

    def list(self, owner_id: Optional[int] = None) -> List[Chatbot]: ...

    def update(self, chatbot_id: int, payload: ChatbotUpdate) -> Optional[Chatbot]: ...

    def token_exists(self, token: str) -> bool: ...


def _conflict(exc: IntegrityError) -> ValidationConflict:
    text = str(getattr(exc, "orig", exc)).lower()
    if "public_token" in text:
        return ValidationConflict("A chatbot with that token already exists", cause="chatbots.public_token")
    return ValidationConflict("A chatbot with that name already exists", cause="chatbots.name")


class SqlChatbotStore:
    """Canonical ORM-backed chatbot storage.

    Schema or connectivity errors propagate as raw SQLAlchemy exceptions so the
    mutation executor can classify them; only uniqueness violations are
    translated here because they are business-rule failures.
    """

    def __init__(self, database: Optional[Database] = None) -> None:
        self._db = database or get_database()

    def create(self, payload: ChatbotCreate, *, created_by_id: int, public_token: str) -> Chatbot:
        row = ChatbotRow(
            name=payload.name,
            slack_channel_id=payload.slack_channel_id,
            asana_project_id=payload.asana_project_id,
            created_by_id=created_by_id,
            public_token=public_token,
            is_active=True,
            require_auth=payload.require_auth,
            system_prompt=payload.system_prompt,
            output_format=payload.output_format,
            summary_schedule=payload.summary_schedule.model_dump() if payload.summary_schedule else None,
        )
        try:
            with self._db.session_scope() as session:
                session.add(row)
                session.flush()
                return Chatbot.model_validate(row)
        except IntegrityError as exc:
            raise _conflict(exc) from exc

    def get(self, chatbot_id: int) -> Optional[Chatbot]:
        with self._db.session_scope() as session:
            row = session.get(ChatbotRow, chatbot_id)
            return Chatbot.model_validate(row) if row else None

    def get_by_token(self, token: str) -> Optional[Chatbot]:
        with self._db.session_scope() as session:
            row = session.scalars(select(ChatbotRow).where(ChatbotRow.public_token == token)).first()
            return Chatbot.model_validate(row) if row else None

    def list(self, owner_id: Optional[int] = None) -> List[Chatbot]:
        with self._db.session_scope() as session:
            stmt = select(ChatbotRow).order_by(ChatbotRow.id)
            if owner_id is not None:
                stmt = stmt.where(ChatbotRow.created_by_id == owner_id)
            return [Chatbot.model_validate(row) for row in session.scalars(stmt)]

    def update(self, chatbot_id: int, payload: ChatbotUpdate) -> Optional[Chatbot]:
        changes = payload.model_dump(exclude_unset=True)
        try:
            with self._db.session_scope() as session:
                row = session.get(ChatbotRow, chatbot_id)
                if row is None:
                    return None
                for field, value in changes.items():
                    setattr(row, field, value)
                session.flush()
                return Chatbot.model_validate(row)
        except IntegrityError as exc:
            raise _conflict(exc) from exc

    def token_exists(self, token: str) -> bool:
        with self._db.session_scope() as session:
            found = session.scalars(select(ChatbotRow.id).where(ChatbotRow.public_token == token)).first()
            return found is not None


def get_chatbot_store() -> SqlChatbotStore:
    return SqlChatbotStore(get_database())

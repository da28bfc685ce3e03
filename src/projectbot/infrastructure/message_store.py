from __future__ import annotations

from typing import List, Optional, Protocol

from sqlalchemy import select

from ..domain.models import ChatMessage
from .db import Database, MessageRow, get_database


class MessageStore(Protocol):
    def add_message(
        self,
        chatbot_id: int,
        sender: str,
        content: str,
        *,
        user_id: Optional[int] = None,
        public_token: Optional[str] = None,
        citation: Optional[str] = None,
    ) -> ChatMessage: ...

    def list_messages(self, chatbot_id: int, limit: Optional[int] = None) -> List[ChatMessage]: ...


def _message_model(row: MessageRow) -> ChatMessage:
    return ChatMessage(
        id=row.id,
        chatbot_id=row.chatbot_id,
        sender=row.sender,  # type: ignore[arg-type]
        body=row.content,
        citation=row.citation,
        created_at=row.created_at,
    )


class SqlMessageStore:
    """Append-only transcript storage. Messages are never updated or deleted here."""

    def __init__(self, database: Optional[Database] = None) -> None:
        self._db = database or get_database()

    def add_message(
        self,
        chatbot_id: int,
        sender: str,
        content: str,
        *,
        user_id: Optional[int] = None,
        public_token: Optional[str] = None,
        citation: Optional[str] = None,
    ) -> ChatMessage:
        row = MessageRow(
            chatbot_id=chatbot_id,
            sender=sender,
            content=content,
            user_id=user_id,
            public_token=public_token,
            citation=citation,
        )
        with self._db.session_scope() as session:
            session.add(row)
            session.flush()
            return _message_model(row)

    def list_messages(self, chatbot_id: int, limit: Optional[int] = None) -> List[ChatMessage]:
        """Return the transcript oldest first; ``limit`` keeps only the most recent entries."""

        with self._db.session_scope() as session:
            stmt = select(MessageRow).where(MessageRow.chatbot_id == chatbot_id)
            if limit is not None:
                stmt = stmt.order_by(MessageRow.id.desc()).limit(max(0, limit))
                rows = list(session.scalars(stmt))
                rows.reverse()
            else:
                rows = list(session.scalars(stmt.order_by(MessageRow.id)))
            return [_message_model(row) for row in rows]


def get_message_store() -> SqlMessageStore:
    return SqlMessageStore(get_database())

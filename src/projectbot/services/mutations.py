from __future__ import annotations

"""Dual-path writes for state-changing operations.

The canonical path goes through the ORM stores. When it fails because the
schema has drifted (missing table or column) or the connection dropped, the
executor retries exactly once through an emergency path: a single Core
transaction over reflected tables that inserts only the columns actually
present. Uniqueness conflicts are business errors and never fall back.

The emergency path only reads schema metadata; it never creates or alters
tables.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol
import logging

from sqlalchemy import column, insert, inspect, select, table
from sqlalchemy.engine import Connection
from sqlalchemy.engine.reflection import Inspector
from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError, ProgrammingError
from sqlalchemy.sql.expression import TableClause

from ..domain.errors import (
    EmergencyPathExhausted,
    InfrastructureFailure,
    ProjectBotError,
    ValidationConflict,
)
from ..domain.models import AuthSession, Chatbot, ChatbotCreate
from ..infrastructure.chatbot_store import ChatbotStore, get_chatbot_store
from ..infrastructure.db import Database, get_database, utcnow
from ..infrastructure.events import publish_event
from ..infrastructure.user_store import UNUSABLE_PASSWORD
from ..observability.metrics import MUTATION_ATTEMPTS
from ..security.rbac import can_use_emergency_path
from ..security.tokens import generate_public_token
from .diagnostics import MutationAttempt, record_attempt


LOG = logging.getLogger("projectbot.mutations")


def _failure_code(detail: str) -> str:
    lowered = detail.lower()
    if "no such column" in lowered or "has no column" in lowered or ("column" in lowered and "does not exist" in lowered):
        return "missing_column"
    if "no such table" in lowered or ("relation" in lowered and "does not exist" in lowered):
        return "missing_table"
    return "unavailable"


def classify_storage_error(exc: BaseException) -> Optional[ProjectBotError]:
    """Map a storage exception to the domain taxonomy; None means "not ours, let it surface"."""

    if isinstance(exc, ProjectBotError):
        return exc
    if isinstance(exc, IntegrityError):
        return ValidationConflict(cause=str(exc.orig))
    if isinstance(exc, (OperationalError, ProgrammingError, InterfaceError)) or (
        isinstance(exc, DBAPIError) and exc.connection_invalidated
    ):
        detail = str(getattr(exc, "orig", None) or exc)
        return InfrastructureFailure(cause=detail, code=_failure_code(detail))
    return None


class MutationStrategy(Protocol):
    """One state-changing operation with a canonical and an emergency write."""

    operation: str

    def prepare(self, payload: Any, actor: AuthSession) -> Any: ...

    def try_canonical(self, draft: Any) -> Any: ...

    def try_emergency(self, draft: Any) -> Any: ...

    def entity_id(self, entity: Any) -> Optional[int]: ...


@dataclass(frozen=True)
class ChatbotDraft:
    payload: ChatbotCreate
    created_by_id: int
    # Generated once and shared by both paths; doubles as the idempotency key.
    public_token: str


def _reflect(inspector: Inspector, name: str) -> TableClause:
    if not inspector.has_table(name):
        raise InfrastructureFailure(f"Table {name} is not available", cause=f"no such table: {name}", code="missing_table")
    return table(name, *(column(col["name"], col["type"]) for col in inspector.get_columns(name)))


class ChatbotCreationStrategy:
    operation = "create_chatbot"

    _REQUIRED = ("name", "slack_channel_id", "created_by_id", "public_token")

    def __init__(self, store: Optional[ChatbotStore] = None, database: Optional[Database] = None) -> None:
        self._store = store or get_chatbot_store()
        self._db = database or get_database()

    def prepare(self, payload: ChatbotCreate, actor: AuthSession) -> ChatbotDraft:
        token = generate_public_token(self._store.token_exists)
        return ChatbotDraft(payload=payload, created_by_id=actor.user_id, public_token=token)

    def try_canonical(self, draft: ChatbotDraft) -> Chatbot:
        return self._store.create(draft.payload, created_by_id=draft.created_by_id, public_token=draft.public_token)

    def try_emergency(self, draft: ChatbotDraft) -> Chatbot:
        with self._db.engine.begin() as conn:
            inspector = inspect(conn)
            chatbots = _reflect(inspector, "chatbots")
            missing = [name for name in self._REQUIRED if name not in chatbots.c]
            if missing:
                raise InfrastructureFailure(
                    "Chatbot table is missing required columns",
                    cause="missing columns: " + ", ".join(missing),
                    code="missing_column",
                )

            existing = self._fetch(conn, chatbots, draft.public_token)
            if existing is not None:
                # A canonical write that failed after committing already landed the row.
                return existing

            owner_id = self._ensure_owner(conn, inspector, draft.created_by_id)
            values = self._values(draft, owner_id)
            conn.execute(insert(chatbots).values({k: v for k, v in values.items() if k in chatbots.c}))
            created = self._fetch(conn, chatbots, draft.public_token)
            if created is None:
                raise InfrastructureFailure("Emergency insert did not persist", cause="row missing after insert")
            return created

    def entity_id(self, entity: Chatbot) -> Optional[int]:
        return entity.id

    @staticmethod
    def _values(draft: ChatbotDraft, owner_id: int) -> Dict[str, Any]:
        payload = draft.payload
        return {
            "name": payload.name,
            "slack_channel_id": payload.slack_channel_id,
            "asana_project_id": payload.asana_project_id,
            "created_by_id": owner_id,
            "public_token": draft.public_token,
            "is_active": True,
            "require_auth": payload.require_auth,
            "system_prompt": payload.system_prompt,
            "output_format": payload.output_format,
            "summary_schedule": payload.summary_schedule.model_dump() if payload.summary_schedule else None,
            "created_at": utcnow(),
        }

    @staticmethod
    def _fetch(conn: Connection, chatbots: TableClause, token: str) -> Optional[Chatbot]:
        row = conn.execute(select(chatbots).where(chatbots.c.public_token == token)).mappings().first()
        return Chatbot.model_validate(dict(row)) if row else None

    @staticmethod
    def _ensure_owner(conn: Connection, inspector: Inspector, preferred_id: int) -> int:
        """Return an existing user id to own the row, bootstrapping an admin if the table is empty."""

        users = _reflect(inspector, "users")
        if conn.execute(select(users.c.id).where(users.c.id == preferred_id)).first():
            return preferred_id
        first = conn.execute(select(users.c.id).order_by(users.c.id).limit(1)).first()
        if first:
            return first.id
        username = "emergency-admin"
        values = {
            "username": username,
            "password": UNUSABLE_PASSWORD,
            "display_name": "Admin User",
            "role": "admin",
            "initial": "AU",
            "created_at": utcnow(),
        }
        conn.execute(insert(users).values({k: v for k, v in values.items() if k in users.c}))
        LOG.warning("emergency_owner_bootstrapped", extra={"username": username})
        return conn.execute(select(users.c.id).where(users.c.username == username)).scalar_one()


class ResilientMutationExecutor:
    def execute(self, strategy: MutationStrategy, payload: Any, actor: AuthSession) -> Any:
        """Run ``strategy`` canonically, falling back once to its emergency path.

        Raises:
            ValidationConflict: business-rule violation on either path.
            InfrastructureFailure: canonical path unavailable and the actor may
                not use the emergency path.
            EmergencyPathExhausted: both paths failed; nothing was written.
        """

        attempt = MutationAttempt(operation=strategy.operation, actor_id=actor.user_id)
        draft = strategy.prepare(payload, actor)

        try:
            entity = strategy.try_canonical(draft)
        except Exception as exc:
            error = classify_storage_error(exc)
            if error is None:
                attempt.primary_outcome = "error"
                attempt.primary_error = f"{type(exc).__name__}: {exc}"
                self._finish(attempt, "canonical", "error")
                raise
            attempt.fail_primary(error)
            if not isinstance(error, InfrastructureFailure):
                self._finish(attempt, "canonical", error.kind)
                raise error from exc
            canonical_error, canonical_exc = error, exc
        else:
            attempt.finish(strategy.entity_id(entity))
            self._finish(attempt, "canonical", "success")
            return entity

        if not can_use_emergency_path(actor):
            self._finish(attempt, "canonical", canonical_error.kind)
            canonical_error.diagnostic = attempt.to_dict()
            raise canonical_error from canonical_exc

        LOG.warning(
            "mutation_fallback",
            extra={
                "operation": strategy.operation,
                "attempt_id": attempt.attempt_id,
                "code": canonical_error.code,
                "cause": canonical_error.cause,
            },
        )
        publish_event("mutation.fallback", {"attempt_id": attempt.attempt_id, "operation": strategy.operation, "code": canonical_error.code})

        try:
            entity = strategy.try_emergency(draft)
        except Exception as exc:
            error = classify_storage_error(exc) or InfrastructureFailure(cause=f"{type(exc).__name__}: {exc}")
            attempt.fail_emergency(error)
            if isinstance(error, ValidationConflict):
                self._finish(attempt, "emergency", error.kind)
                raise error from exc
            exhausted = EmergencyPathExhausted(
                operation=strategy.operation,
                canonical_error=canonical_error,
                emergency_error=error,
            )
            exhausted.diagnostic = attempt.to_dict()
            self._finish(attempt, "emergency", exhausted.kind)
            LOG.error(
                "mutation_failed",
                extra={"operation": strategy.operation, "attempt_id": attempt.attempt_id, "cause": exhausted.cause},
            )
            publish_event("mutation.failed", attempt.to_dict())
            raise exhausted from exc

        attempt.finish(strategy.entity_id(entity))
        self._finish(attempt, "emergency", "success")
        return entity

    @staticmethod
    def _finish(attempt: MutationAttempt, path: str, outcome: str) -> None:
        if attempt.finished_at is None:
            attempt.finish()
        MUTATION_ATTEMPTS.labels(operation=attempt.operation, path=path, outcome=outcome).inc()
        record_attempt(attempt)


def get_mutation_executor() -> ResilientMutationExecutor:
    return ResilientMutationExecutor()

from __future__ import annotations

import logging
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from threading import Lock
from typing import Any, Dict, List, Optional

from sqlalchemy import inspect, text

from ..domain.errors import ProjectBotError
from ..domain.models import DatabaseStatus
from ..infrastructure.db import Base, Database, utcnow

_logger = logging.getLogger("projectbot.diagnostics")


@dataclass
class MutationAttempt:
    """What happened on each write path for one mutation. Never shown to anonymous callers."""

    operation: str
    actor_id: Optional[int] = None
    attempt_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    primary_outcome: str = "pending"
    primary_error_code: Optional[str] = None
    primary_error: Optional[str] = None
    emergency_outcome: Optional[str] = None
    emergency_error: Optional[str] = None
    entity_id: Optional[int] = None
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    @property
    def used_fallback(self) -> bool:
        return self.emergency_outcome is not None

    def fail_primary(self, error: ProjectBotError) -> None:
        self.primary_outcome = "failure"
        self.primary_error_code = getattr(error, "code", None) or error.kind
        self.primary_error = error.cause or error.message

    def fail_emergency(self, error: ProjectBotError) -> None:
        self.emergency_outcome = "failure"
        self.emergency_error = error.cause or error.message

    def finish(self, entity_id: Optional[int] = None) -> None:
        if entity_id is not None:
            self.entity_id = entity_id
            if self.used_fallback:
                self.emergency_outcome = "success"
            else:
                self.primary_outcome = "success"
        self.finished_at = utcnow()

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["used_fallback"] = self.used_fallback
        return payload


# Rolling buffer of recent attempts (process-local)
_RECENT_ATTEMPTS: List[MutationAttempt] = []
_MAX_BUFFER = 200
_LOCK = Lock()


def record_attempt(attempt: MutationAttempt) -> None:
    with _LOCK:
        _RECENT_ATTEMPTS.append(attempt)
        if len(_RECENT_ATTEMPTS) > _MAX_BUFFER:
            del _RECENT_ATTEMPTS[0 : len(_RECENT_ATTEMPTS) - _MAX_BUFFER]
    _logger.info(
        "mutation_attempt_recorded",
        extra={
            "attempt_id": attempt.attempt_id,
            "operation": attempt.operation,
            "primary_outcome": attempt.primary_outcome,
            "emergency_outcome": attempt.emergency_outcome,
        },
    )


def list_recent_attempts(limit: int = 50) -> List[MutationAttempt]:
    if limit <= 0:
        return []
    with _LOCK:
        return list(_RECENT_ATTEMPTS[-limit:])


def reset_diagnostics() -> None:
    with _LOCK:
        _RECENT_ATTEMPTS.clear()


def database_status(database: Database) -> DatabaseStatus:
    """Reachability plus presence of each expected table. Read-only."""

    expected = sorted(Base.metadata.tables)
    try:
        with database.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
            inspector = inspect(conn)
            tables = {name: inspector.has_table(name) for name in expected}
    except Exception as exc:
        _logger.warning("database_unreachable", extra={"err": str(exc)})
        return DatabaseStatus(
            status="error",
            dialect=database.dialect,
            tables={name: False for name in expected},
            error=str(exc),
        )
    status = "ok" if all(tables.values()) else "degraded"
    return DatabaseStatus(status=status, dialect=database.dialect, tables=tables)

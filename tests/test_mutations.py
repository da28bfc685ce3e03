import sqlite3
from datetime import UTC, datetime
from unittest.mock import patch

import pytest
from prometheus_client import REGISTRY
from sqlalchemy import func, select, text
from sqlalchemy.exc import IntegrityError, OperationalError, ProgrammingError

from src.projectbot.domain.errors import (
    EmergencyPathExhausted,
    InfrastructureFailure,
    ValidationConflict,
)
from src.projectbot.domain.models import AuthSession, ChatbotCreate
from src.projectbot.infrastructure.chatbot_store import SqlChatbotStore
from src.projectbot.infrastructure.db import ChatbotRow, UserRow, get_database
from src.projectbot.infrastructure.user_store import SqlUserStore
from src.projectbot.services import mutations
from src.projectbot.services.diagnostics import list_recent_attempts
from src.projectbot.services.mutations import (
    ChatbotCreationStrategy,
    ResilientMutationExecutor,
    classify_storage_error,
)


def _actor(user_id, role="user"):
    return AuthSession(
        session_id="sid",
        user_id=user_id,
        username="pm",
        display_name="Project Manager",
        initials="PM",
        role=role,
        issued_at=datetime.now(UTC),
    )


def _owner():
    record = SqlUserStore().create(username="pm", password="secret-pass", display_name="Project Manager")
    return _actor(record.id)


def _missing_table(*_args, **_kwargs):
    raise OperationalError("INSERT INTO chatbots", {}, sqlite3.OperationalError("no such table: chatbots"))


def _count(model):
    with get_database().session_scope() as session:
        return session.scalar(select(func.count()).select_from(model))


def _payload(name="Riverside"):
    return ChatbotCreate(name=name, slack_channel_id="C0RIVER")


def test_canonical_success_does_not_touch_emergency_path():
    actor = _owner()
    strategy = ChatbotCreationStrategy()
    with patch.object(strategy, "try_emergency") as emergency:
        chatbot = ResilientMutationExecutor().execute(strategy, _payload(), actor)
    emergency.assert_not_called()
    assert chatbot.name == "Riverside"
    assert chatbot.created_by_id == actor.user_id
    attempt = list_recent_attempts()[-1]
    assert attempt.primary_outcome == "success"
    assert not attempt.used_fallback
    assert attempt.entity_id == chatbot.id


def test_infrastructure_failure_falls_back_exactly_once(monkeypatch):
    actor = _owner()
    monkeypatch.setattr(SqlChatbotStore, "create", _missing_table)
    labels = {"operation": "create_chatbot", "path": "emergency", "outcome": "success"}
    before = REGISTRY.get_sample_value("projectbot_mutation_attempts_total", labels) or 0.0

    chatbot = ResilientMutationExecutor().execute(ChatbotCreationStrategy(), _payload(), actor)

    assert _count(ChatbotRow) == 1
    assert chatbot.name == "Riverside"
    assert chatbot.is_active is True
    assert chatbot.created_by_id == actor.user_id
    attempt = list_recent_attempts()[-1]
    assert attempt.used_fallback
    assert attempt.primary_outcome == "failure"
    assert attempt.primary_error_code == "missing_table"
    assert attempt.emergency_outcome == "success"
    assert attempt.entity_id == chatbot.id
    assert REGISTRY.get_sample_value("projectbot_mutation_attempts_total", labels) == before + 1


def test_emergency_path_reuses_row_written_by_failed_canonical(monkeypatch):
    actor = _owner()
    real_create = SqlChatbotStore.create

    def create_then_drop_connection(self, payload, **kwargs):
        real_create(self, payload, **kwargs)
        raise OperationalError("COMMIT", {}, sqlite3.OperationalError("server closed the connection"))

    monkeypatch.setattr(SqlChatbotStore, "create", create_then_drop_connection)
    chatbot = ResilientMutationExecutor().execute(ChatbotCreationStrategy(), _payload(), actor)

    assert _count(ChatbotRow) == 1
    assert list_recent_attempts()[-1].primary_error_code == "unavailable"
    assert chatbot.name == "Riverside"


def test_emergency_path_bootstraps_owner_when_users_missing(monkeypatch):
    monkeypatch.setattr(SqlChatbotStore, "create", _missing_table)
    actor = _actor(404, role="admin")

    chatbot = ResilientMutationExecutor().execute(ChatbotCreationStrategy(), _payload(), actor)

    with get_database().session_scope() as session:
        owner = session.scalars(select(UserRow)).one()
        assert owner.role == "admin"
        assert owner.password == "!"
    assert chatbot.created_by_id == owner.id


def test_both_paths_failing_leaves_nothing_behind(monkeypatch):
    monkeypatch.setattr(SqlChatbotStore, "create", _missing_table)

    def broken_values(draft, owner_id):
        raise OperationalError("INSERT INTO chatbots", {}, sqlite3.OperationalError("disk I/O error"))

    monkeypatch.setattr(ChatbotCreationStrategy, "_values", staticmethod(broken_values))
    actor = _actor(404, role="admin")

    with pytest.raises(EmergencyPathExhausted) as exc:
        ResilientMutationExecutor().execute(ChatbotCreationStrategy(), _payload(), actor)

    # The bootstrapped owner is rolled back with the failed insert.
    assert _count(UserRow) == 0
    assert _count(ChatbotRow) == 0
    body = exc.value.to_dict()
    assert body["kind"] == "emergency_path_exhausted"
    assert body["paths"]["canonical"]["code"] == "missing_table"
    assert "disk I/O error" in body["paths"]["emergency"]["cause"]
    assert exc.value.diagnostic["used_fallback"] is True
    attempt = list_recent_attempts()[-1]
    assert attempt.emergency_outcome == "failure"
    assert attempt.entity_id is None


def test_validation_conflict_never_falls_back():
    actor = _owner()
    executor = ResilientMutationExecutor()
    executor.execute(ChatbotCreationStrategy(), _payload(), actor)

    strategy = ChatbotCreationStrategy()
    with patch.object(strategy, "try_emergency") as emergency:
        with pytest.raises(ValidationConflict):
            executor.execute(strategy, _payload(), actor)
    emergency.assert_not_called()
    assert _count(ChatbotRow) == 1
    assert list_recent_attempts()[-1].primary_error_code == "validation_conflict"


def test_emergency_path_restricted_by_role(monkeypatch):
    monkeypatch.setenv("PROJECTBOT_EMERGENCY_ROLES", "admin")
    monkeypatch.setattr(SqlChatbotStore, "create", _missing_table)
    actor = _owner()
    strategy = ChatbotCreationStrategy()

    with patch.object(strategy, "try_emergency") as emergency:
        with pytest.raises(InfrastructureFailure) as exc:
            ResilientMutationExecutor().execute(strategy, _payload(), actor)
    emergency.assert_not_called()
    assert exc.value.code == "missing_table"


def test_fallback_publishes_event(monkeypatch):
    monkeypatch.setattr(SqlChatbotStore, "create", _missing_table)
    published = []
    monkeypatch.setattr(mutations, "publish_event", lambda kind, payload: published.append((kind, payload)))

    ResilientMutationExecutor().execute(ChatbotCreationStrategy(), _payload(), _owner())
    assert [kind for kind, _ in published] == ["mutation.fallback"]
    assert published[0][1]["code"] == "missing_table"


def test_unexpected_errors_surface_without_fallback(monkeypatch):
    def boom(*_args, **_kwargs):
        raise KeyError("bug")

    monkeypatch.setattr(SqlChatbotStore, "create", boom)
    strategy = ChatbotCreationStrategy()
    with patch.object(strategy, "try_emergency") as emergency:
        with pytest.raises(KeyError):
            ResilientMutationExecutor().execute(strategy, _payload(), _owner())
    emergency.assert_not_called()
    assert list_recent_attempts()[-1].primary_outcome == "error"


@pytest.mark.skipif(sqlite3.sqlite_version_info < (3, 35, 0), reason="needs ALTER TABLE DROP COLUMN")
def test_schema_drift_missing_column_recovers_through_emergency_path():
    actor = _owner()
    with get_database().engine.begin() as conn:
        conn.execute(text("ALTER TABLE chatbots DROP COLUMN require_auth"))

    chatbot = ResilientMutationExecutor().execute(ChatbotCreationStrategy(), _payload(), actor)

    assert chatbot.require_auth is False
    with get_database().engine.connect() as conn:
        assert conn.execute(text("SELECT count(*) FROM chatbots")).scalar() == 1
        columns = {row[1] for row in conn.execute(text("PRAGMA table_info(chatbots)"))}
    assert "require_auth" not in columns
    attempt = list_recent_attempts()[-1]
    assert attempt.used_fallback
    assert attempt.primary_error_code == "missing_column"


@pytest.mark.parametrize(
    "exc, kind, code",
    [
        (IntegrityError("INSERT", {}, sqlite3.IntegrityError("UNIQUE constraint failed")), "validation_conflict", None),
        (OperationalError("SELECT", {}, sqlite3.OperationalError("no such table: chatbots")), "infrastructure_failure", "missing_table"),
        (OperationalError("SELECT", {}, sqlite3.OperationalError("table chatbots has no column named x")), "infrastructure_failure", "missing_column"),
        (ProgrammingError("SELECT", {}, Exception('relation "chatbots" does not exist')), "infrastructure_failure", "missing_table"),
        (ProgrammingError("SELECT", {}, Exception('column "x" does not exist')), "infrastructure_failure", "missing_column"),
        (OperationalError("SELECT", {}, sqlite3.OperationalError("database is locked")), "infrastructure_failure", "unavailable"),
    ],
)
def test_classify_storage_error(exc, kind, code):
    error = classify_storage_error(exc)
    assert error.kind == kind
    assert getattr(error, "code", None) == code


def test_classify_leaves_foreign_errors_alone():
    assert classify_storage_error(ValueError("nope")) is None

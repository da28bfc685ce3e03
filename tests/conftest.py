import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)


@pytest.fixture(autouse=True)
def _isolated_backend(tmp_path):
    """Fresh SQLite file, clean limiter/diagnostics and a deterministic model per test."""
    from src.projectbot.infrastructure import events
    from src.projectbot.infrastructure.db import reset_database
    from src.projectbot.security.rate_limit import reset_rate_limits
    from src.projectbot.services.diagnostics import reset_diagnostics
    from src.projectbot.services.generation import set_generation_backend

    from .utils import ScriptedBackend

    # Own MonkeyPatch so a test's ``monkeypatch.undo()`` leaves this isolation intact.
    with pytest.MonkeyPatch.context() as monkeypatch:
        yield from _isolate(tmp_path, monkeypatch, events, reset_database, reset_rate_limits, reset_diagnostics, set_generation_backend, ScriptedBackend)


def _isolate(tmp_path, monkeypatch, events, reset_database, reset_rate_limits, reset_diagnostics, set_generation_backend, ScriptedBackend):
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'projectbot.db'}")
    monkeypatch.setenv("JWT_SECRET", "test-secret")
    monkeypatch.setenv("PROJECTBOT_SIMULATED_CADENCE_MS", "0")
    monkeypatch.setenv("PROJECTBOT_UPSTREAM_TIMEOUT", "5")
    for name in (
        "REDIS_URL",
        "PROJECTBOT_EVENTS_PREFIX",
        "PROJECTBOT_DELIVERY_MODE",
        "PROJECTBOT_EMERGENCY_ROLES",
        "PROJECTBOT_ADMIN_USERNAME",
        "PROJECTBOT_ADMIN_PASSWORD",
        "PROJECTBOT_RATE_LIMIT_DISABLED",
        "LOGIN_LIMIT",
        "LOGIN_WINDOW_SEC",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(events, "_publisher", None)

    reset_database()
    reset_rate_limits()
    reset_diagnostics()
    set_generation_backend(ScriptedBackend(["The ", "schedule ", "is..."]))
    yield
    set_generation_backend(None)
    reset_database()

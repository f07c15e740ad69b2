"""Shared fixtures for workspace-gate tests."""

import logging
import os

import pytest


@pytest.fixture(autouse=True)
def isolate_env(monkeypatch):
    """Prevent tests from picking up real GOOGLE_* settings or credentials."""
    for key in list(os.environ):
        if key.startswith("GOOGLE_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")

    import workspace_gate.config
    monkeypatch.setattr(workspace_gate.config, "_settings", None)


@pytest.fixture
def restore_logging():
    """Undo root logger changes made by setup_logging()."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers = handlers
    root.setLevel(level)


@pytest.fixture
def recording_sleep():
    """An async sleep that records requested delays (seconds) and returns at once."""
    calls: list[float] = []

    async def _sleep(seconds: float) -> None:
        calls.append(seconds)

    _sleep.calls = calls
    return _sleep


"""Tests for the depot CLI."""

import logging

import pytest
from typer.testing import CliRunner

from depot import runtime
from depot.cli import app
from depot.config import settings

runner = CliRunner()


@pytest.fixture(autouse=True)
def memory_backend(monkeypatch: pytest.MonkeyPatch):
    """Run every command against a fresh in-memory store."""
    monkeypatch.setattr(settings, "cache_backend", "memory")
    monkeypatch.setattr(settings, "cache_enabled", True)
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
    runtime._cache = None
    runtime._store = None
    runtime._resolved = False


class TestCli:
    """Test CLI commands."""

    def test_no_args_shows_help(self) -> None:
        result = runner.invoke(app, [])
        assert "health" in result.output

    def test_health(self) -> None:
        result = runner.invoke(app, ["health"])
        assert result.exit_code == 0
        assert "healthy" in result.output

    def test_health_json(self) -> None:
        result = runner.invoke(app, ["health", "--format", "json"])
        assert result.exit_code == 0
        assert '"status": "healthy"' in result.output

    def test_invalidate(self) -> None:
        result = runner.invoke(app, ["invalidate", "products", "pallets"])
        assert result.exit_code == 0
        assert "Invalidated 0 keys" in result.output

    def test_clear_requires_confirmation(self) -> None:
        result = runner.invoke(app, ["clear"])
        assert result.exit_code == 1

    def test_clear(self) -> None:
        result = runner.invoke(app, ["clear", "--yes"])
        assert result.exit_code == 0
        assert "flushed" in result.output

    def test_lock_holder(self) -> None:
        result = runner.invoke(app, ["lock-holder", "daily-report"])
        assert result.exit_code == 0
        assert "unlocked" in result.output

    def test_disabled_cache_exits_with_code_2(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(settings, "cache_enabled", False)
        result = runner.invoke(app, ["invalidate", "products"])
        assert result.exit_code == 2

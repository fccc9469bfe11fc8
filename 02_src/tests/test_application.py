"""Tests for Application."""

import asyncio
import json

import pytest

from agent_supervisor.app import Application
from agent_supervisor.config import Settings
from agent_supervisor.models import Agent, AgentStatus


@pytest.fixture
def make_app(sink):
    """Factory for applications on in-memory storage with a recording sink."""

    def _make(**kwargs):
        kwargs.setdefault("db_path", ":memory:")
        kwargs.setdefault("settings", Settings())
        kwargs.setdefault("sink", sink)
        kwargs.setdefault("run_tickers", False)
        kwargs.setdefault("enable_poller", False)
        return Application(**kwargs)

    return _make


class TestApplicationStart:
    """Tests for Application.start()."""

    async def test_start_initializes_components(self, make_app):
        """Test that start initializes all components."""
        app = make_app()
        await app.start()

        assert app._storage is not None
        assert app._event_bus is not None
        assert app._tracker is not None
        assert app._registry is not None
        assert app._breakers is not None
        assert app._state_machine is not None
        assert app._detector is not None
        assert app._scorer is not None
        assert app._engine is not None
        assert app._supervisor is not None
        assert app._query is not None
        assert app._poller is None

        await app.stop()

    async def test_start_wires_dependencies(self, make_app, sink):
        """Test that components share the same collaborators."""
        app = make_app()
        await app.start()

        assert app._tracker._event_bus is app._event_bus
        assert app._tracker._storage is app._storage
        assert app._engine._registry is app._registry
        assert app._engine._sink is sink
        assert app._supervisor._engine is app._engine
        assert app._supervisor.running

        await app.stop()

    async def test_start_creates_database_tables(self, make_app):
        """Test that start creates database tables."""
        app = make_app()
        await app.start()

        async with app._storage._conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table'"
        ) as cursor:
            tables = [row[0] for row in await cursor.fetchall()]
            assert len(tables) > 0

        await app.stop()

    async def test_start_restores_registrations(self, make_app, tmp_path):
        """Test registrations survive a restart."""
        db_path = str(tmp_path / "supervisor.db")

        first = make_app(db_path=db_path)
        await first.start()
        await first.supervisor.register(Agent(id="a1", type="crawler"))
        await first.stop()

        second = make_app(db_path=db_path)
        await second.start()
        assert "a1" in second.registry
        assert second.registry.require("a1").status is AgentStatus.HEALTHY
        await second.stop()


class TestApplicationStop:
    """Tests for Application.stop()."""

    async def test_stop_closes_storage(self, make_app):
        """Test that stop closes the storage connection."""
        app = make_app()
        await app.start()
        await app.stop()

        assert app._storage._conn is None
        assert not app._supervisor.running


class TestHealthReport:
    """Tests for the periodic fleet health report."""

    async def test_report_written_on_interval(self, make_app, tmp_path):
        """Test a running application appends reports to the configured log."""
        report_path = tmp_path / "health.jsonl"
        settings = Settings(health_report_interval_s=0.01, health_report_path=str(report_path))
        app = make_app(settings=settings, run_tickers=True)
        await app.start()
        await app.supervisor.register(Agent(id="a1", type="crawler"))

        def _totals():
            if not report_path.exists():
                return []
            return [json.loads(line)["summary"]["total"] for line in report_path.read_text().splitlines()]

        async def _written():
            while 1 not in _totals():
                await asyncio.sleep(0.01)

        await asyncio.wait_for(_written(), timeout=2.0)
        await app.stop()

        assert _totals()[-1] == 1
        assert app._report_task is None

    async def test_no_report_without_tickers(self, make_app, tmp_path):
        """Test embedded applications do not start the report loop."""
        settings = Settings(health_report_interval_s=0.01, health_report_path=str(tmp_path / "h.jsonl"))
        app = make_app(settings=settings)
        await app.start()
        assert app._report_task is None
        await app.stop()


class TestApplicationReset:
    """Tests for Application.reset()."""

    async def test_reset_clears_agents_and_audit(self, make_app):
        """Test that reset clears registrations and stored data."""
        app = make_app()
        await app.start()
        await app.supervisor.register(Agent(id="a1", type="crawler"))
        await app.engine.force_level("a1", 4, "operator")
        await app.engine.wait_idle("a1")

        await app.reset()

        assert len(app.registry) == 0
        assert await app.storage.get_agents() == []
        assert await app.storage.get_interventions() == []
        assert app.engine.escalations == []
        assert app.breakers.snapshots() == []

        await app.stop()

    async def test_reset_restarts_components(self, make_app):
        """Test that components keep working after reset."""
        app = make_app()
        await app.start()
        await app.reset()

        await app.supervisor.register(Agent(id="a2", type="crawler"))
        assert app.query.get_overview()["total"] == 1
        assert app.supervisor.running

        await app.stop()


class TestApplicationProperties:
    """Tests for Application properties."""

    async def test_storage_property(self, make_app):
        """Test storage property."""
        app = make_app()
        await app.start()

        assert app.storage is app._storage

        await app.stop()

    async def test_properties_raise_when_not_started(self, make_app):
        """Test that component properties raise before start."""
        app = make_app()

        for name in ("storage", "registry", "engine", "supervisor", "query"):
            with pytest.raises(RuntimeError, match="not started"):
                getattr(app, name)

    async def test_settings_available_before_start(self, make_app):
        """Test plain configuration needs no start."""
        app = make_app()
        assert app.settings.heartbeat_interval_s == 30.0

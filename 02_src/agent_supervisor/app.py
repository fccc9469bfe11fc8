"""Application bootstrap and lifecycle management."""

import asyncio
import contextlib
import os
from typing import Protocol

from .breaker import CircuitBreakerBank
from .commands import AgentCommandSink, HTTPCommandSink
from .config import Clock, Settings, resolve_db_path, utc_now
from .detection import AnomalyDetector
from .event_bus import EventBus
from .health import HealthStateMachine
from .interventions import (
    EscalationPolicy,
    InterventionEngine,
    IOperatorNotifier,
    LogNotifier,
    WebhookNotifier,
)
from .logging_config import get_logger
from .monitor import HealthPoller, Supervisor
from .predictive import PredictiveScorer
from .query import QueryService
from .registry import Registry
from .storage import IStorage, Storage
from .tracker import ITracker, Tracker

logger = get_logger(__name__)


class IApplication(Protocol):
    """Bootstrap and lifecycle."""

    async def start(self) -> None:
        """Initialize components in dependency order."""
        ...

    async def stop(self) -> None:
        """Shutdown in reverse order."""
        ...

    async def reset(self) -> None:
        """Reset data between test runs."""
        ...


class Application:
    """Main application bootstrap."""

    def __init__(
        self,
        db_path: str | None = None,
        settings: Settings | None = None,
        clock: Clock | None = None,
        sink: AgentCommandSink | None = None,
        policy: EscalationPolicy | None = None,
        notifier: IOperatorNotifier | None = None,
        run_tickers: bool = True,
        enable_poller: bool | None = None,
    ):
        env_db_path = os.getenv("DATABASE_URL") if db_path is None else db_path
        self._db_path = resolve_db_path(env_db_path)
        self._settings = settings or Settings.from_env()
        self._clock = clock or utc_now
        self._sink_override = sink
        self._policy = policy
        self._notifier = notifier
        self._run_tickers = run_tickers
        if enable_poller is None:
            enable_poller = os.getenv("ENABLE_POLLER", "").lower() in ("1", "true", "yes")
        self._enable_poller = enable_poller

        # Components (will be initialized in start())
        self._storage: IStorage | None = None
        self._event_bus: EventBus | None = None
        self._tracker: ITracker | None = None
        self._registry: Registry | None = None
        self._breakers: CircuitBreakerBank | None = None
        self._sink: AgentCommandSink | None = None
        self._state_machine: HealthStateMachine | None = None
        self._detector: AnomalyDetector | None = None
        self._scorer: PredictiveScorer | None = None
        self._engine: InterventionEngine | None = None
        self._supervisor: Supervisor | None = None
        self._poller: HealthPoller | None = None
        self._query: QueryService | None = None
        self._report_task: asyncio.Task | None = None

    def _build_notifier(self) -> IOperatorNotifier:
        if self._notifier is not None:
            return self._notifier
        webhook_url = os.getenv("OPERATOR_WEBHOOK_URL")
        return WebhookNotifier(webhook_url) if webhook_url else LogNotifier()

    async def start(self) -> None:
        """Initialize components in dependency order."""
        logger.info("Starting application")

        # 1. Storage (no dependencies)
        self._storage = Storage(self._db_path)
        await self._storage.init()
        logger.info("Storage initialized")

        # 2. EventBus (depends on Storage for persistence)
        self._event_bus = EventBus(self._storage)
        logger.info("EventBus initialized")

        # 3. Tracker (depends on EventBus + Storage)
        self._tracker = Tracker(self._event_bus, self._storage)
        await self._tracker.start()

        # 4. Registry (depends on Storage), restores persisted registrations
        self._registry = Registry(self._storage, self._settings, self._clock)
        await self._registry.load()

        # 5. Breakers and command egress
        self._breakers = CircuitBreakerBank(self._settings, self._clock)
        self._sink = self._sink_override or HTTPCommandSink()

        # 6. Evaluators (depend on EventBus + Settings)
        self._state_machine = HealthStateMachine(self._event_bus, self._settings, self._clock)
        self._detector = AnomalyDetector(self._clock)
        self._scorer = PredictiveScorer(self._settings, self._clock)

        # 7. InterventionEngine (depends on all of the above)
        self._engine = InterventionEngine(
            registry=self._registry,
            state_machine=self._state_machine,
            breakers=self._breakers,
            sink=self._sink,
            event_bus=self._event_bus,
            storage=self._storage,
            policy=self._policy,
            notifier=self._build_notifier(),
            clock=self._clock,
        )
        await self._engine.start()
        logger.info("InterventionEngine started")

        # 8. Supervisor (ingress, monitors, tickers)
        self._supervisor = Supervisor(
            registry=self._registry,
            state_machine=self._state_machine,
            detector=self._detector,
            scorer=self._scorer,
            breakers=self._breakers,
            engine=self._engine,
            sink=self._sink,
            event_bus=self._event_bus,
            storage=self._storage,
            tracker=self._tracker,
            settings=self._settings,
            clock=self._clock,
        )
        await self._supervisor.start(run_tickers=self._run_tickers)
        logger.info("Supervisor started with %s agents", len(self._registry))

        # 9. Optional pull-based ingress
        if self._enable_poller:
            self._poller = HealthPoller(
                self._supervisor, self._registry, self._settings, clock=self._clock
            )
            await self._poller.start()

        # 10. Query projections
        self._query = QueryService(
            self._registry, self._engine, self._breakers, self._storage, self._clock
        )

        # 11. Periodic fleet health report
        if self._run_tickers and self._settings.health_report_interval_s > 0:
            self._report_task = asyncio.create_task(self._report_loop())

        logger.info("All components initialized successfully")

    async def stop(self) -> None:
        """Shutdown in reverse order."""
        if self._report_task:
            self._report_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._report_task
            self._report_task = None
        if self._poller:
            await self._poller.stop()
        if self._supervisor:
            await self._supervisor.stop()
        if self._engine:
            await self._engine.stop()
        if self._sink and self._sink_override is None:
            await self._sink.close()
        if self._tracker:
            await self._tracker.stop()
        if self._storage:
            await self._storage.close()
            logger.info("Storage closed")

    async def reset(self) -> None:
        """Reset data between test runs."""
        # 1. Pause active processes
        if self._supervisor:
            await self._supervisor.stop()
        if self._engine:
            await self._engine.stop()

        # 2. Clear storage and in-memory state
        if self._storage:
            await self._storage.clear()
            logger.info("Storage cleared")
        if self._registry:
            for agent_id in [entry.agent_id for entry in self._registry.entries()]:
                self._detector.forget(agent_id)
                self._scorer.forget(agent_id)
            self._registry.clear()
        if self._breakers:
            self._breakers.clear()

        # 3. Restart engine and supervisor
        if self._engine:
            self._engine.clear()
            await self._engine.start()
        if self._supervisor:
            await self._supervisor.start(run_tickers=self._run_tickers)
            logger.info("Reset complete")

    async def _report_loop(self) -> None:
        while True:
            await asyncio.sleep(self._settings.health_report_interval_s)
            try:
                self._query.write_health_report(self._settings.health_report_path)
            except OSError as e:
                logger.error("Health report failed: %s", e)

    def _require(self, component):
        if component is None:
            raise RuntimeError("Application not started")
        return component

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def clock(self) -> Clock:
        return self._clock

    @property
    def storage(self) -> IStorage:
        """Get storage instance."""
        return self._require(self._storage)

    @property
    def event_bus(self) -> EventBus:
        return self._require(self._event_bus)

    @property
    def tracker(self) -> ITracker:
        return self._require(self._tracker)

    @property
    def registry(self) -> Registry:
        return self._require(self._registry)

    @property
    def breakers(self) -> CircuitBreakerBank:
        return self._require(self._breakers)

    @property
    def engine(self) -> InterventionEngine:
        return self._require(self._engine)

    @property
    def supervisor(self) -> Supervisor:
        """Get supervisor instance."""
        return self._require(self._supervisor)

    @property
    def query(self) -> QueryService:
        """Get query service instance."""
        return self._require(self._query)

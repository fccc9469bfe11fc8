"""Per-agent health state machine."""

from dataclasses import dataclass
from datetime import datetime

from ..config import Clock, Settings, utc_now
from ..event_bus import IEventBus, build_message
from ..logging_config import get_logger
from ..models import AgentStatus, HealthSnapshot, Topic
from ..registry import AgentEntry
from .signals import critical_resources, meets_recovery, rolling_error_rate

logger = get_logger(__name__)

UNHEALTHY = frozenset({AgentStatus.DEGRADED, AgentStatus.STUCK, AgentStatus.FAILED})
RECOVERABLE = frozenset(
    {AgentStatus.DEGRADED, AgentStatus.STUCK, AgentStatus.RESTARTING}
)
_MAX_CHAIN = len(AgentStatus)


@dataclass(frozen=True)
class Transition:
    """A single status change."""

    agent_id: str
    from_status: AgentStatus
    to_status: AgentStatus
    reason: str
    at: datetime

    @property
    def is_deterioration(self) -> bool:
        return self.to_status in UNHEALTHY


class HealthStateMachine:
    """Drives agent status from snapshots, silence and intervention outcomes.

    Callers must hold ``entry.lock`` around every method that takes an entry.
    """

    def __init__(
        self,
        event_bus: IEventBus,
        settings: Settings,
        clock: Clock | None = None,
    ):
        self._event_bus = event_bus
        self._settings = settings
        self._clock = clock or utc_now

    async def observe(
        self, entry: AgentEntry, snapshot: HealthSnapshot, is_latest: bool = True
    ) -> list[Transition]:
        """Evaluate transition rules for a newly ingested snapshot."""
        if not is_latest:
            return []

        thresholds = entry.thresholds
        status = entry.status

        # The streak is kept in every status; interventions wait on it
        streak = [entry.history[-i] for i in range(entry.recovery_streak + 1, 1, -1)]
        if meets_recovery(snapshot, thresholds, streak):
            entry.recovery_streak += 1
        else:
            entry.recovery_streak = 0

        if entry.recovery_streak >= thresholds.recovery_snapshots:
            streak_start = entry.history[-thresholds.recovery_snapshots].timestamp
            entry.recovery_streak = 0
            entry.recovery_event.set()
            if status is AgentStatus.ISOLATED:
                # Only an operator clears isolation
                logger.info(
                    "Isolated agent %s meets recovery criteria",
                    entry.agent_id,
                    extra={"agent_id": entry.agent_id},
                )
                return []
            if status in RECOVERABLE:
                entry.rate_epoch = streak_start
                transition = await self._transition(
                    entry, AgentStatus.HEALTHY, "recovery_criteria_met"
                )
                return [transition]

        if status in (AgentStatus.ISOLATED, AgentStatus.RESTARTING, AgentStatus.FAILED):
            return []

        transitions = []
        for _ in range(_MAX_CHAIN):
            target = self._next_status(entry, snapshot)
            if target is None:
                break
            to_status, reason = target
            transitions.append(await self._transition(entry, to_status, reason))
        return transitions

    def _next_status(
        self, entry: AgentEntry, snapshot: HealthSnapshot
    ) -> tuple[AgentStatus, str] | None:
        thresholds = entry.thresholds
        status = entry.status

        if status is AgentStatus.HEALTHY:
            if snapshot.response_time_ms > thresholds.degraded_response_ms:
                return AgentStatus.DEGRADED, "slow_response"
            window = entry.window(entry.rate_epoch)[-thresholds.error_rate_window :]
            if rolling_error_rate(window) > thresholds.degraded_error_rate:
                return AgentStatus.DEGRADED, "error_rate"
            if snapshot.consecutive_errors >= thresholds.stuck_consecutive_errors:
                return AgentStatus.DEGRADED, "consecutive_errors"
            return None

        if status in (AgentStatus.DEGRADED, AgentStatus.STUCK):
            critical = critical_resources(list(entry.history), thresholds)
            if critical:
                return AgentStatus.FAILED, f"resource_critical:{','.join(sorted(critical))}"
            if (
                status is AgentStatus.DEGRADED
                and snapshot.consecutive_errors >= thresholds.stuck_consecutive_errors
            ):
                return AgentStatus.STUCK, "consecutive_errors"
        return None

    async def check_silence(self, entry: AgentEntry) -> list[Transition]:
        """Mark agents stuck when heartbeats stop."""
        if entry.status not in (AgentStatus.HEALTHY, AgentStatus.DEGRADED):
            return []
        if entry.last_heartbeat_at is None:
            return []

        silence = (self._clock() - entry.last_heartbeat_at).total_seconds()
        if silence < self._settings.silence_limit_s:
            return []

        transitions = []
        if entry.status is AgentStatus.HEALTHY:
            transitions.append(
                await self._transition(entry, AgentStatus.DEGRADED, "heartbeat_silence")
            )
        transitions.append(
            await self._transition(entry, AgentStatus.STUCK, "heartbeat_silence")
        )
        return transitions

    def is_silent(self, entry: AgentEntry) -> bool:
        if entry.last_heartbeat_at is None:
            return False
        silence = (self._clock() - entry.last_heartbeat_at).total_seconds()
        return silence >= self._settings.silence_limit_s

    async def intervention_failed(self, entry: AgentEntry, level: int) -> Transition | None:
        """A Level 2+ remediation finished without recovery."""
        if level < 2:
            return None
        if entry.status not in RECOVERABLE:
            return None
        return await self._transition(
            entry, AgentStatus.FAILED, f"intervention_level_{level}_failed"
        )

    async def force(
        self, entry: AgentEntry, status: AgentStatus, reason: str
    ) -> Transition | None:
        """Apply a transition ordered by the intervention engine or an operator."""
        if entry.status is status:
            return None
        if entry.status is AgentStatus.ISOLATED and reason != "isolation_cleared":
            return None
        return await self._transition(entry, status, reason)

    async def _transition(
        self, entry: AgentEntry, to_status: AgentStatus, reason: str
    ) -> Transition:
        now = self._clock()
        transition = Transition(
            agent_id=entry.agent_id,
            from_status=entry.status,
            to_status=to_status,
            reason=reason,
            at=now,
        )
        entry.status = to_status
        entry.status_since = now
        if to_status is not AgentStatus.ISOLATED:
            entry.recovery_streak = 0
        if to_status is AgentStatus.HEALTHY and entry.rate_epoch is None:
            entry.rate_epoch = now

        logger.info(
            "Agent %s: %s -> %s (%s)",
            entry.agent_id,
            transition.from_status.value,
            to_status.value,
            reason,
            extra={"agent_id": entry.agent_id},
        )
        await self._event_bus.publish(
            build_message(
                Topic.TRANSITION,
                source="health_state_machine",
                event="status_transition",
                agent_id=entry.agent_id,
                from_status=transition.from_status.value,
                to_status=to_status.value,
                reason=reason,
                at=now.isoformat(),
            )
        )
        return transition

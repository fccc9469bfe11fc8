"""Escalation table: level -> actions, timeout, attempts, next level."""

from dataclasses import dataclass, replace

from ..commands import CommandKind
from ..models import AgentStatus, Issue, IssueType, Severity

MAX_LEVEL = 4


@dataclass(frozen=True)
class ActionSpec:
    """One step of a level's action bundle.

    ``command`` is None for steps the supervisor performs itself.
    """

    name: str
    command: CommandKind | None = None


@dataclass(frozen=True)
class LevelPolicy:
    """Budget and behaviour for one escalation level."""

    level: int
    name: str
    actions: tuple[ActionSpec, ...]
    timeout_s: float | None
    max_attempts: int
    next_level: int | None
    bypass_breaker: bool = False
    # Status forced once the bundle has been delivered
    status_on_dispatch: AgentStatus | None = None
    # Keep going through the bundle when a step fails
    best_effort: bool = False

    @property
    def action_names(self) -> list[str]:
        return [action.name for action in self.actions]

    @property
    def budget_s(self) -> float | None:
        """Total time the level may take before it counts as overrun."""
        if self.timeout_s is None:
            return None
        return self.timeout_s * self.max_attempts


DEFAULT_LEVELS: dict[int, LevelPolicy] = {
    1: LevelPolicy(
        level=1,
        name="graceful",
        actions=(
            ActionSpec("clear_cache", CommandKind.PARAMETER_UPDATE),
            ActionSpec("reset_local_state", CommandKind.PARAMETER_UPDATE),
            ActionSpec("retry_operation", CommandKind.PARAMETER_UPDATE),
        ),
        timeout_s=30.0,
        max_attempts=3,
        next_level=2,
    ),
    2: LevelPolicy(
        level=2,
        name="restart",
        actions=(
            ActionSpec("checkpoint_state", CommandKind.PARAMETER_UPDATE),
            ActionSpec("terminate_process", CommandKind.GRACEFUL_STOP),
            ActionSpec("restart", CommandKind.FORCE_RESTART),
            ActionSpec("restore_state", CommandKind.PARAMETER_UPDATE),
        ),
        timeout_s=60.0,
        max_attempts=2,
        next_level=3,
        bypass_breaker=True,
        status_on_dispatch=AgentStatus.RESTARTING,
    ),
    3: LevelPolicy(
        level=3,
        name="isolate",
        actions=(
            ActionSpec("isolate_agent", CommandKind.CIRCUIT_BREAKER_OPEN),
            ActionSpec("reroute_traffic"),
            ActionSpec("spin_up_standby"),
        ),
        timeout_s=120.0,
        max_attempts=1,
        next_level=4,
        bypass_breaker=True,
        status_on_dispatch=AgentStatus.ISOLATED,
    ),
    4: LevelPolicy(
        level=4,
        name="emergency",
        actions=(
            ActionSpec("emergency_shutdown", CommandKind.GRACEFUL_STOP),
            ActionSpec("preserve_data", CommandKind.PARAMETER_UPDATE),
            ActionSpec("activate_fallback"),
        ),
        timeout_s=None,
        max_attempts=1,
        next_level=None,
        bypass_breaker=True,
        status_on_dispatch=AgentStatus.ISOLATED,
        best_effort=True,
    ),
}


class EscalationPolicy:
    """The escalation table plus the rules that pick levels for an issue."""

    def __init__(
        self,
        levels: dict[int, LevelPolicy] | None = None,
        command_timeout_s: float = 30.0,
    ):
        self._levels = dict(levels or DEFAULT_LEVELS)
        self.command_timeout_s = command_timeout_s

    def level(self, level: int) -> LevelPolicy:
        return self._levels[level]

    def levels(self) -> list[LevelPolicy]:
        return [self._levels[n] for n in sorted(self._levels)]

    def start_level(self, issue: Issue) -> int:
        """Critical issues skip the graceful and restart levels."""
        if issue.severity is Severity.CRITICAL:
            return 3
        return 1

    def cap_for(self, issue: Issue) -> int:
        """Highest level a chain for this issue may reach on its own."""
        if issue.type is IssueType.PREDICTED_DEGRADATION:
            return 1
        return MAX_LEVEL

    def command_timeout(self, policy: LevelPolicy) -> float:
        return policy.timeout_s if policy.timeout_s is not None else self.command_timeout_s

    def scaled(self, factor: float) -> "EscalationPolicy":
        """Same table with every timeout multiplied by ``factor``."""
        levels = {
            n: replace(
                p, timeout_s=p.timeout_s * factor if p.timeout_s is not None else None
            )
            for n, p in self._levels.items()
        }
        return EscalationPolicy(levels, self.command_timeout_s * factor)

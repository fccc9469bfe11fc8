"""Project-level configuration, path helpers and supervisor settings."""

import json
import os
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Union

PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
DATA_DIR = PROJECT_ROOT / "03_data"
LOGS_DIR = PROJECT_ROOT / "04_logs"
DEFAULT_DB_PATH = DATA_DIR / "agent_supervisor.db"
DEFAULT_LOG_PATH = LOGS_DIR / "supervisor.log"


PathLike = Union[str, Path]
Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Default clock for all time-based decisions."""
    return datetime.now(timezone.utc)


def resolve_db_path(env_value: PathLike | None = None) -> PathLike:
    """Resolve DATABASE_URL to an absolute path."""
    if not env_value:
        DATA_DIR.mkdir(parents=True, exist_ok=True)
        return DEFAULT_DB_PATH

    if str(env_value) == ":memory:":
        return ":memory:"

    candidate = Path(env_value)
    return candidate if candidate.is_absolute() else PROJECT_ROOT / candidate


@dataclass(frozen=True)
class Thresholds:
    """Health and anomaly thresholds. Overridable per agent type."""

    # Health state machine
    degraded_response_ms: float = 5000.0
    degraded_error_rate: float = 0.05
    stuck_consecutive_errors: int = 3
    critical_memory_pct: float = 90.0
    critical_cpu_pct: float = 85.0
    critical_sustain_s: float = 180.0
    recovery_response_ms: float = 3000.0
    recovery_error_rate: float = 0.01
    recovery_resource_pct: float = 70.0
    recovery_snapshots: int = 3
    error_rate_window: int = 20

    # Anomaly detector
    repetition_count: int = 5
    repetition_window_s: float = 300.0
    max_dependency_depth: int = 10
    error_spike_sigma: float = 3.0
    error_spike_min_samples: int = 10
    operation_timeouts_ms: dict[str, float] = field(
        default_factory=lambda: {
            "api_call": 30_000.0,
            "storage": 10_000.0,
            "computation": 60_000.0,
        }
    )


@dataclass
class Settings:
    """Runtime settings for the supervisor."""

    heartbeat_interval_s: float = 30.0
    evaluation_tick_s: float = 10.0
    dependency_tick_s: float = 60.0
    predictive_tick_s: float = 30.0
    history_size: int = 500
    ingress_queue_size: int = 1000
    risk_threshold: float = 0.8
    breaker_failure_threshold: int = 5
    breaker_base_backoff_s: float = 60.0
    breaker_max_backoff_s: float = 600.0
    # 0 disables the periodic JSON-lines health report
    health_report_interval_s: float = 300.0
    health_report_path: str | None = None
    thresholds: Thresholds = field(default_factory=Thresholds)
    type_overrides: dict[str, dict[str, Any]] = field(default_factory=dict)

    @property
    def silence_limit_s(self) -> float:
        """Silence after which an agent counts as stuck."""
        return 2 * self.heartbeat_interval_s

    def thresholds_for(self, agent_type: str | None) -> Thresholds:
        """Resolve thresholds for an agent type."""
        overrides = self.type_overrides.get(agent_type or "")
        if not overrides:
            return self.thresholds
        return replace(self.thresholds, **overrides)

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables."""
        overrides_raw = os.getenv("AGENT_TYPE_OVERRIDES")
        return cls(
            heartbeat_interval_s=float(os.getenv("HEARTBEAT_INTERVAL_S", "30")),
            evaluation_tick_s=float(os.getenv("EVALUATION_TICK_S", "10")),
            dependency_tick_s=float(os.getenv("DEPENDENCY_TICK_S", "60")),
            predictive_tick_s=float(os.getenv("PREDICTIVE_TICK_S", "30")),
            history_size=int(os.getenv("HISTORY_SIZE", "500")),
            ingress_queue_size=int(os.getenv("INGRESS_QUEUE_SIZE", "1000")),
            risk_threshold=float(os.getenv("RISK_THRESHOLD", "0.8")),
            breaker_failure_threshold=int(os.getenv("BREAKER_FAILURE_THRESHOLD", "5")),
            health_report_interval_s=float(os.getenv("HEALTH_REPORT_INTERVAL_S", "300")),
            health_report_path=os.getenv("HEALTH_REPORT_PATH") or None,
            type_overrides=json.loads(overrides_raw) if overrides_raw else {},
        )

"""Derived health signals shared by the state machine, detector and scorer."""

from collections.abc import Sequence

from ..config import Thresholds
from ..models import HealthSnapshot


def rolling_error_rate(snapshots: Sequence[HealthSnapshot]) -> float:
    """Error rate across a window of snapshots.

    Uses request counts when agents report them, otherwise the fraction of
    snapshots that reported any error.
    """
    if not snapshots:
        return 0.0
    requests = sum(s.request_count for s in snapshots)
    if requests > 0:
        return min(1.0, sum(s.error_count for s in snapshots) / requests)
    return sum(1 for s in snapshots if s.error_count > 0) / len(snapshots)


def sustained_breaches(
    snapshots: Sequence[HealthSnapshot], thresholds: Thresholds
) -> dict[str, float]:
    """Resources breaching their critical threshold continuously up to the latest snapshot.

    Returns a mapping of resource name to breach duration in seconds.
    """
    breaches: dict[str, float] = {}
    if not snapshots:
        return breaches

    checks = {
        "memory": lambda s: s.resource_usage.memory_pct >= thresholds.critical_memory_pct,
        "cpu": lambda s: s.resource_usage.cpu_pct >= thresholds.critical_cpu_pct,
    }
    latest = snapshots[-1]
    for resource, breached in checks.items():
        if not breached(latest):
            continue
        start = latest
        for snapshot in reversed(snapshots):
            if not breached(snapshot):
                break
            start = snapshot
        breaches[resource] = (latest.timestamp - start.timestamp).total_seconds()
    return breaches


def critical_resources(
    snapshots: Sequence[HealthSnapshot], thresholds: Thresholds
) -> dict[str, float]:
    """Breaches that have lasted at least the critical sustain period."""
    return {
        resource: duration
        for resource, duration in sustained_breaches(snapshots, thresholds).items()
        if duration >= thresholds.critical_sustain_s
    }


def meets_recovery(
    snapshot: HealthSnapshot,
    thresholds: Thresholds,
    streak: Sequence[HealthSnapshot] = (),
) -> bool:
    """Whether a snapshot extends a recovery streak.

    ``streak`` holds the snapshots already in the streak. The error rate is
    rolled over them and the new snapshot.
    """
    usage = snapshot.resource_usage
    return (
        snapshot.response_time_ms < thresholds.recovery_response_ms
        and rolling_error_rate([*streak, snapshot]) < thresholds.recovery_error_rate
        and usage.memory_pct < thresholds.recovery_resource_pct
        and usage.cpu_pct < thresholds.recovery_resource_pct
    )

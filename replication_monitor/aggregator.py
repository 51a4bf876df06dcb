"""
Replication Monitor - Health Aggregator.

============================================================
PURPOSE
============================================================
Turns per-source statuses into one Summary with a
classified health state.

CLASSIFICATION (highest wins, never downgraded):
1. CRITICAL - any source is not connected
2. WARNING  - any slot is inactive, or any slot's LSN
              distance exceeds the byte threshold
3. HEALTHY  - otherwise

Every triggering condition appends one issue. Counts and
maxima are order-independent; the issue list follows the
order of the input statuses.

============================================================
"""

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional

from .models import HealthState, SourceStatus, Summary


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Thresholds:
    """
    Classification thresholds.

    `inactive_slot_threshold` is reserved: inactivity is flagged
    immediately and this value is not consulted.
    """

    lag_bytes_threshold: int = 0
    lag_seconds_threshold: Optional[float] = None
    inactive_slot_threshold: int = 0

    def __post_init__(self) -> None:
        if self.lag_bytes_threshold < 0:
            raise ValueError("lag_bytes_threshold must be >= 0")
        if self.lag_seconds_threshold is not None and self.lag_seconds_threshold < 0:
            raise ValueError("lag_seconds_threshold must be >= 0")


def summarize(statuses: Iterable[SourceStatus], thresholds: Thresholds) -> Summary:
    """
    Build a Summary from per-source statuses.

    Pure: the same input sequence always yields an equal Summary.
    """
    total_publications = 0
    total_subscriptions = 0
    total_slots = 0
    active_slots = 0
    max_lag_bytes = 0
    max_lag_seconds = 0.0
    health = HealthState.HEALTHY
    issues: List[str] = []

    for status in statuses:
        total_publications += len(status.publications or [])
        total_subscriptions += len(status.subscriptions or [])
        total_slots += len(status.slots())

        for stat in status.stats():
            max_lag_bytes = max(max_lag_bytes, stat.lsn_distance_bytes)
            if stat.replication_lag_sec is not None:
                max_lag_seconds = max(max_lag_seconds, stat.replication_lag_sec)

            if stat.lsn_distance_bytes > thresholds.lag_bytes_threshold:
                issues.append(
                    f"High replication lag on slot {stat.slot_name} "
                    f"({status.name}): {stat.lsn_distance_bytes} bytes"
                )
                health = health.escalate(HealthState.WARNING)

            if (
                thresholds.lag_seconds_threshold is not None
                and stat.replication_lag_sec is not None
                and stat.replication_lag_sec > thresholds.lag_seconds_threshold
            ):
                issues.append(
                    f"High replication lag on slot {stat.slot_name} "
                    f"({status.name}): {stat.replication_lag_sec:.1f} seconds"
                )
                health = health.escalate(HealthState.WARNING)

        for slot in status.slots():
            if slot.active:
                active_slots += 1
            else:
                issues.append(f"Replication slot {slot.slot_name} ({status.name}) is inactive")
                health = health.escalate(HealthState.WARNING)

        if not status.connected:
            issues.append(f"Database {status.name} is not connected")
            health = health.escalate(HealthState.CRITICAL)

    return Summary(
        total_publications=total_publications,
        total_subscriptions=total_subscriptions,
        total_slots=total_slots,
        active_slots=active_slots,
        max_lag_bytes=max_lag_bytes,
        max_lag_seconds=max_lag_seconds,
        health_status=health,
        issues=tuple(issues),
    )


class HealthAggregator:
    """Binds a set of thresholds to `summarize`."""

    def __init__(self, thresholds: Thresholds):
        self._thresholds = thresholds

    @property
    def thresholds(self) -> Thresholds:
        return self._thresholds

    def summarize(self, statuses: Iterable[SourceStatus]) -> Summary:
        summary = summarize(statuses, self._thresholds)
        if summary.health_status != HealthState.HEALTHY:
            logger.debug(
                f"Health {summary.health_status.value}: {len(summary.issues)} issue(s)"
            )
        return summary

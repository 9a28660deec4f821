"""Prometheus collectors for the tier lifecycle engine."""

from __future__ import annotations

from typing import Iterable, Optional, Sequence

from prometheus_client import REGISTRY, Counter, Histogram

from core.logging import get_logger

logger = get_logger(__name__)

_SWEEP_BUCKETS = (0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0)


def _lookup_collector(name: str):
    existing = getattr(REGISTRY, "_names_to_collectors", None)
    if isinstance(existing, dict):
        return existing.get(name)
    return None


def build_counter(name: str, documentation: str, labelnames: Sequence[str] | None = None):
    """Create a Counter while tolerating duplicate registrations."""
    try:
        return Counter(name, documentation, tuple(labelnames or ()))
    except ValueError:
        collector = _lookup_collector(name)
        if collector is None:
            logger.debug("Counter %s already registered but not found in registry.", name)
        return collector


def build_histogram(
    name: str,
    documentation: str,
    labelnames: Sequence[str] | None = None,
    buckets: Optional[Iterable[float]] = None,
):
    """Create a Histogram while tolerating duplicate registrations."""
    try:
        return Histogram(name, documentation, tuple(labelnames or ()), buckets=tuple(buckets or Histogram.DEFAULT_BUCKETS))
    except ValueError:
        collector = _lookup_collector(name)
        if collector is None:
            logger.debug("Histogram %s already registered but not found in registry.", name)
        return collector


_SWEEP_DURATION = build_histogram(
    "tier_sweep_duration_seconds",
    "Wall time of one tier lifecycle sweep.",
    buckets=_SWEEP_BUCKETS,
)
_STATE_COUNTER = build_counter(
    "tier_sweep_accounts_total",
    "Accounts classified by the tier sweep, per lifecycle state.",
    ("state",),
)
_ACTION_COUNTER = build_counter(
    "tier_actions_total",
    "Tier actions attempted by the sweep, per action and outcome.",
    ("action", "outcome"),
)
_ERROR_COUNTER = build_counter(
    "tier_sweep_account_errors_total",
    "Per-account failures during a tier sweep.",
    ("stage",),
)
_QUOTA_COUNTER = build_counter(
    "tier_quota_exceeded_total",
    "Usage increments rejected because the tier limit was reached.",
    ("feature", "tier"),
)


def observe_sweep_duration(seconds: float) -> None:
    if _SWEEP_DURATION is not None:
        _SWEEP_DURATION.observe(max(seconds, 0.0))


def record_state(state: str) -> None:
    if _STATE_COUNTER is not None:
        _STATE_COUNTER.labels(state=state).inc()


def record_action(action: str, outcome: str) -> None:
    if _ACTION_COUNTER is not None:
        _ACTION_COUNTER.labels(action=action, outcome=outcome).inc()


def record_account_error(stage: str) -> None:
    if _ERROR_COUNTER is not None:
        _ERROR_COUNTER.labels(stage=stage).inc()


def record_quota_exceeded(feature: str, tier: str) -> None:
    if _QUOTA_COUNTER is not None:
        _QUOTA_COUNTER.labels(feature=feature, tier=tier).inc()


__all__ = [
    "build_counter",
    "build_histogram",
    "observe_sweep_duration",
    "record_account_error",
    "record_action",
    "record_quota_exceeded",
    "record_state",
]

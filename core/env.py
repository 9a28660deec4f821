"""Typed readers for environment variables."""

from __future__ import annotations

import os
from datetime import timedelta
from typing import Callable, Optional, Union

from core.logging import get_logger

logger = get_logger(__name__)

Number = Union[int, float]

_DURATION_UNITS = {"seconds", "minutes", "hours", "days"}


def env_str(key: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(key, default)
    if value is None:
        logger.debug("Environment variable %s not set. Using default=%s.", key, default)
    return value


def _env_number(key: str, default: Number, parse: Callable[[str], Number], minimum: Optional[Number]) -> Number:
    raw = os.getenv(key)
    if raw is None or not raw.strip():
        return default
    try:
        value = parse(raw.strip())
    except ValueError:
        logger.warning("Invalid %s value '%s'. Falling back to %s.", key, raw, default)
        return default
    if minimum is not None and value < minimum:
        logger.warning("%s=%s is below the minimum %s. Falling back to %s.", key, value, minimum, default)
        return default
    return value


def env_int(key: str, default: int, *, minimum: Optional[int] = None) -> int:
    return int(_env_number(key, default, int, minimum))


def env_float(key: str, default: float, *, minimum: Optional[float] = None) -> float:
    return float(_env_number(key, default, float, minimum))


def env_bool(key: str, default: bool) -> bool:
    raw = os.getenv(key)
    if raw is None:
        return default
    normalized = raw.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    logger.warning("Invalid boolean env %s='%s'. Using default=%s.", key, raw, default)
    return default


def env_duration(key: str, default: int, *, unit: str = "days", minimum: int = 0) -> timedelta:
    """Read a whole number of ``unit`` (seconds/minutes/hours/days) as a ``timedelta``."""
    if unit not in _DURATION_UNITS:
        raise ValueError(f"Unsupported duration unit: {unit}")
    return timedelta(**{unit: env_int(key, default, minimum=minimum)})


__all__ = ["env_bool", "env_duration", "env_float", "env_int", "env_str"]

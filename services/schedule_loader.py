"""Helpers for loading the Celery beat schedule from YAML."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml
from celery.schedules import crontab

from core.env import env_str

_REPO_ROOT = Path(__file__).resolve().parent.parent
DEFAULT_SCHEDULE_FILE = _REPO_ROOT / "configs" / "schedules" / "tier.yml"


def _cron_from_string(expr: str) -> crontab:
    """Convert a 5-field cron expression into a Celery ``crontab`` object."""
    fields = str(expr or "").split()
    if len(fields) != 5:
        raise ValueError(f"Invalid cron expression '{expr}'. Expected 5 fields.")
    minute, hour, day_of_month, month, day_of_week = fields
    return crontab(
        minute=minute,
        hour=hour,
        day_of_month=day_of_month,
        month_of_year=month,
        day_of_week=day_of_week,
    )


def resolve_schedule_path(path: Optional[Path] = None) -> Path:
    if path is not None:
        return path
    override = env_str("TIER_SCHEDULE_FILE")
    return Path(override) if override else DEFAULT_SCHEDULE_FILE


def load_schedule_config(path: Optional[Path] = None) -> Tuple[Optional[str], Dict[str, Dict[str, Any]], Path]:
    """Return timezone + enabled schedule entries from the YAML definition."""
    schedule_path = resolve_schedule_path(path)
    if not schedule_path.exists():
        return None, {}, schedule_path

    try:
        raw = yaml.safe_load(schedule_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - config parse guard
        raise RuntimeError(f"Failed to parse Celery schedule file: {schedule_path}") from exc

    entries: Dict[str, Dict[str, Any]] = {}
    for name, payload in (raw.get("entries") or {}).items():
        if not isinstance(payload, dict) or payload.get("enabled") is False:
            continue
        task = payload.get("task")
        cron = payload.get("cron")
        if not task or not cron:
            continue
        entries[name] = {
            "task": str(task),
            "cron": str(cron),
            "args": list(payload.get("args") or []),
            "kwargs": dict(payload.get("kwargs") or {}),
            "options": dict(payload.get("options") or {}),
        }
    return raw.get("timezone"), entries, schedule_path


def as_celery_schedule(entries: Dict[str, Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    """Convert raw YAML schedule entries into Celery beat schedule structures."""
    schedule: Dict[str, Dict[str, Any]] = {}
    for name, payload in entries.items():
        entry = {
            "task": payload["task"],
            "schedule": _cron_from_string(payload["cron"]),
            "args": payload.get("args", []),
            "kwargs": payload.get("kwargs", {}),
        }
        if payload.get("options"):
            entry["options"] = payload["options"]
        schedule[name] = entry
    return schedule


__all__ = ["DEFAULT_SCHEDULE_FILE", "as_celery_schedule", "load_schedule_config", "resolve_schedule_path"]

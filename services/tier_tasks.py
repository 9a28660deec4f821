"""Celery tasks for the tier lifecycle engine."""

from __future__ import annotations

from typing import Any, Dict, Optional

from celery import shared_task

from core.logging import get_logger
from core.tier_config import TierEngineConfig
from core.timeutils import parse_iso_datetime

logger = get_logger(__name__)


@shared_task(name="tier.run_sweep")
def run_tier_sweep(reference_time: Optional[str] = None, dry_run: bool = False) -> Dict[str, Any]:
    """Run one lifecycle sweep; a no-op while ``ENABLE_TIER_SCHEDULER`` is off."""
    config = TierEngineConfig.from_env()
    if not config.scheduler_enabled:
        logger.info("Tier scheduler disabled via ENABLE_TIER_SCHEDULER; skipping sweep.")
        return {"skipped": True, "reason": "disabled"}

    from services.tier_scheduler import build_default_runner

    runner = build_default_runner(config=config)
    summary = runner.run_once(parse_iso_datetime(reference_time) if reference_time else None, dry_run=dry_run)
    if summary.errors:
        logger.warning("Tier sweep finished with %d account errors.", len(summary.errors))
    return summary.to_dict()


__all__ = ["run_tier_sweep"]

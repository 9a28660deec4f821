"""Read-mostly lookup of per-tier feature limits."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.plan_constants import PlanTier, normalize_plan_tier
from models.tier import TierFeatureDefinition

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FeatureDefinition:
    tier: PlanTier
    feature_name: str
    limit: Optional[int]
    enabled: bool
    description: Optional[str] = None

    @property
    def unlimited(self) -> bool:
        return self.enabled and self.limit is None

    def to_dict(self) -> Dict[str, object]:
        if not self.enabled:
            return {"enabled": False}
        if self.limit is None:
            return {"unlimited": True}
        return {"limit": self.limit}


def _definition(tier: str, name: str, limit: Optional[int], enabled: bool, description: str) -> FeatureDefinition:
    return FeatureDefinition(
        tier=PlanTier(tier),
        feature_name=name,
        limit=limit,
        enabled=enabled,
        description=description,
    )


DEFAULT_TIER_FEATURES: Dict[PlanTier, Dict[str, FeatureDefinition]] = {
    PlanTier.FREE: {
        item.feature_name: item
        for item in (
            _definition("free", "max_products", 50, True, "Maximum number of active products"),
            _definition("free", "max_categories", 20, True, "Maximum number of product categories"),
            _definition("free", "max_file_upload_size_mb", 5, True, "Maximum import file size in MB"),
            _definition("free", "max_products_per_import", 200, True, "Maximum products per spreadsheet import"),
            _definition("free", "max_import_history", 10, True, "Import history records kept"),
            _definition("free", "notification_history_limit", 50, True, "Notification history records kept"),
            _definition("free", "analytics_access", None, False, "Advanced analytics"),
            _definition("free", "export_capabilities", None, False, "Data export"),
            _definition("free", "bulk_operations", None, False, "Bulk product operations"),
            _definition("free", "scheduled_reports", None, False, "Scheduled automated reports"),
        )
    },
    PlanTier.PREMIUM: {
        item.feature_name: item
        for item in (
            _definition("premium", "max_products", None, True, "Unlimited products"),
            _definition("premium", "max_categories", None, True, "Unlimited categories"),
            _definition("premium", "max_file_upload_size_mb", 20, True, "Maximum import file size in MB"),
            _definition("premium", "max_products_per_import", None, True, "Unlimited products per import"),
            _definition("premium", "max_import_history", None, True, "Complete import history"),
            _definition("premium", "notification_history_limit", None, True, "Complete notification history"),
            _definition("premium", "analytics_access", None, True, "Advanced analytics"),
            _definition("premium", "export_capabilities", None, True, "Data export"),
            _definition("premium", "bulk_operations", None, True, "Bulk product operations"),
            _definition("premium", "scheduled_reports", None, True, "Scheduled automated reports"),
        )
    },
}


class TierCatalog:
    """Feature definitions keyed by tier, cached until ``invalidate`` is called.

    Rows in ``tier_feature_definitions`` override the built-in defaults. Cached
    maps are never mutated after publication, so concurrent readers need no
    lock; the lock only serialises cache fills.
    """

    def __init__(self, *, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory
        self._cache: Dict[PlanTier, Mapping[str, FeatureDefinition]] = {}
        self._cache_lock = threading.Lock()

    def features_for_tier(
        self,
        tier: str | PlanTier,
        *,
        session: Optional[Session] = None,
    ) -> Mapping[str, FeatureDefinition]:
        """Definitions for ``tier``; a cache miss is loaded through ``session`` when given."""
        normalized = normalize_plan_tier(tier)
        cached = self._cache.get(normalized)
        if cached is not None:
            return cached
        with self._cache_lock:
            cached = self._cache.get(normalized)
            if cached is not None:
                return cached
            loaded = self._load(normalized, session)
            self._cache[normalized] = loaded
            return loaded

    def get_definition(
        self,
        tier: str | PlanTier,
        feature_name: str,
        *,
        session: Optional[Session] = None,
    ) -> Optional[FeatureDefinition]:
        return self.features_for_tier(tier, session=session).get(feature_name)

    def invalidate(self, tier: Optional[str | PlanTier] = None) -> None:
        with self._cache_lock:
            if tier is None:
                self._cache.clear()
            else:
                self._cache.pop(normalize_plan_tier(tier), None)

    def _load(self, tier: PlanTier, outer: Optional[Session] = None) -> Mapping[str, FeatureDefinition]:
        definitions: Dict[str, FeatureDefinition] = dict(DEFAULT_TIER_FEATURES.get(tier, {}))
        session = outer or self._session_factory()
        try:
            rows = session.execute(
                select(TierFeatureDefinition).where(TierFeatureDefinition.tier == tier.value)
            ).scalars().all()
        except SQLAlchemyError:
            logger.exception("Failed to load tier feature definitions for tier=%s", tier.value)
            raise
        finally:
            if outer is None:
                session.close()

        for row in rows:
            definitions[row.feature_name] = FeatureDefinition(
                tier=tier,
                feature_name=row.feature_name,
                limit=row.feature_limit,
                enabled=bool(row.feature_enabled),
                description=row.description,
            )
        logger.debug("Loaded %d feature definitions for tier=%s", len(definitions), tier.value)
        return definitions


def seed_tier_feature_definitions(session: Session, *, overwrite: bool = False) -> int:
    """Insert the default definitions that are missing (or all of them with ``overwrite``)."""
    existing = {
        (row.tier, row.feature_name): row
        for row in session.execute(select(TierFeatureDefinition)).scalars().all()
    }
    written = 0
    for tier, features in DEFAULT_TIER_FEATURES.items():
        for feature in features.values():
            row = existing.get((tier.value, feature.feature_name))
            if row is not None and not overwrite:
                continue
            if row is None:
                row = TierFeatureDefinition(tier=tier.value, feature_name=feature.feature_name)
                session.add(row)
            row.feature_limit = feature.limit
            row.feature_enabled = feature.enabled
            row.description = feature.description
            written += 1
    session.flush()
    return written


__all__ = [
    "DEFAULT_TIER_FEATURES",
    "FeatureDefinition",
    "TierCatalog",
    "seed_tier_feature_definitions",
]

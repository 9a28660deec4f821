from .account import Account  # noqa: F401
from .audit_log import ActionAuditEntry  # noqa: F401
from .tier import TierFeatureDefinition, TierHistoryEntry, UserFeatureUsage  # noqa: F401

# creativewriter/db/models/__init__.py
"""
Central aggregator for all SQLAlchemy models in CreativeWriter.

Recommended usage:
    from creativewriter.db.models import Subscription, SubscriptionPlan, AuditLog

Import order is dependency order: plans, then subscriptions, then audit.
"""

from creativewriter.db.base import Base

# ────────────────────────────────────────────────
# Billing catalog
# ────────────────────────────────────────────────
from .plan import LIMIT_COLUMNS, UNLIMITED, PlanOffer, SubscriptionPlan

# ────────────────────────────────────────────────
# Subscriptions & payment history (depends on plans)
# ────────────────────────────────────────────────
from .subscription import USAGE_COLUMNS, PaymentRecord, Subscription

# ────────────────────────────────────────────────
# Audit trail
# ────────────────────────────────────────────────
from .audit import AuditLog

__all__ = [
    "Base",
    "SubscriptionPlan",
    "PlanOffer",
    "LIMIT_COLUMNS",
    "UNLIMITED",
    "Subscription",
    "PaymentRecord",
    "USAGE_COLUMNS",
    "AuditLog",
]

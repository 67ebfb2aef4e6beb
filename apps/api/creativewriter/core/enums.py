"""
Shared enums for CreativeWriter
All string-based enums used across billing and metering.
"""

from enum import Enum
from typing import Optional


class PlanTier(str, Enum):
    """Subscription tiers (one plan per tier)"""
    FREE = "free"
    PRO = "pro"
    PREMIUM = "premium"
    ENTERPRISE = "enterprise"


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle states"""
    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    TRIAL = "trial"
    PAST_DUE = "past_due"


# Statuses that may consume quota
USABLE_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIAL})


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"
    NONE = "none"


class PaymentStatus(str, Enum):
    CAPTURED = "captured"
    FAILED = "failed"
    REFUNDED = "refunded"


class FeatureType(str, Enum):
    """Metered generation features"""
    LYRICS = "lyrics"
    MUSIC = "music"
    VIDEO = "video"
    VOICE = "voice"

    @classmethod
    def parse(cls, value) -> Optional["FeatureType"]:
        """Return the member for value, or None when it is not a known feature."""
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except (ValueError, TypeError):
            return None

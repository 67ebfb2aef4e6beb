"""
Quota Policy - CreativeWriter
Pure decision function: (feature, current usage, plan limits) → QuotaDecision.

Limits: -1 = unlimited, 0 = feature unavailable, N > 0 = at most N per period.
"""

from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict

from creativewriter.core.enums import FeatureType
from creativewriter.db.models import UNLIMITED


class QuotaDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    allowed: bool
    current: int
    limit: int
    remaining: int


DENIED_UNKNOWN = QuotaDecision(allowed=False, current=0, limit=0, remaining=0)


def _lookup(mapping: Mapping[Any, int], feature: FeatureType) -> int:
    # Accept keys as enum members or their plain string values
    if feature in mapping:
        return mapping[feature]
    return mapping.get(feature.value, 0)


def check_limit(feature_type: Any, usage: Mapping[Any, int], plan_limits: Mapping[Any, int]) -> QuotaDecision:
    feature = FeatureType.parse(feature_type)
    if feature is None:
        return DENIED_UNKNOWN

    current = _lookup(usage, feature) or 0
    limit = _lookup(plan_limits, feature)
    if limit is None:
        limit = 0

    if limit == UNLIMITED:
        return QuotaDecision(allowed=True, current=current, limit=UNLIMITED, remaining=UNLIMITED)
    if limit == 0:
        return QuotaDecision(allowed=False, current=current, limit=0, remaining=0)
    return QuotaDecision(
        allowed=current < limit,
        current=current,
        limit=limit,
        remaining=max(0, limit - current),
    )

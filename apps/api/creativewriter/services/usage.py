# apps/api/creativewriter/services/usage.py
"""
Usage Gate & Recorder - CreativeWriter
Request-time quota enforcement and post-success usage recording for
metered generation endpoints.

Failure policy:
- The gate fails OPEN: if the check itself breaks (store down, bug), the
  request proceeds without a subscription attached. Availability of the
  product wins over strict metering for transient faults.
- The recorder never raises: a lost increment is logged, not surfaced.

Usage in a router:
    @router.post("/lyrics")
    async def generate_lyrics(
        request: Request,
        background_tasks: BackgroundTasks,
        current_user: Annotated[Optional[AuthUser], Depends(get_optional_user)],
        subscription = Depends(enforce_usage_limit(FeatureType.LYRICS)),
    ):
        ...  # call the provider
        background_tasks.add_task(record_usage, current_user.id, FeatureType.LYRICS)
"""

import logging
from typing import Annotated, Any, Callable, Optional

import sentry_sdk
from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from creativewriter.core.enums import USABLE_STATUSES, FeatureType
from creativewriter.core.exceptions import (
    BillingError,
    no_subscription,
    no_user,
    subscription_inactive,
)
from creativewriter.core.metrics import usage_decisions_total, usage_gate_fail_open_total
from creativewriter.db.models import Subscription
from creativewriter.db.session import get_db, get_session_factory
from creativewriter.middleware.auth import AuthUser, get_optional_user
from creativewriter.services.quota import check_limit
from creativewriter.services.subscription_store import SubscriptionStore

logger = logging.getLogger(__name__)


class UsageGate:
    """Decides whether a user may consume one unit of a feature right now."""

    def __init__(self, store: SubscriptionStore):
        self.store = store

    async def check(self, user_id: Optional[str], feature_type: Any) -> Optional[Subscription]:
        """
        Returns the subscription to attach to the request, or None when the
        check failed internally and the request is let through.
        Raises BillingError for policy rejections.
        """
        if not user_id:
            raise no_user()

        feature = FeatureType.parse(feature_type)
        label = feature.value if feature else str(feature_type)
        try:
            subscription = await self.store.get_for_user(user_id)
        except Exception as e:
            return await self._fail_open(user_id, label, e)

        if subscription is None or subscription.plan is None:
            usage_decisions_total.labels(feature=label, outcome="no_subscription").inc()
            raise no_subscription()

        if subscription.status not in USABLE_STATUSES:
            usage_decisions_total.labels(feature=label, outcome="inactive").inc()
            raise subscription_inactive(subscription.status.value)

        decision = check_limit(feature_type, subscription.usage, subscription.plan.limits)
        if not decision.allowed:
            if decision.limit == 0:
                usage_decisions_total.labels(feature=label, outcome="unavailable").inc()
                raise BillingError(
                    "FEATURE_NOT_AVAILABLE",
                    f"{label.capitalize()} generation is not available on your current plan. Please upgrade.",
                    403,
                    details={
                        "current_plan": subscription.plan.name,
                        "type": label,
                        "limit": 0,
                    },
                )
            usage_decisions_total.labels(feature=label, outcome="limit_reached").inc()
            raise BillingError(
                "USAGE_LIMIT_REACHED",
                f"You have reached your monthly {label} limit ({decision.limit}). Please upgrade your plan.",
                429,
                details={
                    "current_plan": subscription.plan.name,
                    "type": label,
                    "current": decision.current,
                    "limit": decision.limit,
                    "remaining": 0,
                    "period_end": subscription.period_end,
                },
            )

        usage_decisions_total.labels(feature=label, outcome="allowed").inc()
        return subscription

    async def _fail_open(self, user_id: str, label: str, exc: Exception) -> None:
        logger.error(
            f"Usage check failed for user {user_id} ({label}); allowing request",
            exc_info=exc,
        )
        sentry_sdk.capture_exception(exc)
        usage_gate_fail_open_total.labels(feature=label).inc()
        try:
            await self.store.db.rollback()
        except Exception:
            logger.warning("Rollback after failed usage check also failed", exc_info=True)
        return None


def enforce_usage_limit(feature_type: FeatureType) -> Callable:
    """
    FastAPI dependency factory: reject the request if the user may not use
    ``feature_type``; otherwise attach the subscription to request.state.
    """

    async def dependency(
        request: Request,
        current_user: Annotated[Optional[AuthUser], Depends(get_optional_user)],
        db: Annotated[AsyncSession, Depends(get_db)],
    ) -> Optional[Subscription]:
        gate = UsageGate(SubscriptionStore(db))
        subscription = await gate.check(current_user.id if current_user else None, feature_type)
        request.state.subscription = subscription
        return subscription

    return dependency


class UsageRecorder:
    """Post-success hook: count one use on a fresh copy of the subscription."""

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        self._session_factory = session_factory

    async def record(self, user_id: Optional[str], feature_type: Any) -> Optional[int]:
        if not user_id:
            return None
        try:
            factory = self._session_factory or get_session_factory()
            async with factory() as db:
                store = SubscriptionStore(db)
                subscription = await store.get_for_user(user_id)
                if subscription is None:
                    logger.warning(f"Usage not recorded: no subscription for user {user_id}")
                    return None
                new_value = await store.increment_usage(subscription, feature_type)
                await db.commit()
            return new_value
        except Exception:
            logger.exception(f"Failed to record {feature_type} usage for user {user_id}")
            return None


async def record_usage(user_id: Optional[str], feature_type: Any) -> None:
    """BackgroundTasks-friendly wrapper around UsageRecorder."""
    await UsageRecorder().record(user_id, feature_type)

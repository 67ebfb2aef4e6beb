# apps/api/creativewriter/services/subscription_store.py
"""
Subscription Store - CreativeWriter
Per-user subscription records: plan assignment, lifecycle, usage counters,
admin overrides and payment history.

Rollover and expiry are resolved lazily on read; there is no scheduler.
Counter increments are single atomic UPDATE statements so concurrent
increments never lose updates.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from creativewriter.core.enums import (
    BillingCycle,
    FeatureType,
    PaymentStatus,
    PlanTier,
    SubscriptionStatus,
)
from creativewriter.core.exceptions import BillingError
from creativewriter.db.models import (
    USAGE_COLUMNS,
    PaymentRecord,
    Subscription,
    SubscriptionPlan,
)
from creativewriter.db.utils import utcnow
from creativewriter.services.plan_catalog import PlanCatalog
from creativewriter.services.usage_period import check_and_reset_usage, next_period

logger = logging.getLogger(__name__)


class SubscriptionStore:
    """Subscription persistence bound to one session."""

    def __init__(self, db: AsyncSession, catalog: Optional[PlanCatalog] = None):
        self.db = db
        self.catalog = catalog or PlanCatalog(db)

    # ────────────────────────────────────────────────
    # Reads
    # ────────────────────────────────────────────────
    async def _load(self, user_id: str) -> Optional[Subscription]:
        return await self.db.scalar(select(Subscription).where(Subscription.user_id == user_id))

    async def get_for_user(self, user_id: str, now: Optional[datetime] = None) -> Optional[Subscription]:
        """
        Load the user's subscription, applying a pending usage rollover and
        demoting an expired paid subscription to the free plan.
        """
        subscription = await self._load(user_id)
        if subscription is None:
            return None

        now = now or utcnow()
        changed = check_and_reset_usage(subscription, now)
        if changed:
            logger.info(f"Usage period rolled over for user {user_id}", extra={"period_end": subscription.period_end.isoformat()})

        if (
            subscription.end_date is not None
            and subscription.end_date < now
            and subscription.status == SubscriptionStatus.ACTIVE
        ):
            free_plan = await self.catalog.get_free_plan()
            logger.info(
                f"Subscription expired for user {user_id}; reverting to free plan",
                extra={"previous_plan_id": subscription.plan_id},
            )
            subscription.plan = free_plan
            subscription.status = SubscriptionStatus.EXPIRED
            subscription.billing_cycle = BillingCycle.NONE
            changed = True

        if changed:
            await self.db.flush()
        return subscription

    async def find_by_order_id(self, order_id: str) -> Optional[Subscription]:
        return await self.db.scalar(select(Subscription).where(Subscription.gateway_order_id == order_id))

    # ────────────────────────────────────────────────
    # Usage
    # ────────────────────────────────────────────────
    async def check_and_reset_usage(self, subscription: Subscription, now: Optional[datetime] = None) -> bool:
        reset = check_and_reset_usage(subscription, now)
        if reset:
            await self.db.flush()
        return reset

    async def increment_usage(self, subscription: Subscription, feature_type: Any) -> Optional[int]:
        """
        Add one use of ``feature_type``. Unknown features are a no-op.
        Returns the new counter value.
        """
        feature = FeatureType.parse(feature_type)
        if feature is None:
            logger.debug(f"Ignoring usage increment for unknown feature {feature_type!r}")
            return None

        column_name = USAGE_COLUMNS[feature]
        column = getattr(Subscription, column_name)
        result = await self.db.execute(
            update(Subscription)
            .where(Subscription.id == subscription.id)
            .values({column_name: column + 1})
            .returning(column)
            .execution_options(synchronize_session=False)
        )
        new_value = result.scalar_one()
        set_committed_value(subscription, column_name, new_value)
        return new_value

    # ────────────────────────────────────────────────
    # Lifecycle writes
    # ────────────────────────────────────────────────
    async def create_free(self, user_id: str, now: Optional[datetime] = None) -> Subscription:
        """Free-tier subscription for a newly registered user (idempotent)."""
        existing = await self._load(user_id)
        if existing is not None:
            return existing

        now = now or utcnow()
        free_plan = await self.catalog.get_free_plan()
        start, end = next_period(now)
        subscription = Subscription(
            user_id=user_id,
            plan=free_plan,
            payments=[],
            status=SubscriptionStatus.ACTIVE,
            billing_cycle=BillingCycle.NONE,
            start_date=now,
            period_start=start,
            period_end=end,
        )
        subscription.reset_usage(start, end)
        self.db.add(subscription)
        await self.db.flush()
        logger.info(f"Free subscription created for user {user_id}")
        return subscription

    async def activate_paid(
        self,
        user_id: str,
        plan: SubscriptionPlan,
        billing_cycle: BillingCycle,
        end_date: datetime,
        order_id: str,
        payment_id: str,
        promo_code: Optional[str] = None,
        promo_discount_percentage: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Subscription:
        """Upsert the user's subscription onto a freshly paid plan and reset usage."""
        now = now or utcnow()
        start, end = next_period(now)
        subscription = await self._load(user_id)
        if subscription is None:
            subscription = Subscription(user_id=user_id, payments=[])
            self.db.add(subscription)

        subscription.plan = plan
        subscription.status = SubscriptionStatus.ACTIVE
        subscription.billing_cycle = billing_cycle
        subscription.start_date = now
        subscription.end_date = end_date
        subscription.renewal_date = end_date
        subscription.gateway_order_id = order_id
        subscription.gateway_payment_id = payment_id
        subscription.promo_code = promo_code
        subscription.promo_discount_percentage = promo_discount_percentage
        subscription.is_overridden = False
        subscription.reset_usage(start, end)
        await self.db.flush()
        return subscription

    async def apply_admin_override(
        self,
        user_id: str,
        plan: SubscriptionPlan,
        admin_id: str,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Subscription:
        """Assign ``plan`` without payment, remembering who did it and what it replaced."""
        now = now or utcnow()
        start, end = next_period(now)
        subscription = await self._load(user_id)
        if subscription is None:
            subscription = Subscription(user_id=user_id, start_date=now, payments=[])
            self.db.add(subscription)
            previous_plan_id = None
        else:
            previous_plan_id = subscription.plan_id

        subscription.plan = plan
        subscription.status = SubscriptionStatus.ACTIVE
        subscription.billing_cycle = BillingCycle.NONE
        # Overrides do not lapse; a leftover paid end date would demote them
        subscription.end_date = None
        subscription.renewal_date = None
        subscription.promo_code = None
        subscription.promo_discount_percentage = None
        subscription.is_overridden = True
        subscription.overridden_by = admin_id
        subscription.override_reason = reason or "Admin override"
        subscription.previous_plan_id = previous_plan_id
        subscription.reset_usage(start, end)
        await self.db.flush()
        logger.info(
            f"Admin {admin_id} overrode plan for user {user_id} to {plan.slug}",
            extra={"previous_plan_id": previous_plan_id, "reason": subscription.override_reason},
        )
        return subscription

    async def cancel(self, user_id: str) -> Subscription:
        subscription = await self._load(user_id)
        if subscription is None:
            raise BillingError("NO_SUBSCRIPTION", "No subscription found", 404)
        if subscription.plan is None or subscription.plan.tier == PlanTier.FREE:
            raise BillingError("CANNOT_CANCEL_FREE", "Cannot cancel free plan")
        subscription.status = SubscriptionStatus.CANCELLED
        await self.db.flush()
        logger.info(f"Subscription cancelled for user {user_id}", extra={"plan": subscription.plan.slug})
        return subscription

    # ────────────────────────────────────────────────
    # Payment history (append-only)
    # ────────────────────────────────────────────────
    async def append_payment(
        self,
        subscription: Subscription,
        payment_id: str,
        amount: float,
        status: PaymentStatus,
        currency: str = "INR",
        order_id: Optional[str] = None,
        paid_at: Optional[datetime] = None,
    ) -> Optional[PaymentRecord]:
        """
        Record a payment outcome. Returns None when the same payment id has
        already been recorded with the same status.
        """
        if subscription.has_payment(payment_id, status):
            return None
        record = PaymentRecord(
            gateway_payment_id=payment_id,
            gateway_order_id=order_id,
            amount=amount,
            currency=currency,
            status=status,
            paid_at=paid_at or utcnow(),
        )
        subscription.payments.append(record)
        await self.db.flush()
        return record

    # ────────────────────────────────────────────────
    # Admin queries
    # ────────────────────────────────────────────────
    async def list_subscriptions(
        self,
        page: int = 1,
        limit: int = 20,
        status: Optional[SubscriptionStatus] = None,
        plan_id: Optional[str] = None,
    ) -> Tuple[List[Subscription], int]:
        page = max(page, 1)
        limit = max(min(limit, 100), 1)

        stmt = select(Subscription)
        count_stmt = select(func.count(Subscription.id))
        if status is not None:
            stmt = stmt.where(Subscription.status == status)
            count_stmt = count_stmt.where(Subscription.status == status)
        if plan_id:
            stmt = stmt.where(Subscription.plan_id == plan_id)
            count_stmt = count_stmt.where(Subscription.plan_id == plan_id)

        total = await self.db.scalar(count_stmt) or 0
        rows = await self.db.scalars(
            stmt.order_by(Subscription.created_at.desc()).offset((page - 1) * limit).limit(limit)
        )
        return list(rows), total

    async def analytics(self) -> Dict[str, Any]:
        total = await self.db.scalar(select(func.count(Subscription.id))) or 0
        active = await self.db.scalar(
            select(func.count(Subscription.id)).where(Subscription.status == SubscriptionStatus.ACTIVE)
        ) or 0

        tier_rows = await self.db.execute(
            select(SubscriptionPlan.tier, SubscriptionPlan.name, func.count(Subscription.id))
            .join(Subscription, Subscription.plan_id == SubscriptionPlan.id)
            .where(Subscription.status == SubscriptionStatus.ACTIVE)
            .group_by(SubscriptionPlan.tier, SubscriptionPlan.name)
        )
        tier_breakdown = [
            {"tier": tier.value, "plan_name": name, "count": count}
            for tier, name, count in tier_rows.all()
        ]

        revenue_row = (
            await self.db.execute(
                select(func.coalesce(func.sum(PaymentRecord.amount), 0), func.count(PaymentRecord.id))
                .where(PaymentRecord.status == PaymentStatus.CAPTURED)
            )
        ).one()

        return {
            "total_subscribers": total,
            "active_subscribers": active,
            "tier_breakdown": tier_breakdown,
            "total_revenue": float(revenue_row[0] or 0),
            "total_payments": revenue_row[1],
        }

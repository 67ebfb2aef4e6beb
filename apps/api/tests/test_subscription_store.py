from datetime import timedelta

import pytest

from creativewriter.core.enums import (
    BillingCycle,
    FeatureType,
    PaymentStatus,
    PlanTier,
    SubscriptionStatus,
)
from creativewriter.core.exceptions import BillingError
from creativewriter.db.utils import utcnow
from creativewriter.services.plan_catalog import PlanCatalog
from creativewriter.services.subscription_store import SubscriptionStore


async def _plan(db, plans, tier):
    return await PlanCatalog(db).get(plans[tier].id)


async def _activate(store, db, plans, user_id, tier=PlanTier.PRO, end_date=None):
    plan = await _plan(db, plans, tier)
    return await store.activate_paid(
        user_id=user_id,
        plan=plan,
        billing_cycle=BillingCycle.MONTHLY,
        end_date=end_date or utcnow() + timedelta(days=30),
        order_id=f"order_{user_id}",
        payment_id=f"pay_{user_id}",
    )


async def test_create_free_is_idempotent(db, plans):
    store = SubscriptionStore(db)
    first = await store.create_free("u1")
    second = await store.create_free("u1")

    assert first is second
    assert first.plan.tier == PlanTier.FREE
    assert first.status == SubscriptionStatus.ACTIVE
    assert first.billing_cycle == BillingCycle.NONE
    assert all(used == 0 for used in first.usage.values())


async def test_increment_usage_counts_each_call(db, plans):
    store = SubscriptionStore(db)
    sub = await store.create_free("u1")

    assert await store.increment_usage(sub, FeatureType.LYRICS) == 1
    assert await store.increment_usage(sub, "lyrics") == 2
    assert sub.lyrics_used == 2
    assert sub.music_used == 0


async def test_increment_unknown_feature_is_noop(db, plans):
    store = SubscriptionStore(db)
    sub = await store.create_free("u1")

    assert await store.increment_usage(sub, "podcast") is None
    assert set(sub.usage.values()) == {0}


async def test_get_for_user_rolls_over_stale_period(db, plans):
    store = SubscriptionStore(db)
    sub = await store.create_free("u1", now=utcnow() - timedelta(days=40))
    await store.increment_usage(sub, FeatureType.LYRICS)
    await store.increment_usage(sub, FeatureType.LYRICS)

    now = utcnow()
    reloaded = await store.get_for_user("u1", now=now)

    assert reloaded.lyrics_used == 0
    assert reloaded.period_start == now
    assert reloaded.period_end > now


async def test_get_for_user_demotes_expired_paid_plan(db, plans):
    store = SubscriptionStore(db)
    await _activate(store, db, plans, "u1", end_date=utcnow() - timedelta(days=1))

    sub = await store.get_for_user("u1")

    assert sub.plan.tier == PlanTier.FREE
    assert sub.status == SubscriptionStatus.EXPIRED
    assert sub.billing_cycle == BillingCycle.NONE


async def test_get_for_user_unknown(db, plans):
    assert await SubscriptionStore(db).get_for_user("nobody") is None


async def test_admin_override_resets_usage_and_remembers_previous_plan(db, plans):
    store = SubscriptionStore(db)
    sub = await store.create_free("u1")
    free_plan_id = sub.plan_id
    await store.increment_usage(sub, FeatureType.LYRICS)

    enterprise = await _plan(db, plans, PlanTier.ENTERPRISE)
    sub = await store.apply_admin_override("u1", enterprise, admin_id="admin-1")

    assert sub.plan.tier == PlanTier.ENTERPRISE
    assert sub.status == SubscriptionStatus.ACTIVE
    assert sub.billing_cycle == BillingCycle.NONE
    assert sub.is_overridden is True
    assert sub.overridden_by == "admin-1"
    assert sub.override_reason == "Admin override"
    assert sub.previous_plan_id == free_plan_id
    assert set(sub.usage.values()) == {0}


async def test_admin_override_outlives_previous_paid_term(db, plans):
    store = SubscriptionStore(db)
    sub = await _activate(store, db, plans, "u1", end_date=utcnow() + timedelta(days=30))
    sub.promo_code, sub.promo_discount_percentage = "SAVE20", 20

    enterprise = await _plan(db, plans, PlanTier.ENTERPRISE)
    sub = await store.apply_admin_override("u1", enterprise, admin_id="admin-1")

    assert sub.end_date is None
    assert sub.renewal_date is None
    assert sub.promo_code is None
    assert sub.promo_discount_percentage is None

    later = await store.get_for_user("u1", now=utcnow() + timedelta(days=40))
    assert later.plan.tier == PlanTier.ENTERPRISE
    assert later.status == SubscriptionStatus.ACTIVE
    assert later.is_overridden is True


async def test_admin_override_creates_missing_subscription(db, plans):
    store = SubscriptionStore(db)
    premium = await _plan(db, plans, PlanTier.PREMIUM)

    sub = await store.apply_admin_override("u9", premium, admin_id="admin-1", reason="Partner account")

    assert sub.user_id == "u9"
    assert sub.previous_plan_id is None
    assert sub.override_reason == "Partner account"
    assert (await store.get_for_user("u9")).plan.tier == PlanTier.PREMIUM


async def test_cancel_paid_subscription(db, plans):
    store = SubscriptionStore(db)
    await _activate(store, db, plans, "u1")

    sub = await store.cancel("u1")
    assert sub.status == SubscriptionStatus.CANCELLED
    assert sub.plan.tier == PlanTier.PRO


async def test_cancel_free_plan_rejected(db, plans):
    store = SubscriptionStore(db)
    await store.create_free("u1")

    with pytest.raises(BillingError) as exc:
        await store.cancel("u1")
    assert exc.value.code == "CANNOT_CANCEL_FREE"


async def test_cancel_without_subscription(db, plans):
    with pytest.raises(BillingError) as exc:
        await SubscriptionStore(db).cancel("nobody")
    assert exc.value.code == "NO_SUBSCRIPTION"
    assert exc.value.status_code == 404


async def test_append_payment_skips_duplicates(db, plans):
    store = SubscriptionStore(db)
    sub = await _activate(store, db, plans, "u1")

    first = await store.append_payment(sub, "pay_1", 299.0, PaymentStatus.CAPTURED, order_id="order_1")
    again = await store.append_payment(sub, "pay_1", 299.0, PaymentStatus.CAPTURED, order_id="order_1")
    failed = await store.append_payment(sub, "pay_1", 299.0, PaymentStatus.FAILED, order_id="order_1")

    assert first is not None
    assert again is None
    assert failed is not None
    assert [(p.gateway_payment_id, p.status) for p in sub.payments] == [
        ("pay_1", PaymentStatus.CAPTURED),
        ("pay_1", PaymentStatus.FAILED),
    ]


async def test_list_subscriptions_filters(db, plans):
    store = SubscriptionStore(db)
    await store.create_free("u1")
    await store.create_free("u2")
    await _activate(store, db, plans, "u3")
    await store.cancel("u3")

    items, total = await store.list_subscriptions()
    assert total == 3 and len(items) == 3

    items, total = await store.list_subscriptions(status=SubscriptionStatus.CANCELLED)
    assert total == 1 and items[0].user_id == "u3"

    items, total = await store.list_subscriptions(plan_id=plans[PlanTier.FREE].id, limit=1)
    assert total == 2 and len(items) == 1


async def test_analytics(db, plans):
    store = SubscriptionStore(db)
    await store.create_free("u1")
    pro = await _activate(store, db, plans, "u2")
    await store.append_payment(pro, "pay_a", 299.0, PaymentStatus.CAPTURED)
    await store.append_payment(pro, "pay_b", 299.0, PaymentStatus.FAILED)
    premium = await _activate(store, db, plans, "u3", tier=PlanTier.PREMIUM)
    await store.append_payment(premium, "pay_c", 799.0, PaymentStatus.CAPTURED)
    await store.cancel("u3")

    stats = await store.analytics()

    assert stats["total_subscribers"] == 3
    assert stats["active_subscribers"] == 2
    assert sorted((t["tier"], t["count"]) for t in stats["tier_breakdown"]) == [("free", 1), ("pro", 1)]
    assert stats["total_revenue"] == pytest.approx(1098.0)
    assert stats["total_payments"] == 2

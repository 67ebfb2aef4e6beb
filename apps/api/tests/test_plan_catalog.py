from datetime import timedelta

import pytest

from creativewriter.core.enums import PlanTier
from creativewriter.core.exceptions import BillingError
from creativewriter.db.utils import utcnow
from creativewriter.services.plan_catalog import PlanCatalog


async def test_seed_defaults_is_idempotent(db):
    catalog = PlanCatalog(db)
    assert await catalog.seed_defaults() == 4
    assert await catalog.seed_defaults() == 0

    plans = await catalog.list_active()
    assert [p.tier for p in plans] == [PlanTier.FREE, PlanTier.PRO, PlanTier.PREMIUM, PlanTier.ENTERPRISE]
    free = plans[0]
    assert free.lyrics_per_month == 5 and free.music_generations == 0
    assert plans[-1].limits and set(plans[-1].limits.values()) == {-1}


async def test_list_active_skips_inactive_plans(db, plans):
    catalog = PlanCatalog(db)
    await catalog.toggle_plan(plans[PlanTier.PREMIUM].id)

    active = await catalog.list_active()
    assert PlanTier.PREMIUM not in {p.tier for p in active}
    assert len(await catalog.list_all()) == 4


async def test_create_plan_requires_name_slug_tier(db):
    with pytest.raises(BillingError) as exc:
        await PlanCatalog(db).create_plan({"name": "Studio"})
    assert exc.value.code == "MISSING_INPUT"


async def test_create_plan_slugifies(db):
    plan = await PlanCatalog(db).create_plan({"name": "Pro", "slug": "  Pro Plán (2026)! ", "tier": "pro"})
    assert plan.slug == "pro-plan-2026"


async def test_create_plan_rejects_duplicate_tier(db, plans):
    with pytest.raises(BillingError) as exc:
        await PlanCatalog(db).create_plan({"name": "Pro 2", "slug": "pro-2", "tier": "pro"})
    assert exc.value.code == "DUPLICATE_PLAN"


async def test_update_plan_changes_limits(db, plans):
    plan = await PlanCatalog(db).update_plan(plans[PlanTier.PRO].id, {"lyrics_per_month": 50, "price_monthly": 349})
    assert plan.lyrics_per_month == 50
    assert plan.price_monthly == 349


async def test_update_unknown_plan(db):
    with pytest.raises(BillingError) as exc:
        await PlanCatalog(db).update_plan("missing", {"name": "x"})
    assert exc.value.code == "PLAN_NOT_FOUND"
    assert exc.value.status_code == 404


async def test_add_offer_normalizes_code_and_rejects_duplicates(db, plans):
    catalog = PlanCatalog(db)
    plan_id = plans[PlanTier.PRO].id
    offer = await catalog.add_offer(plan_id, " save20 ", 20, valid_until=utcnow() + timedelta(days=30))

    assert offer.code == "SAVE20"
    assert offer.max_redemptions == -1
    assert offer.current_redemptions == 0

    with pytest.raises(BillingError) as exc:
        await catalog.add_offer(plan_id, "SAVE20", 10, valid_until=utcnow() + timedelta(days=5))
    assert exc.value.code == "DUPLICATE_CODE"


async def test_remove_offer(db, plans):
    catalog = PlanCatalog(db)
    plan_id = plans[PlanTier.PRO].id
    offer = await catalog.add_offer(plan_id, "BYE", 10, valid_until=utcnow() + timedelta(days=1))

    plan = await catalog.remove_offer(plan_id, offer.id)
    assert plan.offers == []

    with pytest.raises(BillingError) as exc:
        await catalog.remove_offer(plan_id, offer.id)
    assert exc.value.code == "OFFER_NOT_FOUND"


# ────────────────────────────────────────────────
# Promo offer validity
# ────────────────────────────────────────────────
@pytest.fixture
async def pro_with_offers(db, plans):
    catalog = PlanCatalog(db)
    plan_id = plans[PlanTier.PRO].id
    now = utcnow()
    await catalog.add_offer(plan_id, "SAVE20", 20, valid_until=now + timedelta(days=30))
    await catalog.add_offer(plan_id, "OLD", 50, valid_from=now - timedelta(days=10), valid_until=now - timedelta(days=1))
    await catalog.add_offer(plan_id, "SOON", 30, valid_from=now + timedelta(days=1), valid_until=now + timedelta(days=9))
    await catalog.add_offer(plan_id, "CAPPED", 10, valid_until=now + timedelta(days=30), max_redemptions=1)
    return await catalog.get(plan_id)


async def test_find_valid_offer_is_case_insensitive(pro_with_offers):
    offer = PlanCatalog.find_valid_offer(pro_with_offers, "save20")
    assert offer is not None and offer.discount_percentage == 20


@pytest.mark.parametrize("code", ["OLD", "SOON", "NOPE", "", None])
async def test_find_valid_offer_rejects(pro_with_offers, code):
    assert PlanCatalog.find_valid_offer(pro_with_offers, code) is None


async def test_find_valid_offer_bounds_are_inclusive(pro_with_offers):
    offer = PlanCatalog.find_valid_offer(pro_with_offers, "SAVE20")
    assert PlanCatalog.find_valid_offer(pro_with_offers, "SAVE20", now=offer.valid_until) is offer
    assert PlanCatalog.find_valid_offer(pro_with_offers, "SAVE20", now=offer.valid_from) is offer
    assert PlanCatalog.find_valid_offer(
        pro_with_offers, "SAVE20", now=offer.valid_until + timedelta(seconds=1)
    ) is None


async def test_find_valid_offer_skips_inactive_and_exhausted(pro_with_offers):
    assert PlanCatalog.find_valid_offer(pro_with_offers, "CAPPED") is not None

    capped = PlanCatalog.find_valid_offer(pro_with_offers, "CAPPED")
    capped.current_redemptions = 1
    assert PlanCatalog.find_valid_offer(pro_with_offers, "CAPPED") is None

    saver = PlanCatalog.find_valid_offer(pro_with_offers, "SAVE20")
    saver.is_active = False
    assert PlanCatalog.find_valid_offer(pro_with_offers, "SAVE20") is None


async def test_redeem_offer_increments_atomically(db, plans):
    catalog = PlanCatalog(db)
    plan_id = plans[PlanTier.PRO].id
    offer = await catalog.add_offer(plan_id, "SAVE20", 20, valid_until=utcnow() + timedelta(days=1))

    assert await catalog.redeem_offer(plan_id, "save20") == 1
    assert await catalog.redeem_offer(plan_id, "SAVE20") == 2
    assert offer.current_redemptions == 2
    assert await catalog.redeem_offer(plan_id, "MISSING") is None

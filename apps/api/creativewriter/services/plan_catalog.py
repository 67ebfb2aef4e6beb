# apps/api/creativewriter/services/plan_catalog.py
"""
Plan Catalog Service - CreativeWriter
Plan definitions, promo offers and the default catalog seed.
Redemption counters are bumped with a single atomic UPDATE.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.util import identity_key
from sqlalchemy.orm.attributes import set_committed_value

from creativewriter.core.config import get_settings
from creativewriter.core.enums import PlanTier
from creativewriter.core.exceptions import BillingError, missing_input, plan_not_found
from creativewriter.db.models import UNLIMITED, PlanOffer, SubscriptionPlan
from creativewriter.db.utils import as_naive_utc, generate_slug, utcnow

logger = logging.getLogger(__name__)

# Columns an admin may set on a plan
PLAN_FIELDS = (
    "name",
    "slug",
    "tier",
    "description",
    "highlights",
    "price_monthly",
    "price_yearly",
    "currency",
    "lyrics_per_month",
    "music_generations",
    "video_generations",
    "voice_generations",
    "features",
    "is_active",
    "display_order",
)

# ────────────────────────────────────────────────
# Default catalog (inserted once per tier)
# ────────────────────────────────────────────────
DEFAULT_PLANS: List[Dict[str, Any]] = [
    {
        "name": "Free",
        "slug": "free",
        "tier": PlanTier.FREE,
        "description": "Get started with basic lyrics generation",
        "highlights": ["5 lyrics per month", "Basic AI model", "Standard export"],
        "price_monthly": 0, "price_yearly": 0,
        "lyrics_per_month": 5, "music_generations": 0, "video_generations": 0, "voice_generations": 0,
        "features": {
            "ai_model": "basic", "max_lyrics_length": 2000, "priority_support": False,
            "custom_dialects": False, "export_formats": ["text"],
        },
        "display_order": 1,
    },
    {
        "name": "Pro",
        "slug": "pro",
        "tier": PlanTier.PRO,
        "description": "For serious lyricists who need more power",
        "highlights": ["30 lyrics per month", "5 music generations", "3 voice generations", "Standard AI model"],
        "price_monthly": 299, "price_yearly": 2999,
        "lyrics_per_month": 30, "music_generations": 5, "video_generations": 0, "voice_generations": 3,
        "features": {
            "ai_model": "standard", "max_lyrics_length": 4000, "priority_support": False,
            "custom_dialects": True, "export_formats": ["text", "pdf"],
        },
        "display_order": 2,
    },
    {
        "name": "Premium",
        "slug": "premium",
        "tier": PlanTier.PREMIUM,
        "description": "Full creative suite for professionals",
        "highlights": [
            "100 lyrics per month", "20 music generations", "10 video generations",
            "10 voice generations", "Premium AI model",
        ],
        "price_monthly": 799, "price_yearly": 7999,
        "lyrics_per_month": 100, "music_generations": 20, "video_generations": 10, "voice_generations": 10,
        "features": {
            "ai_model": "premium", "max_lyrics_length": 8000, "priority_support": True,
            "custom_dialects": True, "export_formats": ["text", "pdf", "docx"],
        },
        "display_order": 3,
    },
    {
        "name": "Enterprise",
        "slug": "enterprise",
        "tier": PlanTier.ENTERPRISE,
        "description": "Unlimited access for teams and studios",
        "highlights": [
            "Unlimited lyrics", "Unlimited music", "Unlimited video",
            "Unlimited voice", "Priority support", "Premium AI model",
        ],
        "price_monthly": 2499, "price_yearly": 24999,
        "lyrics_per_month": UNLIMITED, "music_generations": UNLIMITED,
        "video_generations": UNLIMITED, "voice_generations": UNLIMITED,
        "features": {
            "ai_model": "premium", "max_lyrics_length": 16000, "priority_support": True,
            "custom_dialects": True, "export_formats": ["text", "pdf", "docx", "srt"],
        },
        "display_order": 4,
    },
]


def normalize_code(code: Optional[str]) -> str:
    return (code or "").strip().upper()


class PlanCatalog:
    """Read and edit the plan catalog within one session."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ────────────────────────────────────────────────
    # Reads
    # ────────────────────────────────────────────────
    async def list_active(self) -> List[SubscriptionPlan]:
        result = await self.db.scalars(
            select(SubscriptionPlan)
            .where(SubscriptionPlan.is_active.is_(True))
            .order_by(SubscriptionPlan.display_order)
        )
        return list(result)

    async def list_all(self) -> List[SubscriptionPlan]:
        result = await self.db.scalars(select(SubscriptionPlan).order_by(SubscriptionPlan.display_order))
        return list(result)

    async def get(self, plan_id: Optional[str]) -> Optional[SubscriptionPlan]:
        if not plan_id:
            return None
        return await self.db.get(SubscriptionPlan, plan_id)

    async def get_active(self, plan_id: Optional[str]) -> Optional[SubscriptionPlan]:
        plan = await self.get(plan_id)
        if plan is None or not plan.is_active:
            return None
        return plan

    async def get_by_tier(self, tier: PlanTier) -> Optional[SubscriptionPlan]:
        return await self.db.scalar(select(SubscriptionPlan).where(SubscriptionPlan.tier == tier))

    async def get_free_plan(self) -> SubscriptionPlan:
        plan = await self.get_by_tier(PlanTier.FREE)
        if plan is None:
            raise BillingError("PLAN_NOT_FOUND", "Free plan is not configured", 500)
        return plan

    # ────────────────────────────────────────────────
    # Plan edits (admin)
    # ────────────────────────────────────────────────
    async def create_plan(self, data: Dict[str, Any]) -> SubscriptionPlan:
        if not data.get("name") or not data.get("slug") or not data.get("tier"):
            raise missing_input("Name, slug, and tier are required")

        values = {k: v for k, v in data.items() if k in PLAN_FIELDS and v is not None}
        values["slug"] = generate_slug(values["slug"])
        values["tier"] = PlanTier(values["tier"])
        await self._ensure_unique(values["slug"], values["tier"])

        plan = SubscriptionPlan(**values, offers=[])
        self.db.add(plan)
        await self.db.flush()
        logger.info(f"Plan created: {plan.slug}", extra={"plan_id": plan.id, "tier": plan.tier.value})
        return plan

    async def update_plan(self, plan_id: str, data: Dict[str, Any]) -> SubscriptionPlan:
        plan = await self.get(plan_id)
        if plan is None:
            raise plan_not_found()

        values = {k: v for k, v in data.items() if k in PLAN_FIELDS and v is not None}
        if "slug" in values:
            values["slug"] = generate_slug(values["slug"])
        if "tier" in values:
            values["tier"] = PlanTier(values["tier"])
        await self._ensure_unique(values.get("slug"), values.get("tier"), exclude_id=plan.id)

        for key, value in values.items():
            setattr(plan, key, value)
        await self.db.flush()
        logger.info(f"Plan updated: {plan.slug}", extra={"plan_id": plan.id, "fields": sorted(values)})
        return plan

    async def toggle_plan(self, plan_id: str) -> SubscriptionPlan:
        plan = await self.get(plan_id)
        if plan is None:
            raise plan_not_found()
        plan.is_active = not plan.is_active
        await self.db.flush()
        return plan

    async def _ensure_unique(
        self,
        slug: Optional[str],
        tier: Optional[PlanTier],
        exclude_id: Optional[str] = None,
    ) -> None:
        for column, value in ((SubscriptionPlan.slug, slug), (SubscriptionPlan.tier, tier)):
            if value is None:
                continue
            stmt = select(SubscriptionPlan.id).where(column == value)
            if exclude_id:
                stmt = stmt.where(SubscriptionPlan.id != exclude_id)
            if await self.db.scalar(stmt):
                raise BillingError("DUPLICATE_PLAN", f"A plan with this {column.key} already exists", 409)

    # ────────────────────────────────────────────────
    # Offers
    # ────────────────────────────────────────────────
    async def add_offer(
        self,
        plan_id: str,
        code: str,
        discount_percentage: int,
        valid_until: datetime,
        valid_from: Optional[datetime] = None,
        max_redemptions: Optional[int] = None,
    ) -> PlanOffer:
        plan = await self.get(plan_id)
        if plan is None:
            raise plan_not_found()

        code = normalize_code(code)
        if not code or not discount_percentage or valid_until is None:
            raise missing_input("Code, discount percentage, and valid until date are required")
        if not 1 <= int(discount_percentage) <= 100:
            raise BillingError("INVALID_DISCOUNT", "Discount percentage must be between 1 and 100")
        if any(offer.code == code for offer in plan.offers):
            raise BillingError("DUPLICATE_CODE", "Offer code already exists for this plan", 409)

        offer = PlanOffer(
            code=code,
            discount_percentage=int(discount_percentage),
            valid_from=as_naive_utc(valid_from) if valid_from else utcnow(),
            valid_until=as_naive_utc(valid_until),
            max_redemptions=UNLIMITED if max_redemptions is None else max_redemptions,
            current_redemptions=0,
            is_active=True,
        )
        plan.offers.append(offer)
        await self.db.flush()
        logger.info(f"Offer {code} added to plan {plan.slug}", extra={"plan_id": plan.id})
        return offer

    async def remove_offer(self, plan_id: str, offer_id: str) -> SubscriptionPlan:
        plan = await self.get(plan_id)
        if plan is None:
            raise plan_not_found()
        offer = next((o for o in plan.offers if o.id == offer_id), None)
        if offer is None:
            raise BillingError("OFFER_NOT_FOUND", "Offer not found", 404)
        plan.offers.remove(offer)
        await self.db.flush()
        return plan

    @staticmethod
    def find_valid_offer(
        plan: SubscriptionPlan,
        code: Optional[str],
        now: Optional[datetime] = None,
    ) -> Optional[PlanOffer]:
        """Redeemable offer on ``plan`` whose code matches case-insensitively."""
        code = normalize_code(code)
        if not code:
            return None
        now = now or utcnow()
        for offer in plan.offers:
            if offer.code == code and offer.is_redeemable(now):
                return offer
        return None

    async def redeem_offer(self, plan_id: str, code: str) -> Optional[int]:
        """
        Atomically count one redemption of ``code`` on ``plan_id``.
        The cap is not re-checked here; it is enforced when the order is priced.
        Returns the new redemption count, or None if the offer no longer exists.
        """
        result = await self.db.execute(
            update(PlanOffer)
            .where(PlanOffer.plan_id == plan_id, PlanOffer.code == normalize_code(code))
            .values(current_redemptions=PlanOffer.current_redemptions + 1)
            .returning(PlanOffer.id, PlanOffer.current_redemptions)
            .execution_options(synchronize_session=False)
        )
        row = result.first()
        if row is None:
            logger.warning(f"Redeemed offer {code} vanished from plan {plan_id}")
            return None

        offer_id, count = row
        offer = self.db.identity_map.get(identity_key(PlanOffer, offer_id))
        if offer is not None:
            # Mirror the row we just updated without marking the attribute dirty
            set_committed_value(offer, "current_redemptions", count)
        return count

    # ────────────────────────────────────────────────
    # Seed
    # ────────────────────────────────────────────────
    async def seed_defaults(self) -> int:
        """Insert any default plan whose tier is missing. Returns how many were created."""
        created = 0
        currency = get_settings().DEFAULT_CURRENCY
        for definition in DEFAULT_PLANS:
            if await self.get_by_tier(definition["tier"]) is not None:
                continue
            self.db.add(SubscriptionPlan(**definition, currency=currency, is_active=True, offers=[]))
            created += 1
        if created:
            await self.db.flush()
        return created

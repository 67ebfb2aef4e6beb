# apps/api/creativewriter/db/models/plan.py
"""
SQLAlchemy Plan & Offer Models - CreativeWriter
Stores subscription tier definitions: prices, per-feature quotas, feature flags
and time-boxed promo offers.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from creativewriter.core.enums import BillingCycle, FeatureType, PlanTier
from creativewriter.db.base import Base, TimestampMixin
from creativewriter.db.models.mixins import UUIDMixin
from creativewriter.db.utils import utcnow

UNLIMITED = -1

# Explicit per-feature lookup: feature → limit column on SubscriptionPlan
LIMIT_COLUMNS: Dict[FeatureType, str] = {
    FeatureType.LYRICS: "lyrics_per_month",
    FeatureType.MUSIC: "music_generations",
    FeatureType.VIDEO: "video_generations",
    FeatureType.VOICE: "voice_generations",
}


class SubscriptionPlan(Base, UUIDMixin, TimestampMixin):
    """
    Billing Plan Entity
    - One plan per tier (free, pro, premium, enterprise)
    - Limits: -1 = unlimited, 0 = feature unavailable
    - Prices are in major currency units (e.g. rupees)
    """
    __tablename__ = "subscription_plans"

    name: Mapped[str] = mapped_column(String(100), nullable=False)
    slug: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    tier: Mapped[PlanTier] = mapped_column(
        Enum(PlanTier, native_enum=False, length=20, values_callable=lambda e: [m.value for m in e]),
        unique=True,
        nullable=False,
    )
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    highlights: Mapped[List[str]] = mapped_column(JSON, default=list, nullable=False)

    # Pricing
    price_monthly: Mapped[float] = mapped_column(Numeric(12, 2, asdecimal=False), default=0, nullable=False)
    price_yearly: Mapped[float] = mapped_column(Numeric(12, 2, asdecimal=False), default=0, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="INR", nullable=False)

    # Quotas (per usage period)
    lyrics_per_month: Mapped[int] = mapped_column(Integer, default=5, nullable=False)
    music_generations: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    video_generations: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    voice_generations: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Feature flags (ai_model, max_lyrics_length, priority_support, custom_dialects, export_formats)
    features: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    display_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    offers: Mapped[List["PlanOffer"]] = relationship(
        back_populates="plan",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="PlanOffer.created_at",
    )

    def __repr__(self) -> str:
        return f"<SubscriptionPlan(slug={self.slug!r} tier={self.tier.value if self.tier else None})>"

    @property
    def limits(self) -> Dict[FeatureType, int]:
        return {feature: getattr(self, column) for feature, column in LIMIT_COLUMNS.items()}

    @property
    def is_free(self) -> bool:
        return self.tier == PlanTier.FREE

    def price_for(self, billing_cycle: BillingCycle) -> float:
        """List price for a billing cycle (yearly, otherwise monthly)."""
        return self.price_yearly if billing_cycle == BillingCycle.YEARLY else self.price_monthly

    def summary(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "tier": self.tier.value}


class PlanOffer(Base, UUIDMixin, TimestampMixin):
    """
    Promo Offer
    - Code stored uppercase; matched case-insensitively
    - Valid inside [valid_from, valid_until] (inclusive)
    - max_redemptions -1 = unlimited
    """
    __tablename__ = "plan_offers"
    __table_args__ = (
        UniqueConstraint("plan_id", "code", name="uq_plan_offers_plan_id_code"),
    )

    plan_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("subscription_plans.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    code: Mapped[str] = mapped_column(String(50), nullable=False)
    discount_percentage: Mapped[int] = mapped_column(Integer, nullable=False)
    valid_from: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    valid_until: Mapped[datetime] = mapped_column(nullable=False)
    max_redemptions: Mapped[int] = mapped_column(Integer, default=UNLIMITED, nullable=False)
    current_redemptions: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    plan: Mapped[SubscriptionPlan] = relationship(back_populates="offers")

    def __repr__(self) -> str:
        return f"<PlanOffer(code={self.code!r} discount={self.discount_percentage}%)>"

    def is_redeemable(self, now: datetime) -> bool:
        """Active, inside its validity window, and below its redemption cap."""
        if not self.is_active:
            return False
        if not (self.valid_from <= now <= self.valid_until):
            return False
        return self.max_redemptions == UNLIMITED or self.current_redemptions < self.max_redemptions

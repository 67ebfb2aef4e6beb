# apps/api/creativewriter/db/models/subscription.py
"""
SQLAlchemy Subscription & Payment Record Models - CreativeWriter
One subscription per user: plan assignment, lifecycle status, usage counters
for the current period, admin override metadata and append-only payment history.
Subscriptions are never hard-deleted.
"""

from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import (
    Boolean,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from creativewriter.core.enums import (
    BillingCycle,
    FeatureType,
    PaymentStatus,
    SubscriptionStatus,
)
from creativewriter.db.base import Base, TimestampMixin
from creativewriter.db.models.mixins import UUIDMixin
from creativewriter.db.models.plan import SubscriptionPlan
from creativewriter.db.utils import utcnow

# Explicit per-feature lookup: feature → usage counter column on Subscription
USAGE_COLUMNS: Dict[FeatureType, str] = {
    FeatureType.LYRICS: "lyrics_used",
    FeatureType.MUSIC: "music_used",
    FeatureType.VIDEO: "video_used",
    FeatureType.VOICE: "voice_used",
}


def _enum_column(enum_cls, **kwargs):
    return mapped_column(
        Enum(enum_cls, native_enum=False, length=20, values_callable=lambda e: [m.value for m in e]),
        **kwargs,
    )


class Subscription(Base, UUIDMixin, TimestampMixin):
    """
    Subscription Entity
    - Unique per user
    - Usage counters are monotonic within [period_start, period_end)
    - period_end is always period_start + 1 calendar month
    """
    __tablename__ = "subscriptions"
    __table_args__ = (
        Index("ix_subscriptions_status", "status"),
        Index("ix_subscriptions_gateway_order_id", "gateway_order_id"),
    )

    user_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    plan_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("subscription_plans.id", ondelete="RESTRICT"),
        nullable=False,
    )

    status: Mapped[SubscriptionStatus] = _enum_column(
        SubscriptionStatus, default=SubscriptionStatus.ACTIVE, nullable=False
    )
    billing_cycle: Mapped[BillingCycle] = _enum_column(
        BillingCycle, default=BillingCycle.NONE, nullable=False
    )
    start_date: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    end_date: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    renewal_date: Mapped[Optional[datetime]] = mapped_column(nullable=True)

    # Gateway references
    gateway_order_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    gateway_payment_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Usage for the current period
    lyrics_used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    music_used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    video_used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    voice_used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    period_start: Mapped[datetime] = mapped_column(nullable=False)
    period_end: Mapped[datetime] = mapped_column(nullable=False)

    # Admin override
    is_overridden: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    overridden_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    override_reason: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    previous_plan_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)

    # Applied promo snapshot
    promo_code: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    promo_discount_percentage: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    plan: Mapped[SubscriptionPlan] = relationship(lazy="selectin")
    payments: Mapped[List["PaymentRecord"]] = relationship(
        back_populates="subscription",
        lazy="selectin",
        order_by="PaymentRecord.paid_at",
    )

    def __repr__(self) -> str:
        return f"<Subscription(user_id={self.user_id!r} status={self.status.value if self.status else None})>"

    @property
    def usage(self) -> Dict[FeatureType, int]:
        return {feature: getattr(self, column) for feature, column in USAGE_COLUMNS.items()}

    def reset_usage(self, period_start: datetime, period_end: datetime) -> None:
        for column in USAGE_COLUMNS.values():
            setattr(self, column, 0)
        self.period_start = period_start
        self.period_end = period_end

    def has_payment(self, gateway_payment_id: str, status: PaymentStatus) -> bool:
        return any(
            p.gateway_payment_id == gateway_payment_id and p.status == status
            for p in self.payments
        )


class PaymentRecord(Base, UUIDMixin):
    """
    Payment History Entry (append-only)
    Unique per (subscription, gateway payment id, status) so replays of the
    same capture or failure never produce a second row.
    """
    __tablename__ = "payment_records"
    __table_args__ = (
        UniqueConstraint(
            "subscription_id", "gateway_payment_id", "status",
            name="uq_payment_records_subscription_payment_status",
        ),
    )

    subscription_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("subscriptions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    gateway_payment_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    gateway_order_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    amount: Mapped[float] = mapped_column(Numeric(12, 2, asdecimal=False), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="INR", nullable=False)
    status: Mapped[PaymentStatus] = _enum_column(PaymentStatus, nullable=False)
    paid_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    subscription: Mapped[Subscription] = relationship(back_populates="payments")

    def __repr__(self) -> str:
        return f"<PaymentRecord(payment={self.gateway_payment_id!r} status={self.status.value} amount={self.amount})>"

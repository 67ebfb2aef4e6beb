"""
Subscriptions Router - CreativeWriter
Plan catalog, the caller's subscription and usage, promo validation,
checkout (order → verify), cancellation and the payment gateway webhook.
"""

import logging
from datetime import datetime
from typing import Annotated, Any, AsyncGenerator, Dict, List, Optional

import sentry_sdk
from fastapi import APIRouter, Depends, Request, status
from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from creativewriter.core.config import get_settings
from creativewriter.core.enums import FeatureType
from creativewriter.core.exceptions import AppException, BillingError
from creativewriter.db.models import PaymentRecord, Subscription, SubscriptionPlan
from creativewriter.db.session import get_db
from creativewriter.middleware.auth import AuthUser, get_current_user
from creativewriter.middleware.rate_limit import limiter, payments_limit
from creativewriter.services.billing import BillingReconciler
from creativewriter.services.payment_gateway import PaymentGatewayClient
from creativewriter.services.plan_catalog import PlanCatalog
from creativewriter.services.quota import QuotaDecision, check_limit
from creativewriter.services.subscription_store import SubscriptionStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/subscriptions", tags=["Subscriptions"])


# ────────────────────────────────────────────────
# Response Models
# ────────────────────────────────────────────────
class OfferOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    code: str
    discount_percentage: int
    valid_from: datetime
    valid_until: datetime
    max_redemptions: int
    current_redemptions: int
    is_active: bool


class PlanOut(BaseModel):
    id: str
    name: str
    slug: str
    tier: str
    description: Optional[str] = None
    highlights: List[str] = []
    price_monthly: float
    price_yearly: float
    currency: str
    limits: Dict[str, int]
    features: Dict[str, Any] = {}
    is_active: bool
    display_order: int

    @classmethod
    def from_plan(cls, plan: SubscriptionPlan) -> "PlanOut":
        return cls(
            id=plan.id,
            name=plan.name,
            slug=plan.slug,
            tier=plan.tier.value,
            description=plan.description,
            highlights=plan.highlights or [],
            price_monthly=plan.price_monthly,
            price_yearly=plan.price_yearly,
            currency=plan.currency,
            limits={feature.value: limit for feature, limit in plan.limits.items()},
            features=plan.features or {},
            is_active=plan.is_active,
            display_order=plan.display_order,
        )


class PlanWithOffersOut(PlanOut):
    offers: List[OfferOut] = []

    @classmethod
    def from_plan(cls, plan: SubscriptionPlan) -> "PlanWithOffersOut":
        base = PlanOut.from_plan(plan).model_dump()
        return cls(**base, offers=[OfferOut.model_validate(o) for o in plan.offers])


class PaymentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    gateway_payment_id: str
    gateway_order_id: Optional[str] = None
    amount: float
    currency: str
    status: str
    paid_at: datetime

    @classmethod
    def from_record(cls, record: PaymentRecord) -> "PaymentOut":
        return cls(
            gateway_payment_id=record.gateway_payment_id,
            gateway_order_id=record.gateway_order_id,
            amount=record.amount,
            currency=record.currency,
            status=record.status.value,
            paid_at=record.paid_at,
        )


class SubscriptionOut(BaseModel):
    id: str
    user_id: str
    plan: PlanOut
    status: str
    billing_cycle: str
    start_date: datetime
    end_date: Optional[datetime] = None
    renewal_date: Optional[datetime] = None
    usage: Dict[str, int]
    period_start: datetime
    period_end: datetime
    is_overridden: bool
    overridden_by: Optional[str] = None
    override_reason: Optional[str] = None
    previous_plan_id: Optional[str] = None
    promo_code: Optional[str] = None
    promo_discount_percentage: Optional[int] = None
    payments: List[PaymentOut] = []

    @classmethod
    def from_subscription(cls, sub: Subscription) -> "SubscriptionOut":
        return cls(
            id=sub.id,
            user_id=sub.user_id,
            plan=PlanOut.from_plan(sub.plan),
            status=sub.status.value,
            billing_cycle=sub.billing_cycle.value,
            start_date=sub.start_date,
            end_date=sub.end_date,
            renewal_date=sub.renewal_date,
            usage={feature.value: used for feature, used in sub.usage.items()},
            period_start=sub.period_start,
            period_end=sub.period_end,
            is_overridden=sub.is_overridden,
            overridden_by=sub.overridden_by,
            override_reason=sub.override_reason,
            previous_plan_id=sub.previous_plan_id,
            promo_code=sub.promo_code,
            promo_discount_percentage=sub.promo_discount_percentage,
            payments=[PaymentOut.from_record(p) for p in sub.payments],
        )


class UsageOut(BaseModel):
    plan: Dict[str, str]
    usage: Dict[str, QuotaDecision]
    period_start: datetime
    period_end: datetime


class OrderOut(BaseModel):
    order_id: str
    amount: int
    currency: str
    key_id: str
    plan: Dict[str, str]
    applied_promo: Optional[Dict[str, Any]] = None


class PromoOut(BaseModel):
    code: str
    discount_percentage: int
    valid_until: datetime


# ────────────────────────────────────────────────
# Request Models
# ────────────────────────────────────────────────
class ValidatePromoRequest(BaseModel):
    plan_id: Optional[str] = Field(None, validation_alias=AliasChoices("plan_id", "planId"))
    code: Optional[str] = None


class CreateOrderRequest(BaseModel):
    plan_id: Optional[str] = Field(None, validation_alias=AliasChoices("plan_id", "planId"))
    billing_cycle: Optional[str] = Field(None, validation_alias=AliasChoices("billing_cycle", "billingCycle"))
    promo_code: Optional[str] = Field(None, validation_alias=AliasChoices("promo_code", "promoCode"))


class VerifyPaymentRequest(BaseModel):
    order_id: Optional[str] = Field(None, validation_alias=AliasChoices("order_id", "razorpay_order_id"))
    payment_id: Optional[str] = Field(None, validation_alias=AliasChoices("payment_id", "razorpay_payment_id"))
    signature: Optional[str] = Field(None, validation_alias=AliasChoices("signature", "razorpay_signature"))
    plan_id: Optional[str] = Field(None, validation_alias=AliasChoices("plan_id", "planId"))
    billing_cycle: Optional[str] = Field(None, validation_alias=AliasChoices("billing_cycle", "billingCycle"))
    promo_code: Optional[str] = Field(None, validation_alias=AliasChoices("promo_code", "promoCode"))


# ────────────────────────────────────────────────
# Dependencies
# ────────────────────────────────────────────────
async def get_gateway() -> AsyncGenerator[PaymentGatewayClient, None]:
    gateway = PaymentGatewayClient.from_settings(get_settings())
    try:
        yield gateway
    finally:
        await gateway.aclose()


def get_reconciler(
    db: Annotated[AsyncSession, Depends(get_db)],
    gateway: Annotated[PaymentGatewayClient, Depends(get_gateway)],
) -> BillingReconciler:
    return BillingReconciler(db, gateway)


def get_store(db: Annotated[AsyncSession, Depends(get_db)]) -> SubscriptionStore:
    return SubscriptionStore(db)


# ────────────────────────────────────────────────
# Catalog
# ────────────────────────────────────────────────
@router.get("/plans", response_model=List[PlanOut])
async def get_plans(db: Annotated[AsyncSession, Depends(get_db)]):
    """Active plans, ordered for display. Offers are never exposed here."""
    plans = await PlanCatalog(db).list_active()
    return [PlanOut.from_plan(p) for p in plans]


# ────────────────────────────────────────────────
# Caller's subscription
# ────────────────────────────────────────────────
@router.post("/free", response_model=SubscriptionOut, status_code=status.HTTP_201_CREATED)
async def start_free_plan(
    request: Request,
    current_user: Annotated[AuthUser, Depends(get_current_user)],
    reconciler: Annotated[BillingReconciler, Depends(get_reconciler)],
):
    subscription = await reconciler.start_free(current_user.id, request=request)
    return SubscriptionOut.from_subscription(subscription)


@router.get("/my", response_model=SubscriptionOut)
async def get_my_subscription(
    current_user: Annotated[AuthUser, Depends(get_current_user)],
    store: Annotated[SubscriptionStore, Depends(get_store)],
):
    subscription = await store.get_for_user(current_user.id)
    if subscription is None:
        raise BillingError("NO_SUBSCRIPTION", "No subscription found", status.HTTP_404_NOT_FOUND)
    return SubscriptionOut.from_subscription(subscription)


@router.get("/my/usage", response_model=UsageOut)
async def get_my_usage(
    current_user: Annotated[AuthUser, Depends(get_current_user)],
    store: Annotated[SubscriptionStore, Depends(get_store)],
):
    subscription = await store.get_for_user(current_user.id)
    if subscription is None:
        raise BillingError("NO_SUBSCRIPTION", "No subscription found", status.HTTP_404_NOT_FOUND)

    plan = subscription.plan
    return UsageOut(
        plan={"name": plan.name, "tier": plan.tier.value},
        usage={
            feature.value: check_limit(feature, subscription.usage, plan.limits)
            for feature in FeatureType
        },
        period_start=subscription.period_start,
        period_end=subscription.period_end,
    )


# ────────────────────────────────────────────────
# Checkout
# ────────────────────────────────────────────────
@router.post("/validate-promo", response_model=PromoOut)
async def validate_promo(
    payload: ValidatePromoRequest,
    current_user: Annotated[AuthUser, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db)],
):
    # Promo validation never touches the gateway
    reconciler = BillingReconciler(db, gateway=None)
    return await reconciler.validate_promo(payload.plan_id, payload.code)


@router.post("/create-order", response_model=OrderOut)
@limiter.limit(payments_limit)
async def create_order(
    request: Request,
    payload: CreateOrderRequest,
    current_user: Annotated[AuthUser, Depends(get_current_user)],
    reconciler: Annotated[BillingReconciler, Depends(get_reconciler)],
):
    return await reconciler.create_order(
        user_id=current_user.id,
        plan_id=payload.plan_id,
        billing_cycle=payload.billing_cycle,
        promo_code=payload.promo_code,
        request=request,
    )


@router.post("/verify-payment", response_model=SubscriptionOut)
@limiter.limit(payments_limit)
async def verify_payment(
    request: Request,
    payload: VerifyPaymentRequest,
    current_user: Annotated[AuthUser, Depends(get_current_user)],
    reconciler: Annotated[BillingReconciler, Depends(get_reconciler)],
):
    subscription = await reconciler.verify_payment(
        user_id=current_user.id,
        order_id=payload.order_id,
        payment_id=payload.payment_id,
        signature=payload.signature,
        plan_id=payload.plan_id,
        billing_cycle=payload.billing_cycle,
        promo_code=payload.promo_code,
        request=request,
    )
    return SubscriptionOut.from_subscription(subscription)


@router.post("/cancel", response_model=SubscriptionOut)
async def cancel_subscription(
    request: Request,
    current_user: Annotated[AuthUser, Depends(get_current_user)],
    reconciler: Annotated[BillingReconciler, Depends(get_reconciler)],
):
    subscription = await reconciler.cancel_subscription(current_user.id, request=request)
    return SubscriptionOut.from_subscription(subscription)


# ────────────────────────────────────────────────
# Gateway webhook (no auth; signed body)
# ────────────────────────────────────────────────
@router.post("/webhook")
@limiter.exempt
async def payment_webhook(
    request: Request,
    reconciler: Annotated[BillingReconciler, Depends(get_reconciler)],
):
    """
    Signed gateway events. Returns 400 for bad signatures or payloads.
    Any other failure returns 500 so the gateway retries delivery.
    """
    raw_body = await request.body()
    signature = request.headers.get("X-Razorpay-Signature")
    try:
        return await reconciler.handle_webhook(raw_body, signature)
    except AppException:
        raise
    except Exception as e:
        logger.exception("Webhook processing failed")
        sentry_sdk.capture_exception(e)
        raise

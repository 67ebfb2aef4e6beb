# apps/api/creativewriter/routers/admin.py
"""
Admin Router - CreativeWriter
Plan catalog management, promo offers, subscription overrides, listings
and revenue analytics. All endpoints require the admin role.
"""

import logging
from datetime import datetime
from typing import Annotated, Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from creativewriter.core.enums import PlanTier, SubscriptionStatus
from creativewriter.db.session import get_db
from creativewriter.middleware.auth import AuthUser, require_admin
from creativewriter.routers.subscriptions import (
    OfferOut,
    PlanWithOffersOut,
    SubscriptionOut,
)
from creativewriter.services.audit import audit_log
from creativewriter.services.billing import BillingReconciler
from creativewriter.services.plan_catalog import PlanCatalog
from creativewriter.services.subscription_store import SubscriptionStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/subscriptions/admin", tags=["Admin"])


# ────────────────────────────────────────────────
# Request / Response Models
# ────────────────────────────────────────────────
class PlanLimitsIn(BaseModel):
    lyrics_per_month: Optional[int] = Field(None, ge=-1)
    music_generations: Optional[int] = Field(None, ge=-1)
    video_generations: Optional[int] = Field(None, ge=-1)
    voice_generations: Optional[int] = Field(None, ge=-1)


class PlanIn(PlanLimitsIn):
    name: Optional[str] = Field(None, max_length=100)
    slug: Optional[str] = Field(None, max_length=100)
    tier: Optional[PlanTier] = None
    description: Optional[str] = None
    highlights: Optional[List[str]] = None
    price_monthly: Optional[float] = Field(None, ge=0)
    price_yearly: Optional[float] = Field(None, ge=0)
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    features: Optional[Dict[str, Any]] = None
    is_active: Optional[bool] = None
    display_order: Optional[int] = None


class OfferIn(BaseModel):
    code: Optional[str] = Field(None, max_length=50)
    discount_percentage: Optional[int] = Field(None, ge=1, le=100)
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    max_redemptions: Optional[int] = Field(None, ge=-1)


class OverrideIn(BaseModel):
    plan_id: Optional[str] = None
    reason: Optional[str] = Field(None, max_length=500)


class SubscriptionListOut(BaseModel):
    items: List[SubscriptionOut]
    page: int
    limit: int
    total: int
    pages: int


class TierCount(BaseModel):
    tier: str
    plan_name: str
    count: int


class AnalyticsOut(BaseModel):
    total_subscribers: int
    active_subscribers: int
    tier_breakdown: List[TierCount]
    total_revenue: float
    total_payments: int


# ────────────────────────────────────────────────
# Plans
# ────────────────────────────────────────────────
@router.get("/plans", response_model=List[PlanWithOffersOut])
async def admin_get_plans(
    admin: Annotated[AuthUser, Depends(require_admin)],
    db: Annotated[AsyncSession, Depends(get_db)],
):
    plans = await PlanCatalog(db).list_all()
    return [PlanWithOffersOut.from_plan(p) for p in plans]


@router.post("/plans", response_model=PlanWithOffersOut, status_code=status.HTTP_201_CREATED)
async def admin_create_plan(
    request: Request,
    payload: PlanIn,
    admin: Annotated[AuthUser, Depends(require_admin)],
    db: Annotated[AsyncSession, Depends(get_db)],
):
    plan = await PlanCatalog(db).create_plan(payload.model_dump(exclude_none=True))
    audit_log(db, "plan_created", user_id=admin.id, metadata={"plan_id": plan.id, "slug": plan.slug}, request=request)
    return PlanWithOffersOut.from_plan(plan)


@router.put("/plans/{plan_id}", response_model=PlanWithOffersOut)
async def admin_update_plan(
    plan_id: str,
    request: Request,
    payload: PlanIn,
    admin: Annotated[AuthUser, Depends(require_admin)],
    db: Annotated[AsyncSession, Depends(get_db)],
):
    changes = payload.model_dump(exclude_none=True)
    plan = await PlanCatalog(db).update_plan(plan_id, changes)
    audit_log(db, "plan_updated", user_id=admin.id, metadata={"plan_id": plan.id, "fields": sorted(changes)}, request=request)
    return PlanWithOffersOut.from_plan(plan)


@router.patch("/plans/{plan_id}/toggle", response_model=PlanWithOffersOut)
async def admin_toggle_plan(
    plan_id: str,
    request: Request,
    admin: Annotated[AuthUser, Depends(require_admin)],
    db: Annotated[AsyncSession, Depends(get_db)],
):
    plan = await PlanCatalog(db).toggle_plan(plan_id)
    audit_log(db, "plan_toggled", user_id=admin.id, metadata={"plan_id": plan.id, "is_active": plan.is_active}, request=request)
    return PlanWithOffersOut.from_plan(plan)


# ────────────────────────────────────────────────
# Offers
# ────────────────────────────────────────────────
@router.post("/plans/{plan_id}/offers", response_model=OfferOut, status_code=status.HTTP_201_CREATED)
async def admin_add_offer(
    plan_id: str,
    request: Request,
    payload: OfferIn,
    admin: Annotated[AuthUser, Depends(require_admin)],
    db: Annotated[AsyncSession, Depends(get_db)],
):
    offer = await PlanCatalog(db).add_offer(
        plan_id,
        code=payload.code,
        discount_percentage=payload.discount_percentage,
        valid_until=payload.valid_until,
        valid_from=payload.valid_from,
        max_redemptions=payload.max_redemptions,
    )
    audit_log(db, "offer_added", user_id=admin.id, metadata={"plan_id": plan_id, "code": offer.code}, request=request)
    return offer


@router.delete("/plans/{plan_id}/offers/{offer_id}", response_model=PlanWithOffersOut)
async def admin_remove_offer(
    plan_id: str,
    offer_id: str,
    request: Request,
    admin: Annotated[AuthUser, Depends(require_admin)],
    db: Annotated[AsyncSession, Depends(get_db)],
):
    plan = await PlanCatalog(db).remove_offer(plan_id, offer_id)
    audit_log(db, "offer_removed", user_id=admin.id, metadata={"plan_id": plan_id, "offer_id": offer_id}, request=request)
    return PlanWithOffersOut.from_plan(plan)


# ────────────────────────────────────────────────
# Subscriptions
# ────────────────────────────────────────────────
@router.post("/users/{user_id}/override", response_model=SubscriptionOut)
async def admin_override_subscription(
    user_id: str,
    request: Request,
    payload: OverrideIn,
    admin: Annotated[AuthUser, Depends(require_admin)],
    db: Annotated[AsyncSession, Depends(get_db)],
):
    # Overrides never reach the gateway
    reconciler = BillingReconciler(db, gateway=None)
    subscription = await reconciler.override_plan(
        user_id, payload.plan_id, admin_id=admin.id, reason=payload.reason, request=request
    )
    return SubscriptionOut.from_subscription(subscription)


@router.get("/subscriptions", response_model=SubscriptionListOut)
async def admin_list_subscriptions(
    admin: Annotated[AuthUser, Depends(require_admin)],
    db: Annotated[AsyncSession, Depends(get_db)],
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status_filter: Optional[SubscriptionStatus] = Query(None, alias="status"),
    plan_id: Optional[str] = Query(None, alias="plan"),
):
    items, total = await SubscriptionStore(db).list_subscriptions(
        page=page, limit=limit, status=status_filter, plan_id=plan_id
    )
    return SubscriptionListOut(
        items=[SubscriptionOut.from_subscription(s) for s in items],
        page=page,
        limit=limit,
        total=total,
        pages=(total + limit - 1) // limit,
    )


@router.get("/analytics", response_model=AnalyticsOut)
async def admin_get_analytics(
    admin: Annotated[AuthUser, Depends(require_admin)],
    db: Annotated[AsyncSession, Depends(get_db)],
):
    return await SubscriptionStore(db).analytics()

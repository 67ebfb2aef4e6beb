# apps/api/creativewriter/services/billing.py
"""
Billing Service - CreativeWriter
Order creation, synchronous payment verification and webhook-driven
subscription transitions.

Idempotency: a gateway payment id is applied at most once per outcome. A
replayed verification (or a webhook for a payment the checkout callback
already recorded) returns the current state without redeeming the promo
again, resetting usage, or appending a second history entry.
"""

import json
import logging
import time
from decimal import Decimal
from typing import Any, Dict, Optional

import sentry_sdk
from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from creativewriter.core.enums import BillingCycle, PaymentStatus, SubscriptionStatus
from creativewriter.core.exceptions import BillingError, missing_input, plan_not_found
from creativewriter.core.metrics import payments_verified_total, webhook_events_total
from creativewriter.db.models import Subscription, SubscriptionPlan
from creativewriter.db.utils import utcnow
from creativewriter.services.audit import audit_log
from creativewriter.services.payment_gateway import (
    PaymentGatewayClient,
    from_minor_units,
    round_half_up,
    to_minor_units,
)
from creativewriter.services.plan_catalog import PlanCatalog, normalize_code
from creativewriter.services.subscription_store import SubscriptionStore
from creativewriter.services.usage_period import add_months, add_years

logger = logging.getLogger(__name__)

EVENT_PAYMENT_CAPTURED = "payment.captured"
EVENT_PAYMENT_FAILED = "payment.failed"


def parse_billing_cycle(value: Any) -> BillingCycle:
    """Paid cycles only: "yearly" or "monthly"."""
    try:
        cycle = BillingCycle(getattr(value, "value", value))
    except ValueError:
        cycle = BillingCycle.NONE
    if cycle == BillingCycle.NONE:
        raise missing_input("Billing cycle must be monthly or yearly")
    return cycle


def discounted_amount(amount: Any, discount_percentage: int) -> Decimal:
    """Price after a percentage discount, rounded half-up to whole currency units."""
    return round_half_up(Decimal(str(amount)) * (100 - discount_percentage) / 100)


class BillingReconciler:
    """Payment flows for one request/session."""

    def __init__(
        self,
        db: AsyncSession,
        gateway: PaymentGatewayClient,
        store: Optional[SubscriptionStore] = None,
        catalog: Optional[PlanCatalog] = None,
    ):
        self.db = db
        self.gateway = gateway
        self.catalog = catalog or PlanCatalog(db)
        self.store = store or SubscriptionStore(db, self.catalog)

    # ────────────────────────────────────────────────
    # Promo validation
    # ────────────────────────────────────────────────
    async def validate_promo(self, plan_id: Optional[str], code: Optional[str]) -> Dict[str, Any]:
        if not plan_id or not code:
            raise missing_input("Plan ID and promo code are required")

        plan = await self.catalog.get(plan_id)
        if plan is None:
            raise plan_not_found()

        offer = self.catalog.find_valid_offer(plan, code)
        if offer is None:
            raise BillingError("INVALID_PROMO", "Invalid or expired promo code")

        return {
            "code": offer.code,
            "discount_percentage": offer.discount_percentage,
            "valid_until": offer.valid_until,
        }

    # ────────────────────────────────────────────────
    # Order creation (fail-closed)
    # ────────────────────────────────────────────────
    async def create_order(
        self,
        user_id: str,
        plan_id: Optional[str],
        billing_cycle: Any,
        promo_code: Optional[str] = None,
        request: Optional[Request] = None,
    ) -> Dict[str, Any]:
        if not plan_id or not billing_cycle:
            raise missing_input("Plan ID and billing cycle are required")
        cycle = parse_billing_cycle(billing_cycle)

        plan = await self.catalog.get_active(plan_id)
        if plan is None:
            raise plan_not_found()
        if plan.is_free:
            raise BillingError("FREE_PLAN", "Free plan does not require payment")

        list_price = plan.price_for(cycle)
        amount = list_price
        applied_promo = None

        # An unusable promo code is ignored here; the order is priced without it
        offer = self.catalog.find_valid_offer(plan, promo_code)
        if offer is not None:
            amount = discounted_amount(list_price, offer.discount_percentage)
            applied_promo = {
                "code": offer.code,
                "discount_percentage": offer.discount_percentage,
                "original_amount": float(list_price),
                "discounted_amount": float(amount),
            }
        elif promo_code:
            logger.info(f"Ignoring unusable promo code {normalize_code(promo_code)} for plan {plan.slug}")

        receipt = f"sub_{user_id}_{int(time.time() * 1000)}"
        order = await self.gateway.create_order(
            amount=amount,
            currency=plan.currency,
            receipt=receipt,
            notes={
                "userId": user_id,
                "planId": plan.id,
                "billingCycle": cycle.value,
                "promoCode": applied_promo["code"] if applied_promo else None,
            },
        )

        audit_log(
            self.db,
            "order_created",
            user_id=user_id,
            metadata={
                "order_id": order.get("id"),
                "plan": plan.slug,
                "billing_cycle": cycle.value,
                "amount": float(amount),
                "promo_code": applied_promo["code"] if applied_promo else None,
            },
            request=request,
        )

        return {
            "order_id": order["id"],
            "amount": order.get("amount", to_minor_units(amount)),
            "currency": order.get("currency", plan.currency),
            "key_id": self.gateway.key_id,
            "plan": plan.summary(),
            "applied_promo": applied_promo,
        }

    # ────────────────────────────────────────────────
    # Synchronous payment verification (fail-closed)
    # ────────────────────────────────────────────────
    async def verify_payment(
        self,
        user_id: str,
        order_id: Optional[str],
        payment_id: Optional[str],
        signature: Optional[str],
        plan_id: Optional[str],
        billing_cycle: Any = None,
        promo_code: Optional[str] = None,
        request: Optional[Request] = None,
    ) -> Subscription:
        if not order_id or not payment_id or not signature:
            raise BillingError("MISSING_PAYMENT_DETAILS", "Missing payment verification details")

        if not self.gateway.verify_payment_signature(order_id, payment_id, signature):
            payments_verified_total.labels(outcome="invalid_signature").inc()
            logger.warning(f"Invalid payment signature for order {order_id}", extra={"user_id": user_id})
            raise BillingError("INVALID_SIGNATURE", "Payment verification failed")

        requested_cycle = parse_billing_cycle(billing_cycle) if billing_cycle else None

        now = utcnow()
        existing = await self.store.get_for_user(user_id, now=now)
        if existing is not None and existing.has_payment(payment_id, PaymentStatus.CAPTURED):
            payments_verified_total.labels(outcome="duplicate").inc()
            logger.info(f"Payment {payment_id} already applied; returning current subscription", extra={"user_id": user_id})
            return existing

        terms = await self._order_terms(order_id, user_id, plan_id, requested_cycle, promo_code)

        plan = await self.catalog.get(terms["plan_id"])
        if plan is None:
            raise plan_not_found()

        cycle = terms["billing_cycle"]
        end_date = add_years(now, 1) if cycle == BillingCycle.YEARLY else add_months(now, 1)

        promo_snapshot = await self._redeem_promo(plan, terms["promo_code"])
        amount, currency = await self._captured_amount(payment_id, plan, cycle)

        subscription = await self.store.activate_paid(
            user_id=user_id,
            plan=plan,
            billing_cycle=cycle,
            end_date=end_date,
            order_id=order_id,
            payment_id=payment_id,
            promo_code=promo_snapshot[0] if promo_snapshot else None,
            promo_discount_percentage=promo_snapshot[1] if promo_snapshot else None,
            now=now,
        )
        await self.store.append_payment(
            subscription,
            payment_id=payment_id,
            amount=amount,
            status=PaymentStatus.CAPTURED,
            currency=currency,
            order_id=order_id,
            paid_at=now,
        )

        payments_verified_total.labels(outcome="activated").inc()
        audit_log(
            self.db,
            "payment_verified",
            user_id=user_id,
            metadata={
                "order_id": order_id,
                "payment_id": payment_id,
                "plan": plan.slug,
                "billing_cycle": cycle.value,
                "amount": amount,
                "promo_code": promo_snapshot[0] if promo_snapshot else None,
            },
            request=request,
        )
        logger.info(
            f"Subscription activated for user {user_id} on {plan.slug} ({cycle.value})",
            extra={"order_id": order_id, "payment_id": payment_id},
        )
        return subscription

    async def _order_terms(
        self,
        order_id: str,
        user_id: str,
        plan_id: Optional[str],
        cycle: Optional[BillingCycle],
        promo_code: Optional[str],
    ) -> Dict[str, Any]:
        """
        Plan, cycle and promo recorded on the gateway order when it was created.

        The signature only binds order and payment ids, so the order's notes
        are authoritative. Values sent by the client may be omitted but must
        agree with the order when present.
        """
        order = await self.gateway.fetch_order(order_id)
        notes = order.get("notes") or {}

        try:
            order_cycle = parse_billing_cycle(notes.get("billingCycle"))
        except BillingError:
            order_cycle = None
        order_promo = normalize_code(notes.get("promoCode")) or None

        mismatched = []
        if notes.get("userId") != user_id:
            mismatched.append("user")
        if not notes.get("planId") or (plan_id and plan_id != notes["planId"]):
            mismatched.append("plan")
        if order_cycle is None or (cycle is not None and cycle != order_cycle):
            mismatched.append("billing_cycle")
        if promo_code and normalize_code(promo_code) != order_promo:
            mismatched.append("promo_code")

        if mismatched:
            payments_verified_total.labels(outcome="order_mismatch").inc()
            logger.warning(
                f"Payment for order {order_id} does not match the order ({', '.join(mismatched)})",
                extra={"user_id": user_id},
            )
            raise BillingError(
                "ORDER_MISMATCH",
                "Payment details do not match the order",
                details={"fields": mismatched},
            )

        return {"plan_id": notes["planId"], "billing_cycle": order_cycle, "promo_code": order_promo}

    async def _redeem_promo(self, plan: SubscriptionPlan, promo_code: Optional[str]):
        code = normalize_code(promo_code)
        if not code:
            return None
        offer = next((o for o in plan.offers if o.code == code), None)
        if offer is None:
            logger.warning(f"Verified payment references unknown promo {code} on plan {plan.slug}")
            return None
        await self.catalog.redeem_offer(plan.id, code)
        return offer.code, offer.discount_percentage

    async def _captured_amount(self, payment_id: str, plan: SubscriptionPlan, cycle: BillingCycle):
        """Amount actually captured, falling back to the list price if the lookup fails."""
        try:
            payment = await self.gateway.fetch_payment(payment_id)
            return from_minor_units(payment["amount"]), payment.get("currency", plan.currency)
        except Exception as e:
            logger.warning(
                f"Could not fetch captured amount for payment {payment_id}; using list price",
                extra={"error": str(e)},
            )
            return float(plan.price_for(cycle)), plan.currency

    # ────────────────────────────────────────────────
    # Webhooks
    # ────────────────────────────────────────────────
    async def handle_webhook(self, raw_body: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Apply a signed gateway event. Returns an acknowledgement body.
        Unknown events and events for unknown orders are acknowledged without change.
        """
        if not self.gateway.verify_webhook_signature(raw_body, signature):
            webhook_events_total.labels(event="unknown", outcome="invalid_signature").inc()
            logger.error("Webhook rejected: invalid or missing signature")
            sentry_sdk.capture_message("Payment webhook: invalid signature", level="warning")
            raise BillingError("INVALID_SIGNATURE", "Invalid webhook signature")

        try:
            body = json.loads(raw_body)
            event = body["event"]
            entity = (body.get("payload") or {}).get("payment", {}).get("entity", {}) or {}
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            webhook_events_total.labels(event="unknown", outcome="invalid_payload").inc()
            logger.error(f"Webhook rejected: unparsable payload ({e})")
            raise BillingError("INVALID_PAYLOAD", "Invalid webhook payload")

        sentry_sdk.set_tag("webhook_event", event)

        if event == EVENT_PAYMENT_CAPTURED:
            outcome = await self._on_payment_event(entity, PaymentStatus.CAPTURED, SubscriptionStatus.ACTIVE)
        elif event == EVENT_PAYMENT_FAILED:
            outcome = await self._on_payment_event(entity, PaymentStatus.FAILED, SubscriptionStatus.PAST_DUE)
        else:
            outcome = "ignored"
            logger.info(f"Webhook event {event} acknowledged without action")

        webhook_events_total.labels(event=event, outcome=outcome).inc()
        return {"status": "ok", "event": event, "outcome": outcome}

    async def _on_payment_event(
        self,
        entity: Dict[str, Any],
        payment_status: PaymentStatus,
        subscription_status: SubscriptionStatus,
    ) -> str:
        order_id = entity.get("order_id")
        payment_id = entity.get("id")
        if not order_id or not payment_id:
            logger.warning("Webhook payment entity missing order or payment id")
            return "ignored"

        subscription = await self.store.find_by_order_id(order_id)
        if subscription is None:
            logger.warning(f"Webhook for unknown order {order_id}", extra={"payment_id": payment_id})
            return "subscription_not_found"

        if subscription.has_payment(payment_id, payment_status):
            logger.info(f"Webhook {payment_status.value} for payment {payment_id} already recorded")
            return "duplicate"

        if payment_status == PaymentStatus.CAPTURED:
            subscription.gateway_payment_id = payment_id
        subscription.status = subscription_status

        await self.store.append_payment(
            subscription,
            payment_id=payment_id,
            amount=from_minor_units(entity.get("amount") or 0),
            status=payment_status,
            currency=entity.get("currency") or subscription.plan.currency,
            order_id=order_id,
        )
        audit_log(
            self.db,
            f"webhook_payment_{payment_status.value}",
            user_id=subscription.user_id,
            metadata={"order_id": order_id, "payment_id": payment_id, "status": subscription_status.value},
        )
        logger.info(
            f"Webhook applied: payment {payment_id} {payment_status.value} → subscription {subscription_status.value}",
            extra={"user_id": subscription.user_id, "order_id": order_id},
        )
        return "processed"

    # ────────────────────────────────────────────────
    # Lifecycle actions
    # ────────────────────────────────────────────────
    async def start_free(self, user_id: str, request: Optional[Request] = None) -> Subscription:
        subscription = await self.store.create_free(user_id)
        audit_log(self.db, "free_subscription_started", user_id=user_id, request=request)
        return subscription

    async def cancel_subscription(self, user_id: str, request: Optional[Request] = None) -> Subscription:
        subscription = await self.store.cancel(user_id)
        audit_log(
            self.db,
            "subscription_cancelled",
            user_id=user_id,
            metadata={"plan": subscription.plan.slug},
            request=request,
        )
        return subscription

    async def override_plan(
        self,
        user_id: str,
        plan_id: Optional[str],
        admin_id: str,
        reason: Optional[str] = None,
        request: Optional[Request] = None,
    ) -> Subscription:
        if not plan_id:
            raise missing_input("Plan ID is required")
        plan = await self.catalog.get(plan_id)
        if plan is None:
            raise plan_not_found()
        subscription = await self.store.apply_admin_override(user_id, plan, admin_id, reason)
        audit_log(
            self.db,
            "plan_overridden",
            user_id=admin_id,
            metadata={
                "target_user_id": user_id,
                "plan": plan.slug,
                "previous_plan_id": subscription.previous_plan_id,
                "reason": subscription.override_reason,
            },
            request=request,
        )
        return subscription

"""Stripe checkout and webhook handling for physician subscriptions."""

from __future__ import annotations

import json
from datetime import timedelta
from typing import Any, Dict, Mapping, Optional

import stripe
import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from kebilo.config import AppSettings
from kebilo.db.models import CheckoutSession, Subscription
from kebilo.security import WEBHOOK_EVENTS_TOTAL
from kebilo.time_utils import ensure_utc, utc_now

logger = structlog.get_logger(__name__)

PLANS = ("basic", "pro", "premium")
CHECKOUT_TTL = timedelta(minutes=30)
CHECKOUT_SOURCE = "healthcare_app"
STRIPE_API_VERSION = "2024-06-20"
WEBHOOK_TOLERANCE_SECONDS = 300


class BillingError(Exception):
    """Raised for checkout requests the caller has to correct."""


class WebhookSignatureError(Exception):
    """Raised when a webhook payload cannot be verified."""


def validate_checkout(plan: Any, price: Any) -> None:
    if not plan or plan not in PLANS:
        raise BillingError("Invalid plan. Choose basic, pro, or premium")
    if isinstance(price, bool) or not isinstance(price, (int, float)) or price <= 0:
        raise BillingError("Invalid price")


def active_subscription(session: Session, physician_id: str) -> Optional[Subscription]:
    return session.execute(
        select(Subscription)
        .where(Subscription.physician_id == physician_id, Subscription.status == "active")
        .order_by(Subscription.created_at.desc())
        .limit(1)
    ).scalar_one_or_none()


def serialize_subscription(subscription: Optional[Subscription]) -> Optional[Dict[str, Any]]:
    if subscription is None:
        return None
    return {
        "id": subscription.id,
        "physicianId": subscription.physician_id,
        "plan": subscription.plan,
        "amountTotal": subscription.amount_total,
        "status": subscription.status,
        "stripeCustomerId": subscription.stripe_customer_id,
        "stripeSubscriptionId": subscription.stripe_subscription_id,
        "createdAt": ensure_utc(subscription.created_at),
    }


def _require_stripe_key(settings: AppSettings) -> str:
    if not settings.stripe_secret_key:
        raise RuntimeError("STRIPE_SECRET_KEY is missing")
    return settings.stripe_secret_key


def create_checkout_session(
    session: Session,
    settings: AppSettings,
    *,
    physician_id: str,
    plan: Any,
    price: Any,
) -> Dict[str, Any]:
    """Create a one-off Stripe Checkout session for *plan*.

    The session is also stored as a pending :class:`CheckoutSession` so the
    webhook can resolve the physician without relying on Stripe metadata.
    """

    api_key = _require_stripe_key(settings)
    validate_checkout(plan, price)
    if active_subscription(session, physician_id) is not None:
        raise BillingError("You already have an active subscription")

    amount = int(round(price * 100))
    expires_at = utc_now() + CHECKOUT_TTL
    metadata = {"physicianId": physician_id, "plan": plan, "price": str(price)}
    created = stripe.checkout.Session.create(
        api_key=api_key,
        stripe_version=STRIPE_API_VERSION,
        payment_method_types=["card"],
        mode="payment",
        line_items=[
            {
                "price_data": {
                    "currency": "usd",
                    "product_data": {
                        "name": f"{plan.upper()} Plan",
                        "description": f"Healthcare subscription - {plan} tier",
                    },
                    "unit_amount": amount,
                },
                "quantity": 1,
            }
        ],
        metadata={**metadata, "source": CHECKOUT_SOURCE},
        payment_intent_data={"metadata": metadata},
        client_reference_id=physician_id,
        success_url=f"{settings.base_url}/success?session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=f"{settings.base_url}/packages",
        expires_at=int(expires_at.timestamp()),
    )

    session.add(
        CheckoutSession(
            stripe_session_id=created["id"],
            physician_id=physician_id,
            plan=plan,
            amount=amount,
            status="pending",
            expires_at=expires_at,
        )
    )
    session.flush()
    logger.info("checkout_session_created", session_id=created["id"], plan=plan)
    return {"url": created["url"], "sessionId": created["id"]}


def construct_event(payload: bytes, signature: str, settings: AppSettings) -> Mapping[str, Any]:
    """Verify the ``stripe-signature`` header and parse the event as a plain dict."""

    try:
        text = payload.decode("utf-8") if isinstance(payload, bytes) else payload
        stripe.WebhookSignature.verify_header(
            text, signature, settings.stripe_webhook_secret or "", WEBHOOK_TOLERANCE_SECONDS
        )
        event = json.loads(text)
    except (ValueError, stripe.SignatureVerificationError) as exc:
        WEBHOOK_EVENTS_TOTAL.labels(event_type="unknown", outcome="invalid_signature").inc()
        logger.warning("webhook_signature_invalid", error=str(exc))
        raise WebhookSignatureError(str(exc)) from exc
    return event


def _resolve_checkout(session: Session, checkout: Mapping[str, Any]) -> Optional[CheckoutSession]:
    stripe_id = checkout.get("id")
    record = session.execute(
        select(CheckoutSession).where(CheckoutSession.stripe_session_id == stripe_id)
    ).scalar_one_or_none()
    if record is not None:
        return record

    metadata = checkout.get("metadata") or {}
    physician_id = metadata.get("physicianId") or checkout.get("client_reference_id")
    plan = metadata.get("plan")
    amount_total = checkout.get("amount_total")
    if not (physician_id and plan and amount_total):
        return None
    record = CheckoutSession(
        stripe_session_id=stripe_id,
        physician_id=physician_id,
        plan=plan,
        amount=amount_total,
        status="pending",
        expires_at=utc_now() + CHECKOUT_TTL,
    )
    session.add(record)
    session.flush()
    logger.info("checkout_session_rebuilt", session_id=stripe_id)
    return record


def complete_checkout(session: Session, checkout: Mapping[str, Any]) -> Optional[Subscription]:
    """Activate the subscription paid for by *checkout*.

    Returns the new subscription, or ``None`` when the checkout cannot be
    attributed or the physician already has an active subscription.
    """

    record = _resolve_checkout(session, checkout)
    if record is None:
        logger.error("checkout_session_unknown", session_id=checkout.get("id"))
        return None

    if active_subscription(session, record.physician_id) is not None:
        record.status = "completed"
        session.flush()
        logger.info("subscription_already_active", session_id=record.stripe_session_id)
        return None

    subscription = Subscription(
        physician_id=record.physician_id,
        plan=record.plan,
        amount_total=checkout.get("amount_total") or record.amount,
        status="active",
        stripe_customer_id=checkout.get("customer") or None,
        stripe_subscription_id=checkout.get("subscription") or None,
    )
    session.add(subscription)
    record.status = "completed"
    session.flush()
    logger.info("subscription_created", subscription_id=subscription.id, plan=subscription.plan)
    return subscription


def handle_event(session: Session, event: Mapping[str, Any]) -> None:
    event_type = event.get("type") or "unknown"
    if event_type == "checkout.session.completed":
        subscription = complete_checkout(session, event["data"]["object"])
        outcome = "subscribed" if subscription is not None else "skipped"
    else:
        outcome = "ignored"
    WEBHOOK_EVENTS_TOTAL.labels(event_type=event_type, outcome=outcome).inc()


__all__ = [
    "BillingError",
    "PLANS",
    "WebhookSignatureError",
    "active_subscription",
    "complete_checkout",
    "construct_event",
    "create_checkout_session",
    "handle_event",
    "serialize_subscription",
    "validate_checkout",
]

"""Stripe billing for course trials and Learning Hub access."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional

import stripe

import db
from env_validation import get_env_str

logger = logging.getLogger(__name__)

TRIAL_DAYS = 3
GRACE_PERIOD_DAYS = 5
CURRENCY = "gbp"
LEARNING_HUB_TIER = "learning_hub"

ACCESS_STATUSES = ("active", "trialing")
PAID_PURCHASE_STATUSES = ("trialing", "active", "past_due")

# Stripe subscription status -> course purchase status
_PURCHASE_STATUS = {
    "active": "active",
    "trialing": "trialing",
    "past_due": "past_due",
    "canceled": "cancelled",
    "incomplete_expired": "expired",
    "unpaid": "expired",
}


class BillingError(Exception):
    """Billing request refused or Stripe unavailable."""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.status_code = status_code


def _configure() -> None:
    api_key = get_env_str("STRIPE_SECRET_KEY")
    if not api_key:
        raise BillingError("STRIPE_SECRET_KEY is not configured", status_code=503)
    stripe.api_key = api_key


def _field(obj: Any, key: str) -> Any:
    try:
        return obj[key]
    except (KeyError, TypeError):
        return None


def _from_epoch(value: Any) -> Optional[str]:
    if not value:
        return None
    return db.to_iso(datetime.fromtimestamp(int(value), tz=timezone.utc))


def _find_customer_id(email: str) -> Optional[str]:
    customers = stripe.Customer.list(email=email, limit=1)
    data = customers["data"]
    return data[0]["id"] if data else None


def _course_price_item(course: Mapping[str, Any]) -> Dict[str, Any]:
    if course.get("stripe_price_id"):
        return {"price": course["stripe_price_id"]}
    return {
        "price_data": {
            "currency": CURRENCY,
            "product_data": {"name": f"{course['title']} Subscription"},
            "unit_amount": int(round(float(course.get("price") or 0) * 100)),
            "recurring": {"interval": "month"},
        }
    }


def create_course_payment(user: Mapping[str, Any], course_id: str) -> Dict[str, Any]:
    """Start a card setup for a course subscription with a free trial.

    Returns the SetupIntent client secret the browser confirms; the trial
    subscription itself is created by the ``setup_intent.succeeded`` webhook.
    """
    course = db.get_course(course_id)
    if not course:
        raise LookupError("Course not found")
    user_id = user["user_id"]
    email = user.get("email")
    if not email:
        raise BillingError("An email address is required to purchase a course")
    if db.find_purchase(user_id, course_id, PAID_PURCHASE_STATUSES):
        raise BillingError("Course already purchased", status_code=409)
    if db.user_has_used_trial(user_id):
        raise BillingError("Free trial already used", status_code=409)

    _configure()
    try:
        customer_id = _find_customer_id(email)
        if not customer_id:
            customer = stripe.Customer.create(email=email, metadata={"user_id": user_id})
            customer_id = customer["id"]
            logger.info("Created Stripe customer %s for user %s", customer_id, user_id)
        intent = stripe.SetupIntent.create(
            customer=customer_id,
            payment_method_types=["card"],
            usage="off_session",
            metadata={
                "user_id": user_id,
                "course_id": course_id,
                "trial_days": str(TRIAL_DAYS),
            },
        )
    except stripe.StripeError as exc:
        logger.error("Stripe setup for course %s failed", course_id, exc_info=True)
        raise BillingError(f"Payment provider error: {exc}", status_code=502) from exc

    purchase_id = db.create_purchase(
        user_id,
        course_id,
        status="pending",
        stripe_customer_id=customer_id,
        stripe_setup_intent_id=intent["id"],
    )
    return {
        "client_secret": intent["client_secret"],
        "setup_intent_id": intent["id"],
        "customer_id": customer_id,
        "purchase_id": purchase_id,
        "trial_days": TRIAL_DAYS,
    }


def check_learning_hub_access(user: Mapping[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
    """Refresh the caller's Learning Hub subscription from Stripe."""
    now = db.parse_timestamp(now or db.utcnow())
    user_id = user["user_id"]
    email = user.get("email")
    previously_trialled = db.user_has_used_trial(user_id)

    _configure()
    try:
        customer_id = _find_customer_id(email) if email else None
        subscriptions = (
            stripe.Subscription.list(customer=customer_id, status="all", limit=10)["data"] if customer_id else []
        )
    except stripe.StripeError as exc:
        logger.error("Stripe access check for %s failed", user_id, exc_info=True)
        raise BillingError(f"Payment provider error: {exc}", status_code=502) from exc

    if not customer_id:
        db.upsert_platform_subscription(user_id, status="inactive", subscription_tier=LEARNING_HUB_TIER)
        return {
            "has_access": False,
            "subscription": None,
            "trial_eligible": not previously_trialled,
            "is_in_grace_period": False,
            "grace_period_end": None,
        }

    current = next(
        (sub for sub in subscriptions if sub["status"] in ACCESS_STATUSES + ("past_due",)),
        None,
    )
    has_used_trial = previously_trialled or any(_field(sub, "trial_end") for sub in subscriptions)

    subscription = None
    has_access = False
    grace_period_end = None
    if current:
        subscription = {
            "id": current["id"],
            "status": current["status"],
            "current_period_end": _from_epoch(_field(current, "current_period_end")),
            "trial_end": _from_epoch(_field(current, "trial_end")),
        }
        has_access = current["status"] in ACCESS_STATUSES
        if current["status"] == "past_due":
            started = db.parse_timestamp(subscription["current_period_end"]) if subscription["current_period_end"] else now
            grace_end = started + timedelta(days=GRACE_PERIOD_DAYS)
            grace_period_end = db.to_iso(grace_end)
            has_access = now < grace_end

    db.upsert_platform_subscription(
        user_id,
        status=current["status"] if current else "inactive",
        stripe_customer_id=customer_id,
        stripe_subscription_id=current["id"] if current else None,
        current_period_end=subscription["current_period_end"] if subscription else None,
        trial_end=subscription["trial_end"] if subscription else None,
        subscription_tier=LEARNING_HUB_TIER,
    )
    return {
        "has_access": has_access,
        "subscription": subscription,
        "trial_eligible": not has_used_trial,
        "is_in_grace_period": grace_period_end is not None and has_access,
        "grace_period_end": grace_period_end,
    }


# -------------- webhooks --------------
def _handle_setup_intent_succeeded(intent: Mapping[str, Any]) -> Dict[str, Any]:
    purchase = db.get_purchase_by_setup_intent(intent["id"])
    if not purchase:
        logger.warning("No course purchase for setup intent %s", intent["id"])
        return {"status": "ignored", "reason": "unknown_setup_intent"}
    if purchase["status"] != "pending":
        return {"status": "ignored", "reason": "already_processed"}
    course = db.get_course(purchase["course_id"])
    if not course:
        raise LookupError(f"Course {purchase['course_id']} no longer exists")

    try:
        subscription = stripe.Subscription.create(
            customer=_field(intent, "customer") or purchase["stripe_customer_id"],
            items=[_course_price_item(course)],
            default_payment_method=_field(intent, "payment_method"),
            trial_period_days=TRIAL_DAYS,
            metadata={"user_id": purchase["user_id"], "course_id": purchase["course_id"]},
        )
    except stripe.StripeError as exc:
        logger.error("Could not start trial subscription for purchase %s", purchase["id"], exc_info=True)
        raise BillingError(f"Payment provider error: {exc}", status_code=502) from exc

    trial_end = _from_epoch(_field(subscription, "trial_end"))
    db.update_purchase(
        purchase["id"],
        status="trialing",
        stripe_subscription_id=subscription["id"],
        has_used_trial=True,
        trial_end=trial_end,
    )
    logger.info("Purchase %s trialing on subscription %s", purchase["id"], subscription["id"])
    return {"status": "processed", "purchase_id": purchase["id"], "subscription_id": subscription["id"]}


def _sync_platform_subscription(subscription_id: str, status: str, subscription: Mapping[str, Any]) -> None:
    record = db.get_platform_subscription_by_stripe_id(subscription_id)
    if not record:
        return
    db.upsert_platform_subscription(
        record["user_id"],
        status=status,
        stripe_customer_id=record.get("stripe_customer_id"),
        stripe_subscription_id=subscription_id,
        current_period_end=_from_epoch(_field(subscription, "current_period_end")) or record.get("current_period_end"),
        trial_end=_from_epoch(_field(subscription, "trial_end")) or record.get("trial_end"),
        subscription_tier=record.get("subscription_tier") or LEARNING_HUB_TIER,
    )


def _handle_subscription_changed(subscription: Mapping[str, Any], deleted: bool) -> Dict[str, Any]:
    stripe_status = "canceled" if deleted else _field(subscription, "status") or ""
    purchase_status = _PURCHASE_STATUS.get(stripe_status, "pending")
    updated = db.update_purchases_by_subscription(subscription["id"], purchase_status)
    _sync_platform_subscription(subscription["id"], stripe_status, subscription)
    logger.info("Subscription %s is %s; %d purchase(s) updated", subscription["id"], stripe_status, updated)
    return {"status": "processed", "subscription_id": subscription["id"], "purchases_updated": updated}


def _handle_payment_failed(invoice: Mapping[str, Any]) -> Dict[str, Any]:
    subscription_id = _field(invoice, "subscription")
    if not subscription_id:
        return {"status": "ignored", "reason": "no_subscription"}
    updated = db.update_purchases_by_subscription(subscription_id, "past_due")
    _sync_platform_subscription(subscription_id, "past_due", {})
    logger.warning("Payment failed for subscription %s", subscription_id)
    return {"status": "processed", "subscription_id": subscription_id, "purchases_updated": updated}


def handle_webhook(payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
    """Verify and apply one Stripe webhook event."""
    secret = get_env_str("STRIPE_WEBHOOK_SECRET")
    if not secret:
        raise BillingError("STRIPE_WEBHOOK_SECRET is not configured", status_code=503)
    _configure()
    try:
        event = stripe.Webhook.construct_event(payload, signature, secret)
    except ValueError as exc:
        raise BillingError("Invalid webhook payload") from exc
    except stripe.SignatureVerificationError as exc:
        raise BillingError("Invalid webhook signature") from exc

    event_type = event["type"]
    obj = event["data"]["object"]
    logger.info("Stripe event %s", event_type)
    if event_type == "setup_intent.succeeded":
        return _handle_setup_intent_succeeded(obj)
    if event_type == "customer.subscription.updated":
        return _handle_subscription_changed(obj, deleted=False)
    if event_type == "customer.subscription.deleted":
        return _handle_subscription_changed(obj, deleted=True)
    if event_type == "invoice.payment_failed":
        return _handle_payment_failed(obj)
    return {"status": "ignored", "type": event_type}

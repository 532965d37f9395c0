import asyncio
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import stripe
from fastapi import HTTPException
from pymongo import ReturnDocument

from quota import PLAN_AI_REQUEST_LIMITS, apply_plan, default_subscription

logger = logging.getLogger(__name__)

CHECKOUT_PLANS = ("monthly", "annual", "lifetime")


class StripeNotConfiguredError(Exception):
    pass


class StripeService:
    """Checkout, session lookup, webhook verification and cancellation."""

    def __init__(self) -> None:
        self.secret_key = os.getenv("STRIPE_SECRET_KEY", "")
        self.webhook_secret = os.getenv("STRIPE_WEBHOOK_SECRET", "")
        self.client_url = (
            os.getenv("CLIENT_URL") or os.getenv("FRONTEND_URL") or "http://localhost:3000"
        ).rstrip("/")
        self.price_ids: Dict[str, str] = {
            "monthly": os.getenv("STRIPE_MONTHLY_PRICE_ID", ""),
            "annual": os.getenv("STRIPE_ANNUAL_PRICE_ID", ""),
            "lifetime": os.getenv("STRIPE_LIFETIME_PRICE_ID", ""),
        }

    @property
    def enabled(self) -> bool:
        return bool(self.secret_key)

    def _require_enabled(self) -> None:
        if not self.enabled:
            raise StripeNotConfiguredError("Payments are not configured")

    def price_id_for(self, plan: str) -> str:
        if plan not in CHECKOUT_PLANS:
            raise ValueError(f"Invalid plan selected: {plan}")
        price_id = self.price_ids.get(plan)
        if not price_id:
            raise StripeNotConfiguredError(f"Stripe price ID for plan '{plan}' is not configured")
        return price_id

    async def ensure_customer(self, user: Dict[str, Any]) -> str:
        self._require_enabled()
        existing = (user.get("subscription") or {}).get("stripe_customer_id")
        if existing:
            return existing
        customer = await asyncio.to_thread(
            stripe.Customer.create,
            api_key=self.secret_key,
            email=user["email"],
            name=user.get("name"),
            metadata={"user_id": user["id"]},
        )
        logger.info("stripe_customer_created user_id=%s customer_id=%s", user["id"], customer.id)
        return customer.id

    async def create_checkout_session(self, user: Dict[str, Any], plan: str, customer_id: str) -> Dict[str, Any]:
        self._require_enabled()
        price_id = self.price_id_for(plan)
        session = await asyncio.to_thread(
            stripe.checkout.Session.create,
            api_key=self.secret_key,
            customer=customer_id,
            payment_method_types=["card"],
            line_items=[{"price": price_id, "quantity": 1}],
            mode="payment" if plan == "lifetime" else "subscription",
            success_url=f"{self.client_url}/payment-success?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{self.client_url}/pricing",
            metadata={"user_id": user["id"], "plan": plan},
        )
        logger.info("stripe_checkout_created user_id=%s plan=%s session_id=%s", user["id"], plan, session.id)
        return {"session_id": session.id, "url": session.url}

    async def retrieve_session(self, session_id: str) -> Any:
        self._require_enabled()
        return await asyncio.to_thread(
            stripe.checkout.Session.retrieve,
            session_id,
            api_key=self.secret_key,
        )

    def construct_event(self, payload: bytes, signature: Optional[str]) -> Any:
        self._require_enabled()
        if not self.webhook_secret:
            raise StripeNotConfiguredError("STRIPE_WEBHOOK_SECRET is not configured")
        return stripe.Webhook.construct_event(payload, signature or "", self.webhook_secret)

    async def cancel_at_period_end(self, subscription_id: str) -> Any:
        self._require_enabled()
        return await asyncio.to_thread(
            stripe.Subscription.modify,
            subscription_id,
            api_key=self.secret_key,
            cancel_at_period_end=True,
        )


def _field(obj: Any, name: str, default: Any = None) -> Any:
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


async def apply_payment_success(
    db,
    session: Any,
    now: Optional[datetime] = None,
    expected_user_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Upgrade the user named in a paid checkout session's metadata.

    Each session id is applied once; a replayed session returns the user
    unchanged so the AI request counter is not reset again.
    """
    metadata = _field(session, "metadata") or {}
    user_id = _field(metadata, "user_id")
    if expected_user_id is not None and user_id != expected_user_id:
        raise HTTPException(status_code=403, detail="Checkout session belongs to another user")
    if _field(session, "payment_status") != "paid":
        raise HTTPException(status_code=400, detail="Payment not completed")
    plan = _field(metadata, "plan")
    if plan not in CHECKOUT_PLANS:
        raise HTTPException(status_code=400, detail="Checkout session has no valid plan")

    session_id = _field(session, "id")
    user = await db.users.find_one({"id": user_id}, {"_id": 0})
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    if session_id in (user.get("processed_checkout_sessions") or []):
        logger.info("payment_already_applied user_id=%s session_id=%s", user_id, session_id)
        return user

    subscription = apply_plan(user.get("subscription") or default_subscription(now), plan, now)
    subscription["subscription_status"] = "active"
    if plan != "lifetime":
        subscription["stripe_subscription_id"] = _field(session, "subscription")
    updated = await db.users.find_one_and_update(
        {"id": user_id, "processed_checkout_sessions": {"$ne": session_id}},
        {
            "$set": {"subscription": subscription, "access_level": "premium"},
            "$push": {"processed_checkout_sessions": session_id},
        },
        projection={"_id": 0},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        # A concurrent request applied this session first.
        logger.info("payment_already_applied user_id=%s session_id=%s", user_id, session_id)
        return await db.users.find_one({"id": user_id}, {"_id": 0}) or user
    logger.info("payment_applied user_id=%s plan=%s session_id=%s", user_id, plan, session_id)
    return updated


async def handle_subscription_updated(db, subscription: Any) -> bool:
    status = _field(subscription, "status")
    update: Dict[str, Any] = {"subscription.subscription_status": status}
    if status == "active":
        update["access_level"] = "premium"
    elif status in ("canceled", "past_due"):
        update["access_level"] = "basic"
    result = await db.users.update_one(
        {"subscription.stripe_subscription_id": _field(subscription, "id")},
        {"$set": update},
    )
    return result.matched_count > 0


async def handle_subscription_deleted(db, subscription: Any) -> bool:
    user = await db.users.find_one_and_update(
        {"subscription.stripe_subscription_id": _field(subscription, "id")},
        {
            "$set": {
                "subscription.plan": "free",
                "subscription.subscription_status": "canceled",
                "subscription.ai_requests_limit": PLAN_AI_REQUEST_LIMITS["free"],
                "access_level": "basic",
            }
        },
        projection={"_id": 0, "id": 1, "email": 1},
    )
    if not user:
        return False
    await db.allowed_emails.update_one(
        {"email": user["email"]},
        {"$set": {"access_level": "basic", "updated_at": datetime.now(timezone.utc).isoformat()}},
    )
    logger.info("subscription_canceled user_id=%s", user["id"])
    return True


async def handle_payment_failed(db, invoice: Any) -> bool:
    result = await db.users.update_one(
        {"subscription.stripe_customer_id": _field(invoice, "customer")},
        {"$set": {"subscription.subscription_status": "past_due", "access_level": "basic"}},
    )
    return result.matched_count > 0


WEBHOOK_HANDLERS = {
    "customer.subscription.updated": handle_subscription_updated,
    "customer.subscription.deleted": handle_subscription_deleted,
    "invoice.payment_failed": handle_payment_failed,
}


async def dispatch_webhook_event(db, event: Any) -> bool:
    event_type = _field(event, "type")
    handler = WEBHOOK_HANDLERS.get(event_type)
    if handler is None:
        logger.info("stripe_webhook_unhandled type=%s", event_type)
        return False
    data = _field(event, "data") or {}
    matched = await handler(db, _field(data, "object"))
    logger.info("stripe_webhook_handled type=%s matched=%s", event_type, matched)
    return matched

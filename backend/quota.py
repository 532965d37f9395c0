import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from fastapi import HTTPException
from pymongo import ReturnDocument

logger = logging.getLogger(__name__)

UNLIMITED = -1
PLAN_AI_REQUEST_LIMITS: Dict[str, int] = {
    "free": 10,
    "monthly": 50,
    "annual": 600,
    "lifetime": UNLIMITED,
}
PAID_PLANS = ("monthly", "annual", "lifetime")
SUBSCRIPTION_STATUSES = ("active", "canceled", "past_due", "incomplete")


def plan_limit(plan: str) -> int:
    if plan not in PLAN_AI_REQUEST_LIMITS:
        raise HTTPException(status_code=400, detail=f"Invalid subscription plan: {plan}")
    return PLAN_AI_REQUEST_LIMITS[plan]


def default_subscription(now: Optional[datetime] = None) -> Dict[str, Any]:
    return {
        "plan": "free",
        "ai_requests_used": 0,
        "ai_requests_limit": PLAN_AI_REQUEST_LIMITS["free"],
        "reset_date": (now or datetime.now(timezone.utc)).isoformat(),
        "stripe_customer_id": None,
        "stripe_subscription_id": None,
        "subscription_status": "active",
    }


def _parse_reset_date(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            return None
    return None


def needs_monthly_reset(subscription: Dict[str, Any], now: datetime) -> bool:
    reset_date = _parse_reset_date(subscription.get("reset_date"))
    if reset_date is None:
        return True
    return (reset_date.year, reset_date.month) != (now.year, now.month)


def has_quota(subscription: Dict[str, Any]) -> bool:
    limit = int(subscription.get("ai_requests_limit", PLAN_AI_REQUEST_LIMITS["free"]))
    if limit == UNLIMITED:
        return True
    return int(subscription.get("ai_requests_used", 0)) < limit


def remaining_requests(subscription: Dict[str, Any]) -> Union[int, str]:
    limit = int(subscription.get("ai_requests_limit", PLAN_AI_REQUEST_LIMITS["free"]))
    if limit == UNLIMITED:
        return "unlimited"
    return max(0, limit - int(subscription.get("ai_requests_used", 0)))


def apply_plan(subscription: Dict[str, Any], plan: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    updated = dict(subscription)
    updated["plan"] = plan
    updated["ai_requests_limit"] = plan_limit(plan)
    updated["ai_requests_used"] = 0
    updated["reset_date"] = (now or datetime.now(timezone.utc)).isoformat()
    return updated


def quota_exceeded_error(subscription: Optional[Dict[str, Any]] = None) -> HTTPException:
    plan = (subscription or {}).get("plan", "free")
    if plan == "free":
        message = "AI request limit reached. Please upgrade your plan or wait for the monthly reset."
    else:
        message = f"{plan.capitalize()} plan AI request limit reached. Please wait for the monthly reset."
    return HTTPException(
        status_code=403,
        detail={"message": message, "requiresSubscription": True},
    )


async def reset_quota_if_due(db, user: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
    """Zero the monthly counter once per calendar month.

    The filter pins the previously seen ``reset_date`` so only one of several
    concurrent requests performs the reset.
    """
    now = now or datetime.now(timezone.utc)
    subscription = user.get("subscription") or default_subscription(now)
    if not needs_monthly_reset(subscription, now):
        return user

    plan = subscription.get("plan", "free")
    new_fields = {
        "subscription.ai_requests_used": 0,
        "subscription.reset_date": now.isoformat(),
        "subscription.ai_requests_limit": PLAN_AI_REQUEST_LIMITS.get(plan, PLAN_AI_REQUEST_LIMITS["free"]),
    }
    updated = await db.users.find_one_and_update(
        {"id": user["id"], "subscription.reset_date": subscription.get("reset_date")},
        {"$set": new_fields},
        projection={"_id": 0},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        # Another request already reset this month.
        updated = await db.users.find_one({"id": user["id"]}, {"_id": 0})
    else:
        logger.info("ai_quota_reset user_id=%s plan=%s", user["id"], plan)
    return updated or user


async def reserve_ai_request(db, user_id: str) -> Dict[str, Any]:
    """Atomically consume one AI request if the ceiling allows it."""
    updated = await db.users.find_one_and_update(
        {
            "id": user_id,
            "$or": [
                {"subscription.ai_requests_limit": UNLIMITED},
                {"$expr": {"$lt": ["$subscription.ai_requests_used", "$subscription.ai_requests_limit"]}},
            ],
        },
        {"$inc": {"subscription.ai_requests_used": 1}},
        projection={"_id": 0},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        current = await db.users.find_one({"id": user_id}, {"_id": 0, "subscription": 1})
        subscription = (current or {}).get("subscription")
        logger.info("ai_quota_exceeded user_id=%s subscription=%s", user_id, subscription)
        raise quota_exceeded_error(subscription)
    return updated


async def release_ai_request(db, user_id: str) -> None:
    await db.users.update_one(
        {"id": user_id, "subscription.ai_requests_used": {"$gt": 0}},
        {"$inc": {"subscription.ai_requests_used": -1}},
    )

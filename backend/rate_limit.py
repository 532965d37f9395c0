import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import HTTPException
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

logger = logging.getLogger(__name__)

RATE_LIMIT_TTL_SECONDS = 60 * 60 * 24


@dataclass(frozen=True)
class RateLimitRule:
    name: str
    limit: int
    window_seconds: int
    message: str = "Too many requests. Please try again later."


@dataclass(frozen=True)
class RateLimitResult:
    key: str
    limit: int
    hits: int
    reset_at: datetime
    retry_after_seconds: int
    started_at: Optional[datetime] = None

    @property
    def allowed(self) -> bool:
        return self.hits <= self.limit

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.hits)


def window_start(now: datetime, window_seconds: int) -> datetime:
    epoch_seconds = int(now.timestamp())
    aligned = epoch_seconds - (epoch_seconds % window_seconds)
    return datetime.fromtimestamp(aligned, tz=timezone.utc)


def rate_limit_headers(result: RateLimitResult) -> dict:
    return {
        "RateLimit-Limit": str(result.limit),
        "RateLimit-Remaining": str(result.remaining),
        "RateLimit-Reset": result.reset_at.isoformat(),
    }


class MongoRateLimiter:
    """Fixed-window hit counter stored in the ``rate_limits`` collection.

    One document exists per ``(key, window start)``. Documents are never
    deleted here; the TTL index on ``timestamp`` reaps them after a day.
    """

    def __init__(self, db) -> None:
        self.db = db

    async def hit(self, identity: str, rule: RateLimitRule, now: Optional[datetime] = None) -> RateLimitResult:
        now = now or datetime.now(timezone.utc)
        key = f"{rule.name}:{identity}"
        started_at = window_start(now, rule.window_seconds)
        doc = None
        for _ in range(2):
            try:
                doc = await self.db.rate_limits.find_one_and_update(
                    {"key": key, "timestamp": started_at},
                    {"$inc": {"hits": 1}},
                    upsert=True,
                    return_document=ReturnDocument.AFTER,
                )
                break
            except DuplicateKeyError:
                # Two first hits raced on the upsert; the loser retries as an increment.
                continue
        if doc is None:
            raise RuntimeError(f"Rate limit counter could not be updated for key={key}")

        reset_at = started_at + timedelta(seconds=rule.window_seconds)
        retry_after = max(1, math.ceil((reset_at - now).total_seconds()))
        return RateLimitResult(
            key=key,
            limit=rule.limit,
            hits=int(doc.get("hits", 1)),
            reset_at=reset_at,
            retry_after_seconds=retry_after,
            started_at=started_at,
        )

    async def check(self, identity: str, rule: RateLimitRule, now: Optional[datetime] = None) -> Optional[RateLimitResult]:
        try:
            result = await self.hit(identity, rule, now=now)
        except (PyMongoError, RuntimeError) as exc:
            # Storage failures do not block traffic.
            logger.warning("rate_limit_store_error rule=%s identity=%s error=%s", rule.name, identity, exc)
            return None

        if not result.allowed:
            logger.warning(
                "rate_limit_exceeded rule=%s identity=%s hits=%s limit=%s retry_after=%s",
                rule.name,
                identity,
                result.hits,
                result.limit,
                result.retry_after_seconds,
            )
            headers = rate_limit_headers(result)
            headers["Retry-After"] = str(result.retry_after_seconds)
            raise HTTPException(
                status_code=429,
                detail={"message": rule.message, "retryAfter": result.retry_after_seconds},
                headers=headers,
            )
        return result

    async def refund(self, result: Optional[RateLimitResult]) -> None:
        """Give back a hit that should not count, e.g. a successful login."""
        if result is None or result.started_at is None:
            return
        try:
            await self.db.rate_limits.update_one(
                {"key": result.key, "timestamp": result.started_at, "hits": {"$gt": 0}},
                {"$inc": {"hits": -1}},
            )
        except PyMongoError as exc:
            logger.warning("rate_limit_refund_error key=%s error=%s", result.key, exc)


async def ensure_rate_limit_indexes(db) -> None:
    await db.rate_limits.create_index([("key", 1), ("timestamp", 1)], unique=True)
    await db.rate_limits.create_index("timestamp", expireAfterSeconds=RATE_LIMIT_TTL_SECONDS)


def ai_generation_rule(plan: str, free_limit: int = 10, paid_limit: int = 50, window_seconds: int = 60 * 60) -> RateLimitRule:
    limit = free_limit if plan == "free" else paid_limit
    return RateLimitRule(
        name="ai_generation",
        limit=limit,
        window_seconds=window_seconds,
        message="AI generation limit reached. Please wait before generating more worksheets.",
    )

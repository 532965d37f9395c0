import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from fastapi import HTTPException
from pydantic import BaseModel, Field
from pymongo.errors import PyMongoError

from access_control import is_email_allowed
from openai_helper import WorksheetClient, WorksheetGenerationError, normalize_problems
from quota import release_ai_request, remaining_requests, reserve_ai_request, reset_quota_if_due
from rate_limit import MongoRateLimiter, RateLimitRule, ai_generation_rule

logger = logging.getLogger(__name__)

GRADES = ("K", "1", "2", "3", "4", "5", "6", "7", "8", "9", "10", "11", "12", "College", "Adult")
DIFFICULTIES = ("easy", "medium", "hard")


class GenerationStatus(str, Enum):
    PENDING = "pending"
    DENIED = "denied"
    THROTTLED = "throttled"
    QUOTA_EXCEEDED = "quota_exceeded"
    FORWARDED = "forwarded"
    COMPLETED = "completed"
    PROVIDER_ERROR = "provider_error"


class WorksheetGenerateRequest(BaseModel):
    subject: str = "Math"
    grade: Optional[str] = None
    problem_count: int = Field(default=10, ge=1, le=50)
    topics: Optional[List[str]] = None
    difficulty: str = "medium"
    natural_language_request: Optional[str] = None
    title: Optional[str] = None


class WorksheetFromPreviewRequest(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    subject: str = "Math"
    grade: str
    topics: Optional[List[str]] = None
    difficulty: str = "medium"
    problems: List[Dict[str, Any]]
    natural_language_request: Optional[str] = None
    ai_model: Optional[str] = None


def _log_transition(status: GenerationStatus, user_id: str, **fields: Any) -> None:
    extra = " ".join(f"{key}={value}" for key, value in fields.items())
    level = logging.INFO if status in (GenerationStatus.PENDING, GenerationStatus.FORWARDED, GenerationStatus.COMPLETED) else logging.WARNING
    logger.log(level, "worksheet_generation status=%s user_id=%s %s", status.value, user_id, extra)


def resolve_grade(request_grade: Optional[str], user: Dict[str, Any], kid_profile: Optional[Dict[str, Any]] = None) -> str:
    grade = request_grade or (kid_profile or {}).get("grade") or user.get("grade") or "3"
    if grade not in GRADES:
        raise HTTPException(status_code=400, detail=f"Invalid grade: {grade}")
    return grade


def default_title(subject: str, grade: str, natural_language_request: Optional[str] = None) -> str:
    if natural_language_request:
        return f"Custom {subject} Worksheet"
    grade_label = grade if grade in ("K", "College", "Adult") else f"Grade {grade}"
    return f"{subject} Worksheet - {grade_label}"


def worksheet_topics(topics: Optional[List[str]], problems: List[Dict[str, Any]]) -> List[str]:
    if topics:
        return [t for t in topics if t]
    seen: List[str] = []
    for problem in problems:
        topic = problem.get("topic")
        if topic and topic not in seen:
            seen.append(topic)
    return seen


def build_worksheet_doc(
    user: Dict[str, Any],
    problems: List[Dict[str, Any]],
    subject: str,
    grade: str,
    topics: Optional[List[str]],
    difficulty: str,
    title: Optional[str],
    natural_language_request: Optional[str],
    ai_model: Optional[str],
    now: datetime,
    description: Optional[str] = None,
) -> Dict[str, Any]:
    return {
        "id": str(uuid.uuid4()),
        "user_id": user["id"],
        "kid_profile_id": user.get("active_kid_profile"),
        "title": title or default_title(subject, grade, natural_language_request),
        "description": description or f"{len(problems)} {difficulty} {subject.lower()} problems",
        "grade": grade,
        "subject": subject,
        "topics": worksheet_topics(topics, problems),
        "problems": problems,
        "generation_type": "natural-language" if natural_language_request else "standard",
        "natural_language_request": natural_language_request,
        "ai_model": ai_model,
        "difficulty": difficulty,
        "status": "in-progress",
        "score": None,
        "completed_at": None,
        "time_spent": 0,
        "attempts": 0,
        "created_at": now.isoformat(),
    }


async def _pass_gates(
    db,
    user: Dict[str, Any],
    limiter: MongoRateLimiter,
    rule: Optional[RateLimitRule],
    now: datetime,
) -> Dict[str, Any]:
    """Allow-list, rate limit, then quota reservation. Returns the user after reservation."""
    user_id = user["id"]
    _log_transition(GenerationStatus.PENDING, user_id)

    entry = await is_email_allowed(db, user.get("email", ""))
    if entry is None or user.get("is_active") is False:
        _log_transition(GenerationStatus.DENIED, user_id, email=user.get("email"))
        raise HTTPException(status_code=403, detail="Access denied. Your email is not on the allowed list.")

    plan = (user.get("subscription") or {}).get("plan", "free")
    try:
        await limiter.check(user_id, rule or ai_generation_rule(plan), now=now)
    except HTTPException:
        _log_transition(GenerationStatus.THROTTLED, user_id, plan=plan)
        raise

    refreshed = await reset_quota_if_due(db, user, now)
    try:
        reserved = await reserve_ai_request(db, user_id)
    except HTTPException:
        _log_transition(GenerationStatus.QUOTA_EXCEEDED, user_id, plan=(refreshed.get("subscription") or {}).get("plan"))
        raise
    return reserved


async def _call_provider(db, user_id: str, client: WorksheetClient, request: WorksheetGenerateRequest, grade: str) -> List[Dict[str, Any]]:
    _log_transition(GenerationStatus.FORWARDED, user_id, model=client.model, grade=grade)
    try:
        return await client.generate_problems(
            subject=request.subject,
            grade=grade,
            count=request.problem_count,
            topics=request.topics,
            difficulty=request.difficulty,
            custom_request=request.natural_language_request,
        )
    except WorksheetGenerationError as exc:
        await release_ai_request(db, user_id)
        _log_transition(GenerationStatus.PROVIDER_ERROR, user_id, error=exc)
        raise HTTPException(status_code=502, detail=str(exc)) from exc


async def generate_worksheet(
    db,
    user: Dict[str, Any],
    request: WorksheetGenerateRequest,
    limiter: MongoRateLimiter,
    client: WorksheetClient,
    now: Optional[datetime] = None,
    rule: Optional[RateLimitRule] = None,
    kid_profile: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Run every gate, call the provider once and persist the worksheet.

    A provider failure refunds the reserved AI request and surfaces as 502.
    """
    now = now or datetime.now(timezone.utc)
    if request.difficulty not in DIFFICULTIES:
        raise HTTPException(status_code=400, detail=f"Invalid difficulty: {request.difficulty}")
    grade = resolve_grade(request.grade, user, kid_profile)

    reserved = await _pass_gates(db, user, limiter, rule, now)
    problems = await _call_provider(db, user["id"], client, request, grade)

    worksheet = build_worksheet_doc(
        reserved,
        problems,
        subject=request.subject,
        grade=grade,
        topics=request.topics,
        difficulty=request.difficulty,
        title=request.title,
        natural_language_request=request.natural_language_request,
        ai_model=client.model,
        now=now,
    )
    try:
        await db.worksheets.insert_one(dict(worksheet))
    except PyMongoError:
        await release_ai_request(db, user["id"])
        logger.exception("worksheet_save_failed user_id=%s worksheet_id=%s", user["id"], worksheet["id"])
        raise

    _log_transition(GenerationStatus.COMPLETED, user["id"], worksheet_id=worksheet["id"], problems=len(problems))
    return {
        "status": GenerationStatus.COMPLETED,
        "worksheet": worksheet,
        "ai_requests_remaining": remaining_requests(reserved.get("subscription") or {}),
    }


async def generate_preview(
    db,
    user: Dict[str, Any],
    request: WorksheetGenerateRequest,
    limiter: MongoRateLimiter,
    client: WorksheetClient,
    now: Optional[datetime] = None,
    rule: Optional[RateLimitRule] = None,
    kid_profile: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    if request.difficulty not in DIFFICULTIES:
        raise HTTPException(status_code=400, detail=f"Invalid difficulty: {request.difficulty}")
    grade = resolve_grade(request.grade, user, kid_profile)

    reserved = await _pass_gates(db, user, limiter, rule, now)
    problems = await _call_provider(db, user["id"], client, request, grade)
    _log_transition(GenerationStatus.COMPLETED, user["id"], preview=True, problems=len(problems))
    return {
        "status": GenerationStatus.COMPLETED,
        "preview": {
            "title": request.title or default_title(request.subject, grade, request.natural_language_request),
            "subject": request.subject,
            "grade": grade,
            "topics": worksheet_topics(request.topics, problems),
            "difficulty": request.difficulty,
            "natural_language_request": request.natural_language_request,
            "ai_model": client.model,
            "problems": problems,
        },
        "ai_requests_remaining": remaining_requests(reserved.get("subscription") or {}),
    }


async def create_from_preview(
    db,
    user: Dict[str, Any],
    payload: WorksheetFromPreviewRequest,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Persist an edited preview. The AI request was already counted by the preview."""
    now = now or datetime.now(timezone.utc)
    if payload.grade not in GRADES:
        raise HTTPException(status_code=400, detail=f"Invalid grade: {payload.grade}")
    problems = normalize_problems(payload.problems, payload.subject, payload.topics, payload.difficulty)
    if not problems:
        raise HTTPException(status_code=400, detail="Worksheet must contain at least one valid problem")

    worksheet = build_worksheet_doc(
        user,
        problems,
        subject=payload.subject,
        grade=payload.grade,
        topics=payload.topics,
        difficulty=payload.difficulty,
        title=payload.title,
        natural_language_request=payload.natural_language_request,
        ai_model=payload.ai_model,
        now=now,
        description=payload.description,
    )
    await db.worksheets.insert_one(dict(worksheet))
    logger.info("worksheet_created_from_preview user_id=%s worksheet_id=%s problems=%s", user["id"], worksheet["id"], len(problems))
    return worksheet

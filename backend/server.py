from fastapi import FastAPI, APIRouter, HTTPException, Depends, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, RedirectResponse
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from dotenv import load_dotenv
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError
from pathlib import Path
from pydantic import BaseModel, Field, EmailStr
from typing import List, Optional, Dict, Any
from urllib.parse import urlencode
from datetime import datetime, timezone, timedelta
import os
import logging
import re
import uuid
import time
import httpx
import jwt
import stripe

from access_control import (
    add_allowed_domain,
    add_allowed_emails,
    deactivate_allowed_email,
    ensure_admin_emails,
    ensure_allowed_email_indexes,
    is_email_allowed,
    list_allowed_emails,
    normalize_email,
    track_login,
    validate_access_level,
)
from analytics_service import (
    LEADERBOARD_PERIODS,
    get_kid_profile_stats,
    get_leaderboard,
    get_learning_curve,
    get_platform_detailed_analytics,
    get_progress_over_time,
    get_user_analytics,
)
from env_check import validate_env
from generation_gate import (
    GRADES,
    WorksheetFromPreviewRequest,
    WorksheetGenerateRequest,
    create_from_preview,
    generate_preview,
    generate_worksheet,
)
from openai_helper import (
    DEFAULT_BASE_URL,
    DEFAULT_MODEL,
    WorksheetGenerationError,
    build_worksheet_client,
)
from quota import PLAN_AI_REQUEST_LIMITS, default_subscription, plan_limit, remaining_requests
from rate_limit import MongoRateLimiter, RateLimitRule, ai_generation_rule, ensure_rate_limit_indexes
from stripe_service import (
    StripeNotConfiguredError,
    StripeService,
    apply_payment_success,
    dispatch_webhook_event,
)
from worksheet_grading import apply_submission, empty_stats, update_stats

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / ".env")

mongo_url = os.environ.get("MONGO_URL") or os.environ.get("MONGODB_URI") or "mongodb://localhost:27017"
client = AsyncIOMotorClient(mongo_url)
db = client[os.environ.get("DB_NAME", "brainybees")]

JWT_SECRET = os.environ.get("JWT_SECRET", "")
JWT_EXPIRE_DAYS = int(os.environ.get("JWT_EXPIRE_DAYS", "30"))
GOOGLE_CLIENT_ID = os.environ.get("GOOGLE_CLIENT_ID", "")
GOOGLE_CLIENT_SECRET = os.environ.get("GOOGLE_CLIENT_SECRET", "")
GOOGLE_CALLBACK_URL = os.environ.get(
    "GOOGLE_CALLBACK_URL", "http://localhost:5000/api/auth/google/callback"
)
GOOGLE_TIMEOUT_SECONDS = float(os.environ.get("GOOGLE_TIMEOUT_SECONDS", "10"))
CLIENT_URL = (os.environ.get("CLIENT_URL") or os.environ.get("FRONTEND_URL") or "http://localhost:3000").rstrip("/")
LLM_API_KEY = os.environ.get("OPENROUTER_API_KEY") or os.environ.get("OPENAI_API_KEY")
LLM_BASE_URL = os.environ.get("LLM_BASE_URL", DEFAULT_BASE_URL)
LLM_MODEL = os.environ.get("LLM_MODEL", DEFAULT_MODEL)
LLM_TIMEOUT_SECONDS = float(os.environ.get("LLM_TIMEOUT_SECONDS", "60"))
ADMIN_SETUP_SECRET = os.environ.get("ADMIN_SETUP_SECRET", "")
ADMIN_EMAILS = [
    e.strip()
    for e in os.environ.get("ADMIN_EMAILS", "").split(",")
    if e.strip()
]
GENERAL_PER_15MIN_LIMIT = int(os.environ.get("GENERAL_PER_15MIN_LIMIT", "100"))
AUTH_PER_15MIN_LIMIT = int(os.environ.get("AUTH_PER_15MIN_LIMIT", "5"))
AI_FREE_PER_HOUR_LIMIT = int(os.environ.get("AI_FREE_PER_HOUR_LIMIT", "10"))
AI_PAID_PER_HOUR_LIMIT = int(os.environ.get("AI_PAID_PER_HOUR_LIMIT", "50"))
SUBMIT_PER_5MIN_LIMIT = int(os.environ.get("SUBMIT_PER_5MIN_LIMIT", "30"))
MAX_KID_PROFILES = 4

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v3/userinfo"

GENERAL_RULE = RateLimitRule(
    name="general",
    limit=GENERAL_PER_15MIN_LIMIT,
    window_seconds=15 * 60,
    message="Too many requests from this IP, please try again later.",
)
AUTH_RULE = RateLimitRule(
    name="auth",
    limit=AUTH_PER_15MIN_LIMIT,
    window_seconds=15 * 60,
    message="Too many authentication attempts, please try again later.",
)
SUBMIT_RULE = RateLimitRule(
    name="worksheet_submit",
    limit=SUBMIT_PER_5MIN_LIMIT,
    window_seconds=5 * 60,
    message="Too many worksheet submissions, please slow down.",
)
RATE_LIMIT_EXEMPT_PATHS = {"/api/health", "/api/payments/webhook"}
USER_ROLES = {"student", "teacher", "parent", "admin"}
WORKSHEET_STATUSES = {"draft", "in-progress", "completed", "archived"}
WORKSHEET_SORT_FIELDS = {"created_at", "completed_at", "score", "title"}

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

security = HTTPBearer()
rate_limiter = MongoRateLimiter(db)
stripe_service = StripeService()

app = FastAPI(title="BrainyBees API")


class ProfileUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    grade: Optional[str] = None
    role: Optional[str] = None
    avatar: Optional[str] = None
    preferences: Optional[Dict[str, Any]] = None


class AllowedEmailsRequest(BaseModel):
    emails: List[str] = Field(default_factory=list)
    domain: Optional[str] = None
    access_level: str = "basic"
    notes: Optional[str] = Field(default=None, max_length=500)


class SubscriptionUpdateRequest(BaseModel):
    plan: str
    ai_requests_limit: Optional[int] = Field(default=None, ge=-1)


class UserAccessRequest(BaseModel):
    is_active: bool


class InitializeAdminRequest(BaseModel):
    secret: str
    email: Optional[EmailStr] = None
    emails: Optional[List[EmailStr]] = None


class AnswerItem(BaseModel):
    user_answer: Any = None
    time_spent: int = Field(default=0, ge=0)


class WorksheetSubmitRequest(BaseModel):
    answers: List[AnswerItem]
    time_spent: int = Field(default=0, ge=0)


class KidProfileCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=50)
    grade: str
    avatar: Optional[str] = None
    preferences: Optional[Dict[str, Any]] = None


class KidProfileBulkRequest(BaseModel):
    profiles: List[KidProfileCreateRequest]


class KidProfileUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=50)
    grade: Optional[str] = None
    avatar: Optional[str] = None
    preferences: Optional[Dict[str, Any]] = None


class ModelConfig(BaseModel):
    temperature: float = Field(default=0.7, ge=0, le=2)
    max_tokens: int = Field(default=2000, ge=1, le=32000)
    top_p: float = Field(default=1.0, ge=0, le=1)


class LLMSettingsUpdateRequest(BaseModel):
    provider: Optional[str] = None
    base_url: Optional[str] = None
    selected_model: Optional[str] = None
    model_config_: Optional[ModelConfig] = Field(default=None, alias="model_config")

    model_config = {"populate_by_name": True, "protected_namespaces": ()}


class CheckoutRequest(BaseModel):
    plan: str


class PaymentSuccessRequest(BaseModel):
    session_id: str = Field(min_length=1)


def extract_request_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for", "").strip()
    if forwarded:
        return forwarded.split(",")[0].strip() or "unknown"
    return request.client.host if request.client else "unknown"


async def general_rate_limit(request: Request) -> None:
    if request.url.path in RATE_LIMIT_EXEMPT_PATHS:
        return
    await rate_limiter.check(extract_request_ip(request), GENERAL_RULE)


api_router = APIRouter(prefix="/api", dependencies=[Depends(general_rate_limit)])


def create_token(user_id: str, email: str, token_type: str = "access", expires_delta: Optional[timedelta] = None) -> str:
    expires_at = datetime.now(timezone.utc) + (expires_delta or timedelta(days=JWT_EXPIRE_DAYS))
    payload = {
        "user_id": user_id,
        "email": email,
        "type": token_type,
        "jti": str(uuid.uuid4()),
        "exp": expires_at,
    }
    return jwt.encode(payload, JWT_SECRET, algorithm="HS256")


def decode_token(token: str, expected_type: str = "access") -> Dict[str, Any]:
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")

    if payload.get("type") != expected_type:
        raise HTTPException(status_code=401, detail=f"Invalid token type: expected {expected_type}")
    if not payload.get("user_id"):
        raise HTTPException(status_code=401, detail="Malformed token")
    return payload


async def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)) -> Dict[str, Any]:
    payload = decode_token(credentials.credentials, "access")
    user = await db.users.find_one({"id": payload["user_id"]}, {"_id": 0})
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    if user.get("is_active") is False:
        raise HTTPException(status_code=403, detail="Access denied")
    return user


async def require_admin(current_user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
    if current_user.get("access_level") != "admin":
        raise HTTPException(status_code=403, detail="Admin access required")
    return current_user


def public_user(user: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": user["id"],
        "email": user["email"],
        "name": user.get("name"),
        "avatar": user.get("avatar"),
        "role": user.get("role"),
        "grade": user.get("grade"),
        "access_level": user.get("access_level"),
        "is_active": user.get("is_active", True),
        "active_kid_profile": user.get("active_kid_profile"),
        "has_setup_kid_profiles": user.get("has_setup_kid_profiles", False),
        "preferences": user.get("preferences") or {},
        "stats": user.get("stats") or empty_stats(),
        "subscription": user.get("subscription") or default_subscription(),
    }


def validate_grade(grade: Optional[str]) -> Optional[str]:
    if grade is not None and grade not in GRADES:
        raise HTTPException(status_code=400, detail=f"Invalid grade: {grade}")
    return grade


def build_user_doc(profile: Dict[str, Any], entry: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    return {
        "id": str(uuid.uuid4()),
        "google_id": profile["sub"],
        "email": normalize_email(profile["email"]),
        "name": profile.get("name") or profile["email"].split("@")[0],
        "avatar": profile.get("picture"),
        "access_level": entry.get("access_level") or "basic",
        "is_active": True,
        "role": "parent",
        "grade": "5",
        "active_kid_profile": None,
        "has_setup_kid_profiles": False,
        "preferences": {},
        "stats": empty_stats(),
        "subscription": default_subscription(now),
        "last_login": now.isoformat(),
        "created_at": now.isoformat(),
    }


async def exchange_google_code(code: str) -> Dict[str, Any]:
    async with httpx.AsyncClient(timeout=GOOGLE_TIMEOUT_SECONDS) as http:
        token_response = await http.post(
            GOOGLE_TOKEN_URL,
            data={
                "code": code,
                "client_id": GOOGLE_CLIENT_ID,
                "client_secret": GOOGLE_CLIENT_SECRET,
                "redirect_uri": GOOGLE_CALLBACK_URL,
                "grant_type": "authorization_code",
            },
        )
        token_response.raise_for_status()
        access_token = token_response.json().get("access_token")
        if not access_token:
            raise HTTPException(status_code=401, detail="Google did not return an access token")
        profile_response = await http.get(
            GOOGLE_USERINFO_URL,
            headers={"Authorization": f"Bearer {access_token}"},
        )
        profile_response.raise_for_status()
        return profile_response.json()


async def complete_google_login(profile: Dict[str, Any], now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
    """Allow-list the Google identity, then create or refresh its user."""
    now = now or datetime.now(timezone.utc)
    email = normalize_email(profile.get("email", ""))
    if not email or not profile.get("sub") or profile.get("email_verified") is False:
        logger.warning("google_login_rejected reason=unverified email=%s", email)
        return None

    entry = await is_email_allowed(db, email)
    if not entry:
        logger.warning("google_login_denied email=%s", email)
        return None

    existing = await db.users.find_one(
        {"$or": [{"google_id": profile["sub"]}, {"email": email}]},
        {"_id": 0},
    )
    if existing is None:
        user = build_user_doc(profile, entry, now)
        await db.users.insert_one(dict(user))
        logger.info("user_created user_id=%s email=%s", user["id"], email)
    else:
        if existing.get("is_active") is False:
            logger.warning("google_login_denied email=%s reason=disabled", email)
            return None
        user = await db.users.find_one_and_update(
            {"id": existing["id"]},
            {
                "$set": {
                    "google_id": profile["sub"],
                    "name": profile.get("name") or existing.get("name"),
                    "avatar": profile.get("picture") or existing.get("avatar"),
                    "access_level": entry.get("access_level") or existing.get("access_level"),
                    "last_login": now.isoformat(),
                }
            },
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )

    await track_login(db, entry, now)
    return user


async def load_llm_settings() -> Optional[Dict[str, Any]]:
    return await db.llm_settings.find_one({"is_active": True}, {"_id": 0})


async def get_worksheet_client():
    settings = await load_llm_settings()
    try:
        return build_worksheet_client(
            LLM_API_KEY,
            settings,
            default_model=LLM_MODEL,
            default_base_url=LLM_BASE_URL,
            timeout_seconds=LLM_TIMEOUT_SECONDS,
            referer=CLIENT_URL,
        )
    except WorksheetGenerationError as exc:
        raise HTTPException(status_code=503, detail=str(exc))


async def get_active_kid_profile(user: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    profile_id = user.get("active_kid_profile")
    if not profile_id:
        return None
    return await db.kid_profiles.find_one(
        {"id": profile_id, "parent_user_id": user["id"], "is_active": True},
        {"_id": 0},
    )


def user_ai_rule(user: Dict[str, Any]) -> RateLimitRule:
    plan = (user.get("subscription") or {}).get("plan", "free")
    return ai_generation_rule(plan, free_limit=AI_FREE_PER_HOUR_LIMIT, paid_limit=AI_PAID_PER_HOUR_LIMIT)


def require_stripe() -> StripeService:
    if not stripe_service.enabled:
        raise HTTPException(status_code=503, detail="Payments are not configured")
    return stripe_service


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    request_id = str(uuid.uuid4())
    request.state.request_id = request_id
    start = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception as e:
        duration_ms = int((time.perf_counter() - start) * 1000)
        logger.exception(
            "request_id=%s method=%s path=%s status=500 duration_ms=%s error=%s",
            request_id,
            request.method,
            request.url.path,
            duration_ms,
            str(e),
        )
        raise
    duration_ms = int((time.perf_counter() - start) * 1000)
    response.headers["X-Request-ID"] = request_id
    logger.info(
        "request_id=%s method=%s path=%s status=%s duration_ms=%s",
        request_id,
        request.method,
        request.url.path,
        response.status_code,
        duration_ms,
    )
    return response


def error_body(detail: Any) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": False}
    if isinstance(detail, dict):
        body.update(detail)
        body.setdefault("message", "Request failed")
    else:
        body["message"] = str(detail) if detail is not None else "Request failed"
    return body


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    logger.warning(
        "HTTPException request_id=%s path=%s status=%s detail=%s",
        getattr(request.state, "request_id", "-"),
        request.url.path,
        exc.status_code,
        exc.detail,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(exc.detail),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(part) for part in err.get("loc", ())[1:]), "message": err.get("msg")}
        for err in exc.errors()
    ]
    logger.warning("ValidationError path=%s errors=%s", request.url.path, errors)
    return JSONResponse(
        status_code=400,
        content={"success": False, "message": "Validation failed", "errors": errors},
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(_: Request, exc: Exception):
    logger.exception("Unhandled server error: %s", exc)
    return JSONResponse(status_code=500, content={"success": False, "message": "Internal server error"})


@api_router.get("/health")
async def health():
    return {"success": True, "status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}


@api_router.get("/auth/google")
async def google_login(request: Request):
    # Only failed attempts count against the auth limit; the redirect itself always succeeds.
    await rate_limiter.refund(await rate_limiter.check(extract_request_ip(request), AUTH_RULE))
    state = create_token("oauth", "", token_type="oauth_state", expires_delta=timedelta(minutes=10))
    params = {
        "client_id": GOOGLE_CLIENT_ID,
        "redirect_uri": GOOGLE_CALLBACK_URL,
        "response_type": "code",
        "scope": "openid email profile",
        "state": state,
        "prompt": "select_account",
    }
    return RedirectResponse(f"{GOOGLE_AUTH_URL}?{urlencode(params)}")


@api_router.get("/auth/google/callback")
async def google_callback(
    request: Request,
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
):
    attempt = await rate_limiter.check(extract_request_ip(request), AUTH_RULE)
    denied = RedirectResponse(f"{CLIENT_URL}/access-denied")
    if error or not code or not state:
        logger.warning("google_callback_rejected error=%s has_code=%s", error, bool(code))
        return denied
    try:
        decode_token(state, "oauth_state")
    except HTTPException:
        logger.warning("google_callback_rejected reason=invalid_state")
        return denied

    try:
        profile = await exchange_google_code(code)
    except (httpx.HTTPError, HTTPException, ValueError) as exc:
        logger.error("google_code_exchange_failed error=%s", exc)
        return denied

    user = await complete_google_login(profile)
    if user is None:
        return denied
    token = create_token(user["id"], user["email"])
    logger.info("google_login_success user_id=%s", user["id"])
    await rate_limiter.refund(attempt)
    return RedirectResponse(f"{CLIENT_URL}/auth/google/success?{urlencode({'token': token})}")


@api_router.get("/auth/me")
async def get_me(current_user: Dict[str, Any] = Depends(get_current_user)):
    return {"success": True, "user": public_user(current_user)}


@api_router.put("/auth/profile")
async def update_profile(payload: ProfileUpdateRequest, current_user: Dict[str, Any] = Depends(get_current_user)):
    updates = payload.model_dump(exclude_none=True)
    validate_grade(updates.get("grade"))
    if "role" in updates and updates["role"] not in USER_ROLES - {"admin"}:
        raise HTTPException(status_code=400, detail=f"Invalid role: {updates['role']}")
    if not updates:
        return {"success": True, "user": public_user(current_user)}
    user = await db.users.find_one_and_update(
        {"id": current_user["id"]},
        {"$set": updates},
        projection={"_id": 0},
        return_document=ReturnDocument.AFTER,
    )
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return {"success": True, "user": public_user(user)}


@api_router.post("/auth/admin/emails")
async def admin_add_allowed_emails(payload: AllowedEmailsRequest, admin: Dict[str, Any] = Depends(require_admin)):
    access_level = validate_access_level(payload.access_level)
    if not payload.emails and not payload.domain:
        raise HTTPException(status_code=400, detail="Please provide an array of emails or a domain")

    result = await add_allowed_emails(db, payload.emails, access_level, admin["id"], payload.notes)
    domain_entry = None
    if payload.domain:
        domain_entry = await add_allowed_domain(db, payload.domain, access_level, admin["id"], payload.notes)
    return {
        "success": True,
        "message": f"Added {len(result['added'])} emails successfully",
        "added": result["added"],
        "errors": result["errors"],
        "domain": domain_entry,
    }


@api_router.get("/auth/admin/emails")
async def admin_list_allowed_emails(
    search: str = "",
    access_level: Optional[str] = None,
    page: int = 1,
    limit: int = 50,
    _: Dict[str, Any] = Depends(require_admin),
):
    result = await list_allowed_emails(db, search=search, access_level=access_level, page=page, limit=limit)
    return {"success": True, **result}


@api_router.delete("/auth/admin/emails/{entry_id}")
async def admin_remove_allowed_email(entry_id: str, admin: Dict[str, Any] = Depends(require_admin)):
    entry = await deactivate_allowed_email(db, entry_id)
    if not entry:
        raise HTTPException(status_code=404, detail="Allowed email not found")
    logger.info("allowed_email_deactivated entry_id=%s admin_id=%s", entry_id, admin["id"])
    return {"success": True, "message": "Email access removed successfully"}


@api_router.get("/auth/admin/analytics")
async def admin_platform_analytics(_: Dict[str, Any] = Depends(require_admin)):
    total_users = await db.users.count_documents({"is_active": {"$ne": False}})
    total_allowed = await db.allowed_emails.count_documents({"is_active": True})
    total_worksheets = await db.worksheets.count_documents({})
    login_stats = await db.allowed_emails.aggregate(
        [
            {
                "$group": {
                    "_id": None,
                    "total_logins": {"$sum": "$login_count"},
                    "active_emails": {"$sum": {"$cond": [{"$gt": ["$login_count", 0]}, 1, 0]}},
                }
            }
        ]
    ).to_list(1)
    plans = await db.users.aggregate(
        [{"$group": {"_id": "$subscription.plan", "count": {"$sum": 1}}}]
    ).to_list(10)
    recent_users = (
        await db.users.find(
            {"is_active": {"$ne": False}},
            {"_id": 0, "id": 1, "name": 1, "email": 1, "created_at": 1, "last_login": 1, "stats.total_worksheets": 1},
        )
        .sort("created_at", -1)
        .to_list(10)
    )
    stats = login_stats[0] if login_stats else {}
    return {
        "success": True,
        "analytics": {
            "total_users": total_users,
            "total_allowed_emails": total_allowed,
            "total_worksheets": total_worksheets,
            "total_logins": stats.get("total_logins", 0),
            "active_emails": stats.get("active_emails", 0),
            "users_by_plan": {row["_id"] or "free": row["count"] for row in plans},
            "recent_users": recent_users,
        },
    }


@api_router.get("/auth/admin/detailed-analytics")
async def admin_detailed_analytics(_: Dict[str, Any] = Depends(require_admin)):
    return {"success": True, "analytics": await get_platform_detailed_analytics(db)}


@api_router.get("/auth/admin/users")
async def admin_list_users(
    search: str = "",
    page: int = 1,
    limit: int = 20,
    _: Dict[str, Any] = Depends(require_admin),
):
    page = max(1, page)
    limit = max(1, min(100, limit))
    query: Dict[str, Any] = {}
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        query["$or"] = [{"email": pattern}, {"name": pattern}]
    total = await db.users.count_documents(query)
    users = (
        await db.users.find(query, {"_id": 0})
        .sort("created_at", -1)
        .skip((page - 1) * limit)
        .limit(limit)
        .to_list(limit)
    )
    user_ids = [u["id"] for u in users]
    counts = await db.worksheets.aggregate(
        [
            {"$match": {"user_id": {"$in": user_ids}}},
            {"$group": {"_id": "$user_id", "count": {"$sum": 1}}},
        ]
    ).to_list(len(user_ids) or 1)
    count_by_user = {row["_id"]: row["count"] for row in counts}
    return {
        "success": True,
        "users": [
            {**public_user(u), "worksheet_count": count_by_user.get(u["id"], 0), "last_login": u.get("last_login")}
            for u in users
        ],
        "pagination": {"page": page, "limit": limit, "total": total, "pages": (total + limit - 1) // limit},
    }


@api_router.put("/auth/admin/users/{user_id}/subscription")
async def admin_update_subscription(
    user_id: str,
    payload: SubscriptionUpdateRequest,
    admin: Dict[str, Any] = Depends(require_admin),
):
    limit = plan_limit(payload.plan)
    if payload.ai_requests_limit is not None:
        limit = payload.ai_requests_limit
    user = await db.users.find_one_and_update(
        {"id": user_id},
        {"$set": {"subscription.plan": payload.plan, "subscription.ai_requests_limit": limit}},
        projection={"_id": 0, "id": 1, "email": 1, "subscription": 1},
        return_document=ReturnDocument.AFTER,
    )
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    logger.info("subscription_overridden user_id=%s plan=%s limit=%s admin_id=%s", user_id, payload.plan, limit, admin["id"])
    return {"success": True, "message": "User subscription updated successfully", "user": user}


@api_router.put("/auth/admin/users/{user_id}/access")
async def admin_toggle_access(user_id: str, payload: UserAccessRequest, admin: Dict[str, Any] = Depends(require_admin)):
    if user_id == admin["id"] and not payload.is_active:
        raise HTTPException(status_code=400, detail="You cannot disable your own account")
    user = await db.users.find_one_and_update(
        {"id": user_id},
        {"$set": {"is_active": payload.is_active}},
        projection={"_id": 0, "id": 1, "email": 1, "is_active": 1},
        return_document=ReturnDocument.AFTER,
    )
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    state = "enabled" if payload.is_active else "disabled"
    logger.info("user_access_changed user_id=%s state=%s admin_id=%s", user_id, state, admin["id"])
    return {"success": True, "message": f"User {state} successfully", "user": user}


@api_router.post("/auth/initialize-admin")
async def initialize_admin(payload: InitializeAdminRequest, request: Request):
    attempt = await rate_limiter.check(extract_request_ip(request), AUTH_RULE)
    if not ADMIN_SETUP_SECRET or payload.secret != ADMIN_SETUP_SECRET:
        raise HTTPException(status_code=403, detail="Invalid setup secret")
    emails = [str(e) for e in (payload.emails or [])]
    if payload.email:
        emails.append(str(payload.email))
    if not emails:
        emails = list(ADMIN_EMAILS)
    if not emails:
        raise HTTPException(status_code=400, detail="No admin emails provided")
    initialized = await ensure_admin_emails(db, emails)
    logger.info("admin_emails_initialized count=%s", len(initialized))
    await rate_limiter.refund(attempt)
    return {"success": True, "message": "Admin emails initialized successfully", "emails": initialized}


@api_router.post("/worksheets/generate", status_code=201)
async def generate_worksheet_route(
    payload: WorksheetGenerateRequest,
    current_user: Dict[str, Any] = Depends(get_current_user),
):
    worksheet_client = await get_worksheet_client()
    result = await generate_worksheet(
        db,
        current_user,
        payload,
        rate_limiter,
        worksheet_client,
        rule=user_ai_rule(current_user),
        kid_profile=await get_active_kid_profile(current_user),
    )
    return {
        "success": True,
        "worksheet": result["worksheet"],
        "ai_requests_remaining": result["ai_requests_remaining"],
    }


@api_router.post("/worksheets/generate-preview")
async def generate_preview_route(
    payload: WorksheetGenerateRequest,
    current_user: Dict[str, Any] = Depends(get_current_user),
):
    worksheet_client = await get_worksheet_client()
    result = await generate_preview(
        db,
        current_user,
        payload,
        rate_limiter,
        worksheet_client,
        rule=user_ai_rule(current_user),
        kid_profile=await get_active_kid_profile(current_user),
    )
    return {
        "success": True,
        "preview": result["preview"],
        "ai_requests_remaining": result["ai_requests_remaining"],
    }


@api_router.post("/worksheets/create-from-preview", status_code=201)
async def create_from_preview_route(
    payload: WorksheetFromPreviewRequest,
    current_user: Dict[str, Any] = Depends(get_current_user),
):
    worksheet = await create_from_preview(db, current_user, payload)
    return {"success": True, "worksheet": worksheet}


@api_router.get("/worksheets")
async def list_worksheets(
    page: int = 1,
    limit: int = 10,
    grade: Optional[str] = None,
    status: Optional[str] = None,
    sort_by: str = "created_at",
    order: str = "desc",
    current_user: Dict[str, Any] = Depends(get_current_user),
):
    page = max(1, page)
    limit = max(1, min(100, limit))
    query: Dict[str, Any] = {"user_id": current_user["id"]}
    if grade:
        query["grade"] = validate_grade(grade)
    if status:
        if status not in WORKSHEET_STATUSES:
            raise HTTPException(status_code=400, detail="Invalid status filter")
        query["status"] = status
    if sort_by not in WORKSHEET_SORT_FIELDS:
        raise HTTPException(status_code=400, detail="Invalid sort field")
    total = await db.worksheets.count_documents(query)
    worksheets = (
        await db.worksheets.find(query, {"_id": 0, "problems": 0})
        .sort(sort_by, -1 if order == "desc" else 1)
        .skip((page - 1) * limit)
        .limit(limit)
        .to_list(limit)
    )
    return {
        "success": True,
        "worksheets": worksheets,
        "pagination": {"total": total, "page": page, "pages": (total + limit - 1) // limit},
    }


@api_router.get("/worksheets/{worksheet_id}")
async def get_worksheet(worksheet_id: str, current_user: Dict[str, Any] = Depends(get_current_user)):
    worksheet = await db.worksheets.find_one({"id": worksheet_id, "user_id": current_user["id"]}, {"_id": 0})
    if not worksheet:
        raise HTTPException(status_code=404, detail="Worksheet not found")
    return {"success": True, "worksheet": worksheet}


@api_router.post("/worksheets/{worksheet_id}/submit")
async def submit_worksheet(
    worksheet_id: str,
    payload: WorksheetSubmitRequest,
    current_user: Dict[str, Any] = Depends(get_current_user),
):
    await rate_limiter.check(current_user["id"], SUBMIT_RULE)
    worksheet = await db.worksheets.find_one({"id": worksheet_id, "user_id": current_user["id"]}, {"_id": 0})
    if not worksheet:
        raise HTTPException(status_code=404, detail="Worksheet not found")

    now = datetime.now(timezone.utc)
    submitted = apply_submission(worksheet, [a.model_dump() for a in payload.answers], payload.time_spent, now)
    await db.worksheets.update_one(
        {"id": worksheet_id},
        {
            "$set": {
                key: submitted[key]
                for key in ("problems", "score", "time_spent", "completed_at", "status", "attempts")
            }
        },
    )

    problem_count = len(submitted["problems"])
    user_stats = update_stats(current_user.get("stats"), submitted["score"], problem_count, now, payload.time_spent)
    await db.users.update_one({"id": current_user["id"]}, {"$set": {"stats": user_stats}})
    kid_profile_id = worksheet.get("kid_profile_id")
    if kid_profile_id:
        profile = await db.kid_profiles.find_one({"id": kid_profile_id, "parent_user_id": current_user["id"]}, {"_id": 0})
        if profile:
            profile_stats = update_stats(profile.get("stats"), submitted["score"], problem_count, now, payload.time_spent)
            await db.kid_profiles.update_one(
                {"id": kid_profile_id},
                {"$set": {"stats": profile_stats, "last_active_at": now.isoformat()}},
            )
    logger.info(
        "worksheet_submitted user_id=%s worksheet_id=%s score=%s",
        current_user["id"],
        worksheet_id,
        submitted["score"],
    )
    return {"success": True, "score": submitted["score"], "worksheet": submitted}


@api_router.delete("/worksheets/{worksheet_id}")
async def delete_worksheet(worksheet_id: str, current_user: Dict[str, Any] = Depends(get_current_user)):
    result = await db.worksheets.delete_one({"id": worksheet_id, "user_id": current_user["id"]})
    if result.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Worksheet not found")
    return {"success": True, "message": "Worksheet deleted successfully"}


@api_router.get("/analytics/user")
async def analytics_user(kid_profile_id: Optional[str] = None, current_user: Dict[str, Any] = Depends(get_current_user)):
    analytics = await get_user_analytics(db, current_user, kid_profile_id)
    return {"success": True, "analytics": analytics}


@api_router.get("/analytics/progress")
async def analytics_progress(period: int = 30, current_user: Dict[str, Any] = Depends(get_current_user)):
    period = max(1, min(365, period))
    progress = await get_progress_over_time(db, current_user["id"], period)
    return {"success": True, "period": period, "progress": progress}


@api_router.get("/analytics/leaderboard")
async def analytics_leaderboard(period: str = "week", _: Dict[str, Any] = Depends(get_current_user)):
    if period not in LEADERBOARD_PERIODS:
        raise HTTPException(status_code=400, detail="Invalid leaderboard period")
    leaderboard = await get_leaderboard(db, period)
    return {"success": True, "period": period, "leaderboard": leaderboard}


@api_router.get("/analytics/learning-curve")
async def analytics_learning_curve(
    kid_profile_id: Optional[str] = None,
    current_user: Dict[str, Any] = Depends(get_current_user),
):
    curve = await get_learning_curve(db, current_user["id"], kid_profile_id)
    return {"success": True, **curve}


def build_kid_profile_doc(parent_user_id: str, payload: KidProfileCreateRequest, now: datetime) -> Dict[str, Any]:
    validate_grade(payload.grade)
    return {
        "id": str(uuid.uuid4()),
        "parent_user_id": parent_user_id,
        "name": payload.name.strip(),
        "grade": payload.grade,
        "avatar": payload.avatar,
        "preferences": payload.preferences or {},
        "stats": empty_stats(),
        "is_active": True,
        "created_at": now.isoformat(),
        "last_active_at": now.isoformat(),
    }


async def active_kid_profiles(parent_user_id: str) -> List[Dict[str, Any]]:
    return (
        await db.kid_profiles.find({"parent_user_id": parent_user_id, "is_active": True}, {"_id": 0})
        .sort("created_at", 1)
        .to_list(MAX_KID_PROFILES + 1)
    )


async def mark_profiles_setup(user: Dict[str, Any], first_profile_id: str) -> None:
    update: Dict[str, Any] = {"has_setup_kid_profiles": True}
    if not user.get("active_kid_profile"):
        update["active_kid_profile"] = first_profile_id
    await db.users.update_one({"id": user["id"]}, {"$set": update})


@api_router.get("/kid-profiles")
async def list_kid_profiles(current_user: Dict[str, Any] = Depends(get_current_user)):
    return {
        "success": True,
        "profiles": await active_kid_profiles(current_user["id"]),
        "active_profile_id": current_user.get("active_kid_profile"),
        "has_setup_profiles": current_user.get("has_setup_kid_profiles", False),
    }


@api_router.get("/kid-profiles/active")
async def get_active_profile(current_user: Dict[str, Any] = Depends(get_current_user)):
    return {
        "success": True,
        "active_profile": await get_active_kid_profile(current_user),
        "has_setup_profiles": current_user.get("has_setup_kid_profiles", False),
    }


@api_router.post("/kid-profiles", status_code=201)
async def create_kid_profile(payload: KidProfileCreateRequest, current_user: Dict[str, Any] = Depends(get_current_user)):
    existing = await active_kid_profiles(current_user["id"])
    if len(existing) >= MAX_KID_PROFILES:
        raise HTTPException(status_code=400, detail=f"Maximum of {MAX_KID_PROFILES} kid profiles allowed")
    profile = build_kid_profile_doc(current_user["id"], payload, datetime.now(timezone.utc))
    await db.kid_profiles.insert_one(dict(profile))
    await mark_profiles_setup(current_user, profile["id"])
    return {"success": True, "profile": profile, "message": "Kid profile created successfully"}


@api_router.post("/kid-profiles/bulk", status_code=201)
async def bulk_create_kid_profiles(payload: KidProfileBulkRequest, current_user: Dict[str, Any] = Depends(get_current_user)):
    if not payload.profiles:
        raise HTTPException(status_code=400, detail="Please provide an array of profiles")
    existing = await active_kid_profiles(current_user["id"])
    available = MAX_KID_PROFILES - len(existing)
    if len(payload.profiles) > available:
        raise HTTPException(status_code=400, detail=f"Can only add {max(0, available)} more profiles")

    now = datetime.now(timezone.utc)
    created: List[Dict[str, Any]] = []
    errors: List[Dict[str, Any]] = []
    for item in payload.profiles:
        try:
            profile = build_kid_profile_doc(current_user["id"], item, now)
        except HTTPException as exc:
            errors.append({"profile": item.model_dump(), "error": exc.detail})
            continue
        await db.kid_profiles.insert_one(dict(profile))
        created.append(profile)
    if created:
        await mark_profiles_setup(current_user, created[0]["id"])
    return {
        "success": True,
        "created_profiles": created,
        "errors": errors,
        "message": f"Created {len(created)} kid profiles successfully",
    }


@api_router.put("/kid-profiles/switch/{profile_id}")
async def switch_kid_profile(profile_id: str, current_user: Dict[str, Any] = Depends(get_current_user)):
    now_iso = datetime.now(timezone.utc).isoformat()
    profile = await db.kid_profiles.find_one_and_update(
        {"id": profile_id, "parent_user_id": current_user["id"], "is_active": True},
        {"$set": {"last_active_at": now_iso}},
        projection={"_id": 0},
        return_document=ReturnDocument.AFTER,
    )
    if not profile:
        raise HTTPException(status_code=404, detail="Kid profile not found or inactive")
    await db.users.update_one({"id": current_user["id"]}, {"$set": {"active_kid_profile": profile_id}})
    return {"success": True, "active_profile": profile, "message": f"Switched to {profile['name']}'s profile"}


@api_router.get("/kid-profiles/{profile_id}/stats")
async def kid_profile_stats(profile_id: str, current_user: Dict[str, Any] = Depends(get_current_user)):
    profile = await db.kid_profiles.find_one(
        {"id": profile_id, "parent_user_id": current_user["id"], "is_active": True},
        {"_id": 0},
    )
    if not profile:
        raise HTTPException(status_code=404, detail="Kid profile not found")
    stats = await get_kid_profile_stats(db, current_user["id"], profile)
    return {"success": True, **stats}


@api_router.put("/kid-profiles/{profile_id}")
async def update_kid_profile(
    profile_id: str,
    payload: KidProfileUpdateRequest,
    current_user: Dict[str, Any] = Depends(get_current_user),
):
    updates = payload.model_dump(exclude_none=True)
    validate_grade(updates.get("grade"))
    if not updates:
        raise HTTPException(status_code=400, detail="No profile fields to update")
    profile = await db.kid_profiles.find_one_and_update(
        {"id": profile_id, "parent_user_id": current_user["id"]},
        {"$set": updates},
        projection={"_id": 0},
        return_document=ReturnDocument.AFTER,
    )
    if not profile:
        raise HTTPException(status_code=404, detail="Kid profile not found")
    return {"success": True, "profile": profile, "message": "Kid profile updated successfully"}


@api_router.delete("/kid-profiles/{profile_id}")
async def delete_kid_profile(profile_id: str, current_user: Dict[str, Any] = Depends(get_current_user)):
    profile = await db.kid_profiles.find_one_and_update(
        {"id": profile_id, "parent_user_id": current_user["id"]},
        {"$set": {"is_active": False}},
        projection={"_id": 0},
        return_document=ReturnDocument.AFTER,
    )
    if not profile:
        raise HTTPException(status_code=404, detail="Kid profile not found")

    if current_user.get("active_kid_profile") == profile_id:
        remaining = [p for p in await active_kid_profiles(current_user["id"]) if p["id"] != profile_id]
        update: Dict[str, Any] = {"active_kid_profile": remaining[0]["id"] if remaining else None}
        if not remaining:
            update["has_setup_kid_profiles"] = False
        await db.users.update_one({"id": current_user["id"]}, {"$set": update})
    return {"success": True, "message": "Kid profile deactivated successfully"}


def llm_settings_view(settings: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    settings = settings or {}
    return {
        "provider": settings.get("provider", "openrouter"),
        "base_url": settings.get("base_url") or LLM_BASE_URL,
        "selected_model": settings.get("selected_model") or LLM_MODEL,
        "model_config": settings.get("model_config") or ModelConfig().model_dump(),
        "api_key_configured": bool(LLM_API_KEY),
        "updated_by": settings.get("updated_by"),
        "updated_at": settings.get("updated_at"),
    }


@api_router.get("/llm/settings")
async def get_llm_settings(_: Dict[str, Any] = Depends(require_admin)):
    return {"success": True, "settings": llm_settings_view(await load_llm_settings())}


@api_router.put("/llm/settings")
async def update_llm_settings(payload: LLMSettingsUpdateRequest, admin: Dict[str, Any] = Depends(require_admin)):
    updates: Dict[str, Any] = {}
    if payload.provider:
        if payload.provider not in {"openrouter", "openai", "custom"}:
            raise HTTPException(status_code=400, detail=f"Invalid provider: {payload.provider}")
        updates["provider"] = payload.provider
    if payload.base_url:
        updates["base_url"] = payload.base_url.rstrip("/")
    if payload.selected_model:
        updates["selected_model"] = payload.selected_model
    if payload.model_config_ is not None:
        updates["model_config"] = payload.model_config_.model_dump()
    updates["updated_by"] = admin["id"]
    updates["updated_at"] = datetime.now(timezone.utc).isoformat()

    settings = await db.llm_settings.find_one_and_update(
        {"is_active": True},
        {"$set": updates, "$setOnInsert": {"id": str(uuid.uuid4()), "available_models": []}},
        projection={"_id": 0},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    logger.info("llm_settings_updated admin_id=%s fields=%s", admin["id"], sorted(updates))
    return {"success": True, "message": "LLM settings updated successfully", "settings": llm_settings_view(settings)}


DEFAULT_MODELS = [
    {"id": "openai/gpt-4o-mini", "name": "GPT-4o Mini", "pricing": {"prompt": 0.00015, "completion": 0.0006}, "context_length": 128000},
    {"id": "openai/gpt-4o", "name": "GPT-4o", "pricing": {"prompt": 0.005, "completion": 0.015}, "context_length": 128000},
    {"id": "anthropic/claude-3.5-sonnet", "name": "Claude 3.5 Sonnet", "pricing": {"prompt": 0.003, "completion": 0.015}, "context_length": 200000},
]


@api_router.get("/llm/models")
async def get_llm_models(_: Dict[str, Any] = Depends(require_admin)):
    settings = await load_llm_settings()
    models = (settings or {}).get("available_models") or DEFAULT_MODELS
    return {"success": True, "models": models}


@api_router.post("/llm/models/refresh")
async def refresh_llm_models(_: Dict[str, Any] = Depends(require_admin)):
    worksheet_client = await get_worksheet_client()
    try:
        models = await worksheet_client.list_models()
    except WorksheetGenerationError as exc:
        raise HTTPException(status_code=502, detail=f"Failed to refresh models: {exc}")
    await db.llm_settings.update_one({"is_active": True}, {"$set": {"available_models": models}})
    return {"success": True, "count": len(models), "models": models}


@api_router.post("/llm/test")
async def test_llm_configuration(_: Dict[str, Any] = Depends(require_admin)):
    worksheet_client = await get_worksheet_client()
    try:
        problems = await worksheet_client.generate_problems("Math", "5", 1, ["basic arithmetic"], "easy")
    except WorksheetGenerationError as exc:
        raise HTTPException(status_code=502, detail=f"LLM test failed: {exc}")
    return {
        "success": True,
        "message": "LLM configuration test successful",
        "sample": problems[0],
        "model": worksheet_client.model,
    }


@api_router.post("/payments/create-checkout-session")
async def create_checkout_session(payload: CheckoutRequest, current_user: Dict[str, Any] = Depends(get_current_user)):
    service = require_stripe()
    try:
        service.price_id_for(payload.plan)
        customer_id = await service.ensure_customer(current_user)
        if customer_id != (current_user.get("subscription") or {}).get("stripe_customer_id"):
            await db.users.update_one(
                {"id": current_user["id"]},
                {"$set": {"subscription.stripe_customer_id": customer_id}},
            )
        session = await service.create_checkout_session(current_user, payload.plan, customer_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except StripeNotConfiguredError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    except stripe.StripeError as exc:
        logger.error("stripe_checkout_failed user_id=%s error=%s", current_user["id"], exc)
        raise HTTPException(status_code=502, detail="Payment provider error. Please try again.")
    return {"success": True, **session}


@api_router.post("/payments/payment-success")
async def payment_success(payload: PaymentSuccessRequest, current_user: Dict[str, Any] = Depends(get_current_user)):
    service = require_stripe()
    try:
        session = await service.retrieve_session(payload.session_id)
    except stripe.StripeError as exc:
        logger.error("stripe_session_lookup_failed session_id=%s error=%s", payload.session_id, exc)
        raise HTTPException(status_code=502, detail="Payment provider error. Please try again.")
    user = await apply_payment_success(db, session, expected_user_id=current_user["id"])
    return {
        "success": True,
        "message": "Payment processed successfully",
        "user": {
            "email": user["email"],
            "subscription": user.get("subscription"),
            "access_level": user.get("access_level"),
        },
    }


@api_router.get("/payments/subscription-status")
async def subscription_status(current_user: Dict[str, Any] = Depends(get_current_user)):
    subscription = current_user.get("subscription") or default_subscription()
    return {
        "success": True,
        "subscription": {
            "plan": subscription.get("plan", "free"),
            "status": subscription.get("subscription_status", "active"),
            "ai_requests_used": subscription.get("ai_requests_used", 0),
            "ai_requests_limit": subscription.get("ai_requests_limit", PLAN_AI_REQUEST_LIMITS["free"]),
            "ai_requests_remaining": remaining_requests(subscription),
            "reset_date": subscription.get("reset_date"),
        },
    }


@api_router.post("/payments/cancel-subscription")
async def cancel_subscription(current_user: Dict[str, Any] = Depends(get_current_user)):
    service = require_stripe()
    subscription_id = (current_user.get("subscription") or {}).get("stripe_subscription_id")
    if not subscription_id:
        raise HTTPException(status_code=400, detail="No active subscription found")
    try:
        await service.cancel_at_period_end(subscription_id)
    except stripe.StripeError as exc:
        logger.error("stripe_cancel_failed user_id=%s error=%s", current_user["id"], exc)
        raise HTTPException(status_code=502, detail="Payment provider error. Please try again.")
    logger.info("subscription_cancel_requested user_id=%s", current_user["id"])
    return {"success": True, "message": "Subscription will be canceled at the end of the billing period"}


@api_router.post("/payments/webhook")
async def stripe_webhook(request: Request):
    service = require_stripe()
    payload = await request.body()
    try:
        event = service.construct_event(payload, request.headers.get("stripe-signature"))
    except StripeNotConfiguredError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    except (ValueError, stripe.SignatureVerificationError) as exc:
        logger.warning("stripe_webhook_rejected error=%s", exc)
        raise HTTPException(status_code=400, detail=f"Webhook Error: {exc}")
    await dispatch_webhook_event(db, event)
    return {"received": True}


@app.on_event("startup")
async def startup_checks():
    validate_env(os.environ)

    await ensure_allowed_email_indexes(db)
    await ensure_rate_limit_indexes(db)
    await db.users.create_index("id", unique=True)
    await db.users.create_index("email", unique=True)
    await db.users.create_index("google_id", unique=True, sparse=True)
    await db.users.create_index("subscription.stripe_customer_id", sparse=True)
    await db.users.create_index("subscription.stripe_subscription_id", sparse=True)
    await db.worksheets.create_index("id", unique=True)
    await db.worksheets.create_index([("user_id", 1), ("created_at", -1)])
    await db.worksheets.create_index([("user_id", 1), ("status", 1)])
    await db.worksheets.create_index([("kid_profile_id", 1), ("completed_at", -1)])
    await db.kid_profiles.create_index("id", unique=True)
    await db.kid_profiles.create_index([("parent_user_id", 1), ("is_active", 1)])
    await db.llm_settings.create_index("is_active")

    if ADMIN_EMAILS:
        try:
            initialized = await ensure_admin_emails(db, ADMIN_EMAILS)
            logger.info("admin_emails_ensured count=%s", len(initialized))
        except DuplicateKeyError as exc:
            logger.warning("admin_email_bootstrap_conflict error=%s", exc)

    logger.info("Startup checks completed")


@app.on_event("shutdown")
async def shutdown_db_client():
    client.close()


app.include_router(api_router)
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get("CORS_ORIGINS", CLIENT_URL).split(","),
    allow_methods=["*"],
    allow_headers=["*"],
)

import logging
import re
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import HTTPException
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

logger = logging.getLogger(__name__)

ACCESS_LEVELS = ("basic", "premium", "admin")
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
NOTES_MAX_LENGTH = 500


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def email_domain(email: str) -> str:
    normalized = normalize_email(email)
    if "@" not in normalized:
        return ""
    return normalized.split("@", 1)[1]


def validate_access_level(access_level: str) -> str:
    level = (access_level or "basic").strip().lower()
    if level not in ACCESS_LEVELS:
        raise HTTPException(status_code=400, detail=f"Invalid access level: {access_level}")
    return level


def build_allowed_email_doc(
    email: str,
    access_level: str = "basic",
    added_by: Optional[str] = None,
    notes: Optional[str] = None,
    is_override_email: bool = False,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    normalized = normalize_email(email)
    if not EMAIL_PATTERN.match(normalized):
        raise ValueError(f"Please provide a valid email: {email}")
    if notes and len(notes) > NOTES_MAX_LENGTH:
        raise ValueError(f"Notes cannot exceed {NOTES_MAX_LENGTH} characters")
    now_iso = (now or datetime.now(timezone.utc)).isoformat()
    return {
        "id": str(uuid.uuid4()),
        "email": normalized,
        "domain": email_domain(normalized),
        "access_level": validate_access_level(access_level),
        "added_by": added_by,
        "added_at": now_iso,
        "is_active": True,
        "notes": notes,
        "first_login_at": None,
        "last_login_at": None,
        "login_count": 0,
        "is_override_email": is_override_email,
        "created_at": now_iso,
        "updated_at": now_iso,
    }


async def is_email_allowed(db, email: str) -> Optional[Dict[str, Any]]:
    """Resolve an address against the allow-list.

    An active exact-address entry wins. Otherwise an active domain-only
    entry (one stored without an ``email`` field) for the address's domain
    is returned. Inactive entries never match.
    """
    normalized = normalize_email(email)
    if not normalized:
        return None

    exact = await db.allowed_emails.find_one(
        {"email": normalized, "is_active": True},
        {"_id": 0},
    )
    if exact:
        return exact

    domain = email_domain(normalized)
    if not domain:
        return None
    return await db.allowed_emails.find_one(
        {"domain": domain, "is_active": True, "email": {"$exists": False}},
        {"_id": 0},
    )


def login_tracking_update(entry: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    now_iso = now.isoformat()
    update: Dict[str, Any] = {
        "login_count": int(entry.get("login_count") or 0) + 1,
        "last_login_at": now_iso,
        "updated_at": now_iso,
    }
    if not entry.get("first_login_at"):
        update["first_login_at"] = now_iso
    return update


async def track_login(db, entry: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
    # Read-modify-write; concurrent logins on one entry can lose a count.
    update = login_tracking_update(entry, now or datetime.now(timezone.utc))
    await db.allowed_emails.update_one({"id": entry["id"]}, {"$set": update})
    tracked = dict(entry)
    tracked.update(update)
    return tracked


async def add_allowed_emails(
    db,
    emails: List[str],
    access_level: str = "basic",
    added_by: Optional[str] = None,
    notes: Optional[str] = None,
) -> Dict[str, List[Any]]:
    added: List[str] = []
    errors: List[Dict[str, str]] = []
    for raw_email in emails:
        try:
            doc = build_allowed_email_doc(
                raw_email,
                access_level=access_level,
                added_by=added_by,
                notes=notes,
            )
        except ValueError as exc:
            errors.append({"email": raw_email, "error": str(exc)})
            continue
        try:
            await db.allowed_emails.insert_one(doc)
        except DuplicateKeyError:
            # A removed entry keeps its unique email; bring it back instead.
            restored = await db.allowed_emails.find_one_and_update(
                {"email": doc["email"], "is_active": False},
                {
                    "$set": {
                        "is_active": True,
                        "access_level": doc["access_level"],
                        "notes": doc["notes"],
                        "added_by": doc["added_by"],
                        "updated_at": doc["updated_at"],
                    }
                },
                projection={"_id": 0},
                return_document=ReturnDocument.AFTER,
            )
            if restored is None:
                errors.append({"email": raw_email, "error": "Email is already on the allow-list"})
                continue
            logger.info("allowed_email_reactivated email=%s added_by=%s", doc["email"], added_by)
        added.append(doc["email"])
    logger.info("allowed_emails_added count=%s errors=%s added_by=%s", len(added), len(errors), added_by)
    return {"added": added, "errors": errors}


async def add_allowed_domain(
    db,
    domain: str,
    access_level: str = "basic",
    added_by: Optional[str] = None,
    notes: Optional[str] = None,
) -> Dict[str, Any]:
    normalized = (domain or "").strip().lower().lstrip("@")
    if not normalized or "." not in normalized or "@" in normalized:
        raise HTTPException(status_code=400, detail="Please provide a valid domain")
    now_iso = datetime.now(timezone.utc).isoformat()
    doc = {
        "id": str(uuid.uuid4()),
        "domain": normalized,
        "access_level": validate_access_level(access_level),
        "added_by": added_by,
        "added_at": now_iso,
        "is_active": True,
        "notes": notes,
        "first_login_at": None,
        "last_login_at": None,
        "login_count": 0,
        "is_override_email": False,
        "created_at": now_iso,
        "updated_at": now_iso,
    }
    await db.allowed_emails.insert_one(doc)
    doc.pop("_id", None)
    logger.info("allowed_domain_added domain=%s added_by=%s", normalized, added_by)
    return doc


async def deactivate_allowed_email(db, entry_id: str) -> Optional[Dict[str, Any]]:
    return await db.allowed_emails.find_one_and_update(
        {"id": entry_id},
        {"$set": {"is_active": False, "updated_at": datetime.now(timezone.utc).isoformat()}},
        projection={"_id": 0},
        return_document=ReturnDocument.AFTER,
    )


async def list_allowed_emails(
    db,
    search: str = "",
    access_level: Optional[str] = None,
    page: int = 1,
    limit: int = 50,
) -> Dict[str, Any]:
    query: Dict[str, Any] = {}
    if search:
        query["email"] = {"$regex": re.escape(search), "$options": "i"}
    if access_level:
        query["access_level"] = validate_access_level(access_level)
    page = max(1, page)
    limit = max(1, min(200, limit))
    total = await db.allowed_emails.count_documents(query)
    entries = (
        await db.allowed_emails.find(query, {"_id": 0})
        .sort("created_at", -1)
        .skip((page - 1) * limit)
        .limit(limit)
        .to_list(limit)
    )
    return {
        "allowed_emails": entries,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": (total + limit - 1) // limit,
        },
    }


async def ensure_admin_emails(db, emails: List[str]) -> List[str]:
    """Upsert admin override entries; existing entries are promoted and reactivated."""
    initialized: List[str] = []
    now_iso = datetime.now(timezone.utc).isoformat()
    for raw_email in emails:
        normalized = normalize_email(raw_email)
        if not EMAIL_PATTERN.match(normalized):
            logger.warning("admin_email_skipped email=%s reason=invalid", raw_email)
            continue
        template = build_allowed_email_doc(normalized, access_level="admin", is_override_email=True)
        insert_only = {
            key: value
            for key, value in template.items()
            if key not in {"access_level", "is_active", "is_override_email", "updated_at"}
        }
        await db.allowed_emails.update_one(
            {"email": normalized},
            {
                "$setOnInsert": insert_only,
                "$set": {
                    "access_level": "admin",
                    "is_active": True,
                    "is_override_email": True,
                    "updated_at": now_iso,
                },
            },
            upsert=True,
        )
        initialized.append(normalized)
    return initialized


async def ensure_allowed_email_indexes(db) -> None:
    # Sparse so that domain-only wildcard entries (no email) do not collide.
    await db.allowed_emails.create_index("email", unique=True, sparse=True)
    await db.allowed_emails.create_index("id", unique=True)
    await db.allowed_emails.create_index("domain")
    await db.allowed_emails.create_index("is_active")
    await db.allowed_emails.create_index("access_level")

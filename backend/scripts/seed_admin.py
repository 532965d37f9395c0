import argparse
import os
from datetime import datetime, timezone
from pathlib import Path

from dotenv import load_dotenv
from pymongo import MongoClient

from access_control import EMAIL_PATTERN, build_allowed_email_doc, normalize_email


def seed_admin_email(collection, email: str, now_iso: str) -> bool:
    """Upsert an admin override entry. Returns True when a new entry was created."""
    template = build_allowed_email_doc(email, access_level="admin", is_override_email=True)
    insert_only = {
        key: value
        for key, value in template.items()
        if key not in {"access_level", "is_active", "is_override_email", "updated_at"}
    }
    result = collection.update_one(
        {"email": template["email"]},
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
    return result.upserted_id is not None


def main() -> None:
    env_path = Path(__file__).resolve().parents[1] / ".env"
    load_dotenv(env_path)

    parser = argparse.ArgumentParser(description="Seed admin emails into the BrainyBees allow-list.")
    parser.add_argument(
        "--email",
        action="append",
        default=[],
        help="Admin email to allow (repeatable). Defaults to ADMIN_EMAILS from the environment.",
    )
    args = parser.parse_args()

    mongo_url = os.getenv("MONGO_URL") or os.getenv("MONGODB_URI")
    db_name = os.getenv("DB_NAME", "brainybees")
    if not mongo_url:
        raise RuntimeError("MONGO_URL is required")

    emails = args.email or [e for e in os.getenv("ADMIN_EMAILS", "").split(",") if e.strip()]
    emails = [normalize_email(e) for e in emails]
    invalid = [e for e in emails if not EMAIL_PATTERN.match(e)]
    if invalid:
        raise ValueError(f"Invalid admin emails: {', '.join(invalid)}")
    if not emails:
        raise ValueError("Provide --email or set ADMIN_EMAILS")

    client = MongoClient(mongo_url)
    allowed_emails = client[db_name]["allowed_emails"]
    now_iso = datetime.now(timezone.utc).isoformat()

    for email in emails:
        if seed_admin_email(allowed_emails, email, now_iso):
            print(f"Added admin email: {email}")
        else:
            print(f"Updated existing entry to admin: {email}")

    client.close()
    print("Seed complete.")


if __name__ == "__main__":
    main()

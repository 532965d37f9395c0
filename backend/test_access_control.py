import unittest
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

from fastapi import HTTPException
from pymongo.errors import DuplicateKeyError

import access_control


def make_db():
    db = MagicMock()
    db.allowed_emails.find_one = AsyncMock(return_value=None)
    db.allowed_emails.update_one = AsyncMock()
    db.allowed_emails.insert_one = AsyncMock()
    db.allowed_emails.find_one_and_update = AsyncMock(return_value=None)
    db.allowed_emails.create_index = AsyncMock()
    return db


class FakeAllowedEmails:
    """In-memory allow-list with a unique email index and basic query matching."""

    def __init__(self, *docs):
        self.docs = [dict(d) for d in docs]

    def _matches(self, doc, query):
        for field, condition in query.items():
            if isinstance(condition, dict) and "$exists" in condition:
                if (field in doc) != condition["$exists"]:
                    return False
            elif doc.get(field) != condition:
                return False
        return True

    async def find_one(self, query, projection=None):
        return next((dict(d) for d in self.docs if self._matches(d, query)), None)

    async def insert_one(self, doc):
        if "email" in doc and any(d.get("email") == doc["email"] for d in self.docs):
            raise DuplicateKeyError("E11000 duplicate key error")
        self.docs.append(dict(doc))

    async def find_one_and_update(self, query, update, projection=None, return_document=None):
        for doc in self.docs:
            if self._matches(doc, query):
                doc.update(update["$set"])
                return dict(doc)
        return None



class TestAllowedEmailDoc(unittest.TestCase):
    def test_normalizes_email_and_derives_domain(self):
        doc = access_control.build_allowed_email_doc("  Teacher@School.EDU ", access_level="premium")
        self.assertEqual(doc["email"], "teacher@school.edu")
        self.assertEqual(doc["domain"], "school.edu")
        self.assertEqual(doc["access_level"], "premium")
        self.assertTrue(doc["is_active"])
        self.assertEqual(doc["login_count"], 0)
        self.assertIsNone(doc["first_login_at"])

    def test_rejects_malformed_email(self):
        with self.assertRaises(ValueError):
            access_control.build_allowed_email_doc("not-an-email")

    def test_rejects_long_notes(self):
        with self.assertRaises(ValueError):
            access_control.build_allowed_email_doc("a@b.com", notes="x" * 501)

    def test_rejects_unknown_access_level(self):
        with self.assertRaises(HTTPException) as ctx:
            access_control.validate_access_level("superuser")
        self.assertEqual(ctx.exception.status_code, 400)


class TestIsEmailAllowed(unittest.IsolatedAsyncioTestCase):
    async def test_exact_entry_wins_over_domain(self):
        db = make_db()
        exact = {"id": "e1", "email": "kid@school.edu", "access_level": "premium", "is_active": True}
        db.allowed_emails.find_one.return_value = exact

        entry = await access_control.is_email_allowed(db, "Kid@School.edu")

        self.assertEqual(entry, exact)
        db.allowed_emails.find_one.assert_awaited_once_with(
            {"email": "kid@school.edu", "is_active": True},
            {"_id": 0},
        )

    async def test_domain_fallback_only_matches_domain_entries(self):
        db = make_db()
        domain_entry = {"id": "d1", "domain": "school.edu", "access_level": "basic", "is_active": True}
        db.allowed_emails.find_one.side_effect = [None, domain_entry]

        entry = await access_control.is_email_allowed(db, "new@school.edu")

        self.assertEqual(entry, domain_entry)
        fallback_query = db.allowed_emails.find_one.await_args_list[1].args[0]
        self.assertEqual(
            fallback_query,
            {"domain": "school.edu", "is_active": True, "email": {"$exists": False}},
        )

    async def test_inactive_entries_never_match(self):
        db = MagicMock()
        db.allowed_emails = FakeAllowedEmails(
            {"id": "e1", "email": "gone@school.edu", "domain": "school.edu", "is_active": False},
            {"id": "d1", "domain": "school.edu", "is_active": False},
        )
        self.assertIsNone(await access_control.is_email_allowed(db, "gone@school.edu"))
        self.assertIsNone(await access_control.is_email_allowed(db, "other@school.edu"))

    async def test_inactive_exact_entry_does_not_shadow_active_domain(self):
        db = MagicMock()
        db.allowed_emails = FakeAllowedEmails(
            {"id": "e1", "email": "gone@school.edu", "domain": "school.edu", "is_active": False},
            {"id": "d1", "domain": "school.edu", "is_active": True},
        )
        entry = await access_control.is_email_allowed(db, "gone@school.edu")
        self.assertEqual(entry["id"], "d1")

    async def test_blank_email_is_denied_without_lookup(self):
        db = make_db()
        self.assertIsNone(await access_control.is_email_allowed(db, "  "))
        db.allowed_emails.find_one.assert_not_awaited()


class TestTrackLogin(unittest.IsolatedAsyncioTestCase):
    async def test_first_login_sets_first_login_at(self):
        db = make_db()
        now = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)
        entry = {"id": "e1", "email": "a@b.com", "login_count": 0, "first_login_at": None}

        tracked = await access_control.track_login(db, entry, now)

        self.assertEqual(tracked["login_count"], 1)
        self.assertEqual(tracked["first_login_at"], now.isoformat())
        self.assertEqual(tracked["last_login_at"], now.isoformat())
        db.allowed_emails.update_one.assert_awaited_once()
        self.assertEqual(db.allowed_emails.update_one.await_args.args[0], {"id": "e1"})

    async def test_second_login_keeps_first_login_at(self):
        db = make_db()
        first = "2024-03-01T09:00:00+00:00"
        now = datetime(2024, 3, 2, 9, 0, tzinfo=timezone.utc)
        entry = {"id": "e1", "email": "a@b.com", "login_count": 1, "first_login_at": first}

        tracked = await access_control.track_login(db, entry, now)

        self.assertEqual(tracked["login_count"], 2)
        self.assertEqual(tracked["first_login_at"], first)
        update = db.allowed_emails.update_one.await_args.args[1]["$set"]
        self.assertNotIn("first_login_at", update)


class TestAllowListAdmin(unittest.IsolatedAsyncioTestCase):
    async def test_add_emails_collects_invalid_and_duplicate(self):
        db = make_db()
        db.allowed_emails.insert_one.side_effect = [None, DuplicateKeyError("dup")]

        result = await access_control.add_allowed_emails(
            db, ["ok@school.edu", "bad", "dup@school.edu"], access_level="basic", added_by="admin-1"
        )

        self.assertEqual(result["added"], ["ok@school.edu"])
        self.assertEqual([e["email"] for e in result["errors"]], ["bad", "dup@school.edu"])

    async def test_mixed_case_duplicate_hits_unique_key(self):
        db = make_db()
        db.allowed_emails.insert_one.side_effect = [None, DuplicateKeyError("dup")]

        result = await access_control.add_allowed_emails(db, ["Alice@Example.com", "alice@example.COM"])

        stored = [call.args[0]["email"] for call in db.allowed_emails.insert_one.await_args_list]
        self.assertEqual(stored, ["alice@example.com", "alice@example.com"])
        self.assertEqual(result["added"], ["alice@example.com"])
        self.assertEqual(len(result["errors"]), 1)

    async def test_readding_removed_email_reactivates_it(self):
        db = MagicMock()
        db.allowed_emails = FakeAllowedEmails()
        first = await access_control.add_allowed_emails(db, ["kid@school.edu"], added_by="admin-1")
        entry_id = db.allowed_emails.docs[0]["id"]
        await access_control.deactivate_allowed_email(db, entry_id)
        self.assertIsNone(await access_control.is_email_allowed(db, "kid@school.edu"))

        again = await access_control.add_allowed_emails(
            db, ["Kid@School.edu"], access_level="premium", added_by="admin-2", notes="back"
        )

        self.assertEqual(first["added"], ["kid@school.edu"])
        self.assertEqual(again, {"added": ["kid@school.edu"], "errors": []})
        self.assertEqual(len(db.allowed_emails.docs), 1)
        entry = await access_control.is_email_allowed(db, "kid@school.edu")
        self.assertEqual(entry["id"], entry_id)
        self.assertEqual(entry["access_level"], "premium")
        self.assertEqual(entry["added_by"], "admin-2")
        self.assertEqual(entry["notes"], "back")

    async def test_readding_active_email_is_a_duplicate(self):
        db = MagicMock()
        db.allowed_emails = FakeAllowedEmails()
        await access_control.add_allowed_emails(db, ["kid@school.edu"])
        result = await access_control.add_allowed_emails(db, ["kid@school.edu"])
        self.assertEqual(result["added"], [])
        self.assertEqual(result["errors"][0]["error"], "Email is already on the allow-list")

    async def test_domain_entry_has_no_email_field(self):
        db = make_db()
        doc = await access_control.add_allowed_domain(db, "@School.edu", added_by="admin-1")
        self.assertEqual(doc["domain"], "school.edu")
        self.assertNotIn("email", doc)

    async def test_invalid_domain_rejected(self):
        db = make_db()
        with self.assertRaises(HTTPException) as ctx:
            await access_control.add_allowed_domain(db, "localhost")
        self.assertEqual(ctx.exception.status_code, 400)

    async def test_ensure_admin_emails_upserts_override(self):
        db = make_db()
        initialized = await access_control.ensure_admin_emails(db, ["Boss@Example.com", "bogus"])

        self.assertEqual(initialized, ["boss@example.com"])
        args, kwargs = db.allowed_emails.update_one.await_args
        self.assertEqual(args[0], {"email": "boss@example.com"})
        self.assertEqual(args[1]["$set"]["access_level"], "admin")
        self.assertTrue(args[1]["$set"]["is_override_email"])
        self.assertNotIn("access_level", args[1]["$setOnInsert"])
        self.assertTrue(kwargs["upsert"])

    async def test_email_index_is_unique_and_sparse(self):
        db = make_db()
        await access_control.ensure_allowed_email_indexes(db)
        db.allowed_emails.create_index.assert_any_await("email", unique=True, sparse=True)


if __name__ == "__main__":
    unittest.main()

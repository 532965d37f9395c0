import unittest
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

from fastapi import HTTPException
from pymongo.errors import PyMongoError

import generation_gate
from generation_gate import WorksheetFromPreviewRequest, WorksheetGenerateRequest
from openai_helper import WorksheetGenerationError


NOW = datetime(2024, 9, 5, 14, 0, tzinfo=timezone.utc)
PROBLEMS = [
    {"question": "1 + 1", "options": ["1", "2"], "answer": "2", "topic": "addition"},
    {"question": "2 + 2", "options": ["3", "4"], "answer": "4", "topic": "addition"},
]


def make_user(**overrides):
    user = {
        "id": "u1",
        "email": "kid@school.edu",
        "grade": "4",
        "is_active": True,
        "active_kid_profile": "k1",
        "subscription": {
            "plan": "free",
            "ai_requests_used": 2,
            "ai_requests_limit": 10,
            "reset_date": "2024-09-01T00:00:00+00:00",
        },
    }
    user.update(overrides)
    return user


def make_db(allowed=True, reserved_used=3):
    db = MagicMock()
    db.allowed_emails.find_one = AsyncMock(return_value={"id": "e1", "is_active": True} if allowed else None)
    reserved = make_user()
    reserved["subscription"] = dict(reserved["subscription"], ai_requests_used=reserved_used)
    db.users.find_one_and_update = AsyncMock(return_value=reserved)
    db.users.find_one = AsyncMock(return_value={"subscription": {"plan": "free"}})
    db.users.update_one = AsyncMock()
    db.worksheets.insert_one = AsyncMock()
    return db


def make_limiter():
    limiter = MagicMock()
    limiter.check = AsyncMock(return_value=None)
    return limiter


def make_client(problems=None, error=None):
    client = MagicMock()
    client.model = "openai/gpt-4o-mini"
    client.generate_problems = AsyncMock(return_value=problems or PROBLEMS, side_effect=error)
    return client


class TestHelpers(unittest.TestCase):
    def test_grade_resolution_order(self):
        user = make_user()
        self.assertEqual(generation_gate.resolve_grade("7", user, {"grade": "2"}), "7")
        self.assertEqual(generation_gate.resolve_grade(None, user, {"grade": "2"}), "2")
        self.assertEqual(generation_gate.resolve_grade(None, user), "4")

    def test_invalid_grade_rejected(self):
        with self.assertRaises(HTTPException) as ctx:
            generation_gate.resolve_grade("13", make_user())
        self.assertEqual(ctx.exception.status_code, 400)

    def test_titles(self):
        self.assertEqual(generation_gate.default_title("Math", "K"), "Math Worksheet - K")
        self.assertEqual(generation_gate.default_title("Math", "5"), "Math Worksheet - Grade 5")
        self.assertEqual(generation_gate.default_title("Science", "5", "volcanoes"), "Custom Science Worksheet")

    def test_topics_fall_back_to_problems(self):
        self.assertEqual(generation_gate.worksheet_topics(None, PROBLEMS), ["addition"])
        self.assertEqual(generation_gate.worksheet_topics(["sums", ""], PROBLEMS), ["sums"])


class TestGenerateWorksheet(unittest.IsolatedAsyncioTestCase):
    async def test_happy_path_persists_worksheet(self):
        db = make_db()
        client = make_client()
        request = WorksheetGenerateRequest(subject="Math", problem_count=2, topics=["addition"])

        result = await generation_gate.generate_worksheet(db, make_user(), request, make_limiter(), client, now=NOW)

        self.assertEqual(result["status"], generation_gate.GenerationStatus.COMPLETED)
        self.assertEqual(result["ai_requests_remaining"], 7)
        worksheet = result["worksheet"]
        self.assertEqual(worksheet["grade"], "4")
        self.assertEqual(worksheet["kid_profile_id"], "k1")
        self.assertEqual(worksheet["status"], "in-progress")
        self.assertEqual(worksheet["generation_type"], "standard")
        self.assertEqual(worksheet["ai_model"], "openai/gpt-4o-mini")
        db.worksheets.insert_one.assert_awaited_once()
        client.generate_problems.assert_awaited_once()

    async def test_denied_user_never_reaches_provider(self):
        db = make_db(allowed=False)
        client = make_client()
        limiter = make_limiter()

        with self.assertRaises(HTTPException) as ctx:
            await generation_gate.generate_worksheet(db, make_user(), WorksheetGenerateRequest(), limiter, client, now=NOW)

        self.assertEqual(ctx.exception.status_code, 403)
        limiter.check.assert_not_awaited()
        db.users.find_one_and_update.assert_not_awaited()
        client.generate_problems.assert_not_awaited()

    async def test_throttled_user_consumes_no_quota(self):
        db = make_db()
        limiter = make_limiter()
        limiter.check.side_effect = HTTPException(status_code=429, detail={"message": "slow", "retryAfter": 60})
        client = make_client()

        with self.assertRaises(HTTPException) as ctx:
            await generation_gate.generate_worksheet(db, make_user(), WorksheetGenerateRequest(), limiter, client, now=NOW)

        self.assertEqual(ctx.exception.status_code, 429)
        db.users.find_one_and_update.assert_not_awaited()
        client.generate_problems.assert_not_awaited()

    async def test_quota_exceeded_blocks_provider(self):
        db = make_db()
        db.users.find_one_and_update.return_value = None
        client = make_client()

        with self.assertRaises(HTTPException) as ctx:
            await generation_gate.generate_worksheet(db, make_user(), WorksheetGenerateRequest(), make_limiter(), client, now=NOW)

        self.assertEqual(ctx.exception.status_code, 403)
        self.assertTrue(ctx.exception.detail["requiresSubscription"])
        client.generate_problems.assert_not_awaited()

    async def test_provider_failure_releases_reservation(self):
        db = make_db()
        client = make_client(error=WorksheetGenerationError("AI provider returned HTTP 500: boom"))

        with self.assertRaises(HTTPException) as ctx:
            await generation_gate.generate_worksheet(db, make_user(), WorksheetGenerateRequest(), make_limiter(), client, now=NOW)

        self.assertEqual(ctx.exception.status_code, 502)
        db.users.update_one.assert_awaited_once()
        self.assertEqual(db.users.update_one.await_args.args[1], {"$inc": {"subscription.ai_requests_used": -1}})
        db.worksheets.insert_one.assert_not_awaited()

    async def test_save_failure_releases_reservation(self):
        db = make_db()
        db.worksheets.insert_one.side_effect = PyMongoError("write failed")

        with self.assertRaises(PyMongoError):
            await generation_gate.generate_worksheet(db, make_user(), WorksheetGenerateRequest(), make_limiter(), make_client(), now=NOW)

        db.users.update_one.assert_awaited_once()

    async def test_invalid_difficulty_rejected_before_gates(self):
        db = make_db()
        with self.assertRaises(HTTPException) as ctx:
            await generation_gate.generate_worksheet(
                db, make_user(), WorksheetGenerateRequest(difficulty="extreme"), make_limiter(), make_client(), now=NOW
            )
        self.assertEqual(ctx.exception.status_code, 400)
        db.allowed_emails.find_one.assert_not_awaited()

    async def test_plan_specific_rule_used_by_default(self):
        limiter = make_limiter()
        await generation_gate.generate_worksheet(make_db(), make_user(), WorksheetGenerateRequest(), limiter, make_client(), now=NOW)
        identity, rule = limiter.check.await_args.args
        self.assertEqual(identity, "u1")
        self.assertEqual(rule.name, "ai_generation")
        self.assertEqual(rule.limit, 10)


class TestPreview(unittest.IsolatedAsyncioTestCase):
    async def test_preview_is_not_persisted(self):
        db = make_db()
        request = WorksheetGenerateRequest(natural_language_request="fractions with pizza", grade="3")

        result = await generation_gate.generate_preview(db, make_user(), request, make_limiter(), make_client(), now=NOW)

        self.assertEqual(result["preview"]["title"], "Custom Math Worksheet")
        self.assertEqual(result["preview"]["grade"], "3")
        self.assertEqual(len(result["preview"]["problems"]), 2)
        db.worksheets.insert_one.assert_not_awaited()
        db.users.find_one_and_update.assert_awaited_once()

    async def test_create_from_preview_consumes_no_quota(self):
        db = make_db()
        payload = WorksheetFromPreviewRequest(
            grade="3",
            natural_language_request="fractions with pizza",
            problems=[{"question": "1/2 + 1/2", "options": ["1", "2"], "answer": "1"}],
        )

        worksheet = await generation_gate.create_from_preview(db, make_user(), payload, now=NOW)

        self.assertEqual(worksheet["generation_type"], "natural-language")
        self.assertEqual(worksheet["problems"][0]["answer"], "1")
        db.users.find_one_and_update.assert_not_awaited()
        db.worksheets.insert_one.assert_awaited_once()

    async def test_create_from_preview_requires_valid_problem(self):
        with self.assertRaises(HTTPException) as ctx:
            await generation_gate.create_from_preview(
                make_db(), make_user(), WorksheetFromPreviewRequest(grade="3", problems=[{"question": "q"}]), now=NOW
            )
        self.assertEqual(ctx.exception.status_code, 400)


if __name__ == "__main__":
    unittest.main()

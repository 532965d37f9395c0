import unittest
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import analytics_service


NOW = datetime(2024, 7, 20, 8, 0, tzinfo=timezone.utc)


def cursor(rows):
    chain = MagicMock()
    chain.sort.return_value = chain
    chain.to_list = AsyncMock(return_value=rows)
    return chain


class TestLearningCurve(unittest.TestCase):
    def test_needs_three_points(self):
        self.assertEqual(analytics_service.predict_learning_curve([(1, 50), (2, 60)]), [])

    def test_linear_trend_is_extended(self):
        points = [(1, 50.0), (2, 60.0), (3, 70.0)]
        prediction = analytics_service.predict_learning_curve(points, horizon=2)
        self.assertEqual(prediction, [{"index": 4, "accuracy": 80.0}, {"index": 5, "accuracy": 90.0}])

    def test_predictions_clamped_to_100(self):
        points = [(1, 80.0), (2, 90.0), (3, 100.0)]
        prediction = analytics_service.predict_learning_curve(points, horizon=3)
        self.assertTrue(all(p["accuracy"] == 100.0 for p in prediction))

    def test_leaderboard_windows(self):
        self.assertEqual(analytics_service.leaderboard_start("week", NOW), datetime(2024, 7, 13, 8, 0, tzinfo=timezone.utc))
        self.assertEqual(analytics_service.leaderboard_start("month", NOW), datetime(2024, 6, 20, 8, 0, tzinfo=timezone.utc))
        self.assertEqual(analytics_service.leaderboard_start("all", NOW).year, 1970)


class TestAnalyticsQueries(unittest.IsolatedAsyncioTestCase):
    async def test_leaderboard_reads_active_kid_profiles(self):
        db = MagicMock()
        rows = [{"name": "Ada", "score": 95}]
        db.kid_profiles.aggregate.return_value = cursor(rows)

        result = await analytics_service.get_leaderboard(db, "week", NOW)

        self.assertEqual(result, rows)
        pipeline = db.kid_profiles.aggregate.call_args.args[0]
        self.assertTrue(pipeline[0]["$match"]["is_active"])
        self.assertEqual(pipeline[0]["$match"]["stats.streak.last_activity"], {"$gte": "2024-07-13T08:00:00+00:00"})
        self.assertEqual(pipeline[-1], {"$limit": 20})

    async def test_learning_curve_indexes_sessions(self):
        db = MagicMock()
        db.worksheets.find.return_value = cursor(
            [
                {"score": 40, "completed_at": "2024-07-01T00:00:00+00:00", "subject": "Math"},
                {"score": 60, "completed_at": "2024-07-02T00:00:00+00:00", "subject": "Math"},
                {"score": 80, "completed_at": "2024-07-03T00:00:00+00:00", "subject": "Math"},
            ]
        )

        curve = await analytics_service.get_learning_curve(db, "u1", kid_profile_id="k1")

        self.assertEqual([s["index"] for s in curve["sessions"]], [1, 2, 3])
        self.assertEqual(curve["prediction"][0], {"index": 4, "accuracy": 100.0})
        query = db.worksheets.find.call_args.args[0]
        self.assertEqual(query, {"user_id": "u1", "status": "completed", "kid_profile_id": "k1"})

    async def test_user_analytics_defaults_when_no_worksheets(self):
        db = MagicMock()
        db.worksheets.aggregate.side_effect = [cursor([]), cursor([]), cursor([])]
        db.worksheets.find.return_value = cursor([])
        user = {"id": "u1", "stats": {"total_worksheets": 0}, "subscription": {"plan": "free"}}

        analytics = await analytics_service.get_user_analytics(db, user)

        self.assertEqual(analytics["worksheet_stats"]["total_worksheets"], 0)
        self.assertEqual(analytics["performance_by_grade"], [])
        self.assertEqual(analytics["subscription"], {"plan": "free"})

    async def test_progress_groups_by_day(self):
        db = MagicMock()
        db.worksheets.aggregate.return_value = cursor(
            [{"_id": "2024-07-19", "worksheets": 2, "average_score": 72.456, "problems": 20}]
        )

        progress = await analytics_service.get_progress_over_time(db, "u1", 7, NOW)

        self.assertEqual(progress, [{"date": "2024-07-19", "worksheets": 2, "average_score": 72.5, "problems": 20}])
        match = db.worksheets.aggregate.call_args.args[0][0]["$match"]
        self.assertEqual(match["completed_at"], {"$gte": "2024-07-13T08:00:00+00:00"})

    async def test_detailed_platform_analytics(self):
        db = MagicMock()
        user_counts = {None: 7, True: 5, False: 2}
        db.users.count_documents = AsyncMock(side_effect=lambda query: user_counts[query.get("is_active")])
        db.kid_profiles.count_documents = AsyncMock(return_value=4)
        db.worksheets.count_documents = AsyncMock(side_effect=lambda query: 6 if query else 8)
        user_rows = {
            "$group": [{"_id": None, "count": 6, "total_ai_requests_used": 31}, {"_id": "annual", "count": 1}],
            "$lookup": [{"_id": None, "avg_kids": 1.3333}],
            "$match": [{"id": "u1", "name": "Pat"}],
        }
        db.users.aggregate.side_effect = lambda pipeline: cursor(user_rows[next(iter(pipeline[0]))])
        worksheet_rows = {"$group": [{"_id": "3", "count": 5}], "$sort": [{"id": "w1", "title": "Adding"}]}
        db.worksheets.aggregate.side_effect = lambda pipeline: cursor(worksheet_rows[next(iter(pipeline[0]))])

        analytics = await analytics_service.get_platform_detailed_analytics(db)

        self.assertEqual(analytics["users"], {"total": 7, "active": 5, "inactive": 2})
        self.assertEqual(
            analytics["subscriptions"],
            [
                {"plan": "free", "count": 6, "total_ai_requests_used": 31},
                {"plan": "annual", "count": 1, "total_ai_requests_used": 0},
            ],
        )
        self.assertEqual(analytics["kid_profiles"], {"total": 4, "avg_per_user": 1.33})
        self.assertEqual(analytics["worksheets"]["completion_rate"], 75.0)
        self.assertEqual(analytics["worksheets"]["by_grade"], [{"grade": "3", "count": 5}])
        self.assertEqual(analytics["recent_activity"]["users"], [{"id": "u1", "name": "Pat"}])
        self.assertEqual(analytics["recent_activity"]["worksheets"], [{"id": "w1", "title": "Adding"}])
        db.kid_profiles.count_documents.assert_awaited_once_with({"is_active": True})

    async def test_detailed_analytics_without_worksheets(self):
        db = MagicMock()
        db.users.count_documents = AsyncMock(return_value=0)
        db.kid_profiles.count_documents = AsyncMock(return_value=0)
        db.worksheets.count_documents = AsyncMock(return_value=0)
        db.users.aggregate.side_effect = lambda pipeline: cursor([])
        db.worksheets.aggregate.side_effect = lambda pipeline: cursor([])

        analytics = await analytics_service.get_platform_detailed_analytics(db)

        self.assertEqual(analytics["worksheets"]["completion_rate"], 0)
        self.assertEqual(analytics["kid_profiles"]["avg_per_user"], 0)
        self.assertEqual(analytics["subscriptions"], [])


if __name__ == "__main__":
    unittest.main()

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

LEADERBOARD_PERIODS = {"week", "month", "all"}
PREDICTION_HORIZON = 5


def predict_learning_curve(
    points: Sequence[Tuple[float, float]],
    horizon: int = PREDICTION_HORIZON,
) -> List[Dict[str, float]]:
    """Least-squares line over (session index, accuracy), extended ``horizon`` sessions.

    Returns an empty list for fewer than three points. Predictions are
    clamped to the 0-100 accuracy range.
    """
    if len(points) < 3:
        return []
    n = len(points)
    sum_x = sum(x for x, _ in points)
    sum_y = sum(y for _, y in points)
    sum_xy = sum(x * y for x, y in points)
    sum_x2 = sum(x * x for x, _ in points)
    denominator = n * sum_x2 - sum_x * sum_x
    if denominator == 0:
        return []
    slope = (n * sum_xy - sum_x * sum_y) / denominator
    intercept = (sum_y - slope * sum_x) / n

    last_index = points[-1][0]
    predictions = []
    for step in range(1, horizon + 1):
        index = last_index + step
        accuracy = min(100.0, max(0.0, slope * index + intercept))
        predictions.append({"index": index, "accuracy": round(accuracy, 2)})
    return predictions


def leaderboard_start(period: str, now: datetime) -> datetime:
    if period == "week":
        return now - timedelta(days=7)
    if period == "month":
        return now - timedelta(days=30)
    return datetime.fromtimestamp(0, tz=timezone.utc)


def _empty_worksheet_stats() -> Dict[str, Any]:
    return {
        "total_worksheets": 0,
        "completed_worksheets": 0,
        "average_score": 0,
        "total_time_spent": 0,
        "total_problems": 0,
    }


async def get_user_analytics(db, user: Dict[str, Any], kid_profile_id: Optional[str] = None) -> Dict[str, Any]:
    match: Dict[str, Any] = {"user_id": user["id"]}
    if kid_profile_id:
        match["kid_profile_id"] = kid_profile_id
    completed_match = {**match, "status": "completed"}

    totals_pipeline = [
        {"$match": match},
        {
            "$group": {
                "_id": None,
                "total_worksheets": {"$sum": 1},
                "completed_worksheets": {"$sum": {"$cond": [{"$eq": ["$status", "completed"]}, 1, 0]}},
                "average_score": {"$avg": "$score"},
                "total_time_spent": {"$sum": "$time_spent"},
                "total_problems": {"$sum": {"$size": {"$ifNull": ["$problems", []]}}},
            }
        },
    ]
    by_grade_pipeline = [
        {"$match": completed_match},
        {"$group": {"_id": "$grade", "count": {"$sum": 1}, "average_score": {"$avg": "$score"}}},
        {"$sort": {"_id": 1}},
    ]
    by_topic_pipeline = [
        {"$match": completed_match},
        {"$unwind": "$topics"},
        {"$group": {"_id": "$topics", "count": {"$sum": 1}, "average_score": {"$avg": "$score"}}},
        {"$sort": {"count": -1}},
        {"$limit": 10},
    ]
    totals, by_grade, by_topic, recent = await asyncio.gather(
        db.worksheets.aggregate(totals_pipeline).to_list(1),
        db.worksheets.aggregate(by_grade_pipeline).to_list(50),
        db.worksheets.aggregate(by_topic_pipeline).to_list(10),
        db.worksheets.find(
            match,
            {"_id": 0, "id": 1, "title": 1, "grade": 1, "score": 1, "status": 1, "created_at": 1, "completed_at": 1},
        )
        .sort("created_at", -1)
        .to_list(10),
    )
    worksheet_stats = _empty_worksheet_stats()
    if totals:
        worksheet_stats.update({k: v for k, v in totals[0].items() if k != "_id"})
        worksheet_stats["average_score"] = round(worksheet_stats.get("average_score") or 0, 1)

    return {
        "user_stats": user.get("stats") or {},
        "worksheet_stats": worksheet_stats,
        "performance_by_grade": [
            {"grade": row["_id"], "count": row["count"], "average_score": round(row.get("average_score") or 0, 1)}
            for row in by_grade
        ],
        "performance_by_topic": [
            {"topic": row["_id"], "count": row["count"], "average_score": round(row.get("average_score") or 0, 1)}
            for row in by_topic
        ],
        "recent_activity": recent,
        "subscription": user.get("subscription") or {},
    }


async def get_progress_over_time(db, user_id: str, period_days: int = 30, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    now = now or datetime.now(timezone.utc)
    start_iso = (now - timedelta(days=max(1, period_days))).isoformat()
    pipeline = [
        {"$match": {"user_id": user_id, "status": "completed", "completed_at": {"$gte": start_iso}}},
        {
            "$group": {
                "_id": {"$substrBytes": ["$completed_at", 0, 10]},
                "worksheets": {"$sum": 1},
                "average_score": {"$avg": "$score"},
                "problems": {"$sum": {"$size": {"$ifNull": ["$problems", []]}}},
            }
        },
        {"$sort": {"_id": 1}},
    ]
    rows = await db.worksheets.aggregate(pipeline).to_list(400)
    return [
        {
            "date": row["_id"],
            "worksheets": row["worksheets"],
            "average_score": round(row.get("average_score") or 0, 1),
            "problems": row["problems"],
        }
        for row in rows
    ]


async def get_leaderboard(db, period: str = "week", now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    now = now or datetime.now(timezone.utc)
    start_iso = leaderboard_start(period, now).isoformat()
    pipeline = [
        {"$match": {"is_active": True, "stats.streak.last_activity": {"$gte": start_iso}}},
        {
            "$project": {
                "_id": 0,
                "name": 1,
                "grade": 1,
                "score": "$stats.average_score",
                "worksheets": "$stats.total_worksheets",
                "streak": "$stats.streak.current",
            }
        },
        {"$sort": {"score": -1}},
        {"$limit": 20},
    ]
    return await db.kid_profiles.aggregate(pipeline).to_list(20)


async def get_learning_curve(db, user_id: str, kid_profile_id: Optional[str] = None, limit: int = 50) -> Dict[str, Any]:
    query: Dict[str, Any] = {"user_id": user_id, "status": "completed"}
    if kid_profile_id:
        query["kid_profile_id"] = kid_profile_id
    worksheets = (
        await db.worksheets.find(query, {"_id": 0, "score": 1, "completed_at": 1, "subject": 1})
        .sort("completed_at", 1)
        .to_list(limit)
    )
    sessions = [
        {
            "index": index + 1,
            "accuracy": float(ws.get("score") or 0),
            "completed_at": ws.get("completed_at"),
            "subject": ws.get("subject"),
        }
        for index, ws in enumerate(worksheets)
    ]
    prediction = predict_learning_curve([(s["index"], s["accuracy"]) for s in sessions])
    return {"sessions": sessions, "prediction": prediction}


async def get_kid_profile_stats(db, parent_user_id: str, profile: Dict[str, Any]) -> Dict[str, Any]:
    match = {"user_id": parent_user_id, "kid_profile_id": profile["id"]}
    by_subject = await db.worksheets.aggregate(
        [
            {"$match": {**match, "status": "completed"}},
            {"$group": {"_id": "$subject", "count": {"$sum": 1}, "average_score": {"$avg": "$score"}}},
            {"$sort": {"count": -1}},
        ]
    ).to_list(50)
    total = await db.worksheets.count_documents(match)
    return {
        "profile_id": profile["id"],
        "name": profile.get("name"),
        "stats": profile.get("stats") or {},
        "total_worksheets": total,
        "by_subject": [
            {"subject": row["_id"], "count": row["count"], "average_score": round(row.get("average_score") or 0, 1)}
            for row in by_subject
        ],
    }


async def get_platform_detailed_analytics(db) -> Dict[str, Any]:
    """Platform-wide admin breakdown of users, plans, kid profiles and worksheets."""
    avg_kids_pipeline = [
        {"$lookup": {"from": "kid_profiles", "localField": "id", "foreignField": "parent_user_id", "as": "kid_profiles"}},
        {"$group": {"_id": None, "avg_kids": {"$avg": {"$size": "$kid_profiles"}}}},
    ]
    subscriptions_pipeline = [
        {
            "$group": {
                "_id": "$subscription.plan",
                "count": {"$sum": 1},
                "total_ai_requests_used": {"$sum": "$subscription.ai_requests_used"},
            }
        },
        {"$sort": {"count": -1}},
    ]
    by_grade_pipeline = [
        {"$group": {"_id": "$grade", "count": {"$sum": 1}}},
        {"$sort": {"_id": 1}},
    ]
    recent_users_pipeline = [
        {"$match": {"is_active": True}},
        {"$sort": {"created_at": -1}},
        {"$limit": 10},
        {"$lookup": {"from": "kid_profiles", "localField": "active_kid_profile", "foreignField": "id", "as": "kid"}},
        {
            "$project": {
                "_id": 0,
                "id": 1,
                "name": 1,
                "email": 1,
                "created_at": 1,
                "last_login": 1,
                "active_kid_profile": {
                    "$let": {
                        "vars": {"kid": {"$arrayElemAt": ["$kid", 0]}},
                        "in": {"name": "$$kid.name", "grade": "$$kid.grade"},
                    }
                },
            }
        },
    ]
    recent_worksheets_pipeline = [
        {"$sort": {"created_at": -1}},
        {"$limit": 10},
        {"$lookup": {"from": "users", "localField": "user_id", "foreignField": "id", "as": "owner"}},
        {"$lookup": {"from": "kid_profiles", "localField": "kid_profile_id", "foreignField": "id", "as": "kid"}},
        {
            "$project": {
                "_id": 0,
                "id": 1,
                "title": 1,
                "grade": 1,
                "subject": 1,
                "status": 1,
                "created_at": 1,
                "user": {
                    "$let": {
                        "vars": {"owner": {"$arrayElemAt": ["$owner", 0]}},
                        "in": {"name": "$$owner.name", "email": "$$owner.email"},
                    }
                },
                "kid_profile": {
                    "$let": {
                        "vars": {"kid": {"$arrayElemAt": ["$kid", 0]}},
                        "in": {"name": "$$kid.name", "grade": "$$kid.grade"},
                    }
                },
            }
        },
    ]
    (
        total_users,
        active_users,
        inactive_users,
        subscriptions,
        total_kid_profiles,
        avg_kids,
        total_worksheets,
        completed_worksheets,
        by_grade,
        recent_users,
        recent_worksheets,
    ) = await asyncio.gather(
        db.users.count_documents({}),
        db.users.count_documents({"is_active": True}),
        db.users.count_documents({"is_active": False}),
        db.users.aggregate(subscriptions_pipeline).to_list(10),
        db.kid_profiles.count_documents({"is_active": True}),
        db.users.aggregate(avg_kids_pipeline).to_list(1),
        db.worksheets.count_documents({}),
        db.worksheets.count_documents({"status": "completed"}),
        db.worksheets.aggregate(by_grade_pipeline).to_list(50),
        db.users.aggregate(recent_users_pipeline).to_list(10),
        db.worksheets.aggregate(recent_worksheets_pipeline).to_list(10),
    )
    completion_rate = round(completed_worksheets / total_worksheets * 100, 1) if total_worksheets else 0
    return {
        "users": {"total": total_users, "active": active_users, "inactive": inactive_users},
        "subscriptions": [
            {
                "plan": row["_id"] or "free",
                "count": row["count"],
                "total_ai_requests_used": row.get("total_ai_requests_used") or 0,
            }
            for row in subscriptions
        ],
        "kid_profiles": {
            "total": total_kid_profiles,
            "avg_per_user": round((avg_kids[0].get("avg_kids") or 0) if avg_kids else 0, 2),
        },
        "worksheets": {
            "total": total_worksheets,
            "completed": completed_worksheets,
            "completion_rate": completion_rate,
            "by_grade": [{"grade": row["_id"], "count": row["count"]} for row in by_grade],
        },
        "recent_activity": {"users": recent_users, "worksheets": recent_worksheets},
    }

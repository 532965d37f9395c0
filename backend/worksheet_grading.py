from datetime import date, datetime
from typing import Any, Dict, List, Optional


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value).strip())
    except (TypeError, ValueError):
        return None


def answers_match(expected: Any, given: Any) -> bool:
    if isinstance(expected, (int, float)) and not isinstance(expected, bool) and isinstance(given, str):
        parsed = _as_number(given)
        return parsed is not None and parsed == float(expected)
    if isinstance(expected, str) and isinstance(given, str):
        return expected.strip().lower() == given.strip().lower()
    return expected == given


def grade_problems(problems: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    graded: List[Dict[str, Any]] = []
    for problem in problems:
        item = dict(problem)
        user_answer = item.get("user_answer")
        if user_answer is not None:
            item["is_correct"] = answers_match(item.get("answer"), user_answer)
        graded.append(item)
    return graded


def calculate_score(problems: List[Dict[str, Any]]) -> int:
    if not problems:
        return 0
    correct = sum(1 for problem in problems if problem.get("is_correct") is True)
    return round(correct * 100 / len(problems))


def apply_submission(
    worksheet: Dict[str, Any],
    answers: List[Dict[str, Any]],
    time_spent: int,
    now: datetime,
) -> Dict[str, Any]:
    """Record answers by position, grade, and mark the worksheet completed."""
    problems = [dict(p) for p in worksheet.get("problems", [])]
    for index, answer in enumerate(answers):
        if index >= len(problems):
            break
        problems[index]["user_answer"] = answer.get("user_answer")
        problems[index]["time_spent"] = int(answer.get("time_spent") or 0)

    problems = grade_problems(problems)
    submitted = dict(worksheet)
    submitted["problems"] = problems
    submitted["score"] = calculate_score(problems)
    submitted["time_spent"] = int(time_spent or 0)
    submitted["completed_at"] = now.isoformat()
    submitted["status"] = "completed"
    submitted["attempts"] = int(worksheet.get("attempts") or 0) + 1
    return submitted


def empty_stats() -> Dict[str, Any]:
    return {
        "total_worksheets": 0,
        "total_problems": 0,
        "correct_answers": 0,
        "average_score": 0,
        "time_spent": 0,
        "streak": {"current": 0, "best": 0, "last_activity": None},
    }


def _activity_day(value: Any) -> Optional[date]:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value).date()
        except ValueError:
            return None
    return None


def update_stats(
    stats: Optional[Dict[str, Any]],
    score: int,
    problem_count: int,
    now: datetime,
    time_spent: int = 0,
) -> Dict[str, Any]:
    updated = empty_stats()
    updated.update(stats or {})
    streak = dict(updated.get("streak") or {"current": 0, "best": 0, "last_activity": None})

    updated["total_worksheets"] = int(updated["total_worksheets"]) + 1
    updated["total_problems"] = int(updated["total_problems"]) + problem_count
    updated["correct_answers"] = int(updated["correct_answers"]) + round(score * problem_count / 100)
    updated["time_spent"] = int(updated.get("time_spent") or 0) + int(time_spent or 0)
    total = int(updated["total_worksheets"])
    running = float(updated["average_score"]) * (total - 1) + score
    updated["average_score"] = round(running / total)

    today = now.date()
    last_day = _activity_day(streak.get("last_activity"))
    gap_days = None if last_day is None else (today - last_day).days
    if gap_days is None or gap_days == 1:
        streak["current"] = int(streak.get("current") or 0) + 1
    elif gap_days > 1:
        streak["current"] = 1
    streak["best"] = max(int(streak.get("best") or 0), int(streak["current"]))
    streak["last_activity"] = now.isoformat()
    updated["streak"] = streak
    return updated

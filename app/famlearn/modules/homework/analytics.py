"""
On-demand homework analytics: one assignment, one student, or an overview of
every student the viewer may see. Aggregation happens in Python over a
windowed query; nothing is cached or stored.
"""
from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import select

from app.famlearn.constants import Role
from app.famlearn.modules.homework.service import DONE_STATUSES
from app.famlearn.utils import iso

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from app.famlearn.models import User
    from app.famlearn.modules.homework.models import HomeworkAssignment, HomeworkSubmission
    from app.famlearn.rbac import PermissionChecker

ANALYTICS_TYPES = ("assignment", "student", "overview")
SCORE_BANDS = ((90, "90-100"), (80, "80-89"), (70, "70-79"), (60, "60-69"), (50, "50-59"), (0, "0-49"))
TIME_BANDS = ((30, "0-30min"), (60, "30-60min"), (120, "60-120min"), (None, "120min+"))


def median(values: list[float]) -> float | None:
    if not values:
        return None
    ordered = sorted(values)
    mid = len(ordered) // 2
    if len(ordered) % 2:
        return ordered[mid]
    return (ordered[mid - 1] + ordered[mid]) / 2


def _share(count: int, total: int) -> float:
    return round(count / total * 100, 1) if total else 0


def score_distribution(percentages: list[float]) -> list[dict[str, Any]]:
    counts = dict.fromkeys((label for _, label in SCORE_BANDS), 0)
    for pct in percentages:
        label = next(label for floor, label in SCORE_BANDS if pct >= floor)
        counts[label] += 1
    return [{"range": label, "count": n, "percentage": _share(n, len(percentages))} for label, n in counts.items()]


def time_distribution(seconds: list[int]) -> list[dict[str, Any]]:
    counts = dict.fromkeys((label for _, label in TIME_BANDS), 0)
    for value in seconds:
        minutes = value / 60
        label = next(label for ceiling, label in TIME_BANDS if ceiling is None or minutes <= ceiling)
        counts[label] += 1
    return [{"time_range": label, "count": n, "percentage": _share(n, len(seconds))} for label, n in counts.items()]


def progress_trend(percentages_newest_first: list[float]) -> float:
    """Percent change of the newer half's average over the older half's."""
    if len(percentages_newest_first) < 2:
        return 0
    split = (len(percentages_newest_first) + 1) // 2
    recent, older = percentages_newest_first[:split], percentages_newest_first[split:]
    older_avg = sum(older) / len(older)
    if not older_avg:
        return 0
    return round((sum(recent) / len(recent) - older_avg) / older_avg * 100, 1)


def _average(values: list[float]) -> float | None:
    return round(sum(values) / len(values), 1) if values else None


def _subjects(a: "HomeworkAssignment") -> list[str]:
    return sorted({link.exercise.subject for link in a.exercises if link.exercise})


def recommendations(average: float | None, trend: float, by_subject: list[dict[str, Any]]) -> list[dict[str, str]]:
    out = []
    if average is not None and average < 70:
        out.append(
            {
                "type": "improvement",
                "title": "Strengthen the basics",
                "description": "More practice on core concepts before moving on.",
                "priority": "high",
            }
        )
    if trend < -10:
        out.append(
            {
                "type": "support",
                "title": "Ask for extra help",
                "description": "Recent results have dropped; a parent or teacher check-in would help.",
                "priority": "high",
            }
        )
    elif trend > 10:
        out.append(
            {
                "type": "challenge",
                "title": "Try harder exercises",
                "description": "Results keep improving; move up a difficulty level.",
                "priority": "medium",
            }
        )
    for row in by_subject:
        if row["average_percentage"] is not None and row["average_percentage"] < 60:
            out.append(
                {
                    "type": "practice",
                    "title": f"More {row['subject']} practice",
                    "description": f"{row['subject']} results are below 60%.",
                    "priority": "high",
                }
            )
    return out


def assignment_analytics(
    a: "HomeworkAssignment", checker: "PermissionChecker", *, now: datetime | None = None
) -> dict[str, Any]:
    """Scores, timing and the students who need attention, over the submissions the viewer may see."""
    now = now or datetime.utcnow()
    subs = a.submissions
    if not checker.is_admin():
        subs = [x for x in subs if checker.can_access_user_data(x.student_id, x.student.family_id)]
    done = [x for x in subs if x.status in DONE_STATUSES]
    scored = [x.percentage for x in done if x.percentage is not None]
    times = [x.time_spent_seconds for x in done if x.time_spent_seconds]

    per_subject: dict[str, list[float]] = defaultdict(list)
    subject_of = {link.exercise_id: link.exercise.subject for link in a.exercises if link.exercise}
    for sub in done:
        for result in sub.exercise_results or []:
            subject = subject_of.get(result.get("exercise_id"))
            if subject and result.get("percentage") is not None:
                per_subject[subject].append(result["percentage"])

    attention = []
    overdue = a.due_at is not None and now > a.due_at
    for sub in subs:
        reason = None
        if sub.status not in DONE_STATUSES and overdue:
            reason = "not_submitted"
        elif sub.percentage is not None and sub.percentage < a.passing_score:
            reason = "below_passing_score"
        if reason:
            attention.append(
                {
                    "student_id": sub.student_id,
                    "display_name": sub.student.display_name if sub.student else None,
                    "status": sub.status,
                    "percentage": sub.percentage,
                    "reason": reason,
                }
            )

    return {
        "assignment_id": a.id,
        "title": a.title,
        "total_students": len(subs),
        "submitted_count": len(done),
        "graded_count": sum(1 for x in subs if x.status == "GRADED"),
        "late_count": sum(1 for x in subs if x.is_late),
        "completion_rate": _share(len(done), len(subs)),
        "average_percentage": _average(scored),
        "median_percentage": median(scored),
        "highest_percentage": max(scored) if scored else None,
        "lowest_percentage": min(scored) if scored else None,
        "score_distribution": score_distribution(scored),
        "average_time_spent_seconds": round(sum(times) / len(times)) if times else None,
        "time_distribution": time_distribution(times),
        "subject_mastery": [
            {"subject": subject, "average_percentage": _average(values)}
            for subject, values in sorted(per_subject.items())
        ],
        "students_needing_attention": attention,
    }


def _window_submissions(s: "Session", student_ids: list[int] | None, since: datetime) -> list["HomeworkSubmission"]:
    from app.famlearn.modules.homework.models import HomeworkSubmission

    stmt = select(HomeworkSubmission).where(HomeworkSubmission.created_at >= since)
    if student_ids is not None:
        stmt = stmt.where(HomeworkSubmission.student_id.in_(student_ids))
    stmt = stmt.order_by(HomeworkSubmission.created_at.desc(), HomeworkSubmission.id.desc())
    return s.execute(stmt).scalars().all()


def student_analytics(s: "Session", student: "User", *, days: int = 30, now: datetime | None = None) -> dict[str, Any]:
    now = now or datetime.utcnow()
    subs = [x for x in _window_submissions(s, [student.id], now - timedelta(days=days)) if x.assignment.is_visible]
    done = [x for x in subs if x.status in DONE_STATUSES]
    scored = [x.percentage for x in done if x.percentage is not None]

    per_subject: dict[str, list[float]] = defaultdict(list)
    counts: dict[str, int] = defaultdict(int)
    for sub in done:
        for subject in _subjects(sub.assignment):
            counts[subject] += 1
            if sub.percentage is not None:
                per_subject[subject].append(sub.percentage)
    by_subject = [
        {
            "subject": subject,
            "assignment_count": counts[subject],
            "average_percentage": _average(per_subject[subject]),
        }
        for subject in sorted(counts)
    ]

    average = _average(scored)
    trend = progress_trend(scored)
    total_time = sum(x.time_spent_seconds or 0 for x in done)
    return {
        "student_id": student.id,
        "days": days,
        "summary": {
            "total_assignments": len(subs),
            "completed_assignments": len(done),
            "completion_rate": _share(len(done), len(subs)),
            "average_percentage": average,
            "late_count": sum(1 for x in done if x.is_late),
            "improvement": trend,
        },
        "subject_performance": by_subject,
        "time_management": {
            "total_time_spent_seconds": total_time,
            "average_time_per_assignment": round(total_time / len(done)) if done else 0,
        },
        "recommendations": recommendations(average, trend, by_subject),
    }


def visible_student_ids(s: "Session", checker: "PermissionChecker") -> list[int] | None:
    """Students whose homework the viewer may aggregate; None means everyone (admin)."""
    from app.famlearn.models import User

    if checker.is_admin():
        return None
    if checker.is_student():
        return [checker.user_id]
    if checker.family_id is None:
        return []
    return list(
        s.execute(select(User.id).where(User.family_id == checker.family_id, User.role == Role.STUDENT)).scalars()
    )


def overview_analytics(
    s: "Session",
    checker: "PermissionChecker",
    *,
    days: int = 30,
    subject: str | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    now = now or datetime.utcnow()
    subs = _window_submissions(s, visible_student_ids(s, checker), now - timedelta(days=days))
    if checker.is_student():
        subs = [x for x in subs if x.assignment.is_visible]
    if subject:
        subs = [x for x in subs if subject in _subjects(x.assignment)]
    done = [x for x in subs if x.status in DONE_STATUSES]

    distribution: dict[str, int] = defaultdict(int)
    for sub in subs:
        for code in _subjects(sub.assignment):
            distribution[code] += 1
    recent = sorted(done, key=lambda x: x.submitted_at or x.created_at, reverse=True)[:10]
    return {
        "days": days,
        "subject": subject,
        "summary": {
            "total_assignments": len({x.assignment_id for x in subs}),
            "total_submissions": len(subs),
            "completed_submissions": len(done),
            "completion_rate": _share(len(done), len(subs)),
            "average_percentage": _average([x.percentage for x in done if x.percentage is not None]),
        },
        "subject_distribution": [{"subject": k, "count": distribution[k]} for k in sorted(distribution)],
        "recent_activity": [
            {
                "submission_id": x.id,
                "assignment_id": x.assignment_id,
                "title": x.assignment.title,
                "student_id": x.student_id,
                "status": x.status,
                "percentage": x.percentage,
                "submitted_at": iso(x.submitted_at),
            }
            for x in recent
        ],
    }

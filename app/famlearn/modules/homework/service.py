"""
Homework assignments and per-student submissions.

Assigning homework creates a NOT_STARTED submission for every student. The
student moves it to IN_PROGRESS (start) and SUBMITTED (submit); a parent or
admin then marks it GRADED.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import or_, select

from app.famlearn.audit import record_activity
from app.famlearn.constants import Role
from app.famlearn.modules.ipad_unlock import service as unlock_service
from app.famlearn.utils import iso, parse_bool, parse_datetime, parse_int

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from app.famlearn.models import User
    from app.famlearn.modules.homework.models import HomeworkAssignment, HomeworkSubmission
    from app.famlearn.rbac import PermissionChecker

logger = logging.getLogger(__name__)

PRIORITIES = ("LOW", "MEDIUM", "HIGH", "URGENT")
STATUSES = ("NOT_STARTED", "IN_PROGRESS", "SUBMITTED", "GRADED")
DONE_STATUSES = ("SUBMITTED", "GRADED")


class HomeworkError(Exception):
    """A homework state transition that cannot happen; maps to a 400."""

    def __init__(self, message: str, **extra: Any):
        super().__init__(message)
        self.message = message
        self.extra = extra


def assignment_statistics(a: "HomeworkAssignment") -> dict[str, Any]:
    subs = a.submissions
    done = [x for x in subs if x.status in DONE_STATUSES]
    scored = [x.percentage for x in done if x.percentage is not None]
    return {
        "total_students": len(subs),
        "started_count": sum(1 for x in subs if x.status != "NOT_STARTED"),
        "submitted_count": len(done),
        "graded_count": sum(1 for x in subs if x.status == "GRADED"),
        "late_count": sum(1 for x in subs if x.is_late),
        "completion_rate": round(len(done) / len(subs) * 100) if subs else 0,
        "average_percentage": round(sum(scored) / len(scored), 1) if scored else None,
    }


def serialize_submission(sub: "HomeworkSubmission", *, include_assignment: bool = False) -> dict[str, Any]:
    data: dict[str, Any] = {
        "id": sub.id,
        "assignment_id": sub.assignment_id,
        "student": {
            "id": sub.student.id,
            "display_name": sub.student.display_name,
            "username": sub.student.username,
            "year_level": sub.student.year_level,
        }
        if sub.student
        else None,
        "status": sub.status,
        "started_at": iso(sub.started_at),
        "submitted_at": iso(sub.submitted_at),
        "last_worked_at": iso(sub.last_worked_at),
        "total_exercises": sub.total_exercises,
        "completed_exercises": sub.completed_exercises,
        "max_possible_score": sub.max_possible_score,
        "total_score": sub.total_score,
        "percentage": sub.percentage,
        "time_spent_seconds": sub.time_spent_seconds,
        "is_late": sub.is_late,
        "exercise_results": sub.exercise_results or [],
        "feedback": sub.feedback,
        "graded_by_id": sub.graded_by_id,
        "graded_at": iso(sub.graded_at),
    }
    if include_assignment:
        a = sub.assignment
        data["assignment"] = {
            "id": a.id,
            "title": a.title,
            "due_at": iso(a.due_at),
            "priority": a.priority,
            "total_points": a.total_points,
            "passing_score": a.passing_score,
        }
    return data


def serialize_assignment(
    a: "HomeworkAssignment",
    *,
    viewer: "PermissionChecker | None" = None,
    include_submissions: bool = True,
) -> dict[str, Any]:
    data: dict[str, Any] = {
        "id": a.id,
        "title": a.title,
        "description": a.description,
        "instructions": a.instructions,
        "assigned_by": {"id": a.assigned_by.id, "display_name": a.assigned_by.display_name}
        if a.assigned_by
        else None,
        "due_at": iso(a.due_at),
        "priority": a.priority,
        "estimated_minutes": a.estimated_minutes,
        "total_points": a.total_points,
        "passing_score": a.passing_score,
        "late_submission_allowed": a.late_submission_allowed,
        "late_penalty": a.late_penalty,
        "is_visible": a.is_visible,
        "created_at": iso(a.created_at),
        "exercises": [
            {
                "exercise_id": link.exercise_id,
                "title": link.exercise.title if link.exercise else None,
                "subject": link.exercise.subject if link.exercise else None,
                "difficulty": link.exercise.difficulty if link.exercise else None,
                "order": link.order,
                "is_required": link.is_required,
                "weight": link.weight,
            }
            for link in a.exercises
        ],
        "statistics": assignment_statistics(a),
    }
    if include_submissions:
        subs = a.submissions
        if viewer is not None and viewer.is_student():
            subs = [x for x in subs if x.student_id == viewer.user_id]
        elif viewer is not None and not viewer.is_admin():
            subs = [x for x in subs if viewer.can_access_user_data(x.student_id, x.student.family_id)]
        data["submissions"] = [serialize_submission(x) for x in subs]
    return data


def can_view_assignment(checker: "PermissionChecker", a: "HomeworkAssignment") -> bool:
    if checker.is_admin():
        return True
    if checker.is_student():
        return a.is_visible and any(x.student_id == checker.user_id for x in a.submissions)
    if a.assigned_by_id == checker.user_id:
        return True
    return any(checker.can_access_user_data(x.student_id, x.student.family_id) for x in a.submissions)


def assignment_query(checker: "PermissionChecker", args: dict):
    from app.famlearn.models import User
    from app.famlearn.modules.homework.models import HomeworkAssignment, HomeworkSubmission

    stmt = select(HomeworkAssignment)
    if checker.is_student():
        mine = select(HomeworkSubmission.assignment_id).where(HomeworkSubmission.student_id == checker.user_id)
        stmt = stmt.where(HomeworkAssignment.id.in_(mine), HomeworkAssignment.is_visible.is_(True))
    elif not checker.is_admin():
        family_students = select(User.id).where(User.family_id == checker.family_id, User.role == Role.STUDENT)
        family_work = select(HomeworkSubmission.assignment_id).where(
            HomeworkSubmission.student_id.in_(family_students)
        )
        stmt = stmt.where(
            or_(HomeworkAssignment.id.in_(family_work), HomeworkAssignment.assigned_by_id == checker.user_id)
        )

    student_id = parse_int(args.get("student_id"))
    if student_id is not None:
        stmt = stmt.where(
            HomeworkAssignment.id.in_(
                select(HomeworkSubmission.assignment_id).where(HomeworkSubmission.student_id == student_id)
            )
        )
    priority = (args.get("priority") or "").strip().upper()
    if priority:
        stmt = stmt.where(HomeworkAssignment.priority == priority)
    # NULL due dates last
    return stmt.order_by(
        HomeworkAssignment.due_at.is_(None), HomeworkAssignment.due_at.asc(), HomeworkAssignment.created_at.desc()
    )


def _is_number(v: Any) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool)


def validate_assignment_payload(
    s: "Session",
    payload: dict,
    checker: "PermissionChecker",
    *,
    existing: "HomeworkAssignment | None" = None,
) -> list[str]:
    """
    Validate a create payload, or the keys present when updating ``existing``.
    Students and exercises are fixed once homework is assigned.
    """
    from app.famlearn.models import User
    from app.famlearn.modules.exercises.models import Exercise

    errors: list[str] = []
    creating = existing is None
    if creating or "title" in payload:
        title = (payload.get("title") or "").strip()
        if not title:
            errors.append("title is required.")
        elif len(title) > 255:
            errors.append("title must be at most 255 characters.")
    if payload.get("priority", "MEDIUM") not in PRIORITIES:
        errors.append(f"priority must be one of: {', '.join(PRIORITIES)}")
    if payload.get("due_at") not in (None, "") and parse_datetime(payload.get("due_at")) is None:
        errors.append("due_at must be an ISO datetime.")
    for key in ("total_points", "passing_score", "estimated_minutes"):
        if key not in payload or (key == "estimated_minutes" and payload[key] is None):
            continue
        if not _is_number(payload[key]) or payload[key] < 0:
            errors.append(f"{key} must be a non-negative number.")
    penalty = payload.get("late_penalty")
    if penalty is not None and (not _is_number(penalty) or not (0 <= penalty <= 100)):
        errors.append("late_penalty must be between 0 and 100.")

    if not creating:
        for key in ("student_ids", "exercises"):
            if key in payload:
                errors.append(f"{key} cannot be changed once homework is assigned.")
        points_changed = "total_points" in payload and payload["total_points"] != existing.total_points
        if points_changed and any(x.status in DONE_STATUSES for x in existing.submissions):
            errors.append("total_points cannot be changed once work has been submitted.")
        return errors

    student_ids = payload.get("student_ids")
    if not isinstance(student_ids, list) or not student_ids or any(parse_int(x) is None for x in student_ids):
        errors.append("student_ids must be a non-empty list of user ids.")
    else:
        wanted = {parse_int(x) for x in student_ids}
        found = s.execute(select(User).where(User.id.in_(wanted))).scalars().all()
        ok = {
            u.id
            for u in found
            if u.role == Role.STUDENT and u.is_active and checker.can_access_user_data(u.id, u.family_id)
        }
        bad = sorted(wanted - ok)
        if bad:
            errors.append(f"Unknown or non-student users: {', '.join(str(x) for x in bad)}")

    exercises = payload.get("exercises")
    if not isinstance(exercises, list) or not exercises:
        errors.append("exercises must be a non-empty list.")
    else:
        ids = []
        for i, item in enumerate(exercises):
            if not isinstance(item, dict) or parse_int(item.get("exercise_id")) is None:
                errors.append(f"exercises[{i}].exercise_id is required.")
                continue
            if "weight" in item and (not _is_number(item["weight"]) or item["weight"] <= 0):
                errors.append(f"exercises[{i}].weight must be a positive number.")
            ids.append(parse_int(item["exercise_id"]))
        if len(ids) != len(set(ids)):
            errors.append("exercises must not repeat an exercise.")
        known = set(s.execute(select(Exercise.id).where(Exercise.id.in_(ids))).scalars().all())
        missing = [x for x in ids if x not in known]
        if missing:
            errors.append(f"Exercises not found: {', '.join(str(x) for x in missing)}")
    return errors


def create_assignment(s: "Session", payload: dict, actor: "User", *, now: datetime | None = None) -> "HomeworkAssignment":
    from app.famlearn.modules.homework.models import (
        HomeworkAssignment,
        HomeworkAssignmentExercise,
        HomeworkSubmission,
    )

    now = now or datetime.utcnow()
    total_points = payload.get("total_points", 100)
    a = HomeworkAssignment(
        title=payload["title"].strip(),
        description=(payload.get("description") or "").strip() or None,
        instructions=(payload.get("instructions") or "").strip() or None,
        assigned_by_id=actor.id,
        due_at=parse_datetime(payload.get("due_at")),
        priority=payload.get("priority") or "MEDIUM",
        estimated_minutes=parse_int(payload.get("estimated_minutes")),
        total_points=total_points,
        passing_score=payload.get("passing_score", 70),
        late_submission_allowed=parse_bool(payload.get("late_submission_allowed")) is not False,
        late_penalty=payload.get("late_penalty"),
        is_visible=parse_bool(payload.get("is_visible")) is not False,
        created_at=now,
        updated_at=now,
    )
    for i, item in enumerate(payload["exercises"]):
        a.exercises.append(
            HomeworkAssignmentExercise(
                exercise_id=parse_int(item["exercise_id"]),
                order=parse_int(item.get("order")) if item.get("order") is not None else i,
                is_required=parse_bool(item.get("is_required")) is not False,
                weight=float(item.get("weight", 1)),
            )
        )
    for student_id in dict.fromkeys(parse_int(x) for x in payload["student_ids"]):
        a.submissions.append(
            HomeworkSubmission(
                student_id=student_id,
                status="NOT_STARTED",
                total_exercises=len(payload["exercises"]),
                max_possible_score=total_points,
                created_at=now,
            )
        )
    s.add(a)
    s.flush()
    record_activity(
        s,
        actor=actor,
        action="ASSIGN_HOMEWORK",
        resource_type="HomeworkAssignment",
        resource_id=a.id,
        details={"title": a.title, "students": [x.student_id for x in a.submissions]},
    )
    return a


def can_manage_assignment(checker: "PermissionChecker", a: "HomeworkAssignment") -> bool:
    """Only the assigner or an admin may edit or delete homework."""
    return checker.is_admin() or (a.assigned_by_id is not None and a.assigned_by_id == checker.user_id)


_ASSIGNMENT_TEXT_FIELDS = ("description", "instructions")


def update_assignment(
    s: "Session", a: "HomeworkAssignment", payload: dict, actor: "User", *, now: datetime | None = None
) -> "HomeworkAssignment":
    changed: list[str] = []
    if "title" in payload:
        a.title = payload["title"].strip()
        changed.append("title")
    for key in _ASSIGNMENT_TEXT_FIELDS:
        if key in payload:
            setattr(a, key, (payload.get(key) or "").strip() or None)
            changed.append(key)
    if "due_at" in payload:
        a.due_at = parse_datetime(payload.get("due_at"))
        changed.append("due_at")
    if "priority" in payload:
        a.priority = payload["priority"]
        changed.append("priority")
    if "estimated_minutes" in payload:
        a.estimated_minutes = parse_int(payload.get("estimated_minutes"))
        changed.append("estimated_minutes")
    if "passing_score" in payload:
        a.passing_score = payload["passing_score"]
        changed.append("passing_score")
    if "late_penalty" in payload:
        a.late_penalty = payload.get("late_penalty")
        changed.append("late_penalty")
    for key in ("late_submission_allowed", "is_visible"):
        if key in payload:
            setattr(a, key, parse_bool(payload.get(key)) is not False)
            changed.append(key)
    if "total_points" in payload:
        a.total_points = payload["total_points"]
        for sub in a.submissions:
            if sub.status not in DONE_STATUSES:
                sub.max_possible_score = a.total_points
        changed.append("total_points")
    a.updated_at = now or datetime.utcnow()

    record_activity(
        s,
        actor=actor,
        action="UPDATE_HOMEWORK",
        resource_type="HomeworkAssignment",
        resource_id=a.id,
        details={"title": a.title, "fields": changed},
    )
    return a


def delete_assignment(s: "Session", a: "HomeworkAssignment", actor: "User") -> None:
    started = [x.student_id for x in a.submissions if x.status != "NOT_STARTED"]
    if started:
        raise HomeworkError("Homework that students have started cannot be deleted.", started_by=started)
    record_activity(
        s,
        actor=actor,
        action="DELETE_HOMEWORK",
        resource_type="HomeworkAssignment",
        resource_id=a.id,
        details={"title": a.title, "students": [x.student_id for x in a.submissions]},
    )
    s.delete(a)


def submission_for(s: "Session", assignment_id: int, student_id: int) -> "HomeworkSubmission | None":
    from app.famlearn.modules.homework.models import HomeworkSubmission

    return s.execute(
        select(HomeworkSubmission).where(
            HomeworkSubmission.assignment_id == assignment_id,
            HomeworkSubmission.student_id == student_id,
        )
    ).scalar_one_or_none()


def start(s: "Session", sub: "HomeworkSubmission", *, now: datetime | None = None) -> "HomeworkSubmission":
    now = now or datetime.utcnow()
    if not sub.assignment.is_visible:
        raise HomeworkError("Homework has not been released yet.")
    if sub.status == "NOT_STARTED":
        sub.status = "IN_PROGRESS"
        sub.started_at = sub.started_at or now
    sub.last_worked_at = now
    return sub


def _exercise_percentage(s: "Session", student_id: int, exercise_id: int, item: dict) -> float | None:
    """Score an exercise from a stored submission when one is referenced, else from the reported score."""
    from app.famlearn.modules.exercises.models import ExerciseSubmission

    submission_id = parse_int(item.get("submission_id"))
    if submission_id is not None:
        stored = s.get(ExerciseSubmission, submission_id)
        if stored is None or stored.user_id != student_id or stored.exercise_id != exercise_id:
            raise HomeworkError(f"Submission {submission_id} does not belong to exercise {exercise_id}.")
        return float(stored.percentage)
    score = item.get("score")
    if score is None:
        return None
    if not _is_number(score) or not (0 <= score <= 100):
        raise HomeworkError("score must be a percentage between 0 and 100.")
    return float(score)


def submit(
    s: "Session",
    sub: "HomeworkSubmission",
    items: list[dict],
    *,
    unlock_expiry_hours: int = 24,
    now: datetime | None = None,
) -> dict[str, Any]:
    """
    Combine per-exercise percentages, weighted, into the homework score.
    Late work loses late_penalty percent of the score, or is rejected when
    the assignment does not accept late submissions.
    """
    now = now or datetime.utcnow()
    a = sub.assignment
    if sub.status in DONE_STATUSES:
        raise HomeworkError("Homework has already been submitted.")
    if not a.is_visible:
        raise HomeworkError("Homework has not been released yet.")

    by_exercise = {}
    for item in items:
        exercise_id = parse_int(item.get("exercise_id")) if isinstance(item, dict) else None
        if exercise_id is None:
            raise HomeworkError("Each exercise submission needs an exercise_id.")
        by_exercise[exercise_id] = item
    links = {link.exercise_id: link for link in a.exercises}
    unknown = [x for x in by_exercise if x not in links]
    if unknown:
        raise HomeworkError("Exercises are not part of this homework.", unknown_exercises=unknown)
    missing = [link.exercise.title for link in a.exercises if link.is_required and link.exercise_id not in by_exercise]
    if missing:
        raise HomeworkError("Required exercises are not complete.", missing_exercises=missing)

    is_late = a.due_at is not None and now > a.due_at
    if is_late and not a.late_submission_allowed:
        raise HomeworkError("The due date has passed and late submissions are not accepted.")

    results = []
    weighted = 0.0
    total_weight = sum(link.weight for link in a.exercises) or 1.0
    time_spent = 0
    per_subject: dict[str, list[float]] = defaultdict(list)
    for exercise_id, item in by_exercise.items():
        link = links[exercise_id]
        pct = _exercise_percentage(s, sub.student_id, exercise_id, item)
        spent = parse_int(item.get("time_spent")) or 0
        time_spent += max(0, spent)
        if pct is not None:
            weighted += pct * link.weight
            per_subject[link.exercise.subject].append(pct)
        results.append(
            {
                "exercise_id": exercise_id,
                "submission_id": parse_int(item.get("submission_id")),
                "percentage": pct,
                "weight": link.weight,
                "time_spent": spent,
            }
        )

    raw_score = a.total_points * (weighted / total_weight) / 100
    final_score = raw_score
    if is_late and a.late_penalty:
        final_score = raw_score * (1 - a.late_penalty / 100)

    sub.status = "SUBMITTED"
    sub.completed_exercises = len(by_exercise)
    sub.total_exercises = len(a.exercises)
    sub.max_possible_score = a.total_points
    sub.total_score = round(final_score, 2)
    sub.percentage = round(final_score / a.total_points * 100, 2) if a.total_points else 0
    sub.time_spent_seconds = time_spent
    sub.is_late = is_late
    sub.exercise_results = results
    sub.started_at = sub.started_at or now
    sub.submitted_at = now
    sub.last_worked_at = now

    unlocks = []
    student = sub.student
    for subject, scores in per_subject.items():
        unlocks.append(
            unlock_service.process_trigger(
                s,
                student,
                subject,
                round(sum(scores) / len(scores)),
                triggered_by="homework",
                expiry_hours=unlock_expiry_hours,
                now=now,
            )
        )

    record_activity(
        s,
        actor=student,
        action="SUBMIT_HOMEWORK",
        resource_type="HomeworkSubmission",
        resource_id=sub.id,
        details={"assignment_id": a.id, "total_score": sub.total_score, "is_late": is_late},
    )
    logger.info("Homework %s submitted by user_id=%s late=%s score=%s", a.id, sub.student_id, is_late, sub.total_score)
    return {
        "submission": serialize_submission(sub),
        "passed": sub.percentage >= a.passing_score,
        "unlocked_minutes": sum(u["unlocked_minutes"] for u in unlocks),
    }


def grade(s: "Session", sub: "HomeworkSubmission", payload: dict, grader: "User", *, now: datetime | None = None) -> "HomeworkSubmission":
    now = now or datetime.utcnow()
    if sub.status not in DONE_STATUSES:
        raise HomeworkError("Only submitted homework can be graded.")
    a = sub.assignment
    if payload.get("total_score") is not None:
        score = payload["total_score"]
        if not _is_number(score) or not (0 <= score <= a.total_points):
            raise HomeworkError(f"total_score must be between 0 and {a.total_points}.")
        sub.total_score = score
        sub.percentage = round(score / a.total_points * 100, 2) if a.total_points else 0
    feedback = payload.get("feedback")
    if feedback is not None:
        sub.feedback = str(feedback).strip() or None
    sub.status = "GRADED"
    sub.graded_by_id = grader.id
    sub.graded_at = now
    record_activity(
        s,
        actor=grader,
        action="GRADE_HOMEWORK",
        resource_type="HomeworkSubmission",
        resource_id=sub.id,
        details={"total_score": sub.total_score, "student_id": sub.student_id},
    )
    return sub


def submission_query(student_id: int, args: dict, *, visible_only: bool = False):
    from app.famlearn.modules.homework.models import HomeworkAssignment, HomeworkSubmission

    stmt = select(HomeworkSubmission).where(HomeworkSubmission.student_id == student_id)
    if visible_only:
        stmt = stmt.join(HomeworkAssignment, HomeworkAssignment.id == HomeworkSubmission.assignment_id).where(
            HomeworkAssignment.is_visible.is_(True)
        )
    assignment_id = parse_int(args.get("assignment_id"))
    if assignment_id is not None:
        stmt = stmt.where(HomeworkSubmission.assignment_id == assignment_id)
    status = (args.get("status") or "").strip().upper()
    if status:
        stmt = stmt.where(HomeworkSubmission.status == status)
    return stmt.order_by(
        HomeworkSubmission.last_worked_at.is_(None),
        HomeworkSubmission.last_worked_at.desc(),
        HomeworkSubmission.created_at.desc(),
    )

"""
Answer checking for exercise questions.

Question types: multiple-choice, true-false, short-answer, sentence-completion,
matching and numeric. Unknown types fall back to a case-insensitive exact match.
"""
from __future__ import annotations

import re
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any

QUESTION_TYPES = (
    "multiple-choice",
    "true-false",
    "short-answer",
    "sentence-completion",
    "matching",
    "numeric",
)

_NON_NUMERIC = re.compile(r"[^0-9.\-]")


def _norm(value: Any) -> str:
    return str(value).strip().lower()


def _to_number(value: Any) -> float | None:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    cleaned = _NON_NUMERIC.sub("", str(value))
    try:
        return float(cleaned)
    except ValueError:
        return None


def check_answer(question: dict[str, Any], user_answer: Any) -> bool:
    if user_answer is None or user_answer == "" or user_answer == {}:
        return False
    qtype = question.get("type")
    correct = question.get("correct_answer")

    if qtype == "short-answer":
        c, u = _norm(correct), _norm(user_answer)
        return c == u or (bool(u) and (u in c or c in u))

    if qtype == "sentence-completion":
        c_parts = [p.strip() for p in _norm(correct).split(",")]
        u_parts = [p.strip() for p in _norm(user_answer).split(",")]
        if len(c_parts) != len(u_parts):
            return False
        return all(c == u or (u and u in c) for c, u in zip(c_parts, u_parts))

    if qtype == "matching":
        if not isinstance(correct, dict) or not isinstance(user_answer, dict):
            return False
        return {_norm(k): _norm(v) for k, v in correct.items()} == {
            _norm(k): _norm(v) for k, v in user_answer.items()
        }

    if qtype == "numeric":
        tolerance = float(question.get("tolerance") or 0)
        c_num, u_num = _to_number(correct), _to_number(user_answer)
        if c_num is None or u_num is None:
            return False
        return abs(u_num - c_num) <= tolerance

    # multiple-choice, true-false and anything else
    return _norm(correct) == _norm(user_answer)


@dataclass
class GradeResult:
    score: float = 0
    max_score: float = 0
    correct_count: int = 0
    total_questions: int = 0
    analysis: list[dict[str, Any]] = field(default_factory=list)

    @property
    def percentage(self) -> int:
        if self.max_score <= 0:
            return 0
        return round(self.score / self.max_score * 100)

    @property
    def wrong(self) -> list[dict[str, Any]]:
        return [a for a in self.analysis if not a["is_correct"]]


def grade(questions: list[dict[str, Any]], answers: dict[str, Any]) -> GradeResult:
    result = GradeResult(total_questions=len(questions))
    for q in questions:
        qid = str(q.get("id"))
        points = float(q.get("points") or 1)
        user_answer = answers.get(qid)
        ok = check_answer(q, user_answer)
        result.max_score += points
        if ok:
            result.score += points
            result.correct_count += 1
        result.analysis.append(
            {
                "question_id": qid,
                "question_type": q.get("type"),
                "prompt": q.get("prompt"),
                "is_correct": ok,
                "user_answer": user_answer,
                "correct_answer": q.get("correct_answer"),
                "explanation": q.get("explanation"),
                "points": points if ok else 0,
            }
        )
    return result


def feedback(result: GradeResult) -> dict[str, list[str]]:
    """Strengths, improvements and recommendations from per-type performance."""
    by_type: dict[str, list[bool]] = defaultdict(list)
    for a in result.analysis:
        by_type[a["question_type"] or "other"].append(a["is_correct"])

    strengths: list[str] = []
    improvements: list[str] = []
    recommendations: list[str] = []
    for qtype, marks in by_type.items():
        rate = sum(marks) / len(marks) * 100
        label = qtype.replace("-", " ")
        if rate >= 80:
            strengths.append(f"Excellent performance on {label} questions")
        elif rate >= 60:
            strengths.append(f"Good understanding of {label} questions")
        else:
            improvements.append(f"Needs more practice with {label} questions")

    pct = result.percentage
    if pct >= 90:
        recommendations.append("Try more challenging material")
    elif pct >= 80:
        recommendations.append("Keep practising at this level")
    elif pct >= 70:
        recommendations.append("Review the explanations for the questions you missed")
    else:
        recommendations.append("Start with shorter exercises and build up")
        recommendations.append("Revisit the mistake book before the next attempt")
    return {"strengths": strengths, "improvements": improvements, "recommendations": recommendations}

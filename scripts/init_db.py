import argparse
import os
import sys
from pathlib import Path

from sqlalchemy import select

# Ensure repo root is on sys.path when running as a script (Windows-friendly).
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.famlearn.constants import Role
from app.famlearn.models import Family, User
from app.famlearn.modules.exercises.models import Exercise
from app.famlearn.modules.ipad_unlock.models import UnlockConfiguration
from app.famlearn.modules.vocabulary.models import VocabularyWord
from app.famlearn.security import generate_parental_code, hash_password
from scripts._db_utils import create_schema, script_session

DEFAULT_UNLOCK_RULES = [
    {
        "subject": subject,
        "score_thresholds": [
            {"min_score": 60, "max_score": 79, "base_minutes": 10, "bonus_minutes": 0},
            {"min_score": 80, "max_score": 99, "base_minutes": 20, "bonus_minutes": 0},
            {"min_score": 100, "max_score": 100, "base_minutes": 30, "bonus_minutes": 10},
        ],
        "daily_limit": 120,
    }
    for subject in ("ENGLISH", "MATHS", "HASS")
]

DEMO_WORDS = [
    ("adventure", "An unusual and exciting experience.", "NOUN", 2, 3),
    ("curious", "Eager to know or learn something.", "ADJECTIVE", 2, 3),
    ("persuade", "To cause someone to do something through reasoning.", "VERB", 3, 5),
    ("ancient", "Belonging to the very distant past.", "ADJECTIVE", 2, 4),
]

DEMO_EXERCISES = [
    {
        "subject": "MATHS",
        "title": "Times tables warm-up",
        "year_level": 3,
        "difficulty": "easy",
        "topic": "multiplication",
        "questions": [
            {"id": "q1", "type": "numeric", "prompt": "6 x 7 = ?", "correct_answer": 42, "points": 1},
            {"id": "q2", "type": "numeric", "prompt": "9 x 8 = ?", "correct_answer": 72, "points": 1},
            {
                "id": "q3",
                "type": "multiple-choice",
                "prompt": "Which is 3 x 4?",
                "options": ["7", "12", "34"],
                "correct_answer": "12",
                "points": 1,
            },
        ],
    },
    {
        "subject": "ENGLISH",
        "title": "The lighthouse keeper",
        "year_level": 4,
        "difficulty": "medium",
        "topic": "reading",
        "content": "Every night the keeper climbed the stairs to light the lamp for passing ships.",
        "questions": [
            {
                "id": "q1",
                "type": "short-answer",
                "prompt": "What did the keeper light?",
                "correct_answer": "the lamp",
                "points": 2,
            },
            {
                "id": "q2",
                "type": "true-false",
                "prompt": "The keeper worked during the day.",
                "correct_answer": "false",
                "points": 1,
            },
        ],
    },
]


def seed_only(*, database_url: str | None = None) -> None:
    """
    Create tables and the admin account in an idempotent way.
    Does NOT overwrite an existing admin user's password.
    """
    admin_username = (os.environ.get("ADMIN_USERNAME") or "admin").strip()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"

    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///famlearn.db").strip()
    create_schema(db_url)

    with script_session(db_url) as s:
        user = s.execute(select(User).where(User.username == admin_username)).scalar_one_or_none()
        if not user:
            s.add(
                User(
                    username=admin_username,
                    password_hash=hash_password(admin_password),
                    display_name="Administrator",
                    role=Role.ADMIN,
                    is_active=True,
                )
            )
        elif user.role != Role.ADMIN:
            raise RuntimeError(f"User {admin_username!r} exists but is not an admin; refusing to promote it.")

        config = s.execute(
            select(UnlockConfiguration).where(UnlockConfiguration.family_id.is_(None)).limit(1)
        ).scalar_one_or_none()
        if not config:
            s.add(
                UnlockConfiguration(
                    name="Default screen time",
                    description="10-30 minutes per passing exercise, capped at two hours a day.",
                    rules=DEFAULT_UNLOCK_RULES,
                    is_active=True,
                )
            )

    print("Initialized database (seed_only).")
    print(f"Admin username: {admin_username}")
    print("Admin password: (from ADMIN_PASSWORD)")


def seed_demo(*, database_url: str | None = None) -> None:
    """A demo family with one parent, one student, a few words and exercises."""
    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///famlearn.db").strip()
    password = os.environ.get("DEMO_PASSWORD") or "Learn2Grow"

    with script_session(db_url) as s:
        family = s.execute(select(Family).where(Family.name == "Demo Family")).scalar_one_or_none()
        if not family:
            family = Family(name="Demo Family")
            s.add(family)
            s.flush()

        for username, display, role in (("demo_parent", "Demo Parent", Role.PARENT), ("demo_student", "Demo Student", Role.STUDENT)):
            if s.execute(select(User).where(User.username == username)).scalar_one_or_none():
                continue
            u = User(
                username=username,
                password_hash=hash_password(password),
                display_name=display,
                role=role,
                is_active=True,
                family_id=family.id,
            )
            if role is Role.STUDENT:
                u.year_level = 4
                u.birth_year = 2016
                u.parental_code = generate_parental_code()
            s.add(u)

        for word, definition, pos, difficulty, year_level in DEMO_WORDS:
            if s.execute(select(VocabularyWord).where(VocabularyWord.word == word)).scalar_one_or_none():
                continue
            s.add(
                VocabularyWord(
                    word=word,
                    definition=definition,
                    part_of_speech=pos,
                    difficulty=difficulty,
                    year_level=year_level,
                    source="seed",
                )
            )

        for item in DEMO_EXERCISES:
            exists = s.execute(select(Exercise).where(Exercise.title == item["title"])).scalar_one_or_none()
            if exists:
                continue
            s.add(Exercise(total_points=sum(q["points"] for q in item["questions"]), **item))

    print("Seeded demo family (demo_parent / demo_student).")


def main() -> None:
    parser = argparse.ArgumentParser(description="Create tables and seed the family learning database.")
    parser.add_argument("--demo", action="store_true", help="also seed a demo family, words and exercises")
    args = parser.parse_args()
    seed_only(database_url=None)
    if args.demo:
        seed_demo(database_url=None)


if __name__ == "__main__":
    main()

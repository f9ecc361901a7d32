"""
Central constants for the family learning application.
"""
from __future__ import annotations

import enum


class Role(str, enum.Enum):
    STUDENT = "STUDENT"
    PARENT = "PARENT"
    ADMIN = "ADMIN"


class Subject(str, enum.Enum):
    ENGLISH = "ENGLISH"
    MATHS = "MATHS"
    HASS = "HASS"
    VOCABULARY = "VOCABULARY"


# Subjects that have graded exercises (vocabulary has its own flow)
EXERCISE_SUBJECTS = (Subject.ENGLISH, Subject.MATHS, Subject.HASS)

YEAR_LEVELS = tuple(range(1, 13))
MIN_BIRTH_YEAR = 1990

DIFFICULTIES = ("easy", "medium", "hard")

# Common passwords rejected by the strength check
COMMON_PASSWORDS = frozenset(
    {
        "password",
        "123456",
        "12345678",
        "qwerty",
        "abc123",
        "password123",
        "111111",
        "123123",
        "admin",
        "welcome",
    }
)

PARENTAL_CODE_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
PARENTAL_CODE_LENGTH = 6

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100

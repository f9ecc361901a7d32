from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.famlearn.models import Base

if TYPE_CHECKING:
    from app.famlearn.models import User


class VocabularyWord(Base):
    __tablename__ = "vocabulary_words"
    __table_args__ = (
        Index("idx_vocabulary_words_year_level", "year_level"),
        Index("idx_vocabulary_words_category", "category"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    word: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)  # stored lowercased
    definition: Mapped[str] = mapped_column(Text, nullable=False)
    part_of_speech: Mapped[str] = mapped_column(String(16), nullable=False)
    pronunciation: Mapped[str | None] = mapped_column(String(100), nullable=True)
    example: Mapped[str | None] = mapped_column(Text, nullable=True)
    chinese_definition: Mapped[str | None] = mapped_column(Text, nullable=True)

    difficulty: Mapped[int] = mapped_column(Integer, nullable=False, default=1)  # 1-5
    frequency: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    year_level: Mapped[int | None] = mapped_column(Integer, nullable=True)
    category: Mapped[str | None] = mapped_column(String(64), nullable=True)

    synonyms: Mapped[list | None] = mapped_column(JSON, nullable=True)
    antonyms: Mapped[list | None] = mapped_column(JSON, nullable=True)
    tags: Mapped[list | None] = mapped_column(JSON, nullable=True)
    source: Mapped[str] = mapped_column(String(64), nullable=False, default="manual")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    progress: Mapped[list["VocabularyProgress"]] = relationship(
        back_populates="word",
        cascade="all, delete-orphan",
    )


class VocabularyProgress(Base):
    """
    One row per (student, word). ebbinghaus_level indexes EBBINGHAUS_INTERVALS
    and decides the next review date.
    """

    __tablename__ = "vocabulary_progress"
    __table_args__ = (
        UniqueConstraint("user_id", "word_id", name="uq_vocabulary_progress_user_word"),
        Index("idx_vocabulary_progress_next_review", "user_id", "next_review_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    word_id: Mapped[int] = mapped_column(ForeignKey("vocabulary_words.id", ondelete="CASCADE"), nullable=False)

    phase: Mapped[str] = mapped_column(String(16), nullable=False, default="RECOGNITION")
    mastery_level: Mapped[int] = mapped_column(Integer, nullable=False, default=0)  # 0-100
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    correct_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    streak_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_study_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    ebbinghaus_level: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    review_interval_days: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    next_review_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    last_seen_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    last_correct_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    is_memorized: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    needs_review: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    word: Mapped[VocabularyWord] = relationship(back_populates="progress", lazy="joined")
    user: Mapped[User] = relationship("User", lazy="joined")

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.famlearn.models import Base

if TYPE_CHECKING:
    from app.famlearn.modules.exercises.models import Exercise


class MistakeEntry(Base):
    """A wrongly answered question in a student's mistake book."""

    __tablename__ = "mistake_entries"
    __table_args__ = (
        UniqueConstraint("user_id", "exercise_id", "question_id", name="uq_mistake_entries_user_question"),
        Index("idx_mistake_entries_user_subject", "user_id", "subject"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    exercise_id: Mapped[int] = mapped_column(ForeignKey("exercises.id", ondelete="CASCADE"), nullable=False)
    question_id: Mapped[str] = mapped_column(String(64), nullable=False)
    submission_id: Mapped[int | None] = mapped_column(
        ForeignKey("exercise_submissions.id", ondelete="SET NULL"), nullable=True
    )

    question_content: Mapped[str] = mapped_column(Text, nullable=False)
    incorrect_answer: Mapped[str] = mapped_column(Text, nullable=False)
    correct_answer: Mapped[str] = mapped_column(Text, nullable=False)
    explanation: Mapped[str | None] = mapped_column(Text, nullable=True)

    mistake_type: Mapped[str] = mapped_column(String(32), nullable=False, default="UNKNOWN")
    difficulty: Mapped[str] = mapped_column(String(16), nullable=False, default="medium")
    subject: Mapped[str] = mapped_column(String(16), nullable=False)
    tags: Mapped[list | None] = mapped_column(JSON, nullable=True)

    repeat_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    review_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_mastered: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    mastered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    last_mistake_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    last_review_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    exercise: Mapped[Exercise] = relationship("Exercise", lazy="joined")
    reviews: Mapped[list["MistakeReview"]] = relationship(
        back_populates="mistake",
        cascade="all, delete-orphan",
        order_by="MistakeReview.reviewed_at.desc()",
        lazy="selectin",
    )


class MistakeReview(Base):
    __tablename__ = "mistake_reviews"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    mistake_id: Mapped[int] = mapped_column(ForeignKey("mistake_entries.id", ondelete="CASCADE"), nullable=False)
    is_correct: Mapped[bool] = mapped_column(Boolean, nullable=False)
    time_spent_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    reviewed_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    mistake: Mapped[MistakeEntry] = relationship(back_populates="reviews")

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import JSON, Boolean, DateTime, Float, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.famlearn.models import Base

if TYPE_CHECKING:
    from app.famlearn.models import User
    from app.famlearn.modules.exercises.models import Exercise


class HomeworkAssignment(Base):
    __tablename__ = "homework_assignments"
    __table_args__ = (
        Index("idx_homework_assignments_assigned_by", "assigned_by_id"),
        Index("idx_homework_assignments_due_at", "due_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    instructions: Mapped[str | None] = mapped_column(Text, nullable=True)

    assigned_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    due_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    priority: Mapped[str] = mapped_column(String(16), nullable=False, default="MEDIUM")  # LOW, MEDIUM, HIGH, URGENT
    estimated_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)

    total_points: Mapped[int] = mapped_column(Integer, nullable=False, default=100)
    passing_score: Mapped[int] = mapped_column(Integer, nullable=False, default=70)
    late_submission_allowed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    late_penalty: Mapped[float | None] = mapped_column(Float, nullable=True)  # percent deducted when late
    is_visible: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    assigned_by: Mapped[User | None] = relationship("User", lazy="joined")
    exercises: Mapped[list["HomeworkAssignmentExercise"]] = relationship(
        back_populates="assignment",
        cascade="all, delete-orphan",
        order_by="HomeworkAssignmentExercise.order",
        lazy="selectin",
    )
    submissions: Mapped[list["HomeworkSubmission"]] = relationship(
        back_populates="assignment",
        cascade="all, delete-orphan",
        lazy="selectin",
    )


class HomeworkAssignmentExercise(Base):
    __tablename__ = "homework_assignment_exercises"
    __table_args__ = (UniqueConstraint("assignment_id", "exercise_id", name="uq_homework_assignment_exercise"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    assignment_id: Mapped[int] = mapped_column(ForeignKey("homework_assignments.id", ondelete="CASCADE"), nullable=False)
    exercise_id: Mapped[int] = mapped_column(ForeignKey("exercises.id", ondelete="CASCADE"), nullable=False)
    order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    weight: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)

    assignment: Mapped[HomeworkAssignment] = relationship(back_populates="exercises")
    exercise: Mapped[Exercise] = relationship("Exercise", lazy="joined")


class HomeworkSubmission(Base):
    """One row per (assignment, student); created NOT_STARTED when the homework is assigned."""

    __tablename__ = "homework_submissions"
    __table_args__ = (
        UniqueConstraint("assignment_id", "student_id", name="uq_homework_submission_student"),
        Index("idx_homework_submissions_student", "student_id", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    assignment_id: Mapped[int] = mapped_column(ForeignKey("homework_assignments.id", ondelete="CASCADE"), nullable=False)
    student_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="NOT_STARTED")

    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    last_worked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    total_exercises: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completed_exercises: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_possible_score: Mapped[float] = mapped_column(Float, nullable=False, default=100)
    total_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    percentage: Mapped[float | None] = mapped_column(Float, nullable=True)
    time_spent_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_late: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    exercise_results: Mapped[list | None] = mapped_column(JSON, nullable=True)

    feedback: Mapped[str | None] = mapped_column(Text, nullable=True)
    graded_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    graded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    assignment: Mapped[HomeworkAssignment] = relationship(back_populates="submissions")
    student: Mapped[User] = relationship("User", foreign_keys=[student_id], lazy="joined")


class HomeworkTemplate(Base):
    """Reusable homework recipe: exercise selection rules plus default assignment settings."""

    __tablename__ = "homework_templates"
    __table_args__ = (Index("idx_homework_templates_type_active", "template_type", "is_active"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    template_type: Mapped[str] = mapped_column(String(32), nullable=False, default="CUSTOM")

    year_levels: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    subjects: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    # [{"subject", "min_count", "max_count", "difficulty"?, "topics"?}]
    selection_rules: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    # priority, total_points, passing_score, estimated_minutes, late_submission_allowed, late_penalty, is_visible
    default_settings: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    usage_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    created_by: Mapped[User | None] = relationship("User", lazy="joined")

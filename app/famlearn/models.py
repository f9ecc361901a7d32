from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Enum, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from app.famlearn.constants import Role


class Base(DeclarativeBase):
    pass


class Family(Base):
    __tablename__ = "families"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="Australia/Brisbane")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    members: Mapped[list["User"]] = relationship(
        back_populates="family",
        lazy="selectin",
        order_by="User.created_at",
    )


class User(Base):
    __tablename__ = "users"
    __table_args__ = (
        Index("idx_users_family_id", "family_id"),
        Index("idx_users_role", "role"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    username: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True, unique=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    display_name: Mapped[str] = mapped_column(String(100), nullable=False)
    role: Mapped[Role] = mapped_column(Enum(Role, native_enum=False, length=16), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="Australia/Brisbane")

    # Students only
    year_level: Mapped[int | None] = mapped_column(Integer, nullable=True)
    birth_year: Mapped[int | None] = mapped_column(Integer, nullable=True)
    parental_code: Mapped[str | None] = mapped_column(String(8), nullable=True)

    family_id: Mapped[int | None] = mapped_column(ForeignKey("families.id", ondelete="SET NULL"), nullable=True)

    last_login_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    family: Mapped[Family | None] = relationship(back_populates="members", lazy="selectin")


class ActivityLog(Base):
    """
    Append-only audit trail entry.
    Written as a side effect of auth and content mutations; nothing in the app reads it back.
    """

    __tablename__ = "activity_logs"
    __table_args__ = (
        Index("idx_activity_logs_user_id", "user_id"),
        Index("idx_activity_logs_action", "action"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    request_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    action: Mapped[str] = mapped_column(String(64), nullable=False)  # e.g. "LOGIN", "CREATE_CONTENT"
    resource_type: Mapped[str | None] = mapped_column(String(64), nullable=True)  # e.g. "User"
    resource_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    details_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)


# Ensure module models are imported so Base.metadata includes their tables.
# (Kept at bottom to avoid circular imports.)
from app.famlearn.modules.vocabulary.models import VocabularyProgress, VocabularyWord  # noqa: E402,F401
from app.famlearn.modules.exercises.models import Exercise, ExerciseSubmission  # noqa: E402,F401
from app.famlearn.modules.homework.models import (  # noqa: E402,F401
    HomeworkAssignment,
    HomeworkAssignmentExercise,
    HomeworkSubmission,
    HomeworkTemplate,
)
from app.famlearn.modules.mistakes.models import MistakeEntry, MistakeReview  # noqa: E402,F401
from app.famlearn.modules.ipad_unlock.models import UnlockConfiguration, UnlockRecord  # noqa: E402,F401

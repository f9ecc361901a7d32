from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.famlearn.models import Base


class UnlockConfiguration(Base):
    """
    A named rule set. rules is a list of
    {"subject", "score_thresholds": [{"min_score", "max_score", "base_minutes", "bonus_minutes"}], "daily_limit"?}.
    family_id NULL means the configuration applies to every family.
    """

    __tablename__ = "unlock_configurations"
    __table_args__ = (Index("idx_unlock_configurations_family", "family_id", "is_active"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    rules: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    family_id: Mapped[int | None] = mapped_column(ForeignKey("families.id", ondelete="CASCADE"), nullable=True)

    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class UnlockRecord(Base):
    __tablename__ = "unlock_records"
    __table_args__ = (
        Index("idx_unlock_records_user_unlocked", "user_id", "unlocked_at"),
        Index("idx_unlock_records_user_active", "user_id", "used", "expires_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    configuration_id: Mapped[int | None] = mapped_column(
        ForeignKey("unlock_configurations.id", ondelete="SET NULL"), nullable=True
    )

    subject: Mapped[str] = mapped_column(String(16), nullable=False)
    achieved_score: Mapped[int] = mapped_column(Integer, nullable=False)
    unlocked_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    triggered_by: Mapped[str] = mapped_column(String(32), nullable=False, default="manual")  # exercise, homework, manual

    unlocked_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    used: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    configuration: Mapped[UnlockConfiguration | None] = relationship(lazy="joined")

"""Security and lifecycle audit log."""

from datetime import datetime, timezone

from sqlalchemy import Integer, String, Text, DateTime, Index, JSON
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class ActivityLog(Base):
    """Severity-classified audit entry, removed by the purge sweep after ``expires_at``."""

    __tablename__ = "activity_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # NULL for entries written by background jobs
    user_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    target_user_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)

    action: Mapped[str] = mapped_column(String, nullable=False)
    details: Mapped[str] = mapped_column(Text, nullable=False)
    # "metadata" is reserved on declarative classes
    meta: Mapped[dict] = mapped_column("metadata", JSON, default=dict, nullable=False)
    severity: Mapped[str] = mapped_column(String, nullable=False, default="low")

    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_activity_user_action_ts", "user_id", "action", "timestamp"),
        Index("ix_activity_action_ts", "action", "timestamp"),
        Index("ix_activity_severity_ts", "severity", "timestamp"),
        Index("ix_activity_expires_at", "expires_at"),
    )

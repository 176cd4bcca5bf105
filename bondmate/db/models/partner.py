"""Normalized partner lifecycle records: requests, partnerships, breakups, history."""

from datetime import datetime, timezone
import uuid

from sqlalchemy import Integer, String, Boolean, Text, ForeignKey, DateTime, Index, text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


def _new_id() -> str:
    return uuid.uuid4().hex


def _now() -> datetime:
    return datetime.now(timezone.utc)


# PartnerRequest statuses; everything except pending is terminal.
REQUEST_PENDING = "pending"
REQUEST_ACCEPTED = "accepted"
REQUEST_REJECTED = "rejected"
REQUEST_CANCELLED = "cancelled"
REQUEST_SUPERSEDED = "superseded"

PARTNER_ACTIVE = "active"
PARTNER_ENDED = "ended"

BREAKUP_PENDING = "pending"
BREAKUP_ACCEPTED = "accepted"
BREAKUP_REJECTED = "rejected"


class PartnerRequest(Base):
    """A proposal from one user to another to become partners."""

    __tablename__ = "partner_requests"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    from_user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    to_user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    pair_key: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default=REQUEST_PENDING)
    message: Mapped[str | None] = mapped_column(String(500), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_now, onupdate=_now, nullable=False
    )
    responded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_partner_requests_from_to_status", "from_user_id", "to_user_id", "status"),
        Index("ix_partner_requests_to_status", "to_user_id", "status"),
        Index("ix_partner_requests_status_created", "status", "created_at"),
        Index(
            "uq_partner_requests_pending_pair",
            "pair_key",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
    )


class Partner(Base):
    """A partnership between two users, active until a breakup is accepted."""

    __tablename__ = "partners"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    user1_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    user2_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    pair_key: Mapped[str] = mapped_column(String, nullable=False)
    request_id: Mapped[str | None] = mapped_column(
        ForeignKey("partner_requests.id", ondelete="SET NULL"), nullable=True
    )
    status: Mapped[str] = mapped_column(String, nullable=False, default=PARTNER_ACTIVE)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now, nullable=False)
    restored: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    ended_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    ended_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Post-breakup bookkeeping for the restoration window
    data_archived: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    restored_into_id: Mapped[str | None] = mapped_column(String(32), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_now, onupdate=_now, nullable=False
    )

    __table_args__ = (
        Index("ix_partners_pair", "pair_key"),
        Index("ix_partners_user1_status", "user1_id", "status"),
        Index("ix_partners_user2_status", "user2_id", "status"),
        Index("ix_partners_status_ended", "status", "ended_at"),
        Index(
            "uq_partners_active_pair",
            "pair_key",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )

    def other_user_id(self, user_id: int) -> int:
        return self.user2_id if self.user1_id == user_id else self.user1_id


class BreakupRequest(Base):
    """A request from one partner to end the relationship."""

    __tablename__ = "breakup_requests"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    from_user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    to_user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    pair_key: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default=BREAKUP_PENDING)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_now, onupdate=_now, nullable=False
    )

    __table_args__ = (
        Index("ix_breakup_requests_from_status", "from_user_id", "status"),
        Index("ix_breakup_requests_to_status", "to_user_id", "status"),
        Index(
            "uq_breakup_requests_pending_pair",
            "pair_key",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
    )


class PartnerHistory(Base):
    """Append-only per-user trail of partner lifecycle events."""

    __tablename__ = "partner_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    partner_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    action: Mapped[str] = mapped_column(String, nullable=False, index=True)
    details: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now, nullable=False)

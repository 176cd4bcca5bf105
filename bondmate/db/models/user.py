"""User account model with the denormalized relationship cache."""

from datetime import datetime, timezone

from sqlalchemy import Integer, String, Boolean, DateTime, JSON
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class User(Base):
    """User account.

    ``partners``, ``ex_partners`` and ``pending_requests`` are the fast-read
    projection of the normalized partner tables. They are only ever written
    inside the same transaction as the rows they mirror, and always by
    assigning a new list so the ORM sees the change.
    """

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String, nullable=False)
    avatar: Mapped[str | None] = mapped_column(String, nullable=True)
    date_of_birth: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    gender: Mapped[str | None] = mapped_column(String, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc)
    )

    # Relationship cache
    partners: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    ex_partners: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    pending_requests: Mapped[list] = mapped_column(JSON, default=list, nullable=False)

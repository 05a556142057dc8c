"""Billing models for users and their recorded usage.

The provider owns customers and subscriptions. Locally we only keep weak
references to them on ``User`` plus the append-only ``Recording`` store
that word usage is measured from.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from app.core.database import Base


class RecordingStatus(str, Enum):
    """Processing status of a recording."""
    UPLOADED = "uploaded"
    TRANSCRIBING = "transcribing"
    ANALYZED = "analyzed"
    FAILED = "failed"


class User(Base):
    """Local user identity.

    ``stripe_subscription_id`` is the canonical subscription pointer; it is
    written only by the subscription auditor.
    """

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    username: Mapped[str] = mapped_column(String(255), nullable=False)

    # Weak references into Stripe
    stripe_customer_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True, index=True
    )
    stripe_subscription_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, customer={self.stripe_customer_id})>"


class Recording(Base):
    """A single recording and the words it consumed.

    Recordings are never deleted; ``is_active`` is cleared instead.
    """

    __tablename__ = "recordings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    duration: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    word_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    status: Mapped[str] = mapped_column(
        String(50), default=RecordingStatus.UPLOADED.value, nullable=False
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    recorded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        Index("ix_recordings_user_recorded_at", "user_id", "recorded_at"),
    )

    def __repr__(self) -> str:
        return f"<Recording(id={self.id}, user={self.user_id}, words={self.word_count})>"

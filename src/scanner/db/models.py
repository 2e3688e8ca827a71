"""SQLAlchemy ORM models for the scanner database."""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import BigInteger, DateTime
from sqlalchemy.dialects.sqlite import JSON
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""


class NotificationChannelRow(Base):
    """A channel registered for hosted-game notifications.

    ``game_types`` holds GameType names. Rewritten after every register and
    unregister so a restart recreates the same targets.
    """

    __tablename__ = "notification_channels"

    channel_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    game_types: Mapped[list[str]] = mapped_column(JSON, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=lambda: datetime.now(UTC))

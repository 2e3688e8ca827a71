"""Repository pattern for database access.

Wraps SQLAlchemy async sessions.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from scanner.db.models import NotificationChannelRow
from scanner.models.game import GameType, parse_game_types


class Repository:
    """Async repository for all database operations."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    # --- Notification channels ---

    async def load_channels(self) -> dict[int, set[GameType]]:
        """Return every registered channel with its game types."""
        result = await self.session.execute(
            select(NotificationChannelRow).order_by(NotificationChannelRow.channel_id)
        )
        return {
            row.channel_id: parse_game_types(row.game_types) for row in result.scalars().all()
        }

    async def replace_channels(self, subscriptions: Mapping[int, Iterable[GameType]]) -> None:
        """Rewrite the registered channels to exactly ``subscriptions``."""
        existing = {
            row.channel_id: row
            for row in (await self.session.execute(select(NotificationChannelRow))).scalars()
        }

        stale = existing.keys() - subscriptions.keys()
        if stale:
            await self.session.execute(
                delete(NotificationChannelRow).where(NotificationChannelRow.channel_id.in_(stale))
            )

        for channel_id, types in subscriptions.items():
            names = sorted(game_type.name for game_type in types)
            row = existing.get(channel_id)
            if row is None:
                self.session.add(NotificationChannelRow(channel_id=channel_id, game_types=names))
            else:
                row.game_types = names
        await self.session.flush()

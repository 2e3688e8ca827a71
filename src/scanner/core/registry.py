"""Channel → NotificationTarget registry.

The registry is the watcher's listener: every hosted/updated/removed game is
fanned out to all live targets. Membership changes and fan-out all happen on
the event loop thread, and none of them await between the membership check
and the mutation, so a channel never ends up with two targets and a fan-out
never sees a half-inserted entry.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

import discord

from scanner.core.target import NotificationTarget
from scanner.models.game import GameInfo, GameType

logger = logging.getLogger(__name__)

TargetFactory = Callable[[discord.abc.Messageable, set[GameType]], NotificationTarget]


class TargetRegistry:
    """Owns one NotificationTarget per subscribed channel."""

    def __init__(self, factory: TargetFactory) -> None:
        self._factory = factory
        self._targets: dict[int, NotificationTarget] = {}

    def __len__(self) -> int:
        return len(self._targets)

    def __contains__(self, channel_id: object) -> bool:
        return channel_id in self._targets

    def is_subscribed(self, channel_id: int) -> bool:
        return channel_id in self._targets

    def get(self, channel_id: int) -> NotificationTarget | None:
        return self._targets.get(channel_id)

    def targets(self) -> list[NotificationTarget]:
        """Snapshot of the live targets."""
        return list(self._targets.values())

    def subscriptions(self) -> dict[int, set[GameType]]:
        return {channel_id: set(target.types) for channel_id, target in self._targets.items()}

    # --- Membership ---

    def subscribe(
        self,
        channel: discord.abc.Messageable,
        types: set[GameType] | None = None,
    ) -> NotificationTarget | None:
        """Create and start a target for ``channel``. Returns None if already subscribed."""
        channel_id = int(channel.id)  # type: ignore[attr-defined]
        if channel_id in self._targets:
            logger.info("registry_subscribe_duplicate channel=%s", channel_id)
            return None
        target = self._factory(channel, set(types or ()))
        self._targets[channel_id] = target
        target.start()
        logger.info("registry_subscribed channel=%s total=%d", channel_id, len(self._targets))
        return target

    def unsubscribe(self, channel_id: int) -> NotificationTarget | None:
        """Remove and kill the channel's target. Returns None if not subscribed."""
        target = self._targets.pop(channel_id, None)
        if target is None:
            logger.info("registry_unsubscribe_missing channel=%s", channel_id)
            return None
        target.kill()
        logger.info("registry_unsubscribed channel=%s total=%d", channel_id, len(self._targets))
        return target

    def shutdown(self) -> None:
        for channel_id in list(self._targets):
            self.unsubscribe(channel_id)

    # --- Watcher events ---

    def on_game_hosted(self, info: GameInfo) -> None:
        logger.info("game_hosted bot=%s name=%s", info.bot_name, info.name)
        for target in self.targets():
            target.process_game_create(info)

    def on_game_updated(self, info: GameInfo) -> None:
        logger.info("game_updated bot=%s name=%s -> %s", info.bot_name, info.old_name, info.name)
        for target in self.targets():
            target.process_game_update(info)

    def on_game_removed(self, info: GameInfo) -> None:
        logger.info("game_removed bot=%s name=%s", info.bot_name, info.name)
        for target in self.targets():
            target.process_game_remove(info)

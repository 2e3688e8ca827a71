"""Discord bot for the scanner.

Runs alongside FastAPI using the same event loop. Keeps one
NotificationTarget per registered channel and answers text commands of the
form ``<prefix> <command>``:

    register     start notifications in this channel (manage permission)
    unregister   stop notifications and remove the bot's messages (manage permission)
    clear        remove the bot's messages from this channel (manage permission)
    list         show the game types and their patterns
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

import discord
from discord import Intents
from sqlalchemy.exc import SQLAlchemyError

from scanner.core.cleanup import clear_messages_in_channel
from scanner.core.registry import TargetRegistry
from scanner.core.retry import make_request
from scanner.core.target import NotificationTarget
from scanner.models.game import GameType

if TYPE_CHECKING:
    from apscheduler.schedulers.base import BaseScheduler
    from sqlalchemy.ext.asyncio import AsyncEngine

    from scanner.config import Settings
    from scanner.core.watcher import GameWatcher

logger = logging.getLogger(__name__)

REPLY_REGISTERED = "Channel registered for notifications, Dave."
REPLY_UNREGISTERED = "Channel unregistered for notifications, Dave."
REPLY_CLEARED = "I've cleared all my messages, Dave."
REPLY_REFUSED = "I can't do that, Dave."


class Command(enum.Enum):
    REGISTER = "register"
    UNREGISTER = "unregister"
    CLEAR = "clear"
    LIST = "list"


def parse_command(content: str, prefix: str) -> Command | None:
    """Return the command in ``content``, or None if it is not one of ours."""
    parts = content.split(" ")
    if len(parts) < 2 or parts[0] != prefix:
        return None
    try:
        return Command(parts[1])
    except ValueError:
        return None


def build_game_types_message() -> str:
    lines = [f"{game_type.name} -> {game_type.regex}\n" for game_type in GameType]
    return "Here's the supported game types, Dave:\n```" + "".join(lines) + "```"


class ScannerBot(discord.Client):
    """The scanner Discord bot.

    Owns the channel registry, registers it as the watcher's listener and
    persists the registered channels after every change.
    """

    def __init__(
        self,
        settings: Settings,
        watcher: GameWatcher,
        scheduler: BaseScheduler | None = None,
        engine: AsyncEngine | None = None,
    ) -> None:
        intents = Intents.default()
        intents.message_content = True

        super().__init__(
            intents=intents,
            max_ratelimit_timeout=settings.discord_max_ratelimit_timeout,
        )
        self.settings = settings
        self.watcher = watcher
        self.scheduler = scheduler
        self.engine = engine
        self.registry = TargetRegistry(self._build_target)
        self.watcher.add_listener(self.registry)
        self._setup_done: bool = False
        self._runner_task: asyncio.Task[None] | None = None
        self._handlers: dict[Command, Callable[[discord.Message], Awaitable[None]]] = {
            Command.REGISTER: self._handle_register,
            Command.UNREGISTER: self._handle_unregister,
            Command.CLEAR: self._handle_clear,
            Command.LIST: self._handle_list,
        }

    # ------------------------------------------------------------------
    # Targets
    # ------------------------------------------------------------------

    def _build_target(
        self, channel: discord.abc.Messageable, types: set[GameType]
    ) -> NotificationTarget:
        return NotificationTarget(
            channel,
            cleanup=self.clear_messages,
            snapshot=self.watcher.get_all,
            scheduler=self.scheduler,
            types=types,
            history_window=self.settings.scanner_history_window,
            refresh_seconds=self.settings.scanner_refresh_seconds,
            initial_delay=self.settings.scanner_refresh_initial_delay,
            prefix=self.settings.scanner_command_prefix,
        )

    async def clear_messages(self, channel: discord.abc.Messageable) -> int:
        """Delete every message this bot has posted in ``channel``."""
        if self.user is None:
            return 0
        return await clear_messages_in_channel(
            channel,
            self.user.id,
            workers=self.settings.scanner_cleanup_workers,
        )

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def on_ready(self) -> None:
        """Restore registered channels and start the watcher.

        on_ready fires on every reconnect; targets survive reconnects, so
        setup runs only once.
        """
        user = self.user
        logger.info("discord_bot_ready user=%s", user.name if user else "unknown")
        if self._setup_done:
            return
        self._setup_done = True
        await self._load_subscriptions()
        if self.settings.scanner_watcher_url:
            self.watcher.start()
        else:
            logger.warning("watcher_disabled reason=no_url")

    async def on_message(self, message: discord.Message) -> None:
        if self.user is not None and message.author.id == self.user.id:
            return
        command = parse_command(message.content, self.settings.scanner_command_prefix)
        if command is None:
            return
        logger.info(
            "command_received command=%s channel=%s user=%s",
            command.value,
            message.channel.id,
            message.author.id,
        )
        await self._handlers[command](message)

    async def close(self) -> None:
        self.registry.shutdown()
        await self.watcher.stop()
        await super().close()

    # ------------------------------------------------------------------
    # Permissions
    # ------------------------------------------------------------------

    def can_user_manage(self, user: discord.abc.User, guild: discord.Guild | None) -> bool:
        """Owner, or a guild member with administrator or manage-server permission."""
        owner_id = self.settings.scanner_owner_id
        if owner_id and user.id == owner_id:
            return True
        if guild is None:
            return False
        permissions = getattr(user, "guild_permissions", None)
        if permissions is None:
            return False
        return bool(permissions.administrator or permissions.manage_guild)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def _handle_register(self, message: discord.Message) -> None:
        if not self.can_user_manage(message.author, message.guild):
            return
        channel = message.channel
        if self.registry.subscribe(channel) is None:
            await self._reply(channel, REPLY_REFUSED)
            return
        await self._commit_subscriptions()
        await self._reply(channel, REPLY_REGISTERED)

    async def _handle_unregister(self, message: discord.Message) -> None:
        if not self.can_user_manage(message.author, message.guild):
            return
        channel = message.channel
        target = self.registry.unsubscribe(channel.id)
        if target is None:
            await self._reply(channel, REPLY_REFUSED)
            return
        await self._commit_subscriptions()
        await target.join()
        try:
            await self.clear_messages(channel)
        except discord.HTTPException:
            logger.exception("unregister_cleanup_failed channel=%s", channel.id)
        await self._reply(channel, REPLY_UNREGISTERED)

    async def _handle_clear(self, message: discord.Message) -> None:
        if not self.can_user_manage(message.author, message.guild):
            return
        channel = message.channel
        if not self.registry.is_subscribed(channel.id):
            return
        try:
            await self.clear_messages(channel)
        except discord.HTTPException:
            logger.exception("clear_failed channel=%s", channel.id)
            return
        await self._reply(channel, REPLY_CLEARED)

    async def _handle_list(self, message: discord.Message) -> None:
        channel = message.channel
        if not self.registry.is_subscribed(channel.id):
            return
        await self._reply(channel, build_game_types_message())

    async def _reply(self, channel: discord.abc.Messageable, text: str) -> None:
        try:
            await make_request(lambda: channel.send(text))
        except discord.HTTPException:
            logger.exception("discord_reply_failed channel=%s", getattr(channel, "id", None))

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def _load_subscriptions(self) -> None:
        """Recreate a target for every channel registered before the restart."""
        if not self.engine:
            return
        from scanner.db.engine import get_session
        from scanner.db.repository import Repository

        try:
            async with get_session(self.engine) as session:
                subscriptions = await Repository(session).load_channels()
        except SQLAlchemyError:
            logger.exception("subscriptions_load_failed")
            return

        for channel_id, types in subscriptions.items():
            channel = await self._resolve_channel(channel_id)
            if channel is None:
                continue
            self.registry.subscribe(channel, types)
        logger.info("subscriptions_loaded count=%d", len(self.registry))

    async def _resolve_channel(self, channel_id: int) -> discord.abc.Messageable | None:
        channel = self.get_channel(channel_id)
        if channel is None:
            try:
                channel = await self.fetch_channel(channel_id)
            except (discord.NotFound, discord.Forbidden):
                logger.warning("subscription_channel_unavailable channel=%s", channel_id)
                return None
        if not isinstance(channel, discord.abc.Messageable):
            logger.warning("subscription_channel_not_messageable channel=%s", channel_id)
            return None
        return channel

    async def _commit_subscriptions(self) -> None:
        if not self.engine:
            return
        from scanner.db.engine import get_session
        from scanner.db.repository import Repository

        try:
            async with get_session(self.engine) as session:
                await Repository(session).replace_channels(self.registry.subscriptions())
        except SQLAlchemyError:
            logger.exception("subscriptions_commit_failed")


def is_discord_enabled(settings: Settings) -> bool:
    """Check whether Discord integration should be started."""
    return bool(settings.discord_enabled and settings.discord_bot_token)


async def start_discord_bot(
    settings: Settings,
    watcher: GameWatcher,
    scheduler: BaseScheduler | None = None,
    engine: AsyncEngine | None = None,
) -> ScannerBot:
    """Create and start the Discord bot in the current event loop.

    Returns the bot instance so the caller can stop it during shutdown.
    The bot runs as a background task; this function returns immediately
    after starting it.
    """
    bot = ScannerBot(settings=settings, watcher=watcher, scheduler=scheduler, engine=engine)

    async def _run_bot() -> None:
        try:
            await bot.start(settings.discord_bot_token)
        except asyncio.CancelledError:
            logger.info("discord_bot_cancelled")
        except Exception:  # Last-resort handler: bot.start can raise connection and auth errors
            logger.exception("discord_bot_error")
        finally:
            if not bot.is_closed():
                await bot.close()

    bot._runner_task = asyncio.create_task(_run_bot(), name="discord-bot")
    logger.info("discord_bot_started")
    return bot

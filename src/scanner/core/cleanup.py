"""Bulk deletion of the bot's own messages in a channel.

Used when a channel is registered (so the new status message starts from a
clean slate), on unregister, and by the ``clear`` command.
"""

from __future__ import annotations

import asyncio
import logging

import discord

from scanner.core.retry import RATE_LIMIT_MARGIN_SECONDS, make_request

logger = logging.getLogger(__name__)

DEFAULT_CLEANUP_WORKERS = 16


async def fetch_full_history(channel: discord.abc.Messageable) -> list[discord.Message]:
    """Collect the channel's entire message history, newest first."""
    return [message async for message in channel.history(limit=None)]


async def clear_messages_in_channel(
    channel: discord.abc.Messageable,
    author_id: int,
    *,
    workers: int = DEFAULT_CLEANUP_WORKERS,
    margin: float = RATE_LIMIT_MARGIN_SECONDS,
) -> int:
    """Delete every message in ``channel`` written by ``author_id``.

    Deletions run concurrently, at most ``workers`` at a time, each as its
    own rate-limit aware request. Returns once all of them are done; the
    first failure that is not a rate limit propagates to the caller.
    """
    history = await make_request(lambda: fetch_full_history(channel), margin=margin)
    logger.info("cleanup_history_fetched channel=%s count=%d", _channel_id(channel), len(history))

    to_delete = [message for message in history if message.author.id == author_id]
    logger.info("cleanup_scheduled channel=%s count=%d", _channel_id(channel), len(to_delete))

    semaphore = asyncio.Semaphore(workers)

    async def _delete(message: discord.Message) -> None:
        async with semaphore:
            await make_request(message.delete, margin=margin)

    await asyncio.gather(*(_delete(message) for message in to_delete))

    logger.info("cleanup_done channel=%s deleted=%d", _channel_id(channel), len(to_delete))
    return len(to_delete)


def _channel_id(channel: object) -> object:
    return getattr(channel, "id", None)

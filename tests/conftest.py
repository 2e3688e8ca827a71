"""Shared test fixtures.

Discord channels and messages are replaced by small in-memory fakes that
record every outbound call, so tests can assert on what the bot did to a
channel without a real Discord connection.
"""

from __future__ import annotations

import itertools
from unittest.mock import MagicMock

import discord
import pytest

from scanner.config import Settings

BOT_USER_ID = 1000
OTHER_USER_ID = 2000

_message_ids = itertools.count(1)


def make_http_error(cls: type[discord.HTTPException], status: int) -> discord.HTTPException:
    response = MagicMock()
    response.status = status
    response.reason = "error"
    response.headers = {}
    return cls(response, "error")


class FakeAuthor:
    def __init__(self, user_id: int) -> None:
        self.id = user_id


class FakeMessage:
    def __init__(self, channel: FakeChannel, content: str, author_id: int) -> None:
        self.id = next(_message_ids)
        self.channel = channel
        self.content = content
        self.author = FakeAuthor(author_id)

    async def edit(self, *, content: str) -> FakeMessage:
        await self.channel._before("edit")
        self.content = content
        self.channel.calls.append(("edit", self.id))
        return self

    async def delete(self) -> None:
        await self.channel._before("delete")
        if self not in self.channel.messages:
            raise make_http_error(discord.NotFound, 404)
        self.channel.messages.remove(self)
        self.channel.calls.append(("delete", self.id))


class FakeChannel(discord.abc.Messageable):
    """A text channel that keeps its messages oldest-first and logs calls.

    ``failures`` maps an operation name ("send", "edit", "delete", "history")
    to exceptions raised, one per call, before the operation runs.
    ``gate`` (an asyncio.Event) makes sends wait until it is set.
    """

    def __init__(self, channel_id: int = 1) -> None:
        self.id = channel_id
        self.messages: list[FakeMessage] = []
        self.calls: list[tuple[str, object]] = []
        self.failures: dict[str, list[BaseException]] = {}
        self.gate = None

    async def _before(self, operation: str) -> None:
        pending = self.failures.get(operation)
        if pending:
            raise pending.pop(0)
        if operation == "send" and self.gate is not None:
            await self.gate.wait()

    async def send(self, content: str) -> FakeMessage:
        await self._before("send")
        message = FakeMessage(self, content, BOT_USER_ID)
        self.messages.append(message)
        self.calls.append(("send", content))
        return message

    async def history(self, limit: int | None = 100):
        await self._before("history")
        self.calls.append(("history", limit))
        newest_first = list(reversed(self.messages))
        if limit is not None:
            newest_first = newest_first[:limit]
        for message in newest_first:
            yield message

    def post(self, content: str, author_id: int = OTHER_USER_ID) -> FakeMessage:
        """Someone else posts in the channel."""
        message = FakeMessage(self, content, author_id)
        self.messages.append(message)
        return message

    def calls_of(self, operation: str) -> list[object]:
        return [arg for name, arg in self.calls if name == operation]

    @property
    def bot_messages(self) -> list[FakeMessage]:
        return [m for m in self.messages if m.author.id == BOT_USER_ID]


@pytest.fixture
def channel() -> FakeChannel:
    return FakeChannel()


@pytest.fixture
def settings() -> Settings:
    """Test settings with defaults."""
    return Settings(
        scanner_env="development",
        database_url="sqlite+aiosqlite:///:memory:",
        discord_bot_token="",
        discord_enabled=False,
        _env_file=None,
    )

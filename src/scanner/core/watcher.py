"""Hosted game watcher.

Polls a JSON game list, diffs it against the previous poll and notifies
listeners of hosted, updated and removed games. The current snapshot is
available through ``get_all()`` so a newly registered channel can seed
itself with the games that are already up.

The endpoint returns either a list of games or ``{"games": [...]}``, each
game an object with ``botName`` and ``name``.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Protocol

import httpx

from scanner.models.game import GameInfo

logger = logging.getLogger(__name__)

_WATCHER_TIMEOUT = httpx.Timeout(10.0, connect=5.0)


class GameListener(Protocol):
    def on_game_hosted(self, info: GameInfo) -> None: ...

    def on_game_updated(self, info: GameInfo) -> None: ...

    def on_game_removed(self, info: GameInfo) -> None: ...


def parse_games(payload: Any) -> dict[str, GameInfo]:
    """Turn a game list payload into ``{bot_name: GameInfo}``.

    Raises ValueError on a payload that is not a game list.
    """
    if isinstance(payload, dict):
        payload = payload.get("games")
    if not isinstance(payload, list):
        msg = "game list payload must be a list or an object with a 'games' list"
        raise ValueError(msg)

    games: dict[str, GameInfo] = {}
    for item in payload:
        info = GameInfo.model_validate(item)
        games[info.bot_name] = info.model_copy(update={"old_name": None})
    return games


def diff_snapshots(
    old: dict[str, GameInfo],
    new: dict[str, GameInfo],
) -> tuple[list[GameInfo], list[GameInfo], list[GameInfo]]:
    """Compare two snapshots and return (hosted, updated, removed).

    A game is updated when its bot is in both snapshots but the lobby name
    changed; updated records carry the previous name in ``old_name``.
    """
    hosted = [new[bot] for bot in sorted(new.keys() - old.keys())]
    removed = [old[bot] for bot in sorted(old.keys() - new.keys())]
    updated = [
        new[bot].model_copy(update={"old_name": old[bot].name})
        for bot in sorted(new.keys() & old.keys())
        if new[bot].name != old[bot].name
    ]
    return hosted, updated, removed


class GameWatcher:
    """Polls the game list and reports changes to its listeners."""

    def __init__(
        self,
        url: str,
        *,
        poll_seconds: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.url = url
        self.poll_seconds = poll_seconds
        self._client = client
        self._games: dict[str, GameInfo] = {}
        self._listeners: list[GameListener] = []
        self._task: asyncio.Task[None] | None = None

    def add_listener(self, listener: GameListener) -> None:
        self._listeners.append(listener)

    def get_all(self) -> dict[str, GameInfo]:
        """Copy of the current snapshot keyed by bot name."""
        return dict(self._games)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def fetch(self) -> dict[str, GameInfo]:
        if self._client is not None:
            resp = await self._client.get(self.url, timeout=_WATCHER_TIMEOUT)
        else:
            async with httpx.AsyncClient(timeout=_WATCHER_TIMEOUT) as client:
                resp = await client.get(self.url)
        resp.raise_for_status()
        return parse_games(resp.json())

    def apply(self, games: dict[str, GameInfo]) -> None:
        """Replace the snapshot with ``games`` and notify listeners of the difference."""
        hosted, updated, removed = diff_snapshots(self._games, games)
        self._games = dict(games)

        for info in hosted:
            for listener in self._listeners:
                listener.on_game_hosted(info)
        for info in updated:
            for listener in self._listeners:
                listener.on_game_updated(info)
        for info in removed:
            for listener in self._listeners:
                listener.on_game_removed(info)

    async def poll_once(self) -> bool:
        """Fetch and apply one snapshot. Returns False if the poll failed."""
        try:
            games = await self.fetch()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("watcher_poll_failed url=%s err=%s", self.url, exc)
            return False
        self.apply(games)
        return True

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._poll_loop(), name="game-watcher")
        logger.info("watcher_started url=%s interval=%ss", self.url, self.poll_seconds)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("watcher_stopped")

    async def _poll_loop(self) -> None:
        while True:
            await self.poll_once()
            await asyncio.sleep(self.poll_seconds)

"""Per-channel notification actor.

Each subscribed channel gets one NotificationTarget. The target owns the
channel's watched games and its status message, and runs every change to
them as a unit of work on a private FIFO queue drained by a single worker
task. Units for one channel never overlap and run in submission order;
different channels progress independently.

Lifecycle:
    INITIALIZING  start() queued the channel cleanup; it has not finished.
    ACTIVE        cleanup done; events and periodic refreshes are processed.
    KILLED        kill() was called; queued work drains, nothing new is accepted.
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

import discord
from apscheduler.jobstores.base import JobLookupError
from apscheduler.triggers.interval import IntervalTrigger

from scanner.core.render import (
    DEFAULT_COMMAND_PREFIX,
    build_broadcast_message,
    build_status_message,
)
from scanner.core.retry import RATE_LIMIT_MARGIN_SECONDS, make_request
from scanner.models.game import GameInfo, GameType

if TYPE_CHECKING:
    from apscheduler.job import Job
    from apscheduler.schedulers.base import BaseScheduler

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_WINDOW = 32
DEFAULT_REFRESH_SECONDS = 1.0
DEFAULT_INITIAL_DELAY_SECONDS = 1.0

ChannelCleanup = Callable[[discord.abc.Messageable], Awaitable[object]]
SnapshotSource = Callable[[], Mapping[str, GameInfo]]


class TargetState(enum.Enum):
    INITIALIZING = "initializing"
    ACTIVE = "active"
    KILLED = "killed"


@dataclass
class _Work:
    label: str
    run: Callable[[], Awaitable[None]]
    done: asyncio.Future[None] | None = None


class NotificationTarget:
    """Keeps one channel's status message in sync with the hosted games."""

    def __init__(
        self,
        channel: discord.abc.Messageable,
        *,
        cleanup: ChannelCleanup,
        snapshot: SnapshotSource,
        scheduler: BaseScheduler | None = None,
        types: set[GameType] | None = None,
        history_window: int = DEFAULT_HISTORY_WINDOW,
        refresh_seconds: float = DEFAULT_REFRESH_SECONDS,
        initial_delay: float = DEFAULT_INITIAL_DELAY_SECONDS,
        prefix: str = DEFAULT_COMMAND_PREFIX,
        margin: float = RATE_LIMIT_MARGIN_SECONDS,
    ) -> None:
        self.channel = channel
        self.types: set[GameType] = set(types or ())
        self.state = TargetState.INITIALIZING
        self.status_message: discord.Message | None = None
        self._cleanup = cleanup
        self._snapshot = snapshot
        self._scheduler = scheduler
        self._history_window = history_window
        self._refresh_seconds = refresh_seconds
        self._initial_delay = initial_delay
        self._prefix = prefix
        self._margin = margin
        # Touched only from units of work running on the worker task.
        self._watched: dict[str, GameInfo] = {}
        self._queue: asyncio.Queue[_Work | None] = asyncio.Queue()
        self._worker: asyncio.Task[None] | None = None
        self._job: Job | None = None

    @property
    def channel_id(self) -> int:
        return int(self.channel.id)  # type: ignore[attr-defined]

    @property
    def watched_games(self) -> dict[str, GameInfo]:
        """Sorted copy of the watched games."""
        return {bot_name: self._watched[bot_name] for bot_name in sorted(self._watched)}

    @property
    def pending(self) -> int:
        """Units of work queued but not yet started."""
        return self._queue.qsize()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the worker, queue the initial cleanup and seed from the snapshot.

        Must be called from a running event loop.
        """
        if self._worker is not None:
            return
        self._worker = asyncio.create_task(
            self._run(), name=f"notification-target-{self.channel_id}"
        )
        self._submit("initialize", self._initialize)

        for info in self._snapshot().values():
            self.process_game_create(info)

        if self._scheduler is not None:
            self._job = self._scheduler.add_job(
                self.tick,
                trigger=IntervalTrigger(
                    seconds=self._refresh_seconds,
                    start_date=datetime.now(UTC) + timedelta(seconds=self._initial_delay),
                ),
                id=f"refresh-{self.channel_id}",
                name=f"Refresh status message in {self.channel_id}",
                max_instances=1,
                coalesce=True,
                replace_existing=True,
            )

        logger.info("target_created channel=%s", self.channel_id)

    def kill(self) -> None:
        """Stop periodic refreshes and let already queued work drain."""
        if self.state is TargetState.KILLED:
            return
        if self._job is not None:
            with contextlib.suppress(JobLookupError):
                self._job.remove()
            self._job = None
        self.state = TargetState.KILLED
        self._queue.put_nowait(None)
        logger.info("target_killed channel=%s pending=%d", self.channel_id, self.pending)

    async def join(self) -> None:
        """Wait until the worker has drained its queue and exited."""
        if self._worker is not None:
            await self._worker

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def process_game_create(self, info: GameInfo) -> None:
        async def _create() -> None:
            self._watched[info.bot_name] = info
            await make_request(
                lambda: self.channel.send(build_broadcast_message(info)), margin=self._margin
            )
            await self.refresh()

        self._submit(f"create:{info.bot_name}", _create)

    def process_game_update(self, info: GameInfo) -> None:
        async def _update() -> None:
            self._watched[info.bot_name] = info
            await self.refresh()

        self._submit(f"update:{info.bot_name}", _update)

    def process_game_remove(self, info: GameInfo) -> None:
        async def _remove() -> None:
            self._watched.pop(info.bot_name, None)
            await self.refresh()

        self._submit(f"remove:{info.bot_name}", _remove)

    async def tick(self) -> None:
        """Queue a refresh and wait for it, so ticks never pile up behind a slow refresh."""
        done = self._submit("periodic_refresh", self.refresh, wait=True)
        if done is not None:
            await done

    # ------------------------------------------------------------------
    # Status message
    # ------------------------------------------------------------------

    def render(self) -> str:
        return build_status_message(self._watched, self._prefix)

    async def refresh(self) -> None:
        """Push the current rendering to the channel.

        Edits the status message in place while it is still the newest
        message in the channel; once anything was posted after it, the old
        one is deleted and a new one sent so it stays at the bottom.
        """
        text = self.render()
        status = self.status_message

        if status is None:
            self.status_message = await self._send(text)
            return

        latest = await make_request(self._fetch_latest, margin=self._margin)
        if latest is None or latest.id != status.id:
            await self._delete(status)
            self.status_message = await self._send(text)
        else:
            await make_request(lambda: status.edit(content=text), margin=self._margin)

    async def _fetch_latest(self) -> discord.Message | None:
        history = [
            message async for message in self.channel.history(limit=self._history_window)
        ]
        return history[0] if history else None

    async def _send(self, text: str) -> discord.Message:
        return await make_request(lambda: self.channel.send(text), margin=self._margin)

    async def _delete(self, message: discord.Message) -> None:
        try:
            await make_request(message.delete, margin=self._margin)
        except discord.NotFound:
            logger.info(
                "target_status_already_deleted channel=%s message=%s",
                self.channel_id,
                message.id,
            )

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    async def _initialize(self) -> None:
        try:
            await self._cleanup(self.channel)
        finally:
            if self.state is TargetState.INITIALIZING:
                self.state = TargetState.ACTIVE

    def _submit(
        self,
        label: str,
        run: Callable[[], Awaitable[None]],
        *,
        wait: bool = False,
    ) -> asyncio.Future[None] | None:
        if self.state is TargetState.KILLED:
            logger.debug("target_work_dropped channel=%s work=%s", self.channel_id, label)
            return None
        done = asyncio.get_running_loop().create_future() if wait else None
        self._queue.put_nowait(_Work(label=label, run=run, done=done))
        return done

    async def _run(self) -> None:
        while True:
            work = await self._queue.get()
            if work is None:
                break
            logger.debug("target_work_started channel=%s work=%s", self.channel_id, work.label)
            try:
                await work.run()
            except Exception:  # One failed unit must not stop the channel; next refresh resyncs
                logger.exception(
                    "target_work_failed channel=%s work=%s", self.channel_id, work.label
                )
            finally:
                if work.done is not None and not work.done.done():
                    work.done.set_result(None)
        logger.info("target_stopped channel=%s", self.channel_id)

"""Tests for the per-channel notification target.

Targets run against FakeChannel. ``drain`` kills a target and waits for its
queue to empty, which gives a deterministic point to assert on.
"""

from __future__ import annotations

import asyncio
import logging
from unittest.mock import AsyncMock, MagicMock

import discord
import pytest
from conftest import FakeChannel, make_http_error

from scanner.core.render import build_broadcast_message, build_status_message
from scanner.core.target import NotificationTarget, TargetState
from scanner.models.game import GameInfo, GameType


def game(bot_name: str, name: str, old_name: str | None = None) -> GameInfo:
    return GameInfo(bot_name=bot_name, name=name, old_name=old_name)


def make_target(
    channel: FakeChannel,
    *,
    snapshot: dict[str, GameInfo] | None = None,
    cleanup: AsyncMock | None = None,
    scheduler: MagicMock | None = None,
) -> NotificationTarget:
    return NotificationTarget(
        channel,
        cleanup=cleanup or AsyncMock(return_value=0),
        snapshot=lambda: dict(snapshot or {}),
        scheduler=scheduler,
        margin=0.0,
    )


async def drain(target: NotificationTarget) -> None:
    target.kill()
    await asyncio.wait_for(target.join(), timeout=2.0)


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:
    async def test_cleanup_runs_first_then_active(self, channel: FakeChannel) -> None:
        release = asyncio.Event()

        async def cleanup(ch: object) -> int:
            await release.wait()
            return 0

        target = make_target(channel, cleanup=AsyncMock(side_effect=cleanup))
        target.start()
        target.process_game_create(game("alpha", "Dungeon Run"))
        await asyncio.sleep(0)

        assert target.state is TargetState.INITIALIZING
        assert channel.calls == []

        release.set()
        await target.tick()
        assert target.state is TargetState.ACTIVE
        assert channel.calls_of("send")[0] == build_broadcast_message(game("alpha", "Dungeon Run"))
        await drain(target)

    async def test_cleanup_called_with_channel(self, channel: FakeChannel) -> None:
        cleanup = AsyncMock(return_value=0)
        target = make_target(channel, cleanup=cleanup)
        target.start()
        await drain(target)
        cleanup.assert_awaited_once_with(channel)

    async def test_failed_cleanup_still_activates(self, channel: FakeChannel) -> None:
        cleanup = AsyncMock(side_effect=make_http_error(discord.Forbidden, 403))
        target = make_target(channel, cleanup=cleanup)
        target.start()
        await target.tick()
        assert target.state is TargetState.ACTIVE
        assert len(channel.bot_messages) == 1
        await drain(target)

    async def test_seeds_from_snapshot(self, channel: FakeChannel) -> None:
        snapshot = {"b": game("b", "Quick Match"), "alpha": game("alpha", "Dungeon Run")}
        target = make_target(channel, snapshot=snapshot)
        target.start()
        await drain(target)

        assert target.watched_games == {
            "alpha": snapshot["alpha"],
            "b": snapshot["b"],
        }
        broadcasts = [c for c in channel.calls_of("send") if str(c).startswith("@everyone")]
        assert len(broadcasts) == 2
        assert target.status_message.content == build_status_message(snapshot)

    async def test_start_is_idempotent(self, channel: FakeChannel) -> None:
        cleanup = AsyncMock(return_value=0)
        target = make_target(channel, cleanup=cleanup)
        target.start()
        target.start()
        await drain(target)
        assert cleanup.await_count == 1

    async def test_kill_drops_new_work(self, channel: FakeChannel) -> None:
        target = make_target(channel)
        target.start()
        await drain(target)
        sent = list(channel.calls)

        target.process_game_create(game("late", "Too Late"))
        await target.tick()
        assert channel.calls == sent
        assert target.state is TargetState.KILLED

    async def test_kill_lets_queued_work_drain(self, channel: FakeChannel) -> None:
        target = make_target(channel)
        target.start()
        target.process_game_create(game("alpha", "Dungeon Run"))
        target.process_game_update(game("alpha", "Dungeon Run 2", "Dungeon Run"))
        await drain(target)

        assert "Dungeon Run 2" in target.status_message.content

    async def test_kill_is_idempotent(self, channel: FakeChannel) -> None:
        target = make_target(channel)
        target.start()
        target.kill()
        target.kill()
        await asyncio.wait_for(target.join(), timeout=2.0)


# ---------------------------------------------------------------------------
# Periodic refresh scheduling
# ---------------------------------------------------------------------------


class TestScheduling:
    async def test_start_registers_single_instance_job(self, channel: FakeChannel) -> None:
        scheduler = MagicMock()
        target = make_target(channel, scheduler=scheduler)
        target.start()

        scheduler.add_job.assert_called_once()
        args, kwargs = scheduler.add_job.call_args
        assert args[0] == target.tick
        assert kwargs["max_instances"] == 1
        assert kwargs["coalesce"] is True
        assert kwargs["id"] == f"refresh-{channel.id}"
        assert kwargs["trigger"].interval.total_seconds() == 1.0
        await drain(target)

    async def test_kill_removes_job(self, channel: FakeChannel) -> None:
        scheduler = MagicMock()
        target = make_target(channel, scheduler=scheduler)
        target.start()
        job = scheduler.add_job.return_value
        await drain(target)
        job.remove.assert_called_once()

    async def test_tick_waits_for_refresh(self, channel: FakeChannel) -> None:
        target = make_target(channel)
        target.start()
        await target.tick()
        assert target.status_message is not None
        assert target.pending == 0
        await drain(target)

    async def test_tick_refreshes_after_pending_events(self, channel: FakeChannel) -> None:
        target = make_target(channel)
        target.start()
        target.process_game_create(game("alpha", "Dungeon Run"))
        target.process_game_create(game("beta", "Quick Match"))
        await target.tick()
        assert "Quick Match" in target.status_message.content
        await drain(target)


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


class TestEvents:
    async def test_create_broadcasts_then_sends_status(self, channel: FakeChannel) -> None:
        target = make_target(channel)
        target.start()
        info = game("alpha", "Dungeon Run")
        target.process_game_create(info)
        await drain(target)

        sends = channel.calls_of("send")
        assert sends == [build_broadcast_message(info), build_status_message({"alpha": info})]
        assert target.status_message is channel.messages[-1]

    async def test_update_edits_without_broadcast(self, channel: FakeChannel) -> None:
        target = make_target(channel)
        target.start()
        target.process_game_create(game("alpha", "Dungeon Run"))
        await target.tick()
        sends_before = len(channel.calls_of("send"))
        status = target.status_message

        target.process_game_update(game("alpha", "Dungeon Run II", "Dungeon Run"))
        await drain(target)

        assert len(channel.calls_of("send")) == sends_before
        assert target.status_message is status
        assert "Dungeon Run II" in status.content

    async def test_remove_absent_key_is_noop(self, channel: FakeChannel) -> None:
        target = make_target(channel)
        target.start()
        target.process_game_remove(game("ghost", "Nothing"))
        target.process_game_remove(game("ghost", "Nothing"))
        await drain(target)

        assert target.watched_games == {}
        assert target.status_message.content == build_status_message({})

    async def test_remove_then_remove(self, channel: FakeChannel) -> None:
        target = make_target(channel)
        target.start()
        info = game("alpha", "Dungeon Run")
        target.process_game_create(info)
        target.process_game_remove(info)
        target.process_game_remove(info)
        await drain(target)
        assert target.watched_games == {}

    async def test_events_fold_in_order(self, channel: FakeChannel) -> None:
        events = [
            ("create", game("m", "Match")),
            ("create", game("a", "Arena")),
            ("update", game("m", "Match 2", "Match")),
            ("remove", game("a", "Arena")),
            ("create", game("z", "Zeta")),
            ("update", game("z", "Zeta Prime", "Zeta")),
            ("create", game("a", "Arena Again")),
            ("remove", game("missing", "Missing")),
        ]
        expected: dict[str, GameInfo] = {}
        target = make_target(channel)
        target.start()
        for kind, info in events:
            if kind == "remove":
                expected.pop(info.bot_name, None)
                target.process_game_remove(info)
            elif kind == "update":
                expected[info.bot_name] = info
                target.process_game_update(info)
            else:
                expected[info.bot_name] = info
                target.process_game_create(info)
        await drain(target)

        assert target.watched_games == dict(sorted(expected.items()))
        assert target.status_message.content == build_status_message(expected)

    async def test_update_is_idempotent(self, channel: FakeChannel) -> None:
        target = make_target(channel)
        target.start()
        target.process_game_create(game("alpha", "Dungeon Run"))
        update = game("alpha", "Dungeon Run II", "Dungeon Run")
        target.process_game_update(update)
        await target.tick()
        once_state = target.watched_games
        once_text = target.status_message.content

        target.process_game_update(update)
        await drain(target)
        assert target.watched_games == once_state
        assert target.status_message.content == once_text

    async def test_types_are_kept(self, channel: FakeChannel) -> None:
        target = NotificationTarget(
            channel,
            cleanup=AsyncMock(return_value=0),
            snapshot=dict,
            types={GameType.DOTA},
        )
        assert target.types == {GameType.DOTA}


# ---------------------------------------------------------------------------
# Status message synchronization
# ---------------------------------------------------------------------------


class TestRefresh:
    async def test_first_refresh_sends(self, channel: FakeChannel) -> None:
        target = make_target(channel)
        target.start()
        await target.tick()
        assert channel.calls_of("send") == [build_status_message({})]
        assert channel.calls_of("history") == []
        await drain(target)

    async def test_latest_is_status_edits_in_place(self, channel: FakeChannel) -> None:
        target = make_target(channel)
        target.start()
        await target.tick()
        status = target.status_message

        await target.tick()
        assert channel.calls_of("edit") == [status.id]
        assert channel.calls_of("delete") == []
        assert channel.calls_of("history") == [32]
        assert target.status_message is status
        await drain(target)

    async def test_newer_message_replaces_status(self, channel: FakeChannel) -> None:
        target = make_target(channel)
        target.start()
        await target.tick()
        old = target.status_message
        channel.post("someone talking")

        await target.tick()
        assert channel.calls_of("delete") == [old.id]
        assert channel.calls_of("edit") == []
        assert target.status_message is not old
        assert channel.messages[-1] is target.status_message
        await drain(target)

    async def test_status_deleted_externally_is_resent(self, channel: FakeChannel) -> None:
        target = make_target(channel)
        target.start()
        await target.tick()
        old = target.status_message
        channel.messages.remove(old)

        await target.tick()
        assert target.status_message is not old
        assert channel.messages == [target.status_message]
        await drain(target)

    async def test_status_deleted_with_newer_message(self, channel: FakeChannel) -> None:
        target = make_target(channel)
        target.start()
        await target.tick()
        channel.messages.remove(target.status_message)
        channel.post("later message")

        await target.tick()
        assert channel.messages[-1] is target.status_message
        await drain(target)

    async def test_rate_limit_is_transparent(self, channel: FakeChannel) -> None:
        target = make_target(channel)
        target.start()
        await target.tick()
        channel.failures["send"] = [discord.RateLimited(0.01)]
        channel.failures["history"] = [discord.RateLimited(0.01)]

        target.process_game_create(game("alpha", "Dungeon Run"))
        await drain(target)
        assert "Dungeon Run" in target.status_message.content

    async def test_failed_unit_is_logged_and_worker_continues(
        self, channel: FakeChannel, caplog: pytest.LogCaptureFixture
    ) -> None:
        target = make_target(channel)
        target.start()
        channel.failures["send"] = [make_http_error(discord.Forbidden, 403)]

        with caplog.at_level(logging.ERROR, logger="scanner.core.target"):
            target.process_game_create(game("alpha", "Dungeon Run"))
            target.process_game_update(game("alpha", "Dungeon Run II", "Dungeon Run"))
            await drain(target)

        assert any("target_work_failed" in r.getMessage() for r in caplog.records)
        assert target.watched_games["alpha"].name == "Dungeon Run II"
        assert "Dungeon Run II" in target.status_message.content


# ---------------------------------------------------------------------------
# Independence between targets
# ---------------------------------------------------------------------------


class TestIndependence:
    async def test_stalled_channel_does_not_block_another(self) -> None:
        stalled = FakeChannel(channel_id=1)
        stalled.gate = asyncio.Event()
        healthy = FakeChannel(channel_id=2)

        stuck = make_target(stalled)
        free = make_target(healthy)
        stuck.start()
        free.start()

        info = game("alpha", "Dungeon Run")
        stuck.process_game_create(info)
        free.process_game_create(info)
        await asyncio.wait_for(free.tick(), timeout=1.0)

        assert "Dungeon Run" in free.status_message.content
        assert stuck.status_message is None

        stalled.gate.set()
        await drain(stuck)
        await drain(free)
        assert "Dungeon Run" in stuck.status_message.content

    async def test_interleaved_streams_complete(self) -> None:
        channels = [FakeChannel(channel_id=i) for i in range(1, 4)]
        targets = [make_target(ch) for ch in channels]
        for target in targets:
            target.start()

        for i in range(5):
            for n, target in enumerate(targets):
                target.process_game_create(game(f"bot{i}", f"Game {n}-{i}"))

        await asyncio.wait_for(
            asyncio.gather(*(drain(target) for target in targets)), timeout=2.0
        )
        for n, target in enumerate(targets):
            assert len(target.watched_games) == 5
            assert f"Game {n}-4" in target.status_message.content

"""Read-only status endpoints: watched games and registered channels."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request

router = APIRouter(prefix="/api", tags=["status"])


@router.get("/games")
async def list_games(request: Request) -> dict[str, Any]:
    """Current watcher snapshot, sorted by hosting bot."""
    watcher = request.app.state.watcher
    games = watcher.get_all()
    return {
        "data": [
            {"bot_name": bot_name, "name": games[bot_name].name} for bot_name in sorted(games)
        ]
    }


@router.get("/channels")
async def list_channels(request: Request) -> dict[str, Any]:
    """Channels with a live notification target."""
    bot = getattr(request.app.state, "discord_bot", None)
    if bot is None:
        return {"data": []}
    return {
        "data": [
            {
                "channel_id": target.channel_id,
                "state": target.state.value,
                "game_types": sorted(game_type.name for game_type in target.types),
                "watched": len(target.watched_games),
            }
            for target in bot.registry.targets()
        ]
    }

"""Hosted game models: the records the watcher produces and targets display."""

from __future__ import annotations

import enum

from pydantic import BaseModel, ConfigDict, Field


class GameInfo(BaseModel):
    """One hosted game as reported by the watcher.

    ``bot_name`` is the hosting bot and the identity key; ``name`` is the
    lobby name and may change between updates. ``old_name`` is only set on
    update events.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    bot_name: str = Field(alias="botName")
    name: str
    old_name: str | None = Field(default=None, alias="oldName")


class GameType(enum.Enum):
    """Game-type filters a channel can subscribe to, with the lobby-name pattern."""

    LIHT = r"(?i)\blih?t\b|legion\s*td"
    DOTA = r"(?i)\bdota\b"
    TD = r"(?i)\btd\b|tower\s*defen[cs]e"
    ORPG = r"(?i)\borpg\b|twilight"
    CUSTOM = r".*"

    @property
    def regex(self) -> str:
        return self.value


def parse_game_types(names: list[str] | None) -> set[GameType]:
    """Resolve stored game-type names, skipping names that no longer exist."""
    types: set[GameType] = set()
    for name in names or []:
        try:
            types.add(GameType[name])
        except KeyError:
            continue
    return types

"""Status message and broadcast text.

Pure functions: the notification target renders its watched games here and
pushes the result to Discord.
"""

from __future__ import annotations

from collections.abc import Mapping

from scanner.models.game import GameInfo

DEFAULT_COMMAND_PREFIX = "-mmh"

NO_GAMES_TEXT = "```There are currently no hosted games.```"


def build_header(prefix: str = DEFAULT_COMMAND_PREFIX) -> str:
    return f'```Type "{prefix} list" to see which game types are available!```'


def build_status_message(
    watched: Mapping[str, GameInfo],
    prefix: str = DEFAULT_COMMAND_PREFIX,
) -> str:
    """Render the status message for a channel.

    One line per hosting bot, sorted by bot name, with bot names padded to
    the longest so the display names line up.
    """
    header = build_header(prefix)
    if not watched:
        return header + NO_GAMES_TEXT

    width = max(len(bot_name) for bot_name in watched)
    lines = ["```Currently hosted games:\n|\n"]
    for bot_name in sorted(watched):
        info = watched[bot_name]
        lines.append(f"| {bot_name.ljust(width)}  ---  {info.name}\n")
    lines.append("```")
    return header + "".join(lines)


def build_broadcast_message(info: GameInfo) -> str:
    return f"@everyone A game has been hosted! `{info.name}`"

"""Discord bot integration for the scanner.

The bot runs in-process with FastAPI, sharing the same event loop. It owns
the channel registry, feeds it from the game watcher and answers the
``-mmh`` commands that register and unregister channels.

Optional: if DISCORD_BOT_TOKEN is not set, the app runs without Discord.
"""

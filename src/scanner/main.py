"""FastAPI application factory."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI

from scanner.api.status import router as status_router
from scanner.config import Settings
from scanner.core.watcher import GameWatcher
from scanner.db.engine import create_engine, create_tables

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup: create engine/tables, start the refresh scheduler and the Discord bot."""
    settings: Settings = app.state.settings
    engine = create_engine(settings.database_url)
    await create_tables(engine)
    app.state.engine = engine

    # Hosts one periodic status-message refresh job per registered channel.
    scheduler = AsyncIOScheduler()
    scheduler.start()
    app.state.scheduler = scheduler
    logger.info("scheduler_started")

    watcher = GameWatcher(
        settings.scanner_watcher_url,
        poll_seconds=settings.scanner_watcher_poll_seconds,
    )
    app.state.watcher = watcher

    discord_bot = None
    from scanner.discord.bot import is_discord_enabled

    if is_discord_enabled(settings):
        from scanner.discord.bot import start_discord_bot

        discord_bot = await start_discord_bot(settings, watcher, scheduler, engine)
        logger.info("discord_bot_integration_started")
    else:
        logger.info("discord_bot_integration_disabled")
    app.state.discord_bot = discord_bot

    yield

    if discord_bot is not None:
        await discord_bot.close()
        logger.info("discord_bot_integration_stopped")

    await watcher.stop()

    scheduler.shutdown(wait=False)
    logger.info("scheduler_stopped")

    await engine.dispose()


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the scanner FastAPI application."""
    settings = settings or Settings()

    logging.basicConfig(
        level=getattr(logging, settings.scanner_log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    # A refresh stalled on a rate limit makes every skipped tick log a warning.
    logging.getLogger("apscheduler.scheduler").setLevel(logging.ERROR)

    app = FastAPI(
        title="Hosted Game Scanner",
        version="0.1.0",
        description="Keeps Discord channels in sync with the currently hosted games",
        docs_url="/docs" if settings.scanner_env != "production" else None,
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.include_router(status_router)

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok", "env": settings.scanner_env}

    return app


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    import uvicorn

    uvicorn.run("scanner.main:create_app", factory=True, host="0.0.0.0", port=8000)

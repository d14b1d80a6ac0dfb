"""Application factory – builds the Bot, Dispatcher and history engine, registers
routers/middleware, and starts either webhook or polling mode."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict

import redis.asyncio as aioredis
from aiogram import Bot, Dispatcher
from aiogram.client.default import DefaultBotProperties
from aiogram.client.session.aiohttp import AiohttpSession
from aiogram.enums import ParseMode
from aiogram.webhook.aiohttp_server import (
    SimpleRequestHandler,
    setup_application,
)
from aiohttp import web

from historybot.config import settings
from historybot.services.intake import HistoryIntake
from historybot.services.media import MediaFetcher
from historybot.services.persistence import (
    DatabaseBackend,
    HistoryBackend,
    MemoryBackend,
    RedisBackend,
    SnapshotWriter,
)
from historybot.services.query import HistoryQuery
from historybot.services.store import ChangeLogStore

logger = logging.getLogger(__name__)

ALLOWED_UPDATES = [
    "message",
    "edited_message",
    "channel_post",
    "edited_channel_post",
    "business_message",
    "edited_business_message",
    "deleted_business_messages",
]


def _create_bot() -> Bot:
    """Construct the Bot instance (optionally pointing to a local API server)."""
    session = None
    if settings.LOCAL_API_URL:
        from aiogram.client.telegram import TelegramAPIServer

        session = AiohttpSession(
            api=TelegramAPIServer.from_base(settings.LOCAL_API_URL)
        )
    return Bot(
        token=settings.BOT_TOKEN,
        session=session,
        default=DefaultBotProperties(parse_mode=ParseMode.HTML),
    )


def create_backend(kind: str, redis: aioredis.Redis | None = None) -> HistoryBackend:
    """Pick the history storage backend named by ``HISTORY_BACKEND``."""
    kind = kind.lower()
    if kind == "redis":
        if redis is None:
            raise ValueError("Redis backend requires a Redis connection")
        return RedisBackend(redis, settings.HISTORY_REDIS_KEY)
    if kind == "database":
        from historybot.db.engine import async_session

        return DatabaseBackend(async_session, settings.HISTORY_DOCUMENT_NAME)
    if kind == "memory":
        logger.warning("History backend is in-memory – history will not survive a restart.")
        return MemoryBackend()
    raise ValueError(f"Unknown HISTORY_BACKEND: {kind!r}")


def _register_routers(dp: Dispatcher) -> None:
    """Import and include all routers."""
    from historybot.handlers.tracking import tracking_router

    dp.include_router(tracking_router)


def _register_middleware(dp: Dispatcher) -> None:
    """Register all middleware on the dispatcher."""
    from historybot.middleware.logging_mw import LoggingMiddleware

    dp.update.outer_middleware(LoggingMiddleware())


async def _on_startup(bot: Bot, redis: aioredis.Redis, dp: Dispatcher) -> None:
    """Run on startup – ensure storage, load history, start the writer."""
    if settings.HISTORY_BACKEND.lower() == "database":
        from historybot.db.base import Base
        from historybot.db.engine import engine

        # Import models so they register on metadata
        from historybot.models.history_document import HistoryDocument  # noqa: F401

        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables ensured.")

    writer = SnapshotWriter(create_backend(settings.HISTORY_BACKEND, redis))
    store = ChangeLogStore(writer)
    await store.load()
    await writer.start()

    fetcher = MediaFetcher(bot, settings.MEDIA_DIR) if settings.MEDIA_DOWNLOAD_ENABLED else None

    dp["redis"] = redis
    dp["history_writer"] = writer
    dp["history_store"] = store
    dp["media_fetcher"] = fetcher
    dp["intake"] = HistoryIntake(store, fetcher)
    dp["history_query"] = HistoryQuery(store)

    bot_info = await bot.get_me()
    logger.info("Bot @%s (id=%d) started, tracking message history.", bot_info.username, bot_info.id)


async def _on_shutdown(dp: Dispatcher) -> None:
    """Graceful shutdown – finish downloads, drain pending writes, close pools."""
    logger.info("Shutting down…")
    fetcher: MediaFetcher | None = dp.get("media_fetcher")
    if fetcher:
        await fetcher.wait()

    writer: SnapshotWriter | None = dp.get("history_writer")
    if writer:
        await writer.stop()

    redis: aioredis.Redis | None = dp.get("redis")
    if redis:
        await redis.aclose()

    if settings.HISTORY_BACKEND.lower() == "database":
        from historybot.db.engine import engine

        await engine.dispose()
    logger.info("Shutdown complete.")


async def main() -> None:
    """Entry point."""
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    )

    bot = _create_bot()
    dp = Dispatcher()
    redis = aioredis.from_url(settings.REDIS_URL, decode_responses=True)

    _register_middleware(dp)
    _register_routers(dp)

    async def on_startup(*_args: object, **_kwargs: object) -> None:
        await _on_startup(bot, redis, dp)

    async def on_shutdown(*_args: object, **_kwargs: object) -> None:
        await _on_shutdown(dp)

    dp.startup.register(on_startup)
    dp.shutdown.register(on_shutdown)

    if settings.BOT_MODE == "webhook":
        await _run_webhook(bot, dp)
    else:
        await _run_polling(bot, dp)


async def _run_polling(bot: Bot, dp: Dispatcher) -> None:
    """Long-polling mode (development)."""
    logger.info("Starting in POLLING mode.")
    await bot.delete_webhook(drop_pending_updates=True)
    await dp.start_polling(bot, allowed_updates=ALLOWED_UPDATES)


async def _health_handler(request: web.Request) -> web.Response:
    """Health check endpoint for monitoring / container probes."""
    dp: Dispatcher | None = request.app.get("dp")
    info: dict = {"status": "ok"}
    if dp:
        query: HistoryQuery | None = dp.get("history_query")
        if query:
            info["history"] = asdict(query.stats())
        writer: SnapshotWriter | None = dp.get("history_writer")
        if writer:
            info["pending_writes"] = writer.pending
        redis_conn = dp.get("redis")
        if redis_conn:
            try:
                await redis_conn.ping()
                info["redis"] = "ok"
            except Exception:
                info["redis"] = "error"
    return web.json_response(info)


async def _run_webhook(bot: Bot, dp: Dispatcher) -> None:
    """Webhook mode (production)."""
    logger.info("Starting in WEBHOOK mode at %s", settings.webhook_url)
    await bot.set_webhook(
        url=settings.webhook_url,
        secret_token=settings.WEBHOOK_SECRET or None,
        allowed_updates=ALLOWED_UPDATES,
        drop_pending_updates=True,
        max_connections=40,
    )
    app = web.Application()

    # Health check endpoint (no auth required)
    app.router.add_get("/health", _health_handler)

    handler = SimpleRequestHandler(dispatcher=dp, bot=bot, secret_token=settings.WEBHOOK_SECRET or None)
    handler.register(app, path=settings.WEBHOOK_PATH)
    setup_application(app, dp, bot=bot)
    app["dp"] = dp  # Make dispatcher accessible to health handler
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host="0.0.0.0", port=settings.WEBHOOK_PORT)
    await site.start()
    logger.info("Webhook server listening on port %d", settings.WEBHOOK_PORT)
    # Keep running until interrupted
    await asyncio.Event().wait()

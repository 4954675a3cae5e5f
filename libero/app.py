"""Application factory – builds the Bot, Dispatcher, services and HTTP server,
then runs the bot in webhook or polling mode next to the API."""

from __future__ import annotations

import asyncio
import logging

import redis.asyncio as aioredis
from aiogram import Bot, Dispatcher
from aiogram.client.default import DefaultBotProperties
from aiogram.enums import ParseMode
from aiogram.webhook.aiohttp_server import (
    SimpleRequestHandler,
    setup_application,
)
from aiohttp import web

from libero.config import settings

logger = logging.getLogger(__name__)

ALLOWED_UPDATES = ["message", "my_chat_member"]


def _create_bot() -> Bot:
    return Bot(
        token=settings.BOT_TOKEN,
        default=DefaultBotProperties(parse_mode=ParseMode.HTML),
    )


def _register_routers(dp: Dispatcher) -> None:
    """Import and include all routers."""
    from libero.handlers.membership import membership_router
    from libero.handlers.plan import plan_router
    from libero.handlers.start import start_router

    dp.include_router(membership_router)
    dp.include_router(start_router)
    dp.include_router(plan_router)


def _register_middleware(dp: Dispatcher) -> None:
    from libero.middleware.db_session_mw import DbSessionMiddleware
    from libero.middleware.logging_mw import LoggingMiddleware

    dp.update.outer_middleware(LoggingMiddleware())
    dp.update.outer_middleware(DbSessionMiddleware())


def _build_services(bot: Bot, redis: aioredis.Redis, dp: Dispatcher) -> web.Application:
    """Wire the gateways and services, expose them to handlers and return the API app."""
    from libero.api import create_api_app
    from libero.services.entitlement import EntitlementResolver
    from libero.services.notifier import Notifier
    from libero.services.payments import StripeGateway
    from libero.services.scheduler import (
        ExpirySweeper,
        ReminderSender,
        expiry_task,
        reminder_task,
    )
    from libero.services.subscription import SubscriptionService
    from libero.services.telegram import TelegramGateway
    from libero.services.webhooks import WebhookReconciler

    payments = StripeGateway()
    telegram = TelegramGateway(bot, redis)
    notifier = Notifier(telegram)
    subscriptions = SubscriptionService(payments, notifier, telegram)
    resolver = EntitlementResolver()
    reconciler = WebhookReconciler(subscriptions, payments, notifier, telegram)

    # Handler injection via workflow data
    dp["redis"] = redis
    dp["telegram_gateway"] = telegram
    dp["entitlements"] = resolver
    dp["subscriptions"] = subscriptions

    dp["expiry_task"] = expiry_task(ExpirySweeper(redis, notifier, telegram))
    dp["reminder_task"] = reminder_task(ReminderSender(redis, notifier))

    return create_api_app(reconciler, subscriptions, resolver, redis=redis)


async def _on_startup(bot: Bot, dp: Dispatcher) -> None:
    """Run on startup – create tables if needed, start periodic tasks."""
    from libero.db.engine import init_db

    await init_db()

    await dp["expiry_task"].start()
    await dp["reminder_task"].start()

    bot_info = await bot.get_me()
    logger.info("Bot @%s (id=%d) started.", bot_info.username, bot_info.id)


async def _on_shutdown(dp: Dispatcher) -> None:
    """Graceful shutdown – stop tasks, close pools."""
    logger.info("Shutting down…")
    for key in ("expiry_task", "reminder_task"):
        task = dp.get(key)
        if task:
            await task.stop()

    redis: aioredis.Redis | None = dp.get("redis")
    if redis:
        await redis.aclose()

    from libero.db.engine import dispose_db

    await dispose_db()
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
    app = _build_services(bot, redis, dp)

    async def on_startup(*_args: object, **_kwargs: object) -> None:
        await _on_startup(bot, dp)

    async def on_shutdown(*_args: object, **_kwargs: object) -> None:
        await _on_shutdown(dp)

    dp.startup.register(on_startup)
    dp.shutdown.register(on_shutdown)

    if settings.BOT_MODE == "webhook":
        await _run_webhook(bot, dp, app)
    else:
        await _run_polling(bot, dp, app)


async def _serve(app: web.Application) -> web.AppRunner:
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host=settings.HTTP_HOST, port=settings.HTTP_PORT)
    await site.start()
    logger.info("HTTP server listening on %s:%d", settings.HTTP_HOST, settings.HTTP_PORT)
    return runner


async def _run_polling(bot: Bot, dp: Dispatcher, app: web.Application) -> None:
    """Long-polling mode (development). The API still serves Stripe webhooks."""
    logger.info("Starting in POLLING mode.")
    runner = await _serve(app)
    try:
        await bot.delete_webhook(drop_pending_updates=True)
        await dp.start_polling(bot, allowed_updates=ALLOWED_UPDATES)
    finally:
        await runner.cleanup()


async def _run_webhook(bot: Bot, dp: Dispatcher, app: web.Application) -> None:
    """Webhook mode (production)."""
    logger.info("Starting in WEBHOOK mode at %s", settings.webhook_url)
    await bot.set_webhook(
        url=settings.webhook_url,
        secret_token=settings.WEBHOOK_SECRET or None,
        allowed_updates=ALLOWED_UPDATES,
        drop_pending_updates=True,
        max_connections=40,
    )

    handler = SimpleRequestHandler(
        dispatcher=dp, bot=bot, secret_token=settings.WEBHOOK_SECRET or None
    )
    handler.register(app, path=settings.WEBHOOK_PATH)
    setup_application(app, dp, bot=bot)
    await _serve(app)
    # Keep running until interrupted
    await asyncio.Event().wait()

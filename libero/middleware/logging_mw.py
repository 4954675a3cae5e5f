"""Logging middleware – one line per Telegram update and per HTTP request."""

from __future__ import annotations

import logging
import time
from typing import Any, Awaitable, Callable

from aiogram import BaseMiddleware
from aiogram.types import TelegramObject, Update
from aiohttp import web

logger = logging.getLogger("libero.updates")
http_logger = logging.getLogger("libero.http")


class LoggingMiddleware(BaseMiddleware):
    """Log each update with timing and basic metadata."""

    async def __call__(
        self,
        handler: Callable[[TelegramObject, dict[str, Any]], Awaitable[Any]],
        event: TelegramObject,
        data: dict[str, Any],
    ) -> Any:
        start = time.perf_counter()

        update: Update | None = data.get("event_update")
        if isinstance(event, Update):
            update = event

        update_type = "unknown"
        chat_id = None
        if update:
            if update.message:
                update_type = "message"
                chat_id = update.message.chat.id
            elif update.chat_member:
                update_type = "chat_member"
                chat_id = update.chat_member.chat.id
            elif update.my_chat_member:
                update_type = "my_chat_member"
                chat_id = update.my_chat_member.chat.id

        try:
            result = await handler(event, data)
        except Exception as e:
            elapsed = (time.perf_counter() - start) * 1000
            logger.error(
                "update=%s chat=%s elapsed=%.1fms error=%s",
                update_type,
                chat_id,
                elapsed,
                e,
            )
            raise
        elapsed = (time.perf_counter() - start) * 1000
        logger.info("update=%s chat=%s elapsed=%.1fms", update_type, chat_id, elapsed)
        return result


@web.middleware
async def request_logging_middleware(
    request: web.Request,
    handler: Callable[[web.Request], Awaitable[web.StreamResponse]],
) -> web.StreamResponse:
    """aiohttp counterpart of :class:`LoggingMiddleware`."""
    start = time.perf_counter()
    status = 500
    try:
        response = await handler(request)
        status = response.status
        return response
    except web.HTTPException as e:
        status = e.status
        raise
    finally:
        elapsed = (time.perf_counter() - start) * 1000
        http_logger.info(
            "%s %s status=%d elapsed=%.1fms",
            request.method,
            request.path,
            status,
            elapsed,
        )

"""Tests for the bot and HTTP middlewares."""

from __future__ import annotations

import logging
from unittest.mock import AsyncMock, MagicMock

import pytest
from aiohttp import web
from aiohttp.test_utils import TestClient, TestServer
from sqlalchemy.ext.asyncio import AsyncSession

from libero.middleware.db_session_mw import DbSessionMiddleware
from libero.middleware.logging_mw import LoggingMiddleware, request_logging_middleware


@pytest.mark.asyncio
async def test_session_is_injected(session_factory):
    seen = {}

    async def handler(event, data):
        seen["session"] = data["session"]
        return "ok"

    result = await DbSessionMiddleware(session_factory)(handler, MagicMock(), {})

    assert result == "ok"
    assert isinstance(seen["session"], AsyncSession)


@pytest.mark.asyncio
async def test_update_logging_passes_result_through():
    handler = AsyncMock(return_value="done")
    assert await LoggingMiddleware()(handler, MagicMock(), {}) == "done"


@pytest.mark.asyncio
async def test_update_logging_reraises(caplog):
    handler = AsyncMock(side_effect=RuntimeError("boom"))
    with caplog.at_level(logging.ERROR, logger="libero.updates"):
        with pytest.raises(RuntimeError):
            await LoggingMiddleware()(handler, MagicMock(), {})
    assert "error=boom" in caplog.text


@pytest.mark.asyncio
async def test_requests_are_logged(caplog):
    async def ok(request):
        return web.json_response({})

    app = web.Application(middlewares=[request_logging_middleware])
    app.router.add_get("/ping", ok)
    client = TestClient(TestServer(app))
    await client.start_server()
    try:
        with caplog.at_level(logging.INFO, logger="libero.http"):
            await client.get("/ping")
            await client.get("/missing")
    finally:
        await client.close()

    assert "GET /ping status=200" in caplog.text
    assert "GET /missing status=404" in caplog.text

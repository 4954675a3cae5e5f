"""HTTP surface – Stripe webhook, health probe and the subscription API.

Callers are identified by the ``X-User-Id`` header set by the upstream
auth gateway.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any

import redis.asyncio as aioredis
from aiohttp import web

from libero.errors import LiberoError, ValidationError
from libero.middleware.logging_mw import request_logging_middleware
from libero.services.entitlement import EntitlementResolver
from libero.services.subscription import SubscriptionService
from libero.services.webhooks import WebhookReconciler

logger = logging.getLogger(__name__)

USER_HEADER = "X-User-Id"


@web.middleware
async def error_middleware(
    request: web.Request,
    handler: Callable[[web.Request], Awaitable[web.StreamResponse]],
) -> web.StreamResponse:
    """Map domain errors to ``{"error": message}`` with their HTTP status."""
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except LiberoError as e:
        if e.status >= 500:
            logger.error("%s %s failed: %s", request.method, request.path, e)
        return web.json_response({"error": str(e)}, status=e.status)
    except Exception as e:
        logger.exception("Unhandled error on %s %s: %s", request.method, request.path, e)
        return web.json_response({"error": "Internal server error"}, status=500)


def _user_id(request: web.Request) -> str:
    user_id = request.headers.get(USER_HEADER, "").strip()
    if not user_id:
        raise web.HTTPUnauthorized(
            text='{"error": "Missing user identity"}', content_type="application/json"
        )
    return user_id


async def _json_body(request: web.Request) -> dict[str, Any]:
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except ValueError as e:
        raise ValidationError("Request body is not valid JSON") from e
    if not isinstance(body, dict):
        raise ValidationError("Request body must be an object")
    return body


# ── Handlers ──────────────────────────────────────────────────────────


async def stripe_webhook(request: web.Request) -> web.Response:
    reconciler: WebhookReconciler = request.app["reconciler"]
    payload = await request.read()
    result = await reconciler.handle_provider_webhook(
        payload, request.headers.get("Stripe-Signature")
    )
    return web.json_response(
        {
            "received": True,
            "processed": result.processed,
            "duplicate": result.duplicate,
        }
    )


async def health(request: web.Request) -> web.Response:
    """Health check endpoint for monitoring / container probes."""
    info: dict[str, Any] = {"status": "ok"}
    redis_conn: aioredis.Redis | None = request.app.get("redis")
    if redis_conn is not None:
        try:
            await redis_conn.ping()
            info["redis"] = "ok"
        except Exception:
            info["redis"] = "error"
    return web.json_response(info)


async def create_checkout(request: web.Request) -> web.Response:
    subscriptions: SubscriptionService = request.app["subscriptions"]
    user_id = _user_id(request)
    body = await _json_body(request)
    pack_id = body.get("packId")
    if not pack_id or not isinstance(pack_id, str):
        raise ValidationError("packId is required")
    result = await subscriptions.create_checkout(user_id, pack_id)
    return web.json_response(
        {
            "checkoutUrl": result.checkout_url,
            "sessionId": result.session_id,
            "packId": result.pack_id,
            "packName": result.pack_name,
            "price": str(result.price),
            "isUpgrade": result.is_upgrade,
            "upgradePriceDifference": (
                str(result.upgrade_price_difference)
                if result.upgrade_price_difference is not None
                else None
            ),
        }
    )


async def cancel_subscription(request: web.Request) -> web.Response:
    subscriptions: SubscriptionService = request.app["subscriptions"]
    user_id = _user_id(request)
    body = await _json_body(request)
    sub = await subscriptions.cancel_subscription(
        user_id,
        request.match_info["subscription_id"],
        immediate=bool(body.get("immediate", False)),
    )
    return web.json_response(
        {
            "id": sub.id,
            "status": sub.status,
            "cancelAtPeriodEnd": sub.cancel_at_period_end,
        }
    )


async def entitlements(request: web.Request) -> web.Response:
    resolver: EntitlementResolver = request.app["entitlements"]
    categories = await resolver.accessible_categories(_user_id(request))
    return web.json_response(
        {"categories": [{"id": c.id, "name": c.name} for c in categories]}
    )


async def bet_access(request: web.Request) -> web.Response:
    resolver: EntitlementResolver = request.app["entitlements"]
    bet = await resolver.check_bet_access(_user_id(request), request.match_info["bet_id"])
    return web.json_response(
        {"id": bet.id, "categoryId": bet.category_id, "title": bet.title}
    )


def create_api_app(
    reconciler: WebhookReconciler,
    subscriptions: SubscriptionService,
    resolver: EntitlementResolver,
    redis: aioredis.Redis | None = None,
) -> web.Application:
    app = web.Application(middlewares=[request_logging_middleware, error_middleware])
    app["reconciler"] = reconciler
    app["subscriptions"] = subscriptions
    app["entitlements"] = resolver
    app["redis"] = redis

    app.router.add_get("/health", health)
    app.router.add_post("/webhooks/stripe", stripe_webhook)
    app.router.add_post("/api/checkout", create_checkout)
    app.router.add_post("/api/subscriptions/{subscription_id}/cancel", cancel_subscription)
    app.router.add_get("/api/entitlements", entitlements)
    app.router.add_get("/api/bets/{bet_id}/access", bet_access)
    return app

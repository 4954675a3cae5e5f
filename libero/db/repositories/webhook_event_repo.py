"""Webhook event repository – idempotent log of provider deliveries."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from libero.models.webhook_event import WebhookEvent


class WebhookEventRepo:
    def __init__(self, session: AsyncSession) -> None:
        self._s = session

    async def get(self, provider: str, event_id: str) -> WebhookEvent | None:
        result = await self._s.execute(
            select(WebhookEvent).where(
                WebhookEvent.provider == provider,
                WebhookEvent.event_id == event_id,
            )
        )
        return result.scalar_one_or_none()

    async def record(
        self, provider: str, event_id: str, event_type: str, payload: str
    ) -> WebhookEvent:
        """Insert the event, or bump ``retry_count`` if it was seen before.

        The insert runs in a savepoint so a concurrent delivery of the same
        event loses on the unique constraint and falls back to the bump.
        """
        existing = await self.get(provider, event_id)
        if existing is None:
            try:
                async with self._s.begin_nested():
                    event = WebhookEvent(
                        provider=provider,
                        event_id=event_id,
                        event_type=event_type,
                        payload=payload,
                    )
                    self._s.add(event)
                return event
            except IntegrityError:
                existing = await self.get(provider, event_id)
                if existing is None:
                    raise

        await self._s.execute(
            update(WebhookEvent)
            .where(WebhookEvent.id == existing.id)
            .values(retry_count=WebhookEvent.retry_count + 1)
        )
        await self._s.refresh(existing)
        return existing

    async def mark_processed(self, event_row_id: str, now: datetime) -> None:
        await self._s.execute(
            update(WebhookEvent)
            .where(WebhookEvent.id == event_row_id)
            .values(processed=True, processed_at=now, error=None)
        )

    async def mark_failed(self, event_row_id: str, error: str) -> None:
        await self._s.execute(
            update(WebhookEvent)
            .where(WebhookEvent.id == event_row_id)
            .values(processed=False, error=error[:2000])
        )

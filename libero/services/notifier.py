"""Notification sink – user notices and admin payment alerts.

Everything funnels through :meth:`Notifier.notify`, which logs the event and
delivers it by Telegram DM where a chat is known. Email rendering lives
outside this service. A failed notification never propagates.
"""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any

from libero.config import settings
from libero.models.user import User
from libero.services.keyboards import build_plans_button, build_renew_button
from libero.services.telegram import TelegramGateway
from libero.utils.enums import AlertKind, Language

logger = logging.getLogger(__name__)


def _money(amount: Decimal | None, currency: str | None) -> str:
    if amount is None:
        return "n/a"
    return f"{amount:.2f} {(currency or 'EUR').upper()}"


class Notifier:
    def __init__(self, telegram: TelegramGateway | None = None) -> None:
        self._telegram = telegram

    async def notify(self, event: str, payload: dict[str, Any]) -> None:
        """Deliver one notification. Never raises."""
        try:
            logger.info(
                "notify event=%s user=%s email=%s",
                event,
                payload.get("user_id"),
                payload.get("email"),
            )
            text = payload.get("text")
            if self._telegram is None or not text:
                return
            for chat_id in payload.get("telegram_ids") or ():
                await self._telegram.send_direct_message(
                    chat_id, text, reply_markup=payload.get("reply_markup")
                )
        except Exception as e:
            logger.error("Notification %s failed: %s", event, e)

    async def _to_user(self, event: str, user: User, text: str, **extra: Any) -> None:
        await self.notify(
            event,
            {
                "user_id": user.id,
                "email": user.email,
                "telegram_ids": [user.telegram_user_id] if user.telegram_user_id else [],
                "text": text,
                **extra,
            },
        )

    # ── User notices ──────────────────────────────────────────────────

    async def send_payment_confirmation(
        self,
        user: User,
        pack_name: str,
        amount: Decimal | None,
        currency: str | None,
        bot_link: str | None,
        is_upgrade: bool = False,
    ) -> None:
        lang = Language.of(user.preferred_language)
        if lang is Language.EL:
            text = (
                f"✅ <b>Η πληρωμή ολοκληρώθηκε</b>\n\n"
                f"Πακέτο: <b>{pack_name}</b>\nΠοσό: {_money(amount, currency)}"
            )
            if bot_link:
                text += f"\n\nΣύνδεσε το Telegram σου για πρόσβαση VIP:\n{bot_link}"
        else:
            text = (
                f"✅ <b>{'Upgrade' if is_upgrade else 'Payment'} confirmed</b>\n\n"
                f"Pack: <b>{pack_name}</b>\nAmount: {_money(amount, currency)}"
            )
            if bot_link:
                text += f"\n\nLink your Telegram to get VIP access:\n{bot_link}"
        await self._to_user(
            "payment_confirmation",
            user,
            text,
            pack=pack_name,
            amount=str(amount) if amount is not None else None,
            bot_link=bot_link,
        )

    async def send_refund_confirmation(
        self,
        user: User,
        pack_name: str | None,
        amount: Decimal | None,
        currency: str | None,
        restored_pack_name: str | None = None,
    ) -> None:
        lang = Language.of(user.preferred_language)
        if lang is Language.EL:
            text = f"💸 Η επιστροφή χρημάτων ({_money(amount, currency)}) ολοκληρώθηκε."
            if restored_pack_name:
                text += f"\nΤο πακέτο σου επανήλθε σε <b>{restored_pack_name}</b>."
        else:
            text = f"💸 Your refund of {_money(amount, currency)} has been processed."
            if pack_name:
                text += f"\nSubscription to <b>{pack_name}</b> ended."
            if restored_pack_name:
                text += f"\nYou are back on <b>{restored_pack_name}</b>."
        await self._to_user("refund_confirmation", user, text, restored=restored_pack_name)

    async def send_subscription_ended(self, user: User, pack_name: str) -> None:
        lang = Language.of(user.preferred_language)
        if lang is Language.EL:
            text = f"⌛ Η συνδρομή σου στο <b>{pack_name}</b> έληξε."
        else:
            text = (
                f"⌛ Your <b>{pack_name}</b> subscription has ended and VIP access "
                "was removed. You can subscribe again any time."
            )
        await self._to_user(
            "subscription_ended", user, text, reply_markup=build_plans_button(lang)
        )

    async def send_renewal_reminder(
        self, user: User, pack_name: str, period_end: datetime
    ) -> None:
        lang = Language.of(user.preferred_language)
        day = period_end.strftime("%d/%m/%Y")
        if lang is Language.EL:
            text = f"⏰ Η συνδρομή σου στο <b>{pack_name}</b> λήγει στις {day}."
        else:
            text = (
                f"⏰ Your <b>{pack_name}</b> subscription ends on {day}.\n\n"
                "Renew now to keep your VIP access."
            )
        await self._to_user(
            "renewal_reminder", user, text, reply_markup=build_renew_button(lang)
        )

    # ── Admin alerts ──────────────────────────────────────────────────

    async def send_admin_payment_alert(
        self,
        kind: AlertKind,
        user: User | None,
        amount: Decimal | None,
        currency: str | None,
        reference: str | None,
        reason: str | None = None,
    ) -> None:
        titles = {
            AlertKind.CHARGE_FAILED: "❌ Payment failed",
            AlertKind.DISPUTE_CREATED: "⚠️ Dispute opened",
            AlertKind.REFUND_PROCESSED: "💸 Refund processed",
        }
        lines = [
            f"<b>{titles[kind]}</b>",
            "",
            f"User: {user.email if user else 'unknown'} ({user.id if user else '-'})",
            f"Amount: {_money(amount, currency)}",
            f"Reference: <code>{reference or '-'}</code>",
        ]
        if reason:
            lines.append(f"Reason: {reason}")
        await self.notify(
            f"admin_{kind.value}",
            {
                "user_id": user.id if user else None,
                "telegram_ids": settings.admin_ids,
                "text": "\n".join(lines),
                "reference": reference,
            },
        )

"""Membership guard – removes people who join a VIP chat without a paid plan.

Invite links are one-time, but old or forwarded links still get tried; every
join in a guarded chat is checked against the subscription table.
"""

from __future__ import annotations

import logging

from aiogram import F, Router
from aiogram.types import Message
from sqlalchemy.ext.asyncio import AsyncSession

from libero.config import settings
from libero.db.repositories.subscription_repo import SubscriptionRepo
from libero.db.repositories.user_repo import UserRepo
from libero.services.telegram import TelegramGateway
from libero.utils.dates import utcnow

logger = logging.getLogger(__name__)

membership_router = Router(name="membership")


def _is_guarded(message: Message) -> bool:
    return message.chat.id in settings.guarded_chat_ids


@membership_router.message(F.new_chat_members, _is_guarded)
async def on_new_members(
    message: Message,
    session: AsyncSession,
    telegram_gateway: TelegramGateway,
) -> None:
    chat_id = message.chat.id
    users = UserRepo(session)
    subs = SubscriptionRepo(session)

    for member in message.new_chat_members or []:
        if member.is_bot:
            continue
        try:
            user = await users.get_by_telegram_id(member.id)
            allowed = (
                user is not None
                and await subs.count_other_active_paid(user.id, utcnow()) > 0
            )
        except Exception as e:
            logger.error("Could not verify new member %d: %s", member.id, e)
            allowed = False

        if allowed:
            logger.info("Member %d verified in chat %d", member.id, chat_id)
            continue

        logger.warning("Removing %d from chat %d: no active subscription", member.id, chat_id)
        await telegram_gateway.ban_from_chat(chat_id, member.id)
        await telegram_gateway.send_direct_message(
            member.id,
            f"❌ <b>Access Denied</b>\n\nHi {member.first_name}, you were removed from "
            "the VIP group because you don't have an active subscription.\n\n"
            "To get access:\n"
            "1. Purchase a subscription pack on our website\n"
            "2. Open the Telegram link in your payment confirmation\n"
            "3. You'll receive new invite links here",
        )

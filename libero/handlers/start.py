"""/start handler – links a Telegram account through a one-time deep link."""

from __future__ import annotations

import asyncio
import logging

from aiogram import Router
from aiogram.filters import Command, CommandObject
from aiogram.types import Message
from sqlalchemy.ext.asyncio import AsyncSession

from libero.db.repositories.subscription_repo import SubscriptionRepo
from libero.db.repositories.user_repo import UserRepo
from libero.services.keyboards import build_plans_button, build_vip_links
from libero.services.telegram import TelegramGateway
from libero.utils.dates import utcnow
from libero.utils.enums import Language

logger = logging.getLogger(__name__)

start_router = Router(name="start")

LINK_PREFIX = "link_"


@start_router.message(Command("start"))
async def cmd_start(
    message: Message,
    command: CommandObject,
    session: AsyncSession,
    telegram_gateway: TelegramGateway,
) -> None:
    """Plain /start greets; ``/start link_<token>`` links the account."""
    args = (command.args or "").strip()
    if not args.startswith(LINK_PREFIX) or message.from_user is None:
        await message.answer(
            "👋 <b>Welcome to Libero Tips!</b>\n\n"
            "To link your account and get VIP access, open the Telegram link "
            "in your payment confirmation."
        )
        return

    telegram_user_id = message.from_user.id
    first_name = message.from_user.first_name or "there"
    token = args[len(LINK_PREFIX):]
    user_id = await telegram_gateway.peek_link_token(token)
    if user_id is None:
        await message.answer(
            "⌛ This link has expired or was already used.\n\n"
            "Request a new one from your account page."
        )
        return

    try:
        users = UserRepo(session)
        await users.link_telegram(user_id, telegram_user_id)
        await session.commit()
        # Burn the token only once the link is stored
        await telegram_gateway.consume_link_token(token)
        user = await users.get(user_id)
        active = await SubscriptionRepo(session).get_active_paid(user_id, utcnow())
    except Exception as e:
        logger.exception("Failed to link Telegram %d to user %s: %s", telegram_user_id, user_id, e)
        await message.answer(
            "❌ Something went wrong while linking your account. "
            "Please try again or contact support."
        )
        return

    logger.info("Linked Telegram %d to user %s", telegram_user_id, user_id)
    language = Language.of(user.preferred_language if user else None)
    greek = language is Language.EL

    if active is None:
        text = (
            f"✅ <b>Ο λογαριασμός συνδέθηκε!</b>\n\nΓεια σου {first_name}! "
            "Όταν αγοράσεις ένα πακέτο, θα λάβεις εδώ τους συνδέσμους VIP."
            if greek
            else f"✅ <b>Account linked!</b>\n\nHi {first_name}! When you purchase "
            "a pack, you'll receive your VIP access links here."
        )
        await message.answer(text, reply_markup=build_plans_button(language))
        return

    # Lift any ban from a previous expiry before handing out new links.
    await telegram_gateway.unban_user_from_groups(telegram_user_id, language)
    vip_link, community_link = await asyncio.gather(
        telegram_gateway.create_invite_link(language),
        telegram_gateway.create_community_invite_link(language),
    )

    if greek:
        text = (
            f"🎉 <b>Γεια σου {first_name}!</b>\n\n"
            "Ο λογαριασμός σου συνδέθηκε επιτυχώς! ✅\n\n"
            "<i>Οι σύνδεσμοι είναι μόνο για εσένα και λήγουν μετά τη χρήση.</i>"
        )
    else:
        text = (
            f"🎉 <b>Hi {first_name}!</b>\n\n"
            "Your account has been linked successfully! ✅\n\n"
            "<i>These links are for you only and expire after use.</i>"
        )
    keyboard = build_vip_links(language, vip_link, community_link)
    if keyboard is None:
        text += "\n\nVIP links are unavailable right now, please contact support."
    await message.answer(text, reply_markup=keyboard)

"""/plan handler – current pack, renewal date and accessible categories."""

from __future__ import annotations

import logging

from aiogram import Router
from aiogram.filters import Command
from aiogram.types import Message
from sqlalchemy.ext.asyncio import AsyncSession

from libero.db.repositories.subscription_repo import SubscriptionRepo
from libero.db.repositories.user_repo import UserRepo
from libero.services.entitlement import EntitlementResolver
from libero.services.keyboards import build_plans_button
from libero.utils.dates import as_utc, utcnow
from libero.utils.enums import Language

logger = logging.getLogger(__name__)

plan_router = Router(name="plan")


@plan_router.message(Command("plan"))
async def cmd_plan(
    message: Message,
    session: AsyncSession,
    entitlements: EntitlementResolver,
) -> None:
    if message.from_user is None:
        return

    user = await UserRepo(session).get_by_telegram_id(message.from_user.id)
    if user is None:
        await message.answer(
            "Your Telegram account is not linked yet.\n\n"
            "Open the link in your payment confirmation to connect it."
        )
        return

    now = utcnow()
    active = await SubscriptionRepo(session).get_active_paid(user.id, now)
    categories = await entitlements.accessible_categories(user.id)
    language = Language.of(user.preferred_language)

    lines = ["<b>Your Plan</b>", ""]
    if active is None:
        lines.append("Plan: Free")
    else:
        sub, pack = active
        end = as_utc(sub.current_period_end)
        days_left = max(0, (end - now).days)
        lines.append(f"Plan: <b>{pack.name}</b> ({days_left}d left)")
        renew = "ends" if sub.cancel_at_period_end else "renews"
        lines.append(f"Period {renew} on {end.strftime('%d %b %Y')}")

    lines.append("")
    if categories:
        lines.append("<b>Categories</b>")
        lines.extend(f"  • {c.name}" for c in categories)
    else:
        lines.append("No categories available yet.")

    await message.answer(
        "\n".join(lines),
        reply_markup=build_plans_button(language) if active is None else None,
    )

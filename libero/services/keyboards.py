"""Inline keyboard builders for bot messages."""

from __future__ import annotations

from aiogram.types import InlineKeyboardButton, InlineKeyboardMarkup

from libero.config import settings
from libero.utils.enums import Language


def build_vip_links(
    language: Language, vip_link: str | None, community_link: str | None
) -> InlineKeyboardMarkup | None:
    """One URL button per invite link that could be created."""
    greek = language is Language.EL
    rows = []
    if vip_link:
        rows.append(
            [
                InlineKeyboardButton(
                    text="💎 Είσοδος στο VIP Κανάλι" if greek else "💎 Join VIP Channel",
                    url=vip_link,
                )
            ]
        )
    if community_link:
        rows.append(
            [
                InlineKeyboardButton(
                    text="💬 Είσοδος στην Κοινότητα" if greek else "💬 Join VIP Community",
                    url=community_link,
                )
            ]
        )
    if not rows:
        return None
    return InlineKeyboardMarkup(inline_keyboard=rows)


def build_renew_button(language: Language) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(
        inline_keyboard=[
            [
                InlineKeyboardButton(
                    text="🔄 Ανανέωση" if language is Language.EL else "🔄 Renew",
                    url=f"{settings.FRONTEND_URL}/packs",
                )
            ]
        ]
    )


def build_plans_button(language: Language) -> InlineKeyboardMarkup:
    """Single 'View packs' button for users without access."""
    return InlineKeyboardMarkup(
        inline_keyboard=[
            [
                InlineKeyboardButton(
                    text="⭐ Δες τα πακέτα" if language is Language.EL else "⭐ View Packs",
                    url=f"{settings.FRONTEND_URL}/packs",
                )
            ]
        ]
    )

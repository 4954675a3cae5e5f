"""Telegram gateway – VIP group membership, invite links and direct messages.

Users are *banned* rather than kicked when access ends, so old or shared
invite links stop working; linking again through the bot unbans them.
"""

from __future__ import annotations

import logging
import secrets
from datetime import timedelta

import redis.asyncio as aioredis
from aiogram import Bot
from aiogram.exceptions import (
    TelegramAPIError,
    TelegramBadRequest,
    TelegramForbiddenError,
)
from aiogram.types import InlineKeyboardMarkup, LinkPreviewOptions
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from libero.config import settings
from libero.db.engine import async_session
from libero.db.repositories.user_repo import UserRepo
from libero.utils.dates import utcnow
from libero.utils.enums import Language

logger = logging.getLogger(__name__)

LINK_TOKEN_PREFIX = "tglink:"


class TelegramGateway:
    def __init__(
        self,
        bot: Bot,
        redis: aioredis.Redis,
        session_factory: async_sessionmaker[AsyncSession] = async_session,
    ) -> None:
        self._bot = bot
        self._redis = redis
        self._session_factory = session_factory
        self._username: str | None = None

    # ── Membership ────────────────────────────────────────────────────

    async def _ban(self, telegram_user_id: int, chat_id: int | None, label: str) -> bool:
        if not chat_id:
            logger.warning("Telegram %s chat is not configured, skipping ban", label)
            return False
        try:
            await self._bot.ban_chat_member(chat_id, telegram_user_id)
        except TelegramAPIError as e:
            logger.error("Failed to ban %d from %s chat %d: %s", telegram_user_id, label, chat_id, e)
            return False
        logger.info("Banned %d from %s chat %d", telegram_user_id, label, chat_id)
        return True

    async def ban_from_chat(self, chat_id: int, telegram_user_id: int) -> bool:
        return await self._ban(telegram_user_id, chat_id, "guarded")

    async def kick_user(self, telegram_user_id: int, language: Language) -> bool:
        """Ban from both the VIP channel and the community chat."""
        vip = await self._ban(telegram_user_id, settings.vip_chat_id(language.value), "VIP")
        community = await self._ban(
            telegram_user_id, settings.community_chat_id(language.value), "community"
        )
        return vip or community

    async def kick_user_by_user_id(self, user_id: str) -> bool:
        async with self._session_factory() as session:
            user = await UserRepo(session).get(user_id)
        if user is None or user.telegram_user_id is None:
            logger.warning("User %s has no Telegram account, skipping kick", user_id)
            return False
        kicked = await self.kick_user(user.telegram_user_id, Language.of(user.preferred_language))
        logger.info("Kick for user %s: %s", user_id, kicked)
        return kicked

    async def unban_user_from_groups(self, telegram_user_id: int, language: Language) -> bool:
        ok = False
        for chat_id in (
            settings.vip_chat_id(language.value),
            settings.community_chat_id(language.value),
        ):
            if not chat_id:
                continue
            try:
                await self._bot.unban_chat_member(chat_id, telegram_user_id, only_if_banned=True)
                ok = True
            except TelegramAPIError as e:
                logger.error("Failed to unban %d from %d: %s", telegram_user_id, chat_id, e)
        return ok

    # ── Invite links ──────────────────────────────────────────────────

    async def _invite_link(self, chat_id: int | None) -> str | None:
        """One-time link; no static fallback so links cannot be shared."""
        if not chat_id:
            return None
        try:
            link = await self._bot.create_chat_invite_link(
                chat_id,
                member_limit=1,
                expire_date=utcnow() + timedelta(hours=settings.INVITE_LINK_TTL_HOURS),
            )
        except TelegramAPIError as e:
            logger.error("Could not create invite link for %d: %s", chat_id, e)
            return None
        return link.invite_link

    async def create_invite_link(self, language: Language) -> str | None:
        return await self._invite_link(settings.vip_chat_id(language.value))

    async def create_community_invite_link(self, language: Language) -> str | None:
        return await self._invite_link(settings.community_chat_id(language.value))

    # ── Messaging ─────────────────────────────────────────────────────

    async def send_direct_message(
        self,
        telegram_user_id: int,
        text: str,
        reply_markup: InlineKeyboardMarkup | None = None,
    ) -> bool:
        try:
            await self._bot.send_message(
                telegram_user_id,
                text,
                reply_markup=reply_markup,
                link_preview_options=LinkPreviewOptions(is_disabled=True),
            )
        except TelegramForbiddenError:
            logger.info("User %d has blocked the bot", telegram_user_id)
            return False
        except TelegramBadRequest as e:
            logger.warning("DM to %d rejected: %s", telegram_user_id, e)
            return False
        return True

    # ── Account linking ───────────────────────────────────────────────

    async def issue_link_token(self, user_id: str) -> str:
        token = secrets.token_urlsafe(16)
        await self._redis.set(
            f"{LINK_TOKEN_PREFIX}{token}", user_id, ex=settings.LINK_TOKEN_TTL
        )
        return token

    async def peek_link_token(self, token: str) -> str | None:
        return await self._redis.get(f"{LINK_TOKEN_PREFIX}{token}")

    async def consume_link_token(self, token: str) -> str | None:
        """Return the user the token was issued for. A token works once."""
        return await self._redis.getdel(f"{LINK_TOKEN_PREFIX}{token}")

    async def bot_link_url(self, user_id: str) -> str:
        """Deep link that opens the bot and links the account on /start."""
        if self._username is None:
            me = await self._bot.get_me()
            self._username = me.username
        token = await self.issue_link_token(user_id)
        return f"https://t.me/{self._username}?start=link_{token}"

"""Pack repository – packs, category links and hierarchy edges."""

from __future__ import annotations

from collections.abc import Iterable

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from libero.models.category import Bet, Category
from libero.models.pack import Pack, PackCategory, PackHierarchy


class PackRepo:
    def __init__(self, session: AsyncSession) -> None:
        self._s = session

    async def get(self, pack_id: str) -> Pack | None:
        return await self._s.get(Pack, pack_id)

    async def get_many(self, pack_ids: Iterable[str]) -> list[Pack]:
        ids = list(pack_ids)
        if not ids:
            return []
        result = await self._s.execute(select(Pack).where(Pack.id.in_(ids)))
        return list(result.scalars().all())

    async def free_pack_ids(self) -> set[str]:
        """Every active free pack – granted to all users without a subscription row."""
        result = await self._s.execute(
            select(Pack.id).where(
                Pack.is_free == True,  # noqa: E712
                Pack.is_active == True,  # noqa: E712
            )
        )
        return set(result.scalars().all())

    async def all_edges(self) -> list[tuple[str, str]]:
        """Return every ``(pack_id, includes_pack_id)`` edge."""
        result = await self._s.execute(
            select(PackHierarchy.pack_id, PackHierarchy.includes_pack_id)
        )
        return [(row[0], row[1]) for row in result.all()]

    async def replace_edges(self, pack_id: str, included_ids: Iterable[str]) -> None:
        await self._s.execute(delete(PackHierarchy).where(PackHierarchy.pack_id == pack_id))
        for included_id in included_ids:
            self._s.add(PackHierarchy(pack_id=pack_id, includes_pack_id=included_id))
        await self._s.flush()

    async def replace_categories(self, pack_id: str, category_ids: Iterable[str]) -> None:
        await self._s.execute(delete(PackCategory).where(PackCategory.pack_id == pack_id))
        for category_id in category_ids:
            self._s.add(PackCategory(pack_id=pack_id, category_id=category_id))
        await self._s.flush()

    async def active_category_ids(self, pack_ids: Iterable[str]) -> set[str]:
        """Map packs to the ids of their active categories."""
        ids = list(pack_ids)
        if not ids:
            return set()
        result = await self._s.execute(
            select(PackCategory.category_id)
            .join(Category, Category.id == PackCategory.category_id)
            .where(
                PackCategory.pack_id.in_(ids),
                Category.is_active == True,  # noqa: E712
            )
            .distinct()
        )
        return set(result.scalars().all())

    async def get_categories(self, category_ids: Iterable[str]) -> list[Category]:
        ids = list(category_ids)
        if not ids:
            return []
        result = await self._s.execute(
            select(Category).where(Category.id.in_(ids)).order_by(Category.name)
        )
        return list(result.scalars().all())

    async def count_existing_categories(self, category_ids: Iterable[str]) -> int:
        ids = list(category_ids)
        if not ids:
            return 0
        result = await self._s.execute(select(Category.id).where(Category.id.in_(ids)))
        return len(result.scalars().all())

    async def get_bet(self, bet_id: str) -> Bet | None:
        return await self._s.get(Bet, bet_id)

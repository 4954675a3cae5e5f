"""Entitlement resolver – which categories a user may see.

Access flows from two sources: the packs of the user's live subscriptions and
every active free pack. Both are expanded over the ``pack_hierarchy`` graph to
a fixpoint before being mapped to categories.
"""

from __future__ import annotations

import logging
from collections import defaultdict, deque
from collections.abc import Callable, Iterable
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from libero.db.engine import async_session
from libero.db.repositories.pack_repo import PackRepo
from libero.db.repositories.subscription_repo import SubscriptionRepo
from libero.errors import AccessDeniedError, ConflictError, NotFoundError
from libero.models.category import Bet, Category
from libero.utils.dates import utcnow

logger = logging.getLogger(__name__)


# ── Pack graph ────────────────────────────────────────────────────────


class PackGraph:
    """In-memory view of the pack inclusion edges."""

    def __init__(self, edges: Iterable[tuple[str, str]]) -> None:
        self._children: dict[str, set[str]] = defaultdict(set)
        for parent, child in edges:
            self._children[parent].add(child)

    def includes(self, pack_id: str) -> frozenset[str]:
        return frozenset(self._children.get(pack_id, ()))

    def closure(self, roots: Iterable[str]) -> set[str]:
        """Every pack reachable from *roots*, roots included.

        Breadth-first with a visited set, so shared sub-packs and any
        stray cycle in legacy data terminate.
        """
        visited: set[str] = set()
        queue = deque(roots)
        while queue:
            pack_id = queue.popleft()
            if pack_id in visited:
                continue
            visited.add(pack_id)
            queue.extend(self._children.get(pack_id, set()) - visited)
        return visited

    def without_outgoing(self, pack_id: str) -> PackGraph:
        """Copy of the graph with *pack_id*'s own edges removed."""
        edges = [
            (parent, child)
            for parent, children in self._children.items()
            if parent != pack_id
            for child in children
        ]
        return PackGraph(edges)

    def would_create_cycle(self, pack_id: str, included_id: str) -> bool:
        """True if adding ``pack_id -> included_id`` closes a loop."""
        if pack_id == included_id:
            return True
        return pack_id in self.closure([included_id])


# ── Resolver ──────────────────────────────────────────────────────────


class EntitlementResolver:
    """Evaluated on every request; nothing is cached."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] = async_session,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock

    async def _accessible_in(self, session: AsyncSession, user_id: str) -> frozenset[str]:
        packs = PackRepo(session)
        subs = SubscriptionRepo(session)

        direct = await subs.active_pack_ids(user_id, self._clock())
        free = await packs.free_pack_ids()
        graph = PackGraph(await packs.all_edges())
        reachable = graph.closure(direct | free)

        return frozenset(await packs.active_category_ids(reachable))

    async def resolve_accessible_categories(self, user_id: str) -> frozenset[str]:
        async with self._session_factory() as session:
            return await self._accessible_in(session, user_id)

    async def accessible_categories(self, user_id: str) -> list[Category]:
        """Same as :meth:`resolve_accessible_categories`, as loaded rows."""
        async with self._session_factory() as session:
            ids = await self._accessible_in(session, user_id)
            return await PackRepo(session).get_categories(ids)

    async def can_access_category(self, user_id: str, category_id: str) -> bool:
        return category_id in await self.resolve_accessible_categories(user_id)

    async def check_bet_access(self, user_id: str, bet_id: str) -> Bet:
        """Return the bet, or raise 403 whether it is missing or just not allowed."""
        async with self._session_factory() as session:
            bet = await PackRepo(session).get_bet(bet_id)
            if bet is None:
                raise AccessDeniedError("You do not have access to this bet")
            allowed = await self._accessible_in(session, user_id)

        if bet.category_id not in allowed:
            logger.info("Bet %s denied for user %s", bet_id, user_id)
            raise AccessDeniedError("You do not have access to this bet")
        return bet


# ── Hierarchy administration ──────────────────────────────────────────


class PackHierarchyService:
    def __init__(
        self, session_factory: async_sessionmaker[AsyncSession] = async_session
    ) -> None:
        self._session_factory = session_factory

    async def set_pack_hierarchy(self, pack_id: str, included_ids: Iterable[str]) -> None:
        """Replace the packs *pack_id* includes.

        Rejects self-inclusion and any edge whose target can already reach
        *pack_id* through the rest of the graph.
        """
        wanted = list(dict.fromkeys(included_ids))
        async with self._session_factory() as session, session.begin():
            repo = PackRepo(session)
            if await repo.get(pack_id) is None:
                raise NotFoundError(f"Pack {pack_id} not found")
            found = {p.id for p in await repo.get_many(wanted)}
            missing = [i for i in wanted if i not in found]
            if missing:
                raise NotFoundError(f"Packs not found: {', '.join(missing)}")

            graph = PackGraph(await repo.all_edges()).without_outgoing(pack_id)
            for included_id in wanted:
                if included_id == pack_id:
                    raise ConflictError("A pack cannot include itself")
                if graph.would_create_cycle(pack_id, included_id):
                    raise ConflictError(
                        f"Including pack {included_id} would create a circular hierarchy"
                    )

            await repo.replace_edges(pack_id, wanted)

        logger.info("Pack %s now includes %s", pack_id, wanted)

    async def set_pack_categories(self, pack_id: str, category_ids: Iterable[str]) -> None:
        wanted = list(dict.fromkeys(category_ids))
        async with self._session_factory() as session, session.begin():
            repo = PackRepo(session)
            if await repo.get(pack_id) is None:
                raise NotFoundError(f"Pack {pack_id} not found")
            if await repo.count_existing_categories(wanted) != len(wanted):
                raise NotFoundError("One or more categories not found")
            await repo.replace_categories(pack_id, wanted)

        logger.info("Pack %s assigned %d categories", pack_id, len(wanted))

    async def get_all_categories_for_pack(self, pack_id: str) -> list[Category]:
        """Categories of *pack_id* and of every pack it transitively includes."""
        async with self._session_factory() as session:
            repo = PackRepo(session)
            if await repo.get(pack_id) is None:
                raise NotFoundError(f"Pack {pack_id} not found")
            packs = PackGraph(await repo.all_edges()).closure([pack_id])
            ids = await repo.active_category_ids(packs)
            return await repo.get_categories(ids)

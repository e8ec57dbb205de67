"""
View loader — fills views from the remote authority.

Staleness is advisory: nothing is refetched until a consumer asks for
fresh data, a resync runs, or the heartbeat finds a view overdue.
"""

import logging
from typing import Callable, List, Optional

from sync_kernel.models.entity import ChangeOrigin, EntityRef
from sync_kernel.models.query import CountQuery, EntityQuery, ListQuery, Snapshot
from sync_kernel.models.view import (
    ListViewDefinition,
    ScalarViewDefinition,
    ViewKey,
    ViewShape,
)
from sync_kernel.ports import RemoteAuthority
from sync_kernel.store.entities import EntityStore
from sync_kernel.views.registry import ViewRegistry

logger = logging.getLogger(__name__)


class ViewLoader:
    def __init__(
        self,
        store: EntityStore,
        registry: ViewRegistry,
        authority: RemoteAuthority,
        page_size: int = 20,
        is_dirty: Optional[Callable[[EntityRef], bool]] = None,
        pending_delta: Optional[Callable[[ViewKey], int]] = None,
    ):
        self.store = store
        self.registry = registry
        self.authority = authority
        self.page_size = page_size
        self._is_dirty = is_dirty or (lambda ref: False)
        self._pending_delta = pending_delta or (lambda key: 0)

    def absorb(
        self,
        snapshot: Snapshot,
        origin: ChangeOrigin = ChangeOrigin.FETCH,
        install_lists: bool = True,
    ) -> int:
        """
        Write fetched entities into the store, skipping locally dirty ones
        so a read never overwrites a pending optimistic patch. List pages
        bundled with the snapshot (a ticket's conversation) are installed
        into views that are already registered.
        """
        written = 0
        with self.registry.batch():
            for entity in snapshot.entities:
                if self._is_dirty(entity.ref):
                    logger.debug("Skipped fetched %s: pending local mutation", entity.ref)
                    continue
                if self.store.put(entity, origin):
                    written += 1
            if install_lists:
                for page in snapshot.lists:
                    if self.registry.get_list(page.definition.key) is not None:
                        self.registry.load_page(
                            page.definition, page.page_index, page.ids, page.has_more
                        )
        return written

    async def load_first_page(self, definition: ListViewDefinition) -> List[str]:
        return await self._load_page(definition, 0)

    async def load_next_page(self, definition: ListViewDefinition) -> List[str]:
        view = self.registry.ensure_list(definition)
        if view.loaded and not view.has_more:
            return []
        return await self._load_page(definition, len(view.pages) if view.loaded else 0)

    async def _load_page(self, definition: ListViewDefinition, page_index: int) -> List[str]:
        view = self.registry.ensure_list(definition)
        skip = len(view) if page_index else 0
        snapshot = await self.authority.fetch(
            ListQuery(definition=definition, skip=skip, limit=self.page_size)
        )
        # No await between absorbing entities and installing the page.
        with self.registry.batch():
            self.absorb(snapshot, ChangeOrigin.PAGE, install_lists=False)
            page = next(
                (p for p in snapshot.lists if p.definition.key == definition.key),
                None,
            )
            ids = page.ids if page is not None else [e.id for e in snapshot.entities]
            has_more = page.has_more if page is not None else len(ids) >= self.page_size
            self.registry.load_page(definition, page_index, ids, has_more)
        logger.debug("Loaded page %d of %s (%d ids)", page_index, definition.key, len(ids))
        return ids

    async def load_count(self, definition: ScalarViewDefinition) -> int:
        key = self.registry.ensure_scalar(definition).key
        snapshot = await self.authority.fetch(CountQuery(definition=definition))
        if snapshot.count is None:
            value = len(self.store.scan(definition.entity_kind, definition.predicate))
        else:
            # The authority has not seen pending optimistic changes yet.
            value = max(0, snapshot.count + self._pending_delta(key))
        self.registry.set_scalar(key, value)
        return value

    async def load_detail(self, ref: EntityRef) -> None:
        snapshot = await self.authority.fetch(EntityQuery(ref=ref))
        self.absorb(snapshot, ChangeOrigin.FETCH)

    async def refresh(self, key: ViewKey) -> None:
        """Refetch one view from the authority."""
        if key.shape == ViewShape.DETAIL:
            await self.load_detail(key.entity_ref())
            return
        definition = self.registry.definition(key)
        if definition is None:
            raise KeyError(f"Unknown view: {key}")
        if isinstance(definition, ListViewDefinition):
            await self.load_first_page(definition)
        else:
            await self.load_count(definition)

    async def ensure_fresh(self, key: ViewKey) -> None:
        """Refetch a view only if it is stale or has never been loaded."""
        if key.shape == ViewShape.DETAIL:
            ref = key.entity_ref()
            entity = self.store.get(ref)
            if entity is None or entity.stale or entity.fetched_at is None:
                await self.load_detail(ref)
            return
        view = self.registry.get_view(key)
        if view is None:
            raise KeyError(f"Unknown view: {key}")
        if view.stale or not view.loaded:
            await self.refresh(key)

    async def resync(self) -> None:
        """
        Full resynchronization after a reconnect: mark everything stale,
        recompute every scalar from scratch instead of trusting accumulated
        increments, then refetch every subscribed view. Subscribed scalars
        take the authority's count; the rest stay stale until next read.
        """
        subscribed = self.registry.subscribed_keys()
        logger.info("Resynchronizing %d subscribed views", len(subscribed))
        self.registry.mark_all_stale()
        self.registry.recompute_scalars()
        for key in subscribed:
            try:
                await self.refresh(key)
            except Exception:
                logger.exception("Resync refresh of %s failed", key)

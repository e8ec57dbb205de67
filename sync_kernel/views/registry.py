"""
View Registry — named, parameterized read views over the Entity Store.

List views hold ordered pages of entity ids; scalar views hold a count.
Neither holds entity data: a single store write is visible everywhere.

Behavioral Contract:
- Mutated only in response to a store change or an explicit structural
  operation.
- An entity id appears at most once across all pages of one list view.
- Scalar views move by +1/-1 from the before/after pair of a store change;
  `recompute_scalars` corrects any accumulated drift.
- Subscribers never observe a half-applied update: notifications are
  deferred to the end of the outermost `batch()`.
- Staleness is advisory. Nothing here fetches.
"""

import asyncio
import functools
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import AsyncIterator, Callable, Dict, Iterator, List, Optional, Set, Union

from sync_kernel.models.entity import DELTA_ORIGINS, ChangeOrigin, Entity, EntityRef, StoreChange, utcnow
from sync_kernel.models.view import (
    AppendPage,
    InsertAtHead,
    ListViewDefinition,
    MarkStale,
    RemoveAll,
    ScalarViewDefinition,
    StructuralOp,
    ViewDefinition,
    ViewKey,
    ViewShape,
    ViewSnapshot,
)
from sync_kernel.store.entities import EntityStore

logger = logging.getLogger(__name__)

SnapshotListener = Callable[[ViewSnapshot], None]


class ListView:
    """Paginated id list for one ListViewDefinition."""

    def __init__(self, definition: ListViewDefinition):
        self.definition = definition
        self.key = definition.key
        self.pages: List[List[str]] = []
        self.has_more = False
        self.loaded = False
        self.stale = False
        self.stale_since: Optional[datetime] = None
        self.revision = 0

    def __contains__(self, entity_id: str) -> bool:
        return any(entity_id in page for page in self.pages)

    def __len__(self) -> int:
        return sum(len(page) for page in self.pages)

    def ids(self) -> List[str]:
        return [entity_id for page in self.pages for entity_id in page]

    def index_of(self, entity_id: str) -> Optional[int]:
        offset = 0
        for page in self.pages:
            if entity_id in page:
                return offset + page.index(entity_id)
            offset += len(page)
        return None

    def remove(self, entity_id: str) -> bool:
        found = False
        for page in self.pages:
            while entity_id in page:
                page.remove(entity_id)
                found = True
        return found

    def insert_at(self, index: int, entity_id: str) -> None:
        """Insert at a flat index across pages; past the end appends to the last page."""
        if not self.pages:
            self.pages.append([])
        offset = 0
        for page in self.pages:
            if index <= offset + len(page):
                page.insert(max(0, index - offset), entity_id)
                return
            offset += len(page)
        self.pages[-1].append(entity_id)

    def append_page(self, ids: List[str]) -> List[str]:
        fresh = []
        for entity_id in ids:
            if entity_id not in self and entity_id not in fresh:
                fresh.append(entity_id)
        if fresh:
            self.pages.append(fresh)
        return fresh


class ScalarView:
    """Incrementally maintained count for one ScalarViewDefinition."""

    def __init__(self, definition: ScalarViewDefinition):
        self.definition = definition
        self.key = definition.key
        self.value = 0
        self.loaded = False
        self.stale = False
        self.stale_since: Optional[datetime] = None
        self.revision = 0


class ViewCapture:
    """Pre-mutation view state needed to roll one mutation back."""

    def __init__(self, refs: List[EntityRef]):
        self.refs = list(refs)
        self.positions: Dict[ViewKey, Dict[str, Optional[int]]] = {}
        self.scalars_before: Dict[ViewKey, int] = {}
        self.scalar_deltas: Dict[ViewKey, int] = {}

    @property
    def view_keys(self) -> List[ViewKey]:
        return list(self.scalars_before) + list(self.positions)


class Subscription:
    """
    Handle returned by `ViewRegistry.subscribe`.

    Use as a (async) context manager, or call `close()`, to release it.
    Updates arrive through the optional listener and through `changes()`.
    """

    def __init__(
        self,
        registry: "ViewRegistry",
        key: ViewKey,
        listener: Optional[SnapshotListener] = None,
    ):
        self.key = key
        self.initial = registry.snapshot(key)
        self._registry = registry
        self._listener = listener
        self._queue: Optional[asyncio.Queue] = None
        self.closed = False

    @property
    def current(self) -> ViewSnapshot:
        return self._registry.snapshot(self.key)

    def deliver(self, snapshot: ViewSnapshot) -> None:
        if self.closed:
            return
        if self._listener is not None:
            try:
                self._listener(snapshot)
            except Exception:
                logger.exception("View listener for %s failed", self.key)
        if self._queue is not None:
            self._queue.put_nowait(snapshot)

    async def changes(self) -> AsyncIterator[ViewSnapshot]:
        """Async stream of snapshots, ending when the subscription closes."""
        if self._queue is None:
            self._queue = asyncio.Queue()
        while not self.closed:
            snapshot = await self._queue.get()
            if snapshot is None:
                break
            yield snapshot

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._registry._unsubscribe(self)
        if self._queue is not None:
            self._queue.put_nowait(None)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, *exc) -> None:
        self.close()


class ViewRegistry:
    """Registry of list, scalar and detail views kept in step with the store."""

    def __init__(self, store: EntityStore):
        self._store = store
        self._lists: Dict[ViewKey, ListView] = {}
        self._scalars: Dict[ViewKey, ScalarView] = {}
        self._subscriptions: Dict[ViewKey, List[Subscription]] = {}
        self._batch_depth = 0
        self._dirty: Dict[ViewKey, None] = {}
        self._store_handle = store.listen(self._on_store_change)

    def close(self) -> None:
        self._store_handle.close()

    # --- Registration ---

    def register(self, definition: ViewDefinition) -> ViewKey:
        """Ensure a view exists for a definition and return its key."""
        if isinstance(definition, ListViewDefinition):
            return self.ensure_list(definition).key
        return self.ensure_scalar(definition).key

    def ensure_list(self, definition: ListViewDefinition) -> ListView:
        key = definition.key
        view = self._lists.get(key)
        if view is None:
            view = ListView(definition)
            seeded = self._sorted(definition, self._store.scan(definition.entity_kind, definition.predicate))
            if seeded:
                view.pages = [[e.id for e in seeded]]
            self._set_stale(view)
            self._lists[key] = view
        return view

    def ensure_scalar(self, definition: ScalarViewDefinition) -> ScalarView:
        key = definition.key
        view = self._scalars.get(key)
        if view is None:
            view = ScalarView(definition)
            view.value = len(self._store.scan(definition.entity_kind, definition.predicate))
            self._set_stale(view)
            self._scalars[key] = view
        return view

    def get_list(self, key: ViewKey) -> Optional[ListView]:
        return self._lists.get(key)

    def get_scalar(self, key: ViewKey) -> Optional[ScalarView]:
        return self._scalars.get(key)

    def get_view(self, key: ViewKey) -> Optional[Union[ListView, ScalarView]]:
        # ListView defines __len__: an empty one is falsy.
        view = self._lists.get(key)
        if view is None:
            view = self._scalars.get(key)
        return view

    def list_views(self) -> List[ListView]:
        return list(self._lists.values())

    def scalar_views(self) -> List[ScalarView]:
        return list(self._scalars.values())

    def definition(self, key: ViewKey) -> Optional[ViewDefinition]:
        view = self.get_view(key)
        return view.definition if view is not None else None

    # --- Subscriptions ---

    def subscribe(
        self, key: ViewKey, listener: Optional[SnapshotListener] = None
    ) -> Subscription:
        """Current snapshot plus ongoing updates for a registered view."""
        if key.shape != ViewShape.DETAIL and key not in self._lists and key not in self._scalars:
            raise KeyError(f"Unknown view: {key}")
        subscription = Subscription(self, key, listener)
        self._subscriptions.setdefault(key, []).append(subscription)
        return subscription

    def _unsubscribe(self, subscription: Subscription) -> None:
        subs = self._subscriptions.get(subscription.key, [])
        if subscription in subs:
            subs.remove(subscription)
        if not subs:
            self._subscriptions.pop(subscription.key, None)

    def subscribed_keys(self) -> List[ViewKey]:
        return list(self._subscriptions)

    def interesting_refs(self) -> List[EntityRef]:
        """Ids shown by subscribed list views, in display order, deduplicated."""
        seen: Set[EntityRef] = set()
        refs = []
        for key in self._subscriptions:
            view = self._lists.get(key)
            if view is None:
                continue
            for entity_id in view.ids():
                ref = EntityRef(kind=view.definition.entity_kind, id=entity_id)
                if ref not in seen:
                    seen.add(ref)
                    refs.append(ref)
        return refs

    # --- Snapshots ---

    def snapshot(self, key: ViewKey) -> ViewSnapshot:
        if key.shape == ViewShape.DETAIL:
            entity = self._store.snapshot(key.entity_ref())
            return ViewSnapshot(
                key=key,
                entity=entity,
                stale=entity.stale if entity is not None else False,
                loaded=entity is not None,
            )
        view = self._lists.get(key)
        if view is not None:
            return ViewSnapshot(
                key=key,
                pages=[list(page) for page in view.pages],
                has_more=view.has_more,
                stale=view.stale,
                stale_since=view.stale_since,
                loaded=view.loaded,
                revision=view.revision,
            )
        scalar = self._scalars.get(key)
        if scalar is None:
            raise KeyError(f"Unknown view: {key}")
        return ViewSnapshot(
            key=key,
            value=scalar.value,
            stale=scalar.stale,
            stale_since=scalar.stale_since,
            loaded=scalar.loaded,
            revision=scalar.revision,
        )

    # --- Batching ---

    @contextmanager
    def batch(self) -> Iterator[None]:
        """Group updates; subscribers are notified once, when the outermost batch ends."""
        self._batch_depth += 1
        try:
            yield
        finally:
            self._batch_depth -= 1
            if self._batch_depth == 0:
                self._flush()

    def _touch(self, key: ViewKey) -> None:
        view = self.get_view(key)
        if view is not None:
            view.revision += 1
        self._dirty[key] = None
        if self._batch_depth == 0:
            self._flush()

    def _flush(self) -> None:
        while self._dirty:
            keys = list(self._dirty)
            self._dirty.clear()
            for key in keys:
                subs = self._subscriptions.get(key)
                if not subs:
                    continue
                snapshot = self.snapshot(key)
                for subscription in list(subs):
                    subscription.deliver(snapshot)

    # --- Structural operations ---

    def apply_structural(self, key: ViewKey, op: StructuralOp) -> None:
        """Apply one structural operation to a list view. Idempotent on duplicate ids."""
        view = self._lists.get(key)
        if view is None:
            raise KeyError(f"Unknown list view: {key}")

        if isinstance(op, InsertAtHead):
            if op.entity_id in view:
                if not op.promote or view.index_of(op.entity_id) == 0:
                    return
                view.remove(op.entity_id)
            view.insert_at(0, op.entity_id)
        elif isinstance(op, RemoveAll):
            if not view.remove(op.entity_id):
                return
        elif isinstance(op, AppendPage):
            if not view.append_page(op.ids):
                return
        elif isinstance(op, MarkStale):
            if view.stale:
                return
            self._set_stale(view)
        else:
            raise TypeError(f"Unsupported structural operation: {op!r}")
        self._touch(key)

    def load_page(
        self,
        definition: ListViewDefinition,
        page_index: int,
        ids: List[str],
        has_more: bool,
    ) -> ListView:
        """
        Install one authoritative page. Page 0 resets the view and clears
        staleness. Ids whose local entity no longer matches are dropped so a
        pending optimistic change is not undone by a slower read.
        """
        view = self.ensure_list(definition)
        kept: List[str] = []
        for entity_id in ids:
            if entity_id in kept:
                continue
            entity = self._store.get(EntityRef(kind=definition.entity_kind, id=entity_id))
            if entity is not None and not definition.predicate.matches(entity):
                continue
            kept.append(entity_id)

        if page_index == 0:
            view.pages = [kept]
            view.stale = False
            view.stale_since = None
        else:
            for entity_id in kept:
                view.remove(entity_id)
            while len(view.pages) < page_index:
                view.pages.append([])
            if page_index < len(view.pages):
                view.pages[page_index] = kept
            else:
                view.pages.append(kept)
        view.has_more = has_more
        view.loaded = True
        self._touch(view.key)
        return view

    def set_scalar(self, key: ViewKey, value: int) -> None:
        scalar = self._scalars.get(key)
        if scalar is None:
            raise KeyError(f"Unknown scalar view: {key}")
        scalar.value = value
        scalar.loaded = True
        scalar.stale = False
        scalar.stale_since = None
        self._touch(key)

    def recompute_scalars(self) -> None:
        """
        Recompute every scalar view from a full store scan. Staleness is left
        as is: the store may hold only part of what the authority counts.
        """
        with self.batch():
            for scalar in self._scalars.values():
                definition = scalar.definition
                value = len(self._store.scan(definition.entity_kind, definition.predicate))
                if value == scalar.value:
                    continue
                logger.info("Scalar %s drifted: %d -> %d", scalar.key, scalar.value, value)
                scalar.value = value
                self._touch(scalar.key)

    def replace_id(self, kind: str, old_id: str, new_id: str) -> None:
        """Swap a temporary id for the authoritative one, keeping its position."""
        with self.batch():
            for view in self._lists.values():
                if view.definition.entity_kind != kind or old_id not in view:
                    continue
                index = view.index_of(old_id)
                view.remove(old_id)
                if new_id not in view:
                    view.insert_at(index, new_id)
                self._touch(view.key)

    def mark_stale(self, keys: List[ViewKey]) -> None:
        with self.batch():
            for key in keys:
                view = self.get_view(key)
                if view is not None and not view.stale:
                    self._set_stale(view)
                    self._touch(key)

    def mark_all_stale(self) -> None:
        self.mark_stale(list(self._lists) + list(self._scalars))

    def overdue(self, max_staleness_seconds: float, now: Optional[datetime] = None) -> List[ViewKey]:
        """Subscribed views that have been stale for longer than the bound."""
        now = now or utcnow()
        keys = []
        for key in self._subscriptions:
            view = self.get_view(key)
            if view is None or not view.stale or view.stale_since is None:
                continue
            if (now - view.stale_since).total_seconds() >= max_staleness_seconds:
                keys.append(key)
        return keys

    # --- Optimistic capture / revert ---

    def capture(self, refs: List[EntityRef]) -> ViewCapture:
        """Record the position of each target id and every scalar value of the affected kinds."""
        capture = ViewCapture(refs)
        kinds = {ref.kind for ref in refs}
        for view in self._lists.values():
            kind = view.definition.entity_kind
            if kind not in kinds:
                continue
            capture.positions[view.key] = {
                ref.id: view.index_of(ref.id) for ref in refs if ref.kind == kind
            }
        for scalar in self._scalars.values():
            if scalar.definition.entity_kind in kinds:
                capture.scalars_before[scalar.key] = scalar.value
        return capture

    def record_applied(self, capture: ViewCapture) -> None:
        """Record how much each scalar moved since `capture`."""
        for key, before in capture.scalars_before.items():
            scalar = self._scalars.get(key)
            if scalar is not None:
                capture.scalar_deltas[key] = scalar.value - before

    def revert(self, capture: ViewCapture) -> None:
        """
        Undo what one mutation did to views: scalars first, then list
        positions, so no observer sees a count disagreeing with its list.
        """
        with self.batch():
            for key, delta in capture.scalar_deltas.items():
                scalar = self._scalars.get(key)
                if scalar is None or delta == 0:
                    continue
                scalar.value -= delta
                self._touch(key)

            for key, positions in capture.positions.items():
                view = self._lists.get(key)
                if view is None:
                    continue
                changed = False
                for entity_id in positions:
                    changed = view.remove(entity_id) or changed
                restore = sorted(
                    (index, entity_id)
                    for entity_id, index in positions.items()
                    if index is not None
                )
                for index, entity_id in restore:
                    view.insert_at(index, entity_id)
                    changed = True
                if changed:
                    self._touch(key)

    # --- Store change handling ---

    def _on_store_change(self, change: StoreChange) -> None:
        with self.batch():
            detail_key = ViewKey.detail(change.ref)
            if detail_key in self._subscriptions:
                self._touch(detail_key)
            if change.origin == ChangeOrigin.ROLLBACK:
                return
            for view in list(self._lists.values()):
                if view.definition.entity_kind == change.ref.kind:
                    self._apply_to_list(view, change)
            for scalar in list(self._scalars.values()):
                if scalar.definition.entity_kind == change.ref.kind:
                    self._apply_to_scalar(scalar, change)

    def _apply_to_list(self, view: ListView, change: StoreChange) -> None:
        entity_id = change.ref.id
        definition = view.definition
        present = entity_id in view
        matches = definition.predicate.matches(change.after)

        if not matches:
            if present:
                self.apply_structural(view.key, RemoveAll(entity_id=entity_id))
            return

        if not present:
            if change.created:
                self.apply_structural(view.key, InsertAtHead(entity_id=entity_id))
            elif change.origin in DELTA_ORIGINS:
                # Entered the filter without a position; next fresh read refetches.
                self.apply_structural(view.key, MarkStale())
            return

        if change.created:
            self.apply_structural(view.key, InsertAtHead(entity_id=entity_id, promote=True))
        elif self._sort_value(definition, change.before) != self._sort_value(definition, change.after):
            self._reposition(view, entity_id)

    def _apply_to_scalar(self, scalar: ScalarView, change: StoreChange) -> None:
        predicate = scalar.definition.predicate
        if change.before is None and not change.created:
            # Previous classification unknown; the entity may already be counted.
            if predicate.matches(change.after) and not scalar.stale:
                self._set_stale(scalar)
                self._touch(scalar.key)
            return
        delta = int(predicate.matches(change.after)) - int(predicate.matches(change.before))
        if delta == 0:
            return
        scalar.value = max(0, scalar.value + delta)
        self._touch(scalar.key)

    # --- Ordering ---

    def _sort_value(self, definition: ListViewDefinition, entity: Optional[Entity]):
        if entity is None:
            return None
        return entity.get(definition.sort_field)

    def _precedes(self, definition: ListViewDefinition, a: Optional[Entity], b: Optional[Entity]) -> bool:
        """True when `a` sorts strictly before `b`. Missing sort values go last."""
        va = self._sort_value(definition, a)
        vb = self._sort_value(definition, b)
        if va is None:
            return False
        if vb is None:
            return True
        try:
            return va > vb if definition.descending else va < vb
        except TypeError:
            return False

    def _sorted(self, definition: ListViewDefinition, entities: List[Entity]) -> List[Entity]:
        def compare(a: Entity, b: Entity) -> int:
            if self._precedes(definition, a, b):
                return -1
            if self._precedes(definition, b, a):
                return 1
            return 0
        return sorted(entities, key=functools.cmp_to_key(compare))

    def _reposition(self, view: ListView, entity_id: str) -> None:
        """Move one id to its sorted position without re-sorting the rest."""
        definition = view.definition
        entity = self._store.get(EntityRef(kind=definition.entity_kind, id=entity_id))
        current = view.index_of(entity_id)
        view.remove(entity_id)
        ids = view.ids()
        target = len(ids)
        for index, other_id in enumerate(ids):
            other = self._store.get(EntityRef(kind=definition.entity_kind, id=other_id))
            if other is not None and self._precedes(definition, entity, other):
                target = index
                break
        view.insert_at(target, entity_id)
        if target != current:
            self._touch(view.key)

    def _set_stale(self, view) -> None:
        view.stale = True
        view.stale_since = utcnow()

"""
Push Event Reconciler — applies change notifications from other actors.

Behavioral Contract:
- Never raises. Malformed or unrecognized events are logged and dropped.
- Events whose origin mutation is pending or recently committed are echoes
  of a change already applied locally, and are discarded.
- Events touching a locally dirty entity are deferred and replayed, in
  arrival order, once the mutation holding that entity settles.
- Each event is applied as one registry batch: no observer sees a merge
  with some-but-not-all of its losers removed.
"""

import logging
from collections import OrderedDict
from typing import Callable, Dict, List

from sync_kernel.coordinator.coordinator import MutationCoordinator
from sync_kernel.handles import ListenerHandle, register
from sync_kernel.models.entity import ChangeOrigin, Entity, EntityRef
from sync_kernel.models.events import (
    PUSH_EVENT_TYPES,
    ChangeType,
    CreatedEvent,
    DeletedEvent,
    MergedEvent,
    PushEvent,
    UpdatedEvent,
)
from sync_kernel.models.mutation import Mutation
from sync_kernel.reconciler.decode import decode_event
from sync_kernel.store.entities import EntityStore
from sync_kernel.views.registry import ViewRegistry

logger = logging.getLogger(__name__)

# Derives follow-up writes from an applied event (e.g. a new comment touching its ticket).
SideEffect = Callable[[PushEvent], List[Entity]]

SEEN_EVENT_LIMIT = 1024


class ReconcilerStats:
    def __init__(self):
        self.applied = 0
        self.echoes = 0
        self.deferred = 0
        self.duplicates = 0
        self.dropped = 0

    def to_dict(self) -> dict:
        return dict(vars(self))


class PushEventReconciler:
    def __init__(
        self,
        store: EntityStore,
        registry: ViewRegistry,
        coordinator: MutationCoordinator,
        scheduler=None,
    ):
        self.store = store
        self.registry = registry
        self.coordinator = coordinator
        self.scheduler = scheduler
        self.stats = ReconcilerStats()
        self._deferred: Dict[EntityRef, List[PushEvent]] = {}
        self._seen: "OrderedDict[str, None]" = OrderedDict()
        self._side_effects: Dict[str, List[SideEffect]] = {}
        self._handlers: Dict[str, Callable[[PushEvent], bool]] = {
            ChangeType.CREATED.value: self._on_created,
            ChangeType.UPDATED.value: self._on_updated,
            ChangeType.DELETED.value: self._on_deleted,
            ChangeType.MERGED.value: self._on_merged,
        }
        self._settle_handle = coordinator.on_settled(self._on_settled)

    def close(self) -> None:
        self._settle_handle.close()

    def add_side_effect(self, entity_kind: str, effect: SideEffect) -> ListenerHandle:
        """Run `effect` after every applied event for `entity_kind`."""
        return register(self._side_effects.setdefault(entity_kind, []), effect)

    def deferred_count(self) -> int:
        return sum(len(events) for events in self._deferred.values())

    # --- Entry points ---

    def on_raw(self, name: str, payload: dict) -> bool:
        """Decode and apply a named push-channel message."""
        try:
            event = decode_event(name, payload)
        except Exception as e:
            self.stats.dropped += 1
            logger.warning("Dropped push event '%s': %s", name, e)
            return False
        return self.on_event(event)

    def on_event(self, event: PushEvent) -> bool:
        """Apply one push event. Returns True when it changed local state."""
        try:
            return self._handle(event)
        except Exception:
            self.stats.dropped += 1
            logger.exception("Dropped push event %r", event)
            return False

    def _handle(self, event: PushEvent) -> bool:
        if not isinstance(event, PUSH_EVENT_TYPES):
            raise TypeError(f"Not a push event: {type(event).__name__}")

        if self.coordinator.is_own_echo(event.origin_mutation_id):
            self.stats.echoes += 1
            logger.debug("Suppressed echo of %s for %s", event.origin_mutation_id, event.ref)
            return False

        if event.event_id in self._seen:
            self.stats.duplicates += 1
            return False

        dirty = [ref for ref in event.refs() if self.coordinator.is_dirty(ref)]
        if dirty:
            self._deferred.setdefault(dirty[0], []).append(event)
            self.stats.deferred += 1
            logger.debug("Deferred %s event for dirty %s", event.change_type, dirty[0])
            return False

        self._remember(event.event_id)
        with self.registry.batch():
            changed = self._handlers[event.change_type](event)
            if changed:
                self._run_side_effects(event)
        if changed:
            self.stats.applied += 1
        return changed

    def _on_settled(self, mutation: Mutation, refs: List[EntityRef]) -> None:
        events: List[PushEvent] = []
        for ref in refs:
            events.extend(self._deferred.pop(ref, []))
        if not events:
            return
        logger.debug("Replaying %d deferred event(s) after %s", len(events), mutation)
        for event in sorted(events, key=lambda e: e.received_at):
            self.on_event(event)

    # --- Per change type ---

    def _on_created(self, event: CreatedEvent) -> bool:
        return self.store.put(event.to_entity(), ChangeOrigin.REMOTE, created=True)

    def _on_updated(self, event: UpdatedEvent) -> bool:
        if not self.store.put(event.to_entity(), ChangeOrigin.REMOTE):
            logger.debug("Ignored stale update v%s for %s", event.version, event.ref)
            return False
        if event.invalidate_detail:
            self._invalidate(event.ref)
        return True

    def _on_deleted(self, event: DeletedEvent) -> bool:
        if self.scheduler is not None:
            self.scheduler.cancel(event.ref)
        return self.store.remove(event.ref, ChangeOrigin.REMOTE) is not None

    def _on_merged(self, event: MergedEvent) -> bool:
        for loser in event.refs()[1:]:
            self.store.remove(loser, ChangeOrigin.REMOTE)
            if self.scheduler is not None:
                self.scheduler.cancel(loser)
        self.store.put(event.to_entity(), ChangeOrigin.REMOTE)
        self._invalidate(event.ref)
        return True

    def _invalidate(self, ref: EntityRef) -> None:
        self.store.invalidate(ref)
        if self.scheduler is not None:
            self.scheduler.invalidate(ref)

    def _run_side_effects(self, event: PushEvent) -> None:
        for effect in list(self._side_effects.get(event.entity_kind, [])):
            for entity in effect(event):
                # Side effects only touch entities already held, never create them.
                if entity.ref not in self.store or self.coordinator.is_dirty(entity.ref):
                    continue
                self.store.put(entity, ChangeOrigin.REMOTE)

    def _remember(self, event_id: str) -> None:
        self._seen[event_id] = None
        while len(self._seen) > SEEN_EVENT_LIMIT:
            self._seen.popitem(last=False)

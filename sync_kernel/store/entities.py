"""
Entity Store — the single source of truth for entity-by-id snapshots.

Written by: Mutation Coordinator, Push Reconciler, Prefetch completion
Read by: View Registry, consumers

Behavioral Contract:
- At most one in-memory representation per (kind, id). Writes update that
  object in place; views only ever hold ids.
- `put` merges per field, last writer wins. When both sides carry a
  version, a lower incoming version is rejected.
- Every accepted write emits exactly one StoreChange, synchronously.
- Absence is a valid result, never an error. No network access.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterator, List, Optional

from sync_kernel.handles import ListenerHandle, register
from sync_kernel.models.entity import ChangeOrigin, Entity, EntityRef, StoreChange, utcnow
from sync_kernel.models.view import Predicate

logger = logging.getLogger(__name__)

StoreListener = Callable[[StoreChange], None]


class EntityStore:
    """In-memory entity store keyed by EntityRef."""

    def __init__(self):
        self._entities: Dict[EntityRef, Entity] = {}
        self._listeners: List[StoreListener] = []

    def __len__(self) -> int:
        return len(self._entities)

    def __contains__(self, ref: EntityRef) -> bool:
        return ref in self._entities

    def __iter__(self) -> Iterator[Entity]:
        return iter(list(self._entities.values()))

    def listen(self, listener: StoreListener) -> ListenerHandle:
        """Register for change notifications. Close the handle to stop."""
        return register(self._listeners, listener)

    def get(self, ref: EntityRef) -> Optional[Entity]:
        """Get an entity by reference, or None when absent."""
        return self._entities.get(ref)

    def snapshot(self, ref: EntityRef) -> Optional[Entity]:
        """Detached deep copy of an entity, or None."""
        entity = self._entities.get(ref)
        return entity.model_copy(deep=True) if entity is not None else None

    def put(
        self,
        entity: Entity,
        origin: ChangeOrigin = ChangeOrigin.REMOTE,
        created: bool = False,
        replace: bool = False,
    ) -> bool:
        """
        Merge an entity into the store.

        `replace` swaps the whole property set instead of merging per field
        (used for optimistic apply, where the patch may drop fields).
        Returns False when the write was rejected as older than what is held.
        """
        ref = entity.ref
        current = self._entities.get(ref)

        if current is not None and self._is_older(entity, current):
            logger.debug(
                "Rejected %s v%s: store holds v%s", ref, entity.version, current.version
            )
            return False

        if current is None:
            before = None
            stored = entity.model_copy(deep=True)
            self._entities[ref] = stored
        else:
            before = current.model_copy(deep=True)
            stored = current
            if replace:
                stored.properties = dict(entity.properties)
            else:
                stored.properties.update(entity.properties)
            if entity.version is not None:
                stored.version = entity.version

        if origin == ChangeOrigin.FETCH:
            stored.fetched_at = entity.fetched_at or utcnow()
            stored.stale = False

        self._emit(StoreChange(ref, before, stored, origin, created=created))
        return True

    def remove(
        self, ref: EntityRef, origin: ChangeOrigin = ChangeOrigin.REMOTE
    ) -> Optional[Entity]:
        """Remove an entity. Returns its last known state, or None if absent."""
        removed = self._entities.pop(ref, None)
        if removed is None:
            return None
        self._emit(StoreChange(ref, removed, None, origin))
        return removed

    def restore(self, ref: EntityRef, snapshot: Optional[Entity]) -> None:
        """
        Put back a pre-mutation snapshot exactly, bypassing version checks.
        Emitted with the ROLLBACK origin; views are restored by the caller.
        """
        current = self._entities.get(ref)
        if snapshot is None:
            if current is not None:
                del self._entities[ref]
                self._emit(StoreChange(ref, current, None, ChangeOrigin.ROLLBACK))
            return

        before = current.model_copy(deep=True) if current is not None else None
        if current is None:
            current = snapshot.model_copy(deep=True)
            self._entities[ref] = current
        else:
            current.properties = dict(snapshot.properties)
            current.version = snapshot.version
            current.fetched_at = snapshot.fetched_at
            current.stale = snapshot.stale
        self._emit(StoreChange(ref, before, current, ChangeOrigin.ROLLBACK))

    def rekey(self, old: EntityRef, new: EntityRef) -> Optional[Entity]:
        """Move an entity held under a temporary id to its authoritative id."""
        entity = self._entities.pop(old, None)
        if entity is None:
            return None
        entity.id = new.id
        self._entities[new] = entity
        return entity

    def invalidate(self, ref: EntityRef) -> bool:
        """Mark an entity's detail as stale without dropping it."""
        entity = self._entities.get(ref)
        if entity is None:
            return False
        entity.stale = True
        return True

    def is_fresh(
        self, ref: EntityRef, ttl_seconds: float, now: Optional[datetime] = None
    ) -> bool:
        """True when the entity's detail was fetched within the TTL and not invalidated."""
        entity = self._entities.get(ref)
        if entity is None or entity.stale or entity.fetched_at is None:
            return False
        now = now or utcnow()
        return now - entity.fetched_at < timedelta(seconds=ttl_seconds)

    def scan(self, kind: str, predicate: Optional[Predicate] = None) -> List[Entity]:
        """All entities of a kind matching a predicate."""
        return [
            e for e in self._entities.values()
            if e.kind == kind and (predicate is None or predicate.matches(e))
        ]

    def _is_older(self, incoming: Entity, current: Entity) -> bool:
        if incoming.version is None or current.version is None:
            return False
        return incoming.version < current.version

    def _emit(self, change: StoreChange) -> None:
        for listener in list(self._listeners):
            listener(change)

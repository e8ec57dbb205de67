"""
In-memory remote authority.

Implements both ports in-process: `RemoteAuthority` (submit, fetch) and
`PushTransport` (subscribe). Every committed mutation is broadcast to
subscribers as a push event carrying its `origin_mutation_id`, the way a
real backend echoes changes to every connected client. Used for local
runs of the API and as the backend in tests.
"""

import asyncio
import logging
from typing import AsyncIterator, Callable, Dict, List, Optional

from sync_kernel.domain.tickets import TICKET, conversation
from sync_kernel.models.entity import Entity, EntityRef, utcnow
from sync_kernel.models.events import (
    CreatedEvent,
    DeletedEvent,
    PushEvent,
    UpdatedEvent,
)
from sync_kernel.models.mutation import ErrorKind, MutationDescriptor, MutationResult
from sync_kernel.models.query import (
    CountQuery,
    EntityQuery,
    ListPage,
    ListQuery,
    Query,
    Snapshot,
)
from sync_kernel.models.view import ListViewDefinition

logger = logging.getLogger(__name__)

OperationHandler = Callable[[MutationDescriptor], MutationResult]


class NotFound(KeyError):
    pass


class InMemoryAuthority:
    """
    Authoritative entity state held in a dict. Versions increase by one
    per accepted write. Failures can be injected per target entity id.
    """

    def __init__(self, entities: Optional[List[Entity]] = None, latency_seconds: float = 0.0):
        self._entities: Dict[EntityRef, Entity] = {}
        self._operations: Dict[str, OperationHandler] = {}
        self._failures: Dict[str, MutationResult] = {}
        self._unreachable = False
        self._subscribers: List[asyncio.Queue] = []
        self._next_id = 1000
        self.latency_seconds = latency_seconds
        self.submitted: List[MutationDescriptor] = []
        self.queries: List[Query] = []
        self._register_default_operations()
        self.seed(entities or [])

    def _register_default_operations(self) -> None:
        self._operations["update"] = self._patch
        self._operations["close_ticket"] = self._patch
        self._operations["assign_ticket"] = self._patch
        self._operations["update_ticket"] = self._patch
        self._operations["create"] = self._create
        self._operations["add_comment"] = self._create
        self._operations["delete"] = self._delete

    def register_operation(self, operation: str, handler: OperationHandler) -> None:
        self._operations[operation] = handler

    # --- State ---

    def seed(self, entities: List[Entity]) -> None:
        for entity in entities:
            stored = entity.model_copy(deep=True)
            stored.version = stored.version or 1
            self._entities[stored.ref] = stored

    def get(self, ref: EntityRef) -> Optional[Entity]:
        entity = self._entities.get(ref)
        return entity.model_copy(deep=True) if entity is not None else None

    def write(self, entity: Entity, origin_mutation_id: Optional[str] = None) -> Entity:
        """Change state as another actor would, and broadcast it."""
        current = self._entities.get(entity.ref)
        if current is None:
            stored = entity.model_copy(deep=True)
            stored.version = 1
            self._entities[stored.ref] = stored
            self.publish(self._event(CreatedEvent, stored, origin_mutation_id))
        else:
            current.properties.update(entity.properties)
            current.version = (current.version or 0) + 1
            stored = current
            self.publish(self._event(UpdatedEvent, stored, origin_mutation_id))
        return stored.model_copy(deep=True)

    def delete(self, ref: EntityRef, origin_mutation_id: Optional[str] = None) -> None:
        removed = self._entities.pop(ref, None)
        if removed is not None:
            self.publish(DeletedEvent(
                entity_kind=ref.kind,
                entity_id=ref.id,
                origin_mutation_id=origin_mutation_id,
            ))

    # --- Failure injection ---

    def fail(self, entity_id: str, kind: ErrorKind, message: str = "") -> None:
        """Make every mutation targeting `entity_id` fail with `kind`."""
        self._failures[str(entity_id)] = MutationResult.failure(kind, message)

    def clear_failures(self) -> None:
        self._failures.clear()

    def set_unreachable(self, unreachable: bool = True) -> None:
        """Raise ConnectionError from every call, as a dropped network would."""
        self._unreachable = unreachable

    def _check_reachable(self) -> None:
        if self._unreachable:
            raise ConnectionError("Authority unreachable")

    # --- RemoteAuthority ---

    async def submit(self, descriptor: MutationDescriptor) -> MutationResult:
        await self._delay()
        self._check_reachable()
        self.submitted.append(descriptor)
        return self._settle(descriptor)

    async def submit_bulk(self, descriptors: List[MutationDescriptor]) -> List[MutationResult]:
        await self._delay()
        self._check_reachable()
        self.submitted.extend(descriptors)
        return [self._settle(d) for d in descriptors]

    async def fetch(self, query: Query) -> Snapshot:
        await self._delay()
        self._check_reachable()
        self.queries.append(query)
        if isinstance(query, EntityQuery):
            return self._fetch_entity(query.ref)
        if isinstance(query, ListQuery):
            return self._fetch_list(query)
        if isinstance(query, CountQuery):
            definition = query.definition
            return Snapshot(count=len(self._matching(definition.entity_kind, definition.predicate)))
        raise TypeError(f"Unsupported query: {type(query).__name__}")

    def _settle(self, descriptor: MutationDescriptor) -> MutationResult:
        failure = self._failures.get(descriptor.target.id)
        if failure is not None:
            logger.debug("Injected %s for %s", failure.error_kind, descriptor.target)
            return failure
        handler = self._operations.get(descriptor.operation)
        if handler is None:
            return MutationResult.failure(
                ErrorKind.VALIDATION, f"Unknown operation '{descriptor.operation}'"
            )
        try:
            return handler(descriptor)
        except NotFound as e:
            return MutationResult.failure(ErrorKind.VALIDATION, str(e))

    # --- Default operations ---

    def _require(self, ref: EntityRef) -> Entity:
        entity = self._entities.get(ref)
        if entity is None:
            raise NotFound(f"{ref} not found")
        return entity

    def _patch(self, descriptor: MutationDescriptor) -> MutationResult:
        self._require(descriptor.target)
        patch = Entity(kind=descriptor.target.kind, id=descriptor.target.id, properties=descriptor.payload)
        return MutationResult.success(self.write(patch, descriptor.mutation_id))

    def _create(self, descriptor: MutationDescriptor) -> MutationResult:
        self._next_id += 1
        entity = Entity(
            kind=descriptor.target.kind,
            id=str(self._next_id),
            properties=dict(descriptor.payload),
        )
        return MutationResult.success(self.write(entity, descriptor.mutation_id))

    def _delete(self, descriptor: MutationDescriptor) -> MutationResult:
        self._require(descriptor.target)
        self.delete(descriptor.target, descriptor.mutation_id)
        return MutationResult.success()

    # --- Queries ---

    def _matching(self, kind: str, predicate) -> List[Entity]:
        return [
            e for e in self._entities.values()
            if e.kind == kind and predicate.matches(e)
        ]

    def _ordered(self, definition: ListViewDefinition) -> List[Entity]:
        matching = self._matching(definition.entity_kind, definition.predicate)
        keyed = [e for e in matching if e.get(definition.sort_field) is not None]
        unkeyed = [e for e in matching if e.get(definition.sort_field) is None]
        keyed.sort(key=lambda e: e.get(definition.sort_field), reverse=definition.descending)
        return keyed + unkeyed

    def _fetch_list(self, query: ListQuery) -> Snapshot:
        ordered = self._ordered(query.definition)
        window = ordered[query.skip:query.skip + query.limit]
        fetched_at = utcnow()
        entities = []
        for entity in window:
            copy = entity.model_copy(deep=True)
            copy.fetched_at = fetched_at
            entities.append(copy)
        page = ListPage(
            definition=query.definition,
            page_index=query.skip // query.limit if query.limit else 0,
            ids=[e.id for e in window],
            has_more=query.skip + query.limit < len(ordered),
        )
        return Snapshot(entities=entities, lists=[page])

    def _fetch_entity(self, ref: EntityRef) -> Snapshot:
        entity = self.get(ref)
        if entity is None:
            return Snapshot()
        entity.fetched_at = utcnow()
        snapshot = Snapshot(entities=[entity])
        if ref.kind == TICKET:
            # Ticket detail bundles its conversation thread.
            thread = conversation(ref.id)
            comments = self._ordered(thread)
            snapshot.entities.extend(c.model_copy(deep=True) for c in comments)
            snapshot.lists.append(ListPage(definition=thread, ids=[c.id for c in comments]))
        return snapshot

    # --- PushTransport ---

    async def subscribe(self, scope: str) -> AsyncIterator[PushEvent]:
        self._check_reachable()
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.append(queue)
        return self._stream(queue)

    async def _stream(self, queue: asyncio.Queue) -> AsyncIterator[PushEvent]:
        try:
            while True:
                event = await queue.get()
                if event is None:
                    return
                yield event
        finally:
            if queue in self._subscribers:
                self._subscribers.remove(queue)

    def publish(self, event: PushEvent) -> None:
        for queue in list(self._subscribers):
            queue.put_nowait(event)

    def disconnect_all(self) -> None:
        """End every open push stream."""
        for queue in list(self._subscribers):
            queue.put_nowait(None)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    # --- Helpers ---

    def _event(self, event_cls, entity: Entity, origin_mutation_id: Optional[str]) -> PushEvent:
        return event_cls(
            entity_kind=entity.kind,
            entity_id=entity.id,
            payload=dict(entity.properties),
            version=entity.version,
            origin_mutation_id=origin_mutation_id,
        )

    async def _delay(self) -> None:
        if self.latency_seconds:
            await asyncio.sleep(self.latency_seconds)
        else:
            await asyncio.sleep(0)

"""Shared builders and fakes for the test suites."""

import asyncio
import time
from typing import Dict, List, Optional

from sync_kernel.authority.memory import InMemoryAuthority
from sync_kernel.domain.tickets import COMMENT, TICKET
from sync_kernel.models.entity import Entity
from sync_kernel.models.mutation import MutationDescriptor, MutationResult
from sync_kernel.models.query import EntityQuery, Query, Snapshot


def make_ticket(
    ticket_id,
    status: str = "Open",
    assignee_id: Optional[int] = None,
    created_at: Optional[str] = None,
    version: Optional[int] = 1,
    **properties,
) -> Entity:
    """Tickets with higher ids are newer unless `created_at` says otherwise."""
    props = {
        "title": f"Ticket {ticket_id}",
        "status": status,
        "assignee_id": assignee_id,
        "created_at": created_at or f"2026-01-01T00:00:00.{int(ticket_id):06d}",
    }
    props.update(properties)
    return Entity(kind=TICKET, id=str(ticket_id), properties=props, version=version)


def make_comment(comment_id, ticket_id, created_at: Optional[str] = None, **properties) -> Entity:
    props = {
        "ticket_id": str(ticket_id),
        "content": f"Comment {comment_id}",
        "created_at": created_at or f"2026-01-02T00:00:00.{int(comment_id):06d}",
    }
    props.update(properties)
    return Entity(kind=COMMENT, id=str(comment_id), properties=props, version=1)


async def wait_until(condition, timeout: float = 2.0) -> None:
    deadline = time.monotonic() + timeout
    while not condition():
        if time.monotonic() > deadline:
            raise AssertionError("Condition not reached before timeout")
        await asyncio.sleep(0.001)


class GatedAuthority(InMemoryAuthority):
    """Holds every submit until `gate` is set."""

    def __init__(self, entities: Optional[List[Entity]] = None):
        super().__init__(entities)
        self.gate = asyncio.Event()

    async def submit(self, descriptor: MutationDescriptor) -> MutationResult:
        await self.gate.wait()
        return await super().submit(descriptor)

    async def submit_bulk(self, descriptors: List[MutationDescriptor]) -> List[MutationResult]:
        await self.gate.wait()
        return await super().submit_bulk(descriptors)


class FlakyAuthority(InMemoryAuthority):
    """Raises ConnectionError from the first `submit_failures` submits."""

    def __init__(self, entities: Optional[List[Entity]] = None, submit_failures: int = 1):
        super().__init__(entities)
        self.submit_failures = submit_failures
        self.submit_calls = 0

    async def submit(self, descriptor: MutationDescriptor) -> MutationResult:
        self.submit_calls += 1
        if self.submit_calls <= self.submit_failures:
            raise ConnectionError("connection reset")
        return await super().submit(descriptor)


class SlowFetchAuthority(InMemoryAuthority):
    """
    Fetches wait on `fetch_gate` when one is set and track how many run
    at once. `fetch_failures[id] = n` fails the first n detail fetches.
    """

    def __init__(self, entities: Optional[List[Entity]] = None):
        super().__init__(entities)
        self.fetch_gate: Optional[asyncio.Event] = None
        self.active = 0
        self.max_active = 0
        self.fetch_failures: Dict[str, int] = {}
        self.started_at: List[float] = []

    async def fetch(self, query: Query) -> Snapshot:
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        self.started_at.append(time.monotonic())
        try:
            if self.fetch_gate is not None:
                await self.fetch_gate.wait()
            if isinstance(query, EntityQuery):
                remaining = self.fetch_failures.get(query.ref.id, 0)
                if remaining:
                    self.fetch_failures[query.ref.id] = remaining - 1
                    self.queries.append(query)
                    raise ConnectionError("fetch failed")
            return await super().fetch(query)
        finally:
            self.active -= 1

    def detail_fetches(self, entity_id: str) -> int:
        return sum(
            1 for q in self.queries
            if isinstance(q, EntityQuery) and q.ref.id == entity_id
        )


class FakeTransport:
    """
    Push transport driven by the test: `push` delivers an item on the
    current stream, `drop` ends it. The first `fail_subscribes` subscribe
    calls raise ConnectionError.
    """

    def __init__(self, fail_subscribes: int = 0):
        self.fail_subscribes = fail_subscribes
        self.subscribe_calls = 0
        self.scopes: List[str] = []
        self._queue: Optional[asyncio.Queue] = None

    async def subscribe(self, scope: str):
        self.subscribe_calls += 1
        self.scopes.append(scope)
        if self.subscribe_calls <= self.fail_subscribes:
            raise ConnectionError("connect refused")
        self._queue = asyncio.Queue()
        return self._iterate(self._queue)

    async def _iterate(self, queue: asyncio.Queue):
        while True:
            item = await queue.get()
            if item is None:
                return
            if isinstance(item, Exception):
                raise item
            yield item

    @property
    def connected(self) -> bool:
        return self._queue is not None

    def push(self, item) -> None:
        self._queue.put_nowait(item)

    def drop(self, error: Optional[Exception] = None) -> None:
        queue, self._queue = self._queue, None
        queue.put_nowait(error)

"""
Ports — the narrow interfaces to collaborators outside the kernel.

The kernel never knows how bytes cross the wire. It submits mutation
descriptors, fetches snapshots and consumes a stream of push events.
"""

from typing import AsyncIterator, List, Protocol, Tuple, Union

from sync_kernel.models.events import PushEvent
from sync_kernel.models.mutation import MutationDescriptor, MutationResult
from sync_kernel.models.query import Query, Snapshot

# A transport may yield decoded events or raw `(event_name, payload)` pairs.
PushItem = Union[PushEvent, Tuple[str, dict]]


class RemoteAuthority(Protocol):
    """Protocol for the remote authority — pluggable backend."""

    async def submit(self, descriptor: MutationDescriptor) -> MutationResult: ...

    async def submit_bulk(
        self, descriptors: List[MutationDescriptor]
    ) -> List[MutationResult]: ...

    async def fetch(self, query: Query) -> Snapshot: ...


class PushTransport(Protocol):
    """Protocol for the push channel. Delivery is at-least-once-or-none, unordered."""

    async def subscribe(self, scope: str) -> AsyncIterator[PushItem]: ...

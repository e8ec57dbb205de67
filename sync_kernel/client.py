"""
SyncClient — owns and wires every sync kernel component.

One instance per workspace session. Nothing starts on construction:
`start()` launches the push session, the prefetch scheduler and the
staleness heartbeat; `stop()` tears them down.
"""

import asyncio
import logging
from typing import List, Optional, Union

from sync_kernel.coordinator.coordinator import MutationCoordinator
from sync_kernel.domain import tickets
from sync_kernel.errors import SessionOffline
from sync_kernel.models.config import SyncConfig
from sync_kernel.models.entity import EntityRef
from sync_kernel.models.mutation import Mutation
from sync_kernel.models.prefetch import PrefetchPriority
from sync_kernel.models.session import SessionState
from sync_kernel.models.view import (
    ListViewDefinition,
    ScalarViewDefinition,
    ViewKey,
    ViewShape,
    ViewSnapshot,
)
from sync_kernel.ports import PushTransport, RemoteAuthority
from sync_kernel.prefetch.scheduler import PrefetchScheduler
from sync_kernel.reconciler.reconciler import PushEventReconciler
from sync_kernel.session.controller import SessionLifecycleController
from sync_kernel.store.entities import EntityStore
from sync_kernel.views.loader import ViewLoader
from sync_kernel.views.registry import SnapshotListener, Subscription, ViewRegistry

logger = logging.getLogger(__name__)

ViewTarget = Union[ViewKey, ListViewDefinition, ScalarViewDefinition, EntityRef]


class SyncClient:
    def __init__(
        self,
        authority: RemoteAuthority,
        transport: Optional[PushTransport] = None,
        config: Optional[SyncConfig] = None,
    ):
        self.config = config or SyncConfig()
        self.authority = authority
        self.store = EntityStore()
        self.registry = ViewRegistry(self.store)
        self.coordinator = MutationCoordinator(
            self.store, self.registry, authority, self.config.coordinator
        )
        self.loader = ViewLoader(
            self.store,
            self.registry,
            authority,
            page_size=self.config.views.page_size,
            is_dirty=self.coordinator.is_dirty,
            pending_delta=self.coordinator.pending_scalar_delta,
        )
        self.scheduler = PrefetchScheduler(
            self.store,
            self.registry,
            self.loader,
            authority,
            self.config.prefetch,
            should_warm=tickets.is_worth_warming,
        )
        self.reconciler = PushEventReconciler(
            self.store, self.registry, self.coordinator, self.scheduler
        )
        self._handles = [tickets.install(self.reconciler)]

        self.session: Optional[SessionLifecycleController] = None
        if transport is not None:
            self.session = SessionLifecycleController(
                transport, self.config.session, on_resync=self.resync
            )
            self._handles.append(self.session.subscribe_events(self.reconciler.on_event))
            self._handles.append(self.session.on_state_change(self._on_session_state))

        self._stop_event: Optional[asyncio.Event] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self.running = False

    # --- Lifecycle ---

    async def start(self) -> None:
        if self.running:
            return
        self.running = True
        if self.config.prefetch.enabled:
            self.scheduler.start()
        if self.session is not None:
            self.session.start()
        if self.config.views.max_staleness_seconds is not None:
            self._stop_event = asyncio.Event()
            self._heartbeat_task = asyncio.create_task(self._heartbeat())
        logger.info("Sync client started")

    async def stop(self) -> None:
        if not self.running:
            return
        self.running = False
        if self._stop_event is not None:
            self._stop_event.set()
        if self._heartbeat_task is not None:
            await asyncio.gather(self._heartbeat_task, return_exceptions=True)
            self._heartbeat_task = None
        if self.session is not None:
            await self.session.stop()
        await self.scheduler.stop()
        logger.info("Sync client stopped")

    async def __aenter__(self) -> "SyncClient":
        await self.start()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.stop()

    def close(self) -> None:
        """Release listener registrations. The client is unusable afterwards."""
        for handle in self._handles:
            handle.close()
        self.reconciler.close()
        self.registry.close()

    # --- Reads ---

    def view_key(self, target: ViewTarget) -> ViewKey:
        if isinstance(target, ViewKey):
            return target
        if isinstance(target, EntityRef):
            return ViewKey.detail(target)
        return self.registry.register(target)

    def observe(
        self, target: ViewTarget, listener: Optional[SnapshotListener] = None
    ) -> Subscription:
        """Current snapshot plus change stream. Does not fetch; see `read`."""
        return self.registry.subscribe(self.view_key(target), listener)

    async def read(self, target: ViewTarget, fresh: bool = True) -> ViewSnapshot:
        """
        Snapshot of a view, revalidated first when stale or never loaded.

        While the session is offline a failed revalidation serves the stale
        snapshot; a view that was never loaded raises SessionOffline.
        """
        key = self.view_key(target)
        if fresh:
            try:
                await self.loader.ensure_fresh(key)
            except Exception as e:
                if not self.offline:
                    raise
                snapshot = self.registry.snapshot(key)
                if not snapshot.loaded:
                    raise SessionOffline(f"Session offline and {key} was never loaded") from e
                logger.warning("Session offline; serving stale %s: %s", key, e)
                return snapshot
            if key.shape == ViewShape.LIST and self.config.prefetch.enabled:
                self.scheduler.warm_from_views()
        return self.registry.snapshot(key)

    async def load_more(self, definition: ListViewDefinition) -> ViewSnapshot:
        await self.loader.load_next_page(definition)
        return self.registry.snapshot(definition.key)

    def preload(self, ref: EntityRef, priority: int = PrefetchPriority.HIGH) -> bool:
        """Hover/navigation warming of one entity's detail."""
        return self.scheduler.enqueue(ref, priority)

    # --- Writes ---

    async def execute(self, mutation: Mutation) -> Mutation:
        return await self.coordinator.execute(mutation)

    async def execute_bulk(self, mutations: List[Mutation]) -> List[Mutation]:
        return await self.coordinator.execute_bulk(mutations)

    # --- Consistency ---

    async def resync(self) -> None:
        await self.loader.resync()
        if self.config.prefetch.enabled:
            self.scheduler.warm_from_views()

    async def revalidate_overdue(self) -> int:
        """Refresh subscribed views stale for longer than `max_staleness_seconds`."""
        bound = self.config.views.max_staleness_seconds
        if bound is None:
            return 0
        keys = self.registry.overdue(bound)
        for key in keys:
            try:
                await self.loader.refresh(key)
            except Exception:
                logger.exception("Revalidation of %s failed", key)
        return len(keys)

    async def _heartbeat(self) -> None:
        while not self._stop_event.is_set():
            await self.revalidate_overdue()
            try:
                await asyncio.wait_for(
                    self._stop_event.wait(),
                    timeout=self.config.views.heartbeat_interval_seconds,
                )
            except asyncio.TimeoutError:
                continue

    @property
    def offline(self) -> bool:
        return self.session is not None and self.session.state == SessionState.OFFLINE

    def _on_session_state(self, old: SessionState, new: SessionState) -> None:
        if new == SessionState.OFFLINE:
            self.scheduler.suspend()
        elif new == SessionState.CONNECTED:
            self.scheduler.resume()

    def health(self) -> dict:
        return {
            "running": self.running,
            "session": self.session.state.value if self.session is not None else None,
            "entities": len(self.store),
            "views": {
                "lists": len(self.registry.list_views()),
                "scalars": len(self.registry.scalar_views()),
                "subscribed": len(self.registry.subscribed_keys()),
            },
            "mutations": {
                "pending": len(self.coordinator.pending()),
                "oldest_pending_seconds": self.coordinator.oldest_pending_age(),
                "committed": self.coordinator.committed_count,
                "rolled_back": self.coordinator.rolled_back_count,
            },
            "reconciler": {
                **self.reconciler.stats.to_dict(),
                "waiting": self.reconciler.deferred_count(),
            },
            "prefetch": self.scheduler.stats().model_dump(mode="json"),
        }

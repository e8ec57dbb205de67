"""
Speculative Prefetch Scheduler — warms entity detail ahead of need.

Behavioral Contract:
- At most `max_concurrent` fetches in flight; at least `min_spacing_seconds`
  between two fetch starts.
- Higher priority first. A newly enqueued HIGH task is spliced ahead of
  everything queued without touching what is already in flight.
- Never enqueues an entity that is fresh, in flight or queued at an equal
  or higher priority.
- A failed fetch is retried once after a delay, then parked as failed
  until the entity is invalidated. Failures are never surfaced.
- Only fills idle capacity: nothing in the foreground awaits it.
"""

import asyncio
import heapq
import logging
import time
from typing import Callable, Dict, List, Optional, Tuple

from sync_kernel.models.config import PrefetchConfig
from sync_kernel.models.entity import ChangeOrigin, Entity, EntityRef, utcnow
from sync_kernel.models.prefetch import (
    PrefetchPriority,
    PrefetchState,
    PrefetchStats,
    PrefetchTask,
)
from sync_kernel.models.query import EntityQuery
from sync_kernel.ports import RemoteAuthority
from sync_kernel.store.entities import EntityStore
from sync_kernel.views.loader import ViewLoader
from sync_kernel.views.registry import ViewRegistry

logger = logging.getLogger(__name__)


class PrefetchScheduler:
    def __init__(
        self,
        store: EntityStore,
        registry: ViewRegistry,
        loader: ViewLoader,
        authority: RemoteAuthority,
        config: Optional[PrefetchConfig] = None,
        should_warm: Optional[Callable[[Entity], bool]] = None,
    ):
        self.store = store
        self.registry = registry
        self.loader = loader
        self.authority = authority
        self.config = config or PrefetchConfig()
        self._should_warm = should_warm
        self._heap: List[Tuple[int, int, EntityRef]] = []
        self._queued: Dict[EntityRef, PrefetchTask] = {}
        self._inflight: Dict[EntityRef, PrefetchTask] = {}
        self._fetches: Dict[EntityRef, asyncio.Task] = {}
        self._failed: Dict[EntityRef, PrefetchTask] = {}
        self._retries: Dict[EntityRef, asyncio.TimerHandle] = {}
        self._tail_seq = 0
        self._head_seq = 0
        self._last_start: Optional[float] = None
        self._wakeup = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()
        self._runner: Optional[asyncio.Task] = None
        self._stopping = False
        self.suspended = False
        self._stats = PrefetchStats()

    # --- Public API ---

    def enqueue(self, ref: EntityRef, priority: int = PrefetchPriority.NORMAL) -> bool:
        """Queue a speculative fetch. Returns False when deduplicated."""
        if not self.config.enabled:
            return False
        if ref in self._inflight or ref in self._failed or ref in self._retries:
            return False
        if self.store.is_fresh(ref, self.config.fresh_ttl_seconds):
            return False

        task = self._queued.get(ref)
        if task is not None:
            if priority <= task.priority:
                return False
            task.priority = priority
        else:
            task = PrefetchTask(ref=ref, priority=priority)
            self._queued[ref] = task
        self._push(task)
        self._changed()
        return True

    def enqueue_many(self, refs: List[EntityRef], priority: int = PrefetchPriority.NORMAL) -> int:
        """Queue several refs keeping their relative order."""
        if priority >= PrefetchPriority.HIGH:
            # Each HIGH push lands at the head, so push in reverse.
            refs = list(reversed(refs))
        return sum(1 for ref in refs if self.enqueue(ref, priority))

    def cancel(self, ref: EntityRef) -> bool:
        """Drop a queued task. In-flight fetches are not cancellable."""
        handle = self._retries.pop(ref, None)
        if handle is not None:
            handle.cancel()
        task = self._queued.pop(ref, None)
        if task is None:
            self._changed()
            return handle is not None
        task.state = PrefetchState.CANCELLED
        self._stats.cancelled += 1
        logger.debug("Cancelled prefetch of %s", ref)
        self._changed()
        return True

    def invalidate(self, ref: EntityRef) -> None:
        """Detail changed server-side: re-warm at low priority."""
        self._failed.pop(ref, None)
        inflight = self._inflight.get(ref)
        if inflight is not None:
            inflight.invalidated = True
            return
        queued = self._queued.get(ref)
        if queued is not None:
            queued.priority = PrefetchPriority.LOW
            self._push(queued)
            return
        if ref in self.store:
            self.enqueue(ref, PrefetchPriority.LOW)

    def warm_from_views(self) -> int:
        """Queue ids shown by subscribed lists: the first N at high priority, the rest normal."""
        refs = []
        for ref in self.registry.interesting_refs():
            entity = self.store.get(ref)
            if self._should_warm is not None and entity is not None and not self._should_warm(entity):
                continue
            refs.append(ref)
        threshold = self.config.priority_threshold
        count = self.enqueue_many(refs[:threshold], PrefetchPriority.HIGH)
        count += self.enqueue_many(refs[threshold:], PrefetchPriority.NORMAL)
        if count:
            logger.debug("Warming %d entities from views", count)
        return count

    def status(self, ref: EntityRef) -> dict:
        return {
            "cached": self.store.is_fresh(ref, self.config.fresh_ttl_seconds),
            "preloading": ref in self._inflight,
            "queued": ref in self._queued,
        }

    def stats(self) -> PrefetchStats:
        return self._stats.model_copy(
            update={"queued": len(self._queued), "inflight": len(self._inflight)}
        )

    def queued_refs(self) -> List[EntityRef]:
        """Queued refs in the order they would start."""
        order = sorted(
            (-task.priority, task.sequence, ref) for ref, task in self._queued.items()
        )
        return [ref for _, _, ref in order]

    # --- Lifecycle ---

    def start(self) -> None:
        if self._runner is not None and not self._runner.done():
            return
        self._stopping = False
        self._runner = asyncio.create_task(self._run())

    async def stop(self) -> None:
        self._stopping = True
        for handle in self._retries.values():
            handle.cancel()
        self._retries.clear()
        pending = list(self._fetches.values())
        if self._runner is not None:
            pending.append(self._runner)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._runner = None

    def suspend(self) -> None:
        if not self.suspended:
            logger.info("Prefetch suspended")
        self.suspended = True

    def resume(self) -> None:
        if self.suspended:
            logger.info("Prefetch resumed")
        self.suspended = False
        self._changed()

    async def join(self) -> None:
        """Wait until nothing is queued, in flight or awaiting retry."""
        await self._idle.wait()

    # --- Internals ---

    def _push(self, task: PrefetchTask) -> None:
        if task.priority >= PrefetchPriority.HIGH:
            self._head_seq -= 1
            task.sequence = self._head_seq
        else:
            self._tail_seq += 1
            task.sequence = self._tail_seq
        heapq.heappush(self._heap, (-task.priority, task.sequence, task.ref))

    def _pop(self) -> Optional[PrefetchTask]:
        while self._heap:
            neg_priority, sequence, ref = heapq.heappop(self._heap)
            task = self._queued.get(ref)
            # Entries superseded by a re-push or a cancel are skipped.
            if task is None or task.sequence != sequence or task.priority != -neg_priority:
                continue
            del self._queued[ref]
            return task
        return None

    def _changed(self) -> None:
        if self._queued or self._inflight or self._retries:
            self._idle.clear()
        else:
            self._idle.set()
        self._wakeup.set()

    def _next_delay(self) -> Optional[float]:
        """0 to start now, seconds to wait for spacing, None when blocked."""
        if self.suspended or not self._queued:
            return None
        if len(self._inflight) >= self.config.max_concurrent:
            return None
        if self._last_start is None:
            return 0
        elapsed = time.monotonic() - self._last_start
        remaining = self.config.min_spacing_seconds - elapsed
        return remaining if remaining > 0 else 0

    async def _run(self) -> None:
        while not self._stopping:
            self._wakeup.clear()
            delay = self._next_delay()
            if delay == 0:
                self._start_next()
                continue
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass

    def _start_next(self) -> None:
        task = self._pop()
        if task is None:
            self._changed()
            return
        task.state = PrefetchState.INFLIGHT
        task.attempts += 1
        self._last_start = time.monotonic()
        self._inflight[task.ref] = task
        self._stats.max_inflight_observed = max(
            self._stats.max_inflight_observed, len(self._inflight)
        )
        self._fetches[task.ref] = asyncio.create_task(self._fetch(task))

    async def _fetch(self, task: PrefetchTask) -> None:
        try:
            snapshot = await self.authority.fetch(EntityQuery(ref=task.ref))
            self.loader.absorb(snapshot, ChangeOrigin.FETCH)
        except asyncio.CancelledError:
            task.state = PrefetchState.CANCELLED
            raise
        except Exception as e:
            self._on_failure(task, e)
        else:
            task.state = PrefetchState.DONE
            self._stats.preloaded += 1
            self._stats.last_preload_at = utcnow()
        finally:
            self._inflight.pop(task.ref, None)
            self._fetches.pop(task.ref, None)
            if task.invalidated and task.state == PrefetchState.DONE:
                # Fetch started before the invalidation; its result is already old.
                self.store.invalidate(task.ref)
                self.enqueue(task.ref, PrefetchPriority.LOW)
            self._changed()

    def _on_failure(self, task: PrefetchTask, error: Exception) -> None:
        task.last_error = str(error)
        if task.attempts <= self.config.max_retries and not self._stopping:
            task.state = PrefetchState.QUEUED
            self._stats.retried += 1
            logger.info("Prefetch of %s failed (%s); retrying once", task.ref, error)
            loop = asyncio.get_running_loop()
            self._retries[task.ref] = loop.call_later(
                self.config.retry_delay_seconds, self._retry, task
            )
            return
        task.state = PrefetchState.FAILED
        self._failed[task.ref] = task
        self._stats.failed += 1
        logger.warning("Prefetch of %s failed permanently: %s", task.ref, error)

    def _retry(self, task: PrefetchTask) -> None:
        self._retries.pop(task.ref, None)
        if self._stopping or task.ref in self._queued or task.ref in self._inflight:
            self._changed()
            return
        self._queued[task.ref] = task
        self._push(task)
        self._changed()

"""
Optimistic Mutation Coordinator — applies local patches before the network
round trip and reconciles them when the authority settles.

Behavioral Contract:
- `begin` applies a mutation to the store and every affected view in one
  synchronous step. Nothing awaits between snapshot and apply.
- While pending, the mutation's targets are "locally dirty". The
  reconciler defers remote events for dirty entities until settlement.
- Two pending mutations on the same entity are serialized: the second
  `begin` waits for the first to settle before capturing its snapshot.
- Commit merges authoritative fields and marks affected views stale.
- Rollback restores scalar views, then list views, then entities, inside
  one registry batch, and surfaces a typed error to the caller.
- Bulk mutations share one round trip but settle per item.
"""

import asyncio
import logging
import time
from collections import OrderedDict
from typing import Callable, Dict, List, Optional

from sync_kernel.errors import (
    MutationError,
    PartialBulkFailure,
    error_from_result,
)
from sync_kernel.handles import ListenerHandle, register
from sync_kernel.models.config import CoordinatorConfig
from sync_kernel.models.entity import ChangeOrigin, Entity, EntityRef
from sync_kernel.models.mutation import (
    ErrorKind,
    Mutation,
    MutationResult,
    MutationStatus,
)
from sync_kernel.models.query import EntityQuery
from sync_kernel.models.view import ViewKey
from sync_kernel.ports import RemoteAuthority
from sync_kernel.store.entities import EntityStore
from sync_kernel.views.registry import ViewCapture, ViewRegistry

logger = logging.getLogger(__name__)

SettleListener = Callable[[Mutation, List[EntityRef]], None]


class PendingMutation:
    """Ledger entry for one mutation between `begin` and `settle`."""

    def __init__(
        self,
        mutation: Mutation,
        snapshots: Dict[EntityRef, Optional[Entity]],
        capture: ViewCapture,
        settled: asyncio.Future,
    ):
        self.mutation = mutation
        self.snapshots = snapshots
        self.capture = capture
        self.settled = settled
        self.started_at = time.monotonic()


class MutationCoordinator:
    def __init__(
        self,
        store: EntityStore,
        registry: ViewRegistry,
        authority: RemoteAuthority,
        config: Optional[CoordinatorConfig] = None,
    ):
        self.store = store
        self.registry = registry
        self.authority = authority
        self.config = config or CoordinatorConfig()
        self._pending: "OrderedDict[str, PendingMutation]" = OrderedDict()
        self._dirty: Dict[EntityRef, str] = {}
        self._recent: "OrderedDict[str, float]" = OrderedDict()
        self._settle_listeners: List[SettleListener] = []
        self.committed_count = 0
        self.rolled_back_count = 0

    # --- Ledger queries ---

    def is_dirty(self, ref: EntityRef) -> bool:
        return ref in self._dirty

    def pending_for(self, ref: EntityRef) -> Optional[Mutation]:
        mutation_id = self._dirty.get(ref)
        if mutation_id is None:
            return None
        return self._pending[mutation_id].mutation

    def pending(self) -> List[Mutation]:
        return [p.mutation for p in self._pending.values()]

    def pending_scalar_delta(self, key: ViewKey) -> int:
        """Net move of one scalar view by mutations the authority has not settled."""
        return sum(p.capture.scalar_deltas.get(key, 0) for p in self._pending.values())

    def oldest_pending_age(self) -> Optional[float]:
        """Seconds the longest-waiting pending mutation has been unsettled."""
        if not self._pending:
            return None
        oldest = min(p.started_at for p in self._pending.values())
        return time.monotonic() - oldest

    def is_own_echo(self, origin_mutation_id: Optional[str]) -> bool:
        """True when a push event originates from a pending or recently committed mutation."""
        if not origin_mutation_id:
            return False
        if origin_mutation_id in self._pending:
            return True
        self._prune_recent()
        return origin_mutation_id in self._recent

    def on_settled(self, listener: SettleListener) -> ListenerHandle:
        """Called synchronously after a mutation settles, with the refs it released."""
        return register(self._settle_listeners, listener)

    # --- Begin / settle ---

    async def begin(self, mutation: Mutation) -> str:
        """Apply a mutation optimistically. Waits for earlier mutations on the same entities."""
        while True:
            blocking = {
                self._pending[self._dirty[ref]].settled
                for ref in mutation.entity_refs
                if ref in self._dirty
            }
            if not blocking:
                break
            logger.debug("%s waiting on %d pending mutation(s)", mutation, len(blocking))
            await asyncio.wait(blocking)

        # From here to the end of begin there is no await.
        refs = mutation.entity_refs
        snapshots = {ref: self.store.snapshot(ref) for ref in refs}
        capture = self.registry.capture(refs)
        try:
            with self.registry.batch():
                for ref in refs:
                    self._apply_one(mutation, ref, snapshots[ref])
                self.registry.record_applied(capture)
        except Exception:
            logger.exception("Applying %s failed; restoring", mutation)
            with self.registry.batch():
                self.registry.record_applied(capture)
                self.registry.revert(capture)
                for ref in reversed(refs):
                    self.store.restore(ref, snapshots[ref])
            raise

        settled = asyncio.get_running_loop().create_future()
        self._pending[mutation.mutation_id] = PendingMutation(mutation, snapshots, capture, settled)
        for ref in refs:
            self._dirty[ref] = mutation.mutation_id
        logger.debug("Began %s", mutation)
        return mutation.mutation_id

    def _apply_one(self, mutation: Mutation, ref: EntityRef, before: Optional[Entity]) -> None:
        patched = mutation.apply(before.model_copy(deep=True) if before is not None else None)
        if patched is None:
            if before is not None:
                self.store.remove(ref, ChangeOrigin.LOCAL)
            return
        self.store.put(patched, ChangeOrigin.LOCAL, created=before is None, replace=True)

    def settle(self, mutation_id: str, result: MutationResult) -> Mutation:
        """Commit or roll back a pending mutation. Raises KeyError if it is not pending."""
        pending = self._pending.pop(mutation_id)
        mutation = pending.mutation
        mutation.result = result

        if result.ok:
            released = self._commit(pending, result)
        else:
            released = self._rollback(pending, result)

        for ref in released:
            if self._dirty.get(ref) == mutation_id:
                del self._dirty[ref]

        for listener in list(self._settle_listeners):
            try:
                listener(mutation, released)
            except Exception:
                logger.exception("Settle listener failed for %s", mutation)

        pending.settled.set_result(mutation.status)
        return mutation

    def _commit(self, pending: PendingMutation, result: MutationResult) -> List[EntityRef]:
        mutation = pending.mutation
        released = list(mutation.entity_refs)
        with self.registry.batch():
            entity = result.entity
            if entity is not None:
                target = mutation.entity_refs[0]
                if (
                    entity.ref != target
                    and entity.kind == target.kind
                    and pending.snapshots.get(target) is None
                    and target in self.store
                ):
                    # The authority assigned a permanent id to a created entity.
                    logger.debug("Rekeying %s -> %s", target, entity.ref)
                    self.registry.replace_id(target.kind, target.id, entity.id)
                    self.store.rekey(target, entity.ref)
                    released.append(entity.ref)
                self.store.put(entity, ChangeOrigin.COMMIT)
            self.registry.mark_stale(pending.capture.view_keys)

        mutation.status = MutationStatus.COMMITTED
        self._remember(mutation.mutation_id)
        self.committed_count += 1
        logger.info("Committed %s", mutation)
        return released

    def _rollback(self, pending: PendingMutation, result: MutationResult) -> List[EntityRef]:
        mutation = pending.mutation
        refs = mutation.entity_refs
        with self.registry.batch():
            # Scalars, then lists, then entities.
            self.registry.revert(pending.capture)
            for ref in reversed(refs):
                current = self.store.get(ref)
                if mutation.invert is not None:
                    restored = mutation.invert(
                        current.model_copy(deep=True) if current is not None else None
                    )
                else:
                    restored = pending.snapshots[ref]
                self.store.restore(ref, restored)

        mutation.status = MutationStatus.ROLLED_BACK
        mutation.error = error_from_result(result, mutation.mutation_id)
        self.rolled_back_count += 1
        logger.warning("Rolled back %s: %s", mutation, mutation.error)
        return list(refs)

    # --- Round trips ---

    async def execute(self, mutation: Mutation) -> Mutation:
        """
        Begin, submit and settle one mutation.

        Raises the typed MutationError after rollback. A ConflictStale
        rollback is followed by one refetch of the target entities.
        """
        await self.begin(mutation)
        result = await self._submit(mutation)
        self.settle(mutation.mutation_id, result)
        if result.ok:
            return mutation
        if result.error_kind == ErrorKind.CONFLICT:
            await self.refetch(mutation.entity_refs)
        raise mutation.error

    async def _submit(self, mutation: Mutation) -> MutationResult:
        attempts = 0
        try:
            while True:
                try:
                    result = await self.authority.submit(mutation.describe())
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.warning("Submit of %s failed: %s", mutation, e)
                    result = MutationResult.failure(ErrorKind.NETWORK, str(e))

                retryable = not result.ok and result.error_kind == ErrorKind.NETWORK
                if not retryable or attempts >= self.config.network_retry_attempts:
                    return result
                attempts += 1
                logger.info(
                    "Retrying %s after network failure (attempt %d)", mutation, attempts
                )
                await asyncio.sleep(self.config.network_retry_delay_seconds)
        except asyncio.CancelledError:
            if mutation.mutation_id in self._pending:
                self.settle(
                    mutation.mutation_id,
                    MutationResult.failure(ErrorKind.NETWORK, "Cancelled before settlement"),
                )
            raise

    async def execute_bulk(self, mutations: List[Mutation]) -> List[Mutation]:
        """
        Apply the same kind of change to N entities in one round trip.

        Successes commit and failures roll back individually. Raises
        PartialBulkFailure naming the failed entity ids when any item fails.
        """
        seen = set()
        for mutation in mutations:
            for ref in mutation.entity_refs:
                if ref in seen:
                    raise ValueError(f"Bulk mutation targets {ref} more than once")
                seen.add(ref)

        begun: List[Mutation] = []
        try:
            for mutation in mutations:
                await self.begin(mutation)
                begun.append(mutation)
        except (Exception, asyncio.CancelledError):
            for mutation in reversed(begun):
                self.settle(
                    mutation.mutation_id,
                    MutationResult.failure(ErrorKind.NETWORK, "Bulk aborted before submit"),
                )
            raise

        try:
            results = await self.authority.submit_bulk([m.describe() for m in mutations])
        except asyncio.CancelledError:
            for mutation in mutations:
                if mutation.mutation_id in self._pending:
                    self.settle(
                        mutation.mutation_id,
                        MutationResult.failure(ErrorKind.NETWORK, "Cancelled before settlement"),
                    )
            raise
        except Exception as e:
            logger.warning("Bulk submit of %d mutations failed: %s", len(mutations), e)
            results = [MutationResult.failure(ErrorKind.NETWORK, str(e)) for _ in mutations]

        if len(results) < len(mutations):
            missing = len(mutations) - len(results)
            logger.warning("Authority returned %d fewer bulk results than submitted", missing)
            results = list(results) + [
                MutationResult.failure(ErrorKind.NETWORK, "No result returned")
                for _ in range(missing)
            ]

        failed_ids: List[str] = []
        succeeded_ids: List[str] = []
        errors: Dict[str, MutationError] = {}
        conflicted: List[EntityRef] = []
        for mutation, result in zip(mutations, results):
            self.settle(mutation.mutation_id, result)
            entity_id = mutation.entity_refs[0].id
            if result.ok:
                succeeded_ids.append(entity_id)
            else:
                failed_ids.append(entity_id)
                errors[entity_id] = mutation.error
                if result.error_kind == ErrorKind.CONFLICT:
                    conflicted.extend(mutation.entity_refs)

        if conflicted:
            await self.refetch(conflicted)
        if failed_ids:
            raise PartialBulkFailure(failed_ids, succeeded_ids, errors)
        return mutations

    async def refetch(self, refs: List[EntityRef]) -> None:
        """Authoritative refetch of entities after a conflict. Failures are logged only."""
        for ref in refs:
            try:
                snapshot = await self.authority.fetch(EntityQuery(ref=ref))
            except Exception:
                logger.exception("Refetch of %s after conflict failed", ref)
                continue
            with self.registry.batch():
                for entity in snapshot.entities:
                    if not self.is_dirty(entity.ref):
                        self.store.put(entity, ChangeOrigin.REFRESH)

    # --- Echo retention ---

    def _remember(self, mutation_id: str) -> None:
        self._recent[mutation_id] = time.monotonic()
        self._recent.move_to_end(mutation_id)
        while len(self._recent) > self.config.echo_retention_max:
            self._recent.popitem(last=False)

    def _prune_recent(self) -> None:
        cutoff = time.monotonic() - self.config.echo_retention_seconds
        while self._recent:
            mutation_id, at = next(iter(self._recent.items()))
            if at >= cutoff:
                break
            self._recent.popitem(last=False)

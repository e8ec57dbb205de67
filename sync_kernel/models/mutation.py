"""
Mutations — optimistic local changes awaiting settlement by the authority.

Every call site builds a `Mutation` with an `apply` and an `invert` function,
so settlement and rollback are written once in the coordinator.
"""

from enum import Enum
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel

from sync_kernel.models.entity import Entity, EntityRef

EntityPatch = Callable[[Optional[Entity]], Optional[Entity]]

_MISSING = object()


class MutationStatus(str, Enum):
    PENDING = "pending"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


class ErrorKind(str, Enum):
    NETWORK = "network_failure"
    VALIDATION = "validation_rejected"
    CONFLICT = "conflict_stale"
    PARTIAL_BULK = "partial_bulk_failure"


class MutationDescriptor(BaseModel):
    """Transport-independent description of a mutation sent to the authority."""

    mutation_id: str
    operation: str                          # e.g., "close_ticket", "assign_ticket"
    targets: List[EntityRef]
    payload: dict = {}

    @property
    def target(self) -> EntityRef:
        return self.targets[0]


class MutationResult(BaseModel):
    """The authority's settlement of one mutation."""

    ok: bool
    entity: Optional[Entity] = None
    error_kind: Optional[ErrorKind] = None
    message: Optional[str] = None

    @classmethod
    def success(cls, entity: Optional[Entity] = None) -> "MutationResult":
        return cls(ok=True, entity=entity)

    @classmethod
    def failure(cls, kind: ErrorKind, message: str = "") -> "MutationResult":
        return cls(ok=False, error_kind=kind, message=message)


class Mutation:
    """
    A local change to one or more entities.

    `apply` maps the pre-mutation snapshot (None when absent) to the patched
    snapshot (None to delete). `invert` maps the patched snapshot back; when
    omitted the coordinator restores the snapshot it captured in `begin`.
    """

    def __init__(
        self,
        entity_refs: List[EntityRef],
        apply: EntityPatch,
        invert: Optional[EntityPatch] = None,
        operation: str = "update",
        payload: Optional[dict] = None,
        mutation_id: Optional[str] = None,
    ):
        if not entity_refs:
            raise ValueError("A mutation must target at least one entity")
        self.mutation_id = mutation_id or f"mut_{uuid4().hex[:12]}"
        self.entity_refs = list(entity_refs)
        self.apply = apply
        self.invert = invert
        self.operation = operation
        self.payload = payload or {}
        self.status = MutationStatus.PENDING
        self.error: Optional[Exception] = None
        self.result: Optional[MutationResult] = None

    def describe(self) -> MutationDescriptor:
        return MutationDescriptor(
            mutation_id=self.mutation_id,
            operation=self.operation,
            targets=self.entity_refs,
            payload=self.payload,
        )

    def __repr__(self) -> str:
        refs = ", ".join(str(r) for r in self.entity_refs)
        return f"Mutation({self.mutation_id}, {self.operation}, [{refs}], {self.status.value})"

    # --- Common shapes ---

    @classmethod
    def patch(
        cls,
        entity_refs: List[EntityRef],
        changes: Dict[str, Any],
        operation: str = "update",
        payload: Optional[dict] = None,
    ) -> "Mutation":
        """Set `changes` on every target; invert restores the prior values."""
        prior: Dict[EntityRef, Dict[str, Any]] = {}

        def apply(snapshot: Optional[Entity]) -> Optional[Entity]:
            if snapshot is None:
                return None
            prior[snapshot.ref] = {
                name: snapshot.properties.get(name, _MISSING) for name in changes
            }
            patched = snapshot.model_copy(deep=True)
            patched.properties.update(changes)
            return patched

        def invert(patched: Optional[Entity]) -> Optional[Entity]:
            if patched is None:
                return None
            restored = patched.model_copy(deep=True)
            for name, value in prior.get(patched.ref, {}).items():
                if value is _MISSING:
                    restored.properties.pop(name, None)
                else:
                    restored.properties[name] = value
            return restored

        return cls(
            entity_refs,
            apply,
            invert,
            operation=operation,
            payload=payload if payload is not None else dict(changes),
        )

    @classmethod
    def create(
        cls,
        entity: Entity,
        operation: str = "create",
        payload: Optional[dict] = None,
    ) -> "Mutation":
        """Insert `entity` (usually under a temporary id) until the authority assigns one."""
        template = entity.model_copy(deep=True)

        def apply(snapshot: Optional[Entity]) -> Optional[Entity]:
            return template.model_copy(deep=True)

        def invert(patched: Optional[Entity]) -> Optional[Entity]:
            return None

        return cls(
            [template.ref],
            apply,
            invert,
            operation=operation,
            payload=payload if payload is not None else dict(template.properties),
        )

    @classmethod
    def delete(
        cls,
        entity_ref: EntityRef,
        operation: str = "delete",
        payload: Optional[dict] = None,
    ) -> "Mutation":
        """Remove an entity; invert brings back the snapshot it had."""
        prior: Dict[EntityRef, Entity] = {}

        def apply(snapshot: Optional[Entity]) -> Optional[Entity]:
            if snapshot is not None:
                prior[snapshot.ref] = snapshot.model_copy(deep=True)
            return None

        def invert(patched: Optional[Entity]) -> Optional[Entity]:
            saved = prior.get(entity_ref)
            return saved.model_copy(deep=True) if saved is not None else None

        return cls([entity_ref], apply, invert, operation=operation, payload=payload)

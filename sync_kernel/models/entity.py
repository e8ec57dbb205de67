"""Entities — the canonical records held by the Entity Store."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EntityRef(BaseModel):
    """Address of one entity: `(kind, id)`."""

    model_config = ConfigDict(frozen=True)

    kind: str                               # e.g., "ticket", "comment", "team"
    id: str

    def __str__(self) -> str:
        return f"{self.kind}:{self.id}"


class Entity(BaseModel):
    """A single addressable domain object."""

    kind: str
    id: str
    properties: Dict[str, Any] = {}
    version: Optional[int] = None           # Monotonic, set by the authority
    fetched_at: Optional[datetime] = None   # Last full detail fetch
    stale: bool = False

    @property
    def ref(self) -> EntityRef:
        return EntityRef(kind=self.kind, id=self.id)

    def get(self, field: str, default: Any = None) -> Any:
        return self.properties.get(field, default)


class ChangeOrigin(str, Enum):
    """Who caused a store change. Views react differently per origin."""

    LOCAL = "local"         # Optimistic apply
    COMMIT = "commit"       # Authority confirmed a local mutation
    ROLLBACK = "rollback"   # Restore of a pre-mutation snapshot
    REMOTE = "remote"       # Push event from another actor
    REFRESH = "refresh"     # Authoritative single-entity refetch
    FETCH = "fetch"         # Detail fetch (prefetch or stale refresh)
    PAGE = "page"           # List page load


# Origins whose before/after pair is trusted for incremental scalar deltas.
DELTA_ORIGINS = frozenset({
    ChangeOrigin.LOCAL,
    ChangeOrigin.COMMIT,
    ChangeOrigin.REMOTE,
    ChangeOrigin.REFRESH,
})


class StoreChange:
    """A single accepted write to the Entity Store."""

    def __init__(
        self,
        ref: EntityRef,
        before: Optional[Entity],
        after: Optional[Entity],
        origin: ChangeOrigin,
        created: bool = False,
    ):
        self.ref = ref
        self.before = before
        self.after = after
        self.origin = origin
        self.created = created

    @property
    def removed(self) -> bool:
        return self.after is None

    def __repr__(self) -> str:
        return (
            f"StoreChange({self.ref}, origin={self.origin.value}, "
            f"created={self.created}, removed={self.removed})"
        )

"""Sync kernel data models."""

from sync_kernel.models.config import (
    CoordinatorConfig,
    PrefetchConfig,
    SessionConfig,
    SyncConfig,
    ViewConfig,
)
from sync_kernel.models.entity import ChangeOrigin, Entity, EntityRef, StoreChange
from sync_kernel.models.events import (
    ChangeType,
    CreatedEvent,
    DeletedEvent,
    MergedEvent,
    PushEvent,
    UpdatedEvent,
    parse_push_event,
)
from sync_kernel.models.mutation import (
    ErrorKind,
    Mutation,
    MutationDescriptor,
    MutationResult,
    MutationStatus,
)
from sync_kernel.models.prefetch import (
    PrefetchPriority,
    PrefetchState,
    PrefetchStats,
    PrefetchTask,
)
from sync_kernel.models.query import (
    CountQuery,
    EntityQuery,
    ListPage,
    ListQuery,
    Query,
    Snapshot,
)
from sync_kernel.models.session import SessionState
from sync_kernel.models.view import (
    AppendPage,
    Clause,
    ClauseOp,
    InsertAtHead,
    ListViewDefinition,
    MarkStale,
    Predicate,
    RemoveAll,
    ScalarViewDefinition,
    StructuralOp,
    ViewKey,
    ViewShape,
    ViewSnapshot,
)

__all__ = [
    "AppendPage",
    "ChangeOrigin",
    "ChangeType",
    "Clause",
    "ClauseOp",
    "CoordinatorConfig",
    "CountQuery",
    "CreatedEvent",
    "DeletedEvent",
    "Entity",
    "EntityQuery",
    "EntityRef",
    "ErrorKind",
    "InsertAtHead",
    "ListPage",
    "ListQuery",
    "ListViewDefinition",
    "MarkStale",
    "MergedEvent",
    "Mutation",
    "MutationDescriptor",
    "MutationResult",
    "MutationStatus",
    "Predicate",
    "PrefetchConfig",
    "PrefetchPriority",
    "PrefetchState",
    "PrefetchStats",
    "PrefetchTask",
    "PushEvent",
    "Query",
    "RemoveAll",
    "ScalarViewDefinition",
    "SessionConfig",
    "SessionState",
    "Snapshot",
    "StoreChange",
    "StructuralOp",
    "SyncConfig",
    "UpdatedEvent",
    "ViewConfig",
    "ViewKey",
    "ViewShape",
    "ViewSnapshot",
    "parse_push_event",
]

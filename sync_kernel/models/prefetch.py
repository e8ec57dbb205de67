"""Prefetch tasks — speculative background fetches of entity detail."""

from datetime import datetime
from enum import Enum, IntEnum
from typing import Optional

from pydantic import BaseModel, Field

from sync_kernel.models.entity import EntityRef, utcnow


class PrefetchState(str, Enum):
    QUEUED = "queued"
    INFLIGHT = "inflight"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PrefetchPriority(IntEnum):
    LOW = 0         # Re-warm after invalidation
    NORMAL = 50     # Background warm of list tails
    HIGH = 100      # Hover / navigation, head of visible lists


class PrefetchTask(BaseModel):
    """One speculative fetch of an entity's detail."""

    ref: EntityRef
    priority: int = PrefetchPriority.NORMAL
    state: PrefetchState = PrefetchState.QUEUED
    attempts: int = 0
    sequence: int = 0                       # Heap tiebreaker; negative = spliced ahead
    invalidated: bool = False               # Invalidated while inflight, re-warm after
    enqueued_at: datetime = Field(default_factory=utcnow)
    last_error: Optional[str] = None


class PrefetchStats(BaseModel):
    """Counters exposed to health endpoints."""

    queued: int = 0
    inflight: int = 0
    preloaded: int = 0
    failed: int = 0
    retried: int = 0
    cancelled: int = 0
    max_inflight_observed: int = 0
    last_preload_at: Optional[datetime] = None

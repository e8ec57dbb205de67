"""Push events — change notifications delivered by the push channel."""

from datetime import datetime
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, Field, TypeAdapter

from sync_kernel.models.entity import Entity, EntityRef, utcnow


class ChangeType(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    MERGED = "merged"


class _PushEventBase(BaseModel):
    event_id: str = Field(default_factory=lambda: f"evt_{uuid4().hex[:12]}")
    entity_kind: str
    entity_id: str
    payload: dict = {}
    version: Optional[int] = None
    origin_mutation_id: Optional[str] = None
    received_at: datetime = Field(default_factory=utcnow)

    @property
    def ref(self) -> EntityRef:
        return EntityRef(kind=self.entity_kind, id=self.entity_id)

    def refs(self) -> List[EntityRef]:
        """Every entity this event touches."""
        return [self.ref]

    def to_entity(self) -> Entity:
        return Entity(
            kind=self.entity_kind,
            id=self.entity_id,
            properties=dict(self.payload),
            version=self.version,
        )


class CreatedEvent(_PushEventBase):
    change_type: Literal["created"] = "created"


class UpdatedEvent(_PushEventBase):
    change_type: Literal["updated"] = "updated"
    invalidate_detail: bool = False         # Detail content (conversation) changed server-side


class DeletedEvent(_PushEventBase):
    change_type: Literal["deleted"] = "deleted"


class MergedEvent(_PushEventBase):
    """`entity_id` is the surviving entity; `merged_ids` are the losers."""

    change_type: Literal["merged"] = "merged"
    merged_ids: List[str] = []

    def refs(self) -> List[EntityRef]:
        return [self.ref] + [
            EntityRef(kind=self.entity_kind, id=loser) for loser in self.merged_ids
        ]


PushEvent = Annotated[
    Union[CreatedEvent, UpdatedEvent, DeletedEvent, MergedEvent],
    Field(discriminator="change_type"),
]

PUSH_EVENT_TYPES = (CreatedEvent, UpdatedEvent, DeletedEvent, MergedEvent)

_push_event_adapter = TypeAdapter(PushEvent)


def parse_push_event(data: dict) -> PushEvent:
    """Validate a raw event dict into its tagged variant."""
    return _push_event_adapter.validate_python(data)

"""Views — named, parameterized projections over entities."""

import hashlib
import json
from datetime import datetime
from enum import Enum
from typing import Any, List, Optional, Union

from pydantic import BaseModel, ConfigDict

from sync_kernel.models.entity import Entity, EntityRef


class ViewShape(str, Enum):
    LIST = "list"
    SCALAR = "scalar"
    DETAIL = "detail"


class ViewKey(BaseModel):
    """Identity of a view instance. Hashable so it can key registries."""

    model_config = ConfigDict(frozen=True)

    shape: ViewShape
    name: str                               # View kind, e.g., "tickets"
    discriminator: str                      # Filter fingerprint, scope key or entity id

    @classmethod
    def detail(cls, ref: EntityRef) -> "ViewKey":
        return cls(shape=ViewShape.DETAIL, name=ref.kind, discriminator=ref.id)

    def entity_ref(self) -> EntityRef:
        if self.shape != ViewShape.DETAIL:
            raise ValueError(f"{self} is not a detail view")
        return EntityRef(kind=self.name, id=self.discriminator)

    def __str__(self) -> str:
        return f"{self.shape.value}:{self.name}:{self.discriminator}"


class ClauseOp(str, Enum):
    EQ = "eq"
    NE = "ne"
    IN = "in"
    NOT_IN = "not_in"


class Clause(BaseModel):
    """One field test inside a predicate."""

    field: str
    op: ClauseOp = ClauseOp.EQ
    value: Any = None

    def matches(self, properties: dict) -> bool:
        actual = properties.get(self.field)
        if self.op == ClauseOp.EQ:
            return actual == self.value
        if self.op == ClauseOp.NE:
            return actual != self.value
        if self.op == ClauseOp.IN:
            return actual in self.value
        return actual not in self.value


class Predicate(BaseModel):
    """Conjunction of clauses. The empty predicate matches everything."""

    clauses: List[Clause] = []

    @classmethod
    def where(cls, **conditions: Any) -> "Predicate":
        """
        Build a predicate from keyword conditions.

        `status="Open"` is equality; a `__ne`, `__in` or `__not_in` suffix
        selects the other operators (`status__not_in=["Closed"]`).
        """
        clauses = []
        for key, value in conditions.items():
            field, op = key, ClauseOp.EQ
            for candidate in (ClauseOp.NOT_IN, ClauseOp.NE, ClauseOp.IN):
                suffix = f"__{candidate.value}"
                if key.endswith(suffix):
                    field, op = key[: -len(suffix)], candidate
                    break
            if op in (ClauseOp.IN, ClauseOp.NOT_IN):
                value = tuple(value)
            clauses.append(Clause(field=field, op=op, value=value))
        return cls(clauses=clauses)

    def matches(self, entity: Optional[Entity]) -> bool:
        if entity is None:
            return False
        return all(c.matches(entity.properties) for c in self.clauses)

    def fingerprint(self) -> str:
        """Stable short hash of the canonical clause set."""
        canonical = sorted(
            (c.field, c.op.value, json.dumps(c.value, sort_keys=True, default=str))
            for c in self.clauses
        )
        digest = hashlib.sha1(json.dumps(canonical).encode("utf-8")).hexdigest()
        return digest[:12]


class ListViewDefinition(BaseModel):
    """An ordered, paginated list of entity ids matching a predicate."""

    name: str
    entity_kind: str
    predicate: Predicate = Predicate()
    sort_field: str = "created_at"
    descending: bool = True

    @property
    def key(self) -> ViewKey:
        return ViewKey(
            shape=ViewShape.LIST,
            name=self.name,
            discriminator=self.predicate.fingerprint(),
        )


class ScalarViewDefinition(BaseModel):
    """A count of entities matching a predicate, maintained incrementally."""

    name: str
    scope_key: str = "all"
    entity_kind: str
    predicate: Predicate = Predicate()

    @property
    def key(self) -> ViewKey:
        return ViewKey(shape=ViewShape.SCALAR, name=self.name, discriminator=self.scope_key)


ViewDefinition = Union[ListViewDefinition, ScalarViewDefinition]


# --- Structural operations ---

class InsertAtHead(BaseModel):
    entity_id: str
    promote: bool = False                   # Move to head when already present


class RemoveAll(BaseModel):
    entity_id: str


class AppendPage(BaseModel):
    ids: List[str]


class MarkStale(BaseModel):
    pass


StructuralOp = Union[InsertAtHead, RemoveAll, AppendPage, MarkStale]


class ViewSnapshot(BaseModel):
    """What a consumer observes for one view at one instant."""

    key: ViewKey
    pages: List[List[str]] = []
    has_more: bool = False
    value: Optional[int] = None
    entity: Optional[Entity] = None
    stale: bool = False
    stale_since: Optional[datetime] = None
    loaded: bool = False
    revision: int = 0

    @property
    def ids(self) -> List[str]:
        return [entity_id for page in self.pages for entity_id in page]

"""Queries sent to the authority and the snapshots it answers with."""

from typing import List, Optional, Union

from pydantic import BaseModel

from sync_kernel.models.entity import Entity, EntityRef
from sync_kernel.models.view import ListViewDefinition, ScalarViewDefinition


class EntityQuery(BaseModel):
    """Detail of one entity, plus whatever threads the authority bundles with it."""

    ref: EntityRef


class ListQuery(BaseModel):
    definition: ListViewDefinition
    skip: int = 0
    limit: int = 20


class CountQuery(BaseModel):
    definition: ScalarViewDefinition


Query = Union[EntityQuery, ListQuery, CountQuery]


class ListPage(BaseModel):
    """One authoritative page of a list view."""

    definition: ListViewDefinition
    page_index: int = 0
    ids: List[str]
    has_more: bool = False


class Snapshot(BaseModel):
    """The authority's answer to a query."""

    entities: List[Entity] = []
    lists: List[ListPage] = []
    count: Optional[int] = None

"""
Ticket domain — the help-desk views and mutations built on the kernel.

Tickets, their comments (the conversation thread) and teams are entity
kinds. Lists are ordered newest first by `created_at`. Counters count
tickets that are not closed.
"""

from enum import Enum
from typing import Any, List, Optional, Union
from uuid import uuid4

from sync_kernel.handles import ListenerHandle
from sync_kernel.models.entity import Entity, EntityRef, utcnow
from sync_kernel.models.events import CreatedEvent, PushEvent
from sync_kernel.models.mutation import Mutation
from sync_kernel.models.view import (
    ListViewDefinition,
    Predicate,
    ScalarViewDefinition,
    ViewKey,
)

TICKET = "ticket"
COMMENT = "comment"
TEAM = "team"


class TicketStatus(str, Enum):
    UNREAD = "Unread"
    OPEN = "Open"
    WITH_USER = "With User"
    IN_PROGRESS = "In Progress"
    CLOSED = "Closed"


# "Resolved" is sent by some backends although it is not a declared status.
CLOSED_STATUSES = (TicketStatus.CLOSED.value, "Resolved")

Id = Union[int, str]


def _value(status: Union[TicketStatus, str]) -> str:
    return status.value if isinstance(status, TicketStatus) else status


def ticket_ref(ticket_id: Id) -> EntityRef:
    return EntityRef(kind=TICKET, id=str(ticket_id))


def comment_ref(comment_id: Id) -> EntityRef:
    return EntityRef(kind=COMMENT, id=str(comment_id))


def is_closed(ticket: Optional[Entity]) -> bool:
    return ticket is not None and ticket.get("status") in CLOSED_STATUSES


def is_worth_warming(ticket: Entity) -> bool:
    """Closed tickets are rarely reopened; skip them when warming."""
    return ticket.kind != TICKET or not is_closed(ticket)


# --- Views ---

def all_tickets() -> ListViewDefinition:
    return ListViewDefinition(name="tickets", entity_kind=TICKET)


def tickets_with_status(status: Union[TicketStatus, str]) -> ListViewDefinition:
    return ListViewDefinition(
        name="tickets",
        entity_kind=TICKET,
        predicate=Predicate.where(status=_value(status)),
    )


def filtered_tickets(**filters: Any) -> ListViewDefinition:
    """Ticket list for arbitrary field filters, e.g. `team_id=3, priority="High"`."""
    return ListViewDefinition(
        name="tickets",
        entity_kind=TICKET,
        predicate=Predicate.where(**filters),
    )


def my_tickets(agent_id: Id) -> ListViewDefinition:
    return ListViewDefinition(
        name="my_tickets",
        entity_kind=TICKET,
        predicate=Predicate.where(assignee_id=agent_id),
    )


def team_tickets(team_id: Id) -> ListViewDefinition:
    return ListViewDefinition(
        name="team_tickets",
        entity_kind=TICKET,
        predicate=Predicate.where(team_id=team_id),
    )


def open_count() -> ScalarViewDefinition:
    return ScalarViewDefinition(
        name="tickets_count",
        scope_key="all",
        entity_kind=TICKET,
        predicate=Predicate.where(status__not_in=CLOSED_STATUSES),
    )


def my_open_count(agent_id: Id) -> ScalarViewDefinition:
    return ScalarViewDefinition(
        name="tickets_count",
        scope_key=f"my:{agent_id}",
        entity_kind=TICKET,
        predicate=Predicate.where(assignee_id=agent_id, status__not_in=CLOSED_STATUSES),
    )


def team_open_count(team_id: Id) -> ScalarViewDefinition:
    return ScalarViewDefinition(
        name="tickets_count",
        scope_key=f"team:{team_id}",
        entity_kind=TICKET,
        predicate=Predicate.where(team_id=team_id, status__not_in=CLOSED_STATUSES),
    )


def conversation(ticket_id: Id) -> ListViewDefinition:
    """Comments of one ticket, newest first. Comment `ticket_id` is always a string."""
    return ListViewDefinition(
        name="comments",
        entity_kind=COMMENT,
        predicate=Predicate.where(ticket_id=str(ticket_id)),
    )


def ticket_detail(ticket_id: Id) -> ViewKey:
    return ViewKey.detail(ticket_ref(ticket_id))


# --- Mutations ---

def close_ticket(ticket_id: Id) -> Mutation:
    return Mutation.patch(
        [ticket_ref(ticket_id)],
        {"status": TicketStatus.CLOSED.value},
        operation="close_ticket",
    )


def assign_ticket(ticket_id: Id, assignee_id: Optional[Id]) -> Mutation:
    return Mutation.patch(
        [ticket_ref(ticket_id)],
        {"assignee_id": assignee_id},
        operation="assign_ticket",
    )


def update_ticket(ticket_id: Id, **changes: Any) -> Mutation:
    if "status" in changes:
        changes["status"] = _value(changes["status"])
    return Mutation.patch([ticket_ref(ticket_id)], changes, operation="update_ticket")


def bulk_assign(ticket_ids: List[Id], assignee_id: Optional[Id]) -> List[Mutation]:
    """One mutation per ticket; submitted together with `execute_bulk`."""
    return [assign_ticket(ticket_id, assignee_id) for ticket_id in ticket_ids]


def add_comment(
    ticket_id: Id,
    content: str,
    agent_id: Optional[Id] = None,
    is_private: bool = False,
) -> Mutation:
    """Optimistic comment under a temporary id, re-keyed when the authority answers."""
    comment = Entity(
        kind=COMMENT,
        id=f"tmp-{uuid4().hex[:10]}",
        properties={
            "ticket_id": str(ticket_id),
            "content": content,
            "agent_id": agent_id,
            "is_private": is_private,
            "created_at": utcnow().isoformat(),
        },
    )
    return Mutation.create(comment, operation="add_comment")


# --- Push side effects ---

def touch_ticket_on_comment(event: PushEvent) -> List[Entity]:
    """A new comment bumps its ticket's `last_update`."""
    if not isinstance(event, CreatedEvent):
        return []
    ticket_id = event.payload.get("ticket_id")
    if ticket_id is None:
        return []
    touched_at = event.payload.get("created_at") or utcnow().isoformat()
    return [
        Entity(kind=TICKET, id=str(ticket_id), properties={"last_update": touched_at})
    ]


def install(reconciler) -> ListenerHandle:
    """Register the ticket domain's push side effects."""
    return reconciler.add_side_effect(COMMENT, touch_ticket_on_comment)

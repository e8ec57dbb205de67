"""
Sync Kernel API — FastAPI endpoints over a SyncClient.

Exposes the kernel's views and mutations for:
- Ticket lists, counters, detail and conversation threads
- Optimistic ticket mutations (close, update, bulk assign, comment)
- Speculative preloading
- Push event ingestion and manual resync
- Health
"""

import logging
import os
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict

from sync_kernel.authority.memory import InMemoryAuthority
from sync_kernel.client import SyncClient
from sync_kernel.domain import tickets
from sync_kernel.errors import (
    ConflictStale,
    MutationError,
    NetworkFailure,
    PartialBulkFailure,
    SessionOffline,
    ValidationRejected,
)
from sync_kernel.models.config import SyncConfig
from sync_kernel.models.entity import EntityRef
from sync_kernel.models.mutation import Mutation
from sync_kernel.models.prefetch import PrefetchPriority
from sync_kernel.models.view import ListViewDefinition, ViewSnapshot
from sync_kernel.ports import PushTransport, RemoteAuthority

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    """Basic stderr logging for standalone runs."""
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# --- Request Models ---

class TicketUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: Optional[str] = None
    status: Optional[tickets.TicketStatus] = None
    priority: Optional[str] = None
    assignee_id: Optional[int] = None
    team_id: Optional[int] = None
    category_id: Optional[int] = None
    due_date: Optional[str] = None


class BulkAssignRequest(BaseModel):
    ticket_ids: List[str]
    assignee_id: Optional[int] = None


class CommentCreateRequest(BaseModel):
    content: str
    agent_id: Optional[int] = None
    is_private: bool = False


class PreloadRequest(BaseModel):
    ticket_ids: List[str]
    priority: str = "high"


class RawEventRequest(BaseModel):
    event: str
    payload: dict


_PRIORITIES = {
    "high": PrefetchPriority.HIGH,
    "normal": PrefetchPriority.NORMAL,
    "low": PrefetchPriority.LOW,
}

_STATUS_CODES = {
    ValidationRejected: 422,
    ConflictStale: 409,
    NetworkFailure: 503,
}


# --- Application Factory ---

def create_app(
    client: Optional[SyncClient] = None,
    authority: Optional[RemoteAuthority] = None,
    transport: Optional[PushTransport] = None,
    config: Optional[SyncConfig] = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""

    if client is None:
        if authority is None:
            configure_logging(os.environ.get("SYNC_KERNEL_LOG_LEVEL", "INFO"))
            authority = InMemoryAuthority()
            # The in-memory authority doubles as its own push channel.
            transport = transport or authority
        client = SyncClient(authority, transport, config or SyncConfig.from_env())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await client.start()
        try:
            yield
        finally:
            await client.stop()

    app = FastAPI(
        title="Sync Kernel API",
        description="Optimistic mutation, push reconciliation and prefetch for ticket views",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.client = client

    @app.exception_handler(PartialBulkFailure)
    async def partial_bulk_failure(request: Request, exc: PartialBulkFailure):
        return JSONResponse(
            status_code=207,
            content={
                "detail": exc.message,
                "failed_ids": exc.failed_ids,
                "succeeded_ids": exc.succeeded_ids,
                "errors": {
                    entity_id: {"kind": error.kind.value, "message": error.message}
                    for entity_id, error in exc.errors.items()
                },
            },
        )

    @app.exception_handler(SessionOffline)
    async def session_offline(request: Request, exc: SessionOffline):
        return JSONResponse(
            status_code=503,
            content={"detail": str(exc), "kind": "session_offline"},
        )

    @app.exception_handler(MutationError)
    async def mutation_error(request: Request, exc: MutationError):
        status = _STATUS_CODES.get(type(exc), 500)
        return JSONResponse(
            status_code=status,
            content={
                "detail": exc.message,
                "kind": exc.kind.value,
                "mutation_id": exc.mutation_id,
            },
        )

    def list_body(definition: ListViewDefinition, snapshot: ViewSnapshot) -> dict:
        entities = []
        for entity_id in snapshot.ids:
            entity = client.store.get(EntityRef(kind=definition.entity_kind, id=entity_id))
            if entity is not None:
                entities.append({"id": entity.id, **entity.properties})
        return {
            "view": snapshot.model_dump(mode="json"),
            "items": entities,
        }

    async def require_ticket(ticket_id: str) -> None:
        if client.store.get(tickets.ticket_ref(ticket_id)) is not None:
            return
        snapshot = await client.read(tickets.ticket_detail(ticket_id))
        if snapshot.entity is None:
            raise HTTPException(404, f"Ticket {ticket_id} not found")

    async def run(mutation: Mutation) -> dict:
        await client.execute(mutation)
        entity = client.store.get(mutation.entity_refs[0])
        if entity is None and mutation.result is not None and mutation.result.entity is not None:
            entity = client.store.get(mutation.result.entity.ref)
        return {
            "mutation_id": mutation.mutation_id,
            "status": mutation.status.value,
            "entity": entity.model_dump(mode="json") if entity is not None else None,
        }

    # === HEALTH ===

    @app.get("/health")
    async def health():
        return client.health()

    # === TICKET VIEWS ===

    @app.get("/tickets")
    async def list_tickets(
        status: Optional[str] = None,
        assignee_id: Optional[int] = None,
        team_id: Optional[int] = None,
        page: int = 0,
    ):
        """Ticket list for the given filters. `page` > 0 loads further pages."""
        filters = {}
        if status is not None:
            filters["status"] = status
        if assignee_id is not None:
            filters["assignee_id"] = assignee_id
        if team_id is not None:
            filters["team_id"] = team_id
        definition = tickets.filtered_tickets(**filters)
        snapshot = await client.read(definition)
        while page >= len(snapshot.pages) and snapshot.has_more:
            loaded = len(snapshot.pages)
            snapshot = await client.load_more(definition)
            if len(snapshot.pages) == loaded:
                break
        return list_body(definition, snapshot)

    @app.get("/tickets/counts/open")
    async def open_counts(agent_id: Optional[int] = None, team_id: Optional[int] = None):
        if agent_id is not None:
            definition = tickets.my_open_count(agent_id)
        elif team_id is not None:
            definition = tickets.team_open_count(team_id)
        else:
            definition = tickets.open_count()
        snapshot = await client.read(definition)
        return {"scope": definition.scope_key, "count": snapshot.value, "stale": snapshot.stale}

    @app.get("/tickets/{ticket_id}")
    async def get_ticket(ticket_id: str):
        snapshot = await client.read(tickets.ticket_detail(ticket_id))
        if snapshot.entity is None:
            raise HTTPException(404, "Ticket not found")
        return snapshot.entity.model_dump(mode="json")

    @app.get("/tickets/{ticket_id}/conversation")
    async def get_conversation(ticket_id: str):
        definition = tickets.conversation(ticket_id)
        snapshot = await client.read(definition)
        return list_body(definition, snapshot)

    # === TICKET MUTATIONS ===

    @app.post("/tickets/{ticket_id}/close")
    async def close_ticket(ticket_id: str):
        await require_ticket(ticket_id)
        return await run(tickets.close_ticket(ticket_id))

    @app.patch("/tickets/{ticket_id}")
    async def update_ticket(ticket_id: str, req: TicketUpdateRequest):
        await require_ticket(ticket_id)
        changes = req.model_dump(mode="json", exclude_unset=True)
        if not changes:
            raise HTTPException(400, "No changes given")
        return await run(tickets.update_ticket(ticket_id, **changes))

    @app.post("/tickets/bulk-assign")
    async def bulk_assign(req: BulkAssignRequest):
        for ticket_id in req.ticket_ids:
            await require_ticket(ticket_id)
        if len(set(req.ticket_ids)) != len(req.ticket_ids):
            raise HTTPException(400, "Duplicate ticket ids")
        mutations = tickets.bulk_assign(req.ticket_ids, req.assignee_id)
        await client.execute_bulk(mutations)
        return {"succeeded_ids": req.ticket_ids, "failed_ids": []}

    @app.post("/tickets/{ticket_id}/comments")
    async def add_comment(ticket_id: str, req: CommentCreateRequest):
        await require_ticket(ticket_id)
        return await run(
            tickets.add_comment(ticket_id, req.content, req.agent_id, req.is_private)
        )

    # === PREFETCH ===

    @app.post("/preload")
    async def preload(req: PreloadRequest):
        priority = _PRIORITIES.get(req.priority)
        if priority is None:
            raise HTTPException(400, f"Unknown priority '{req.priority}'")
        refs = [tickets.ticket_ref(t) for t in req.ticket_ids]
        queued = client.scheduler.enqueue_many(refs, priority)
        return {"queued": queued, "stats": client.scheduler.stats().model_dump(mode="json")}

    @app.get("/preload/{ticket_id}")
    async def preload_status(ticket_id: str):
        return client.scheduler.status(tickets.ticket_ref(ticket_id))

    # === PUSH / SESSION ===

    @app.post("/events")
    async def ingest_event(req: RawEventRequest):
        """Apply a push-channel message delivered out of band (e.g. a webhook relay)."""
        applied = client.reconciler.on_raw(req.event, req.payload)
        return {"applied": applied, "stats": client.reconciler.stats.to_dict()}

    @app.post("/session/resync")
    async def resync():
        await client.resync()
        return {"status": "resynchronized"}

    @app.post("/session/reconnect")
    async def reconnect():
        if client.session is None:
            raise HTTPException(400, "No push session configured")
        client.session.reconnect()
        return {"state": client.session.state.value}

    return app


# Default application instance, backed by the in-memory authority
app = create_app()

"""End-to-end scenarios and properties over a wired SyncClient."""

import asyncio
import random

import pytest

from sync_kernel.authority.memory import InMemoryAuthority
from sync_kernel.client import SyncClient
from sync_kernel.domain import tickets
from sync_kernel.errors import PartialBulkFailure, ValidationRejected
from sync_kernel.models.config import CoordinatorConfig, PrefetchConfig, SyncConfig, ViewConfig
from sync_kernel.models.entity import Entity
from sync_kernel.models.events import CreatedEvent, DeletedEvent, MergedEvent, UpdatedEvent
from sync_kernel.models.mutation import ErrorKind, Mutation
from sync_kernel.models.session import SessionState
from sync_kernel.models.view import AppendPage, InsertAtHead, Predicate, ScalarViewDefinition

from helpers import GatedAuthority, make_ticket, wait_until

ref = tickets.ticket_ref


def make_client(authority, transport=None) -> SyncClient:
    config = SyncConfig(
        prefetch=PrefetchConfig(enabled=False),
        coordinator=CoordinatorConfig(network_retry_delay_seconds=0),
    )
    return SyncClient(authority, transport=transport, config=config)


def view_state(client: SyncClient, definitions) -> list:
    """What an observer sees, without revision counters."""
    state = []
    for definition in definitions:
        snapshot = client.registry.snapshot(definition.key)
        state.append((snapshot.pages, snapshot.value, snapshot.has_more))
    return state


class TestCloseTicketScenario:
    async def test_close_is_visible_before_the_server_answers_and_undone_on_rejection(self):
        authority = GatedAuthority([make_ticket(i) for i in (40, 41, 42, 43, 44)])
        authority.fail("42", ErrorKind.VALIDATION, "Ticket #42 is locked")
        client = make_client(authority)
        open_list = tickets.tickets_with_status("Open")
        count = tickets.open_count()
        await client.read(open_list)
        assert (await client.read(count)).value == 5
        before = view_state(client, [open_list, count])

        task = asyncio.create_task(client.execute(tickets.close_ticket(42)))
        await wait_until(lambda: client.coordinator.is_dirty(ref(42)))

        assert "42" not in client.registry.snapshot(open_list.key).ids
        assert client.registry.snapshot(count.key).value == 4
        assert authority.submitted == []

        authority.gate.set()
        with pytest.raises(ValidationRejected, match="locked"):
            await task

        assert view_state(client, [open_list, count]) == before
        assert client.registry.snapshot(open_list.key).ids == ["44", "43", "42", "41", "40"]

    async def test_resync_while_close_is_pending_keeps_rollback_exact(self):
        authority = GatedAuthority([make_ticket(i) for i in (40, 41, 42, 43, 44)])
        authority.fail("42", ErrorKind.VALIDATION, "Ticket #42 is locked")
        client = make_client(authority)
        open_list = tickets.tickets_with_status("Open")
        count = tickets.open_count()
        for definition in (open_list, count):
            await client.read(definition)
            client.observe(definition)
        before = view_state(client, [open_list, count])

        task = asyncio.create_task(client.execute(tickets.close_ticket(42)))
        await wait_until(lambda: client.coordinator.is_dirty(ref(42)))
        await client.resync()

        # The authority still counts #42 as open; the local view does not.
        assert client.registry.snapshot(count.key).value == 4
        assert "42" not in client.registry.snapshot(open_list.key).ids

        authority.gate.set()
        with pytest.raises(ValidationRejected):
            await task

        assert view_state(client, [open_list, count]) == before
        assert client.registry.snapshot(count.key).value == 5

    async def test_count_read_while_close_is_pending(self):
        authority = GatedAuthority([make_ticket(i) for i in (40, 41, 42)])
        client = make_client(authority)
        count = tickets.open_count()
        await client.read(count)

        task = asyncio.create_task(client.execute(tickets.close_ticket(42)))
        await wait_until(lambda: client.coordinator.is_dirty(ref(42)))
        client.registry.mark_stale([count.key])

        assert (await client.read(count)).value == 2

        authority.gate.set()
        await task
        assert (await client.read(count)).value == 2


class TestOutOfOrderScenario:
    async def test_older_version_is_rejected(self):
        authority = InMemoryAuthority([make_ticket(7)])
        client = make_client(authority)
        await client.read(tickets.ticket_detail(7))

        client.reconciler.on_raw("ticket_updated", {"id": 7, "version": 3, "status": "In Progress"})
        client.reconciler.on_raw("ticket_updated", {"id": 7, "version": 2, "status": "Closed"})

        ticket = client.store.get(ref(7))
        assert ticket.version == 3
        assert ticket.get("status") == "In Progress"


class TestBulkAssignScenario:
    async def test_one_failure_in_five(self):
        authority = InMemoryAuthority([make_ticket(i, assignee_id=3) for i in range(1, 6)])
        authority.fail("4", ErrorKind.VALIDATION, "Ticket #4 is archived")
        client = make_client(authority)
        previous_owner = tickets.my_tickets(3)
        new_owner = tickets.my_tickets(7)
        new_owner_count = tickets.my_open_count(7)
        await client.read(previous_owner)
        await client.read(new_owner)
        await client.read(new_owner_count)

        with pytest.raises(PartialBulkFailure) as exc_info:
            await client.execute_bulk(tickets.bulk_assign([1, 2, 3, 4, 5], 7))

        assert exc_info.value.failed_ids == ["4"]
        assert client.registry.snapshot(previous_owner.key).ids == ["4"]
        assert client.store.get(ref(4)).get("assignee_id") == 3
        assert client.registry.snapshot(new_owner_count.key).value == 4
        assert (await client.read(new_owner)).ids == ["5", "3", "2", "1"]
        for i in (1, 2, 3, 5):
            assert client.store.get(ref(i)).get("assignee_id") == 7


class TestEchoIdempotence:
    @pytest.mark.parametrize("make_mutation", [
        lambda: tickets.close_ticket(2),
        lambda: tickets.assign_ticket(3, 7),
        lambda: tickets.update_ticket(4, priority="High", status="With User"),
    ])
    async def test_echo_after_commit_changes_nothing(self, make_mutation):
        authority = InMemoryAuthority([make_ticket(i) for i in range(1, 6)])
        client = make_client(authority, transport=authority)
        await client.start()
        await asyncio.wait_for(client.session.wait_for_state(SessionState.CONNECTED), timeout=2)
        views = [tickets.tickets_with_status("Open"), tickets.my_tickets(7), tickets.open_count()]
        for definition in views:
            await client.read(definition)
            client.observe(definition)

        await client.execute(make_mutation())
        after_commit = view_state(client, views)
        revisions = [client.registry.snapshot(d.key).revision for d in views]

        await wait_until(lambda: client.reconciler.stats.echoes == 1)

        assert view_state(client, views) == after_commit
        assert [client.registry.snapshot(d.key).revision for d in views] == revisions
        await client.stop()


class TestRollbackSymmetry:
    def setup_method(self):
        self.authority = InMemoryAuthority([make_ticket(i, assignee_id=7) for i in range(1, 6)])
        self.client = make_client(self.authority)
        self.views = [
            tickets.tickets_with_status("Open"),
            tickets.my_tickets(7),
            tickets.conversation(3),
            tickets.open_count(),
            tickets.my_open_count(7),
        ]

    async def load(self):
        for definition in self.views:
            await self.client.read(definition)

    @pytest.mark.parametrize("make_mutation", [
        lambda: tickets.close_ticket(3),
        lambda: tickets.assign_ticket(3, None),
        lambda: tickets.update_ticket(3, status="Closed", assignee_id=8),
        lambda: Mutation.delete(ref(3)),
    ])
    async def test_rejected_mutation_restores_every_view(self, make_mutation):
        await self.load()
        before_views = view_state(self.client, self.views)
        before_entity = self.client.store.snapshot(ref(3)).properties
        self.authority.fail("3", ErrorKind.VALIDATION)

        with pytest.raises(ValidationRejected):
            await self.client.execute(make_mutation())

        assert view_state(self.client, self.views) == before_views
        assert self.client.store.get(ref(3)).properties == before_entity

    async def test_rejected_create_restores_every_view(self):
        await self.load()
        before_views = view_state(self.client, self.views)
        mutation = tickets.add_comment(3, "Duplicate reply")
        self.authority.fail(mutation.entity_refs[0].id, ErrorKind.VALIDATION)

        with pytest.raises(ValidationRejected):
            await self.client.execute(mutation)

        assert view_state(self.client, self.views) == before_views
        assert mutation.entity_refs[0] not in self.client.store


class TestCounterListConvergence:
    async def test_resync_converges_counts_with_lists(self):
        authority = InMemoryAuthority([make_ticket(i) for i in range(1, 9)])
        client = make_client(authority)
        open_list = tickets.tickets_with_status("Open")
        open_status_count = ScalarViewDefinition(
            name="tickets_count",
            scope_key="status:Open",
            entity_kind=tickets.TICKET,
            predicate=Predicate.where(status="Open"),
        )
        not_closed = tickets.filtered_tickets(status__not_in=tickets.CLOSED_STATUSES)
        not_closed_count = tickets.open_count()
        pairs = [(open_list, open_status_count), (not_closed, not_closed_count)]
        for list_definition, count_definition in pairs:
            for definition in (list_definition, count_definition):
                await client.read(definition)
                client.observe(definition)

        await client.execute(tickets.close_ticket(2))
        await client.execute(tickets.update_ticket(5, status="With User"))
        # Changes whose push events were never delivered.
        authority.write(make_ticket(20))
        authority.delete(ref(3))
        authority.write(Entity(kind="ticket", id="6", properties={"status": "Resolved"}))
        # A change whose event was delivered.
        changed = authority.write(Entity(kind="ticket", id="7", properties={"status": "Closed"}))
        client.reconciler.on_event(UpdatedEvent(
            entity_kind="ticket", entity_id="7", payload=changed.properties, version=changed.version
        ))

        await client.resync()

        for list_definition, count_definition in pairs:
            ids = client.registry.snapshot(list_definition.key).ids
            value = client.registry.snapshot(count_definition.key).value
            assert value == len(ids)
        assert client.registry.snapshot(open_list.key).ids == ["20", "8", "4", "1"]
        assert client.registry.snapshot(not_closed_count.key).value == 5


class TestNoDuplicateIds:
    async def test_random_operations_never_duplicate_ids(self):
        rng = random.Random(20261019)
        ids = [str(i) for i in range(1, 13)]
        authority = InMemoryAuthority([make_ticket(i) for i in range(1, 13)])
        client = make_client(authority)
        views = [tickets.all_tickets(), tickets.tickets_with_status("Open"), tickets.my_tickets(7)]
        for definition in views:
            await client.read(definition)

        statuses = ["Open", "Closed", "With User"]
        for step in range(300):
            entity_id = rng.choice(ids)
            roll = rng.random()
            if roll < 0.2:
                event = CreatedEvent(
                    entity_kind="ticket",
                    entity_id=entity_id,
                    payload={"status": rng.choice(statuses), "created_at": f"2026-02-01T00:00:{step % 60:02d}"},
                )
            elif roll < 0.5:
                event = UpdatedEvent(
                    entity_kind="ticket",
                    entity_id=entity_id,
                    payload={"status": rng.choice(statuses), "assignee_id": rng.choice([None, 7])},
                )
            elif roll < 0.6:
                event = DeletedEvent(entity_kind="ticket", entity_id=entity_id)
            elif roll < 0.7:
                event = MergedEvent(
                    entity_kind="ticket",
                    entity_id=entity_id,
                    merged_ids=rng.sample([i for i in ids if i != entity_id], 2),
                )
            else:
                event = None
                key = rng.choice(views).key
                if roll < 0.85:
                    client.registry.apply_structural(key, InsertAtHead(entity_id=entity_id, promote=rng.random() < 0.5))
                else:
                    client.registry.apply_structural(key, AppendPage(ids=rng.sample(ids, 3)))
            if event is not None:
                client.reconciler.on_event(event)

            for definition in views:
                shown = client.registry.snapshot(definition.key).ids
                assert len(shown) == len(set(shown)), f"duplicate after step {step}"


class TestMaxStaleness:
    async def test_heartbeat_revalidates_overdue_views(self):
        authority = InMemoryAuthority([make_ticket(i) for i in (1, 2, 3)])
        config = SyncConfig(
            views=ViewConfig(max_staleness_seconds=0, heartbeat_interval_seconds=0.01),
            prefetch=PrefetchConfig(enabled=False),
        )
        client = SyncClient(authority, config=config)
        open_list = tickets.tickets_with_status("Open")
        await client.read(open_list)
        client.observe(open_list)

        authority.write(make_ticket(9))
        client.registry.mark_stale([open_list.key])
        await client.start()
        await wait_until(lambda: not client.registry.get_list(open_list.key).stale)

        assert client.registry.get_list(open_list.key).ids() == ["9", "3", "2", "1"]
        await client.stop()

    async def test_staleness_stays_advisory_without_a_bound(self):
        authority = InMemoryAuthority([make_ticket(1)])
        client = make_client(authority)
        open_list = tickets.tickets_with_status("Open")
        await client.read(open_list)
        client.observe(open_list)
        client.registry.mark_stale([open_list.key])

        assert await client.revalidate_overdue() == 0
        assert client.registry.get_list(open_list.key).stale

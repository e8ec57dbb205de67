"""Tests for the Session Lifecycle Controller."""

import asyncio

import pytest

from sync_kernel.authority.memory import InMemoryAuthority
from sync_kernel.client import SyncClient
from sync_kernel.domain import tickets
from sync_kernel.errors import SessionOffline
from sync_kernel.models.config import PrefetchConfig, SessionConfig, SyncConfig
from sync_kernel.models.entity import Entity
from sync_kernel.models.events import CreatedEvent, UpdatedEvent
from sync_kernel.models.session import SessionState
from sync_kernel.session.controller import SessionLifecycleController

from helpers import FakeTransport, make_ticket, wait_until

DISCONNECTED = SessionState.DISCONNECTED
CONNECTING = SessionState.CONNECTING
CONNECTED = SessionState.CONNECTED
OFFLINE = SessionState.OFFLINE


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


class TestSessionLifecycleController:
    def setup_method(self):
        self.transport = FakeTransport()
        self.sleep = RecordingSleep()
        self.resync_calls = 0
        self.states = []
        self.build()

    def build(self, **config):
        self.session = SessionLifecycleController(
            self.transport,
            SessionConfig(**config),
            on_resync=self.on_resync,
            sleep=self.sleep,
        )
        self.session.on_state_change(lambda old, new: self.states.append((old, new)))

    async def on_resync(self):
        self.resync_calls += 1

    async def connect(self):
        self.session.start()
        await asyncio.wait_for(self.session.wait_for_state(CONNECTED), timeout=2)

    async def test_nothing_connects_before_start(self):
        await asyncio.sleep(0.01)
        assert self.session.state == DISCONNECTED
        assert self.transport.subscribe_calls == 0

    async def test_first_connect_does_not_resync(self):
        await self.connect()

        assert self.states == [(DISCONNECTED, CONNECTING), (CONNECTING, CONNECTED)]
        assert self.transport.scopes == ["workspace"]
        assert self.resync_calls == 0
        await self.session.stop()
        assert self.session.state == DISCONNECTED
        assert not self.session.is_running

    async def test_events_are_dispatched(self):
        events = []
        self.session.subscribe_events(events.append)
        await self.connect()

        self.transport.push(UpdatedEvent(entity_kind="ticket", entity_id="1", payload={"status": "Closed"}))
        self.transport.push(("new_ticket", {"id": 12, "status": "Open"}))
        self.transport.push(("ticket_archived", {"id": 12}))
        self.transport.push(42)
        self.transport.push(("ticket_updated", {"id": 2}))
        await wait_until(lambda: len(events) == 3)

        assert isinstance(events[0], UpdatedEvent)
        assert isinstance(events[1], CreatedEvent)
        assert events[1].entity_id == "12"
        assert events[2].entity_id == "2"
        await self.session.stop()

    async def test_failing_handler_does_not_stop_the_stream(self):
        events = []

        def broken(event):
            raise RuntimeError("handler bug")

        self.session.subscribe_events(broken)
        self.session.subscribe_events(events.append)
        await self.connect()

        self.transport.push(("ticket_updated", {"id": 1}))
        self.transport.push(("ticket_updated", {"id": 2}))
        await wait_until(lambda: len(events) == 2)

        assert self.session.state == CONNECTED
        await self.session.stop()

    async def test_malformed_payload_keeps_the_stream_open(self):
        events = []
        self.session.subscribe_events(events.append)
        await self.connect()

        self.transport.push(("ticket_updated", {"id": 1, "merged_ticket_ids": 5}))
        self.transport.push(("ticket_updated", "not a dict", "extra"))
        self.transport.push(("ticket_updated", {"id": 2}))
        await wait_until(lambda: len(events) == 1)

        assert events[0].entity_id == "2"
        assert self.transport.subscribe_calls == 1
        assert self.session.resyncs == 0
        assert self.session.last_error is None
        await self.session.stop()

    async def test_reconnect_triggers_resync(self):
        await self.connect()

        self.transport.drop()
        await wait_until(lambda: self.resync_calls == 1)

        assert self.session.connections == 2
        assert self.session.resyncs == 1
        assert self.sleep.delays == [1.0]
        assert self.session.state == CONNECTED
        await self.session.stop()

    async def test_stream_error_is_recorded(self):
        await self.connect()

        self.transport.drop(ConnectionError("socket closed"))
        await wait_until(lambda: self.session.connections == 2)

        assert self.sleep.delays == [1.0]
        assert self.session.resyncs == 1
        await self.session.stop()

    async def test_backoff_is_capped_until_offline(self):
        self.transport.fail_subscribes = 100
        self.build(max_reconnect_attempts=5, backoff_base_seconds=1.0, backoff_max_seconds=5.0)

        self.session.start()
        await asyncio.wait_for(self.session.wait_for_state(OFFLINE), timeout=2)

        assert self.sleep.delays == [1.0, 2.0, 4.0, 5.0, 5.0]
        assert self.transport.subscribe_calls == 6
        assert self.session.last_error == "connect refused"
        assert self.resync_calls == 0

    async def test_manual_reconnect_leaves_offline(self):
        self.transport.fail_subscribes = 1
        self.build(max_reconnect_attempts=0)
        self.session.start()
        await asyncio.wait_for(self.session.wait_for_state(OFFLINE), timeout=2)
        await wait_until(lambda: not self.session.is_running)

        self.session.reconnect()
        await asyncio.wait_for(self.session.wait_for_state(CONNECTED), timeout=2)

        assert self.session.connections == 1
        assert self.resync_calls == 0
        await self.session.stop()

    def test_backoff_schedule(self):
        self.build(backoff_base_seconds=0.5, backoff_max_seconds=3.0)
        assert [self.session.backoff(n) for n in (1, 2, 3, 4, 5)] == [0.5, 1.0, 2.0, 3.0, 3.0]


class TestReconnectConvergence:
    def setup_method(self):
        self.authority = InMemoryAuthority([make_ticket(i) for i in (1, 2, 3, 4)])
        self.config = SyncConfig(
            prefetch=PrefetchConfig(enabled=False),
            session=SessionConfig(backoff_base_seconds=0.2, backoff_max_seconds=0.2),
        )
        self.client = SyncClient(self.authority, transport=self.authority, config=self.config)

    async def test_pushed_changes_reach_views(self):
        await self.client.start()
        await asyncio.wait_for(self.client.session.wait_for_state(CONNECTED), timeout=2)
        open_list = tickets.tickets_with_status("Open")
        await self.client.read(open_list)
        self.client.observe(open_list)

        self.authority.write(Entity(kind="ticket", id="2", properties={"status": "Closed"}))
        await wait_until(lambda: "2" not in self.client.registry.get_list(open_list.key))

        assert self.client.registry.get_list(open_list.key).ids() == ["4", "3", "1"]
        await self.client.stop()

    async def test_missed_events_are_recovered_by_resync(self):
        await self.client.start()
        session = self.client.session
        await asyncio.wait_for(session.wait_for_state(CONNECTED), timeout=2)

        open_list = tickets.tickets_with_status("Open")
        count = tickets.open_count()
        await self.client.read(open_list)
        await self.client.read(count)
        self.client.observe(open_list)
        self.client.observe(count)

        self.authority.disconnect_all()
        await wait_until(lambda: self.authority.subscriber_count == 0)
        # Changes made while nobody is listening.
        self.authority.write(Entity(kind="ticket", id="3", properties={"status": "Closed"}))
        self.authority.delete(tickets.ticket_ref(1))
        self.authority.write(make_ticket(9))

        await wait_until(lambda: session.resyncs == 1)

        registry = self.client.registry
        assert registry.get_list(open_list.key).ids() == ["9", "4", "2"]
        assert registry.get_scalar(count.key).value == 3
        assert not registry.get_list(open_list.key).stale
        await self.client.stop()

    async def test_offline_session_suspends_prefetch(self):
        transport = FakeTransport(fail_subscribes=100)
        config = SyncConfig(session=SessionConfig(max_reconnect_attempts=0))
        client = SyncClient(self.authority, transport=transport, config=config)

        await client.start()
        await asyncio.wait_for(client.session.wait_for_state(OFFLINE), timeout=2)

        assert client.scheduler.suspended
        assert client.health()["session"] == "offline"
        await client.stop()

    async def test_offline_reads_serve_stale_views(self):
        transport = FakeTransport(fail_subscribes=100)
        config = SyncConfig(
            prefetch=PrefetchConfig(enabled=False),
            session=SessionConfig(max_reconnect_attempts=0),
        )
        client = SyncClient(self.authority, transport=transport, config=config)
        open_list = tickets.tickets_with_status("Open")
        await client.read(open_list)

        await client.start()
        await asyncio.wait_for(client.session.wait_for_state(OFFLINE), timeout=2)
        self.authority.set_unreachable()
        client.registry.mark_stale([open_list.key])

        snapshot = await client.read(open_list)
        assert snapshot.stale
        assert snapshot.ids == ["4", "3", "2", "1"]
        with pytest.raises(SessionOffline):
            await client.read(tickets.open_count())
        await client.stop()

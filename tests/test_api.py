"""Tests for the FastAPI API endpoints."""

import time

import pytest
from fastapi.testclient import TestClient

from sync_kernel.api.app import create_app
from sync_kernel.authority.memory import InMemoryAuthority
from sync_kernel.models.config import CoordinatorConfig, PrefetchConfig, SessionConfig, SyncConfig, ViewConfig
from sync_kernel.models.mutation import ErrorKind

from helpers import FakeTransport, make_ticket


@pytest.fixture
def authority():
    return InMemoryAuthority([make_ticket(i, assignee_id=7 if i % 2 else None) for i in range(1, 6)])


@pytest.fixture
def client(authority):
    """Test client over a fresh SyncClient, started through the app lifespan."""
    config = SyncConfig(
        views=ViewConfig(page_size=3),
        prefetch=PrefetchConfig(enabled=False),
        coordinator=CoordinatorConfig(network_retry_delay_seconds=0),
    )
    app = create_app(authority=authority, config=config)
    with TestClient(app) as http:
        yield http


def item_ids(response):
    return [item["id"] for item in response.json()["items"]]


class TestHealthEndpoint:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["running"] is True
        assert data["session"] is None
        assert data["mutations"]["pending"] == 0
        assert data["mutations"]["oldest_pending_seconds"] is None


class TestViewEndpoints:
    def test_list_is_newest_first_and_paged(self, client):
        response = client.get("/tickets", params={"status": "Open"})
        assert response.status_code == 200
        assert item_ids(response) == ["5", "4", "3"]
        assert response.json()["view"]["has_more"] is True

        response = client.get("/tickets", params={"status": "Open", "page": 1})
        assert item_ids(response) == ["5", "4", "3", "2", "1"]
        assert response.json()["view"]["has_more"] is False

    def test_list_filtered_by_assignee(self, client):
        response = client.get("/tickets", params={"assignee_id": 7})
        assert item_ids(response) == ["5", "3", "1"]

    def test_open_counts(self, client):
        assert client.get("/tickets/counts/open").json()["count"] == 5
        data = client.get("/tickets/counts/open", params={"agent_id": 7}).json()
        assert data["scope"] == "my:7"
        assert data["count"] == 3

    def test_ticket_detail(self, client):
        response = client.get("/tickets/2")
        assert response.status_code == 200
        assert response.json()["properties"]["title"] == "Ticket 2"

    def test_missing_ticket(self, client):
        assert client.get("/tickets/404").status_code == 404
        assert client.post("/tickets/404/close").status_code == 404


class TestMutationEndpoints:
    def test_close_ticket_updates_count(self, client):
        assert client.get("/tickets/counts/open").json()["count"] == 5

        response = client.post("/tickets/2/close")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "committed"
        assert data["entity"]["properties"]["status"] == "Closed"
        assert client.get("/tickets/counts/open").json()["count"] == 4

    def test_validation_rejection(self, client, authority):
        authority.fail("3", ErrorKind.VALIDATION, "Ticket is locked")

        response = client.post("/tickets/3/close")

        assert response.status_code == 422
        assert response.json()["detail"] == "Ticket is locked"
        assert response.json()["kind"] == "validation_rejected"
        assert client.get("/tickets/3").json()["properties"]["status"] == "Open"

    def test_conflict(self, client, authority):
        authority.fail("3", ErrorKind.CONFLICT, "Changed elsewhere")
        assert client.post("/tickets/3/close").status_code == 409

    def test_network_failure(self, client, authority):
        client.get("/tickets", params={"status": "Open"})
        authority.set_unreachable()

        response = client.post("/tickets/3/close")

        assert response.status_code == 503
        assert response.json()["kind"] == "network_failure"

    def test_update_ticket(self, client):
        response = client.patch("/tickets/2", json={"priority": "High", "status": "In Progress"})
        assert response.status_code == 200
        properties = response.json()["entity"]["properties"]
        assert properties["priority"] == "High"
        assert properties["status"] == "In Progress"

    def test_update_needs_changes(self, client):
        assert client.patch("/tickets/2", json={}).status_code == 400

    def test_update_rejects_unknown_fields(self, client):
        assert client.patch("/tickets/2", json={"colour": "red"}).status_code == 422

    def test_bulk_assign(self, client):
        response = client.post("/tickets/bulk-assign", json={"ticket_ids": ["2", "4"], "assignee_id": 9})
        assert response.status_code == 200
        assert client.get("/tickets/counts/open", params={"agent_id": 9}).json()["count"] == 2

    def test_bulk_assign_partial_failure(self, client, authority):
        authority.fail("2", ErrorKind.VALIDATION, "Agent is away")

        response = client.post(
            "/tickets/bulk-assign", json={"ticket_ids": ["1", "2", "3"], "assignee_id": 9}
        )

        assert response.status_code == 207
        data = response.json()
        assert data["failed_ids"] == ["2"]
        assert data["succeeded_ids"] == ["1", "3"]
        assert data["errors"]["2"]["message"] == "Agent is away"

    def test_bulk_assign_duplicates(self, client):
        response = client.post("/tickets/bulk-assign", json={"ticket_ids": ["1", "1"], "assignee_id": 9})
        assert response.status_code == 400

    def test_add_comment(self, client):
        response = client.post("/tickets/2/comments", json={"content": "Looking into it", "agent_id": 7})

        assert response.status_code == 200
        entity = response.json()["entity"]
        assert entity["id"] == "1001"
        assert entity["properties"]["ticket_id"] == "2"

        thread = client.get("/tickets/2/conversation")
        assert item_ids(thread) == ["1001"]


class TestPushAndSessionEndpoints:
    def test_pushed_ticket_appears_without_refetch(self, client, authority):
        client.get("/tickets", params={"status": "Open"})
        queries = len(authority.queries)

        response = client.post("/events", json={
            "event": "new_ticket",
            "payload": {"id": 50, "status": "Open", "created_at": "2026-06-01T00:00:00"},
        })

        assert response.json()["applied"] is True
        assert item_ids(client.get("/tickets", params={"status": "Open"}))[:2] == ["50", "5"]
        assert len(authority.queries) == queries

    def test_unknown_event_is_dropped(self, client):
        response = client.post("/events", json={"event": "ticket_archived", "payload": {"id": 1}})
        assert response.status_code == 200
        assert response.json()["applied"] is False
        assert response.json()["stats"]["dropped"] == 1

    def test_preload(self, client):
        assert client.post("/preload", json={"ticket_ids": ["1"], "priority": "urgent"}).status_code == 400
        response = client.post("/preload", json={"ticket_ids": ["1", "2"]})
        assert response.status_code == 200
        status = client.get("/preload/1").json()
        assert set(status) == {"cached", "preloading", "queued"}

    def test_resync(self, client):
        client.get("/tickets/counts/open")
        response = client.post("/session/resync")
        assert response.status_code == 200
        assert client.get("/tickets/counts/open").json()["count"] == 5

    def test_reconnect_without_session(self, client):
        assert client.post("/session/reconnect").status_code == 400


class TestStandaloneApp:
    def test_default_app_runs_its_own_push_session(self):
        with TestClient(create_app()) as http:
            data = http.get("/health").json()
            assert data["session"] in ("connecting", "connected")
            assert http.get("/tickets").json()["items"] == []

    def test_offline_session_with_unloaded_view_is_503(self, authority):
        config = SyncConfig(
            prefetch=PrefetchConfig(enabled=False),
            session=SessionConfig(max_reconnect_attempts=0),
        )
        app = create_app(authority=authority, transport=FakeTransport(fail_subscribes=100), config=config)
        with TestClient(app) as http:
            deadline = time.monotonic() + 2
            while http.get("/health").json()["session"] != "offline":
                assert time.monotonic() < deadline
                time.sleep(0.01)
            authority.set_unreachable()

            response = http.get("/tickets/counts/open")
            assert response.status_code == 503
            assert response.json()["kind"] == "session_offline"

"""
Tests for the HTTP surface: auth, conversation endpoints, SSE streaming,
health checks and cache administration.

Requests go through httpx's ASGI transport so the app shares the test's
event loop with the services it was assembled from.
"""

import asyncio
import json

import httpx
import pytest
from fastapi import status

from assistant_core.app import create_app
from assistant_core.services.container import assemble
from tests.fakes import (
    TEST_API_KEY,
    FakeToolProvider,
    InMemoryStore,
    ScriptedEngine,
)

USER = "user-1"


def parse_sse(body: str):
    """Split an SSE body into (event, data) pairs, skipping comments and retry frames."""
    events = []
    for frame in body.split("\n\n"):
        event, data = None, []
        for line in frame.splitlines():
            if line.startswith("event: "):
                event = line[len("event: "):]
            elif line.startswith("data: "):
                data.append(line[len("data: "):])
        if event:
            events.append((event, json.loads("\n".join(data))))
    return events


@pytest.fixture
def api_store():
    return InMemoryStore()


@pytest.fixture
async def services(settings, api_store):
    providers = [
        FakeToolProvider("github", ["search_repositories"]),
        FakeToolProvider("docs", ["microsoft_docs_search"]),
    ]
    built = assemble(settings, api_store, ScriptedEngine(), providers)
    await built.startup()
    yield built
    await built.shutdown()


@pytest.fixture
async def client(settings, services):
    app = create_app(settings, services=services)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(
        transport=transport,
        base_url="http://test",
        headers={"X-API-Key": TEST_API_KEY, "X-User-ID": USER},
    ) as http:
        yield http


async def create_conversation(client, **body):
    response = await client.post("/api/v1/conversations", json=body)
    assert response.status_code == status.HTTP_201_CREATED
    return response.json()["id"]


class TestAuthentication:
    @pytest.mark.asyncio
    async def test_missing_api_key_rejected(self, client):
        response = await client.post(
            "/api/v1/conversations", json={}, headers={"X-API-Key": ""}
        )

        assert response.status_code == status.HTTP_401_UNAUTHORIZED
        assert response.json()["error"] == "APP-401-AUTH"

    @pytest.mark.asyncio
    async def test_missing_user_identity_rejected(self, client):
        response = await client.post(
            "/api/v1/conversations", json={}, headers={"X-User-ID": " "}
        )

        assert response.status_code == status.HTTP_401_UNAUTHORIZED

    @pytest.mark.asyncio
    async def test_request_id_echoed(self, client):
        response = await client.get("/healthz", headers={"X-Request-ID": "req-42"})

        assert response.headers["X-Request-ID"] == "req-42"


class TestConversationEndpoints:
    """Tests for conversation lifecycle over HTTP."""

    @pytest.mark.asyncio
    async def test_create_conversation(self, client):
        response = await client.post(
            "/api/v1/conversations",
            json={"title": "Release notes", "resource": {"url": "https://example.com/a"}},
        )

        assert response.status_code == status.HTTP_201_CREATED
        data = response.json()
        assert data["title"] == "Release notes"
        assert data["user_id"] == USER
        assert data["resource"]["url"] == "https://example.com/a"

    @pytest.mark.asyncio
    async def test_send_message_json(self, client):
        conversation_id = await create_conversation(client)

        response = await client.post(
            f"/api/v1/conversations/{conversation_id}/messages",
            params={"stream": "false"},
            json={"content": "hi"},
        )

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status"] == "completed"
        assert data["assistant_message"]["content"] == "Hello there friend."
        assert data["tool_mode"] == "essential"

        history = await client.get(f"/api/v1/conversations/{conversation_id}/messages")
        assert [m["role"] for m in history.json()] == ["user", "assistant"]

    @pytest.mark.asyncio
    async def test_send_message_streams_sse(self, client):
        conversation_id = await create_conversation(client)

        response = await client.post(
            f"/api/v1/conversations/{conversation_id}/messages",
            json={"content": "hi"},
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.headers["content-type"].startswith("text/event-stream")
        events = parse_sse(response.text)
        kinds = [kind for kind, _ in events]
        assert kinds[-2:] == ["final_message", "done"]
        assert "".join(d["content"] for k, d in events if k == "chunk") == (
            "Hello there friend."
        )
        assert events[-1][1]["status"] == "completed"

    @pytest.mark.asyncio
    async def test_second_ask_is_served_from_cache(self, client):
        first = await create_conversation(client)
        second = await create_conversation(client)
        await client.post(
            f"/api/v1/conversations/{first}/messages",
            params={"stream": "false"},
            json={"content": "hi"},
        )

        response = await client.post(
            f"/api/v1/conversations/{second}/messages",
            params={"stream": "false"},
            json={"content": "hi"},
        )

        assert response.json()["status"] == "cached"
        assert response.json()["cache_tier"] == "exact"

    @pytest.mark.asyncio
    async def test_other_users_conversation_is_not_found(self, client):
        conversation_id = await create_conversation(client)

        response = await client.get(
            f"/api/v1/conversations/{conversation_id}/messages",
            headers={"X-User-ID": "user-2"},
        )

        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert response.json()["origin"] == "app"

    @pytest.mark.asyncio
    async def test_empty_message_rejected(self, client):
        conversation_id = await create_conversation(client)

        response = await client.post(
            f"/api/v1/conversations/{conversation_id}/messages", json={"content": ""}
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["error"] == "APP-400-VALIDATION"

    @pytest.mark.asyncio
    async def test_rename_and_delete(self, client, api_store):
        conversation_id = await create_conversation(client)

        renamed = await client.patch(
            f"/api/v1/conversations/{conversation_id}", json={"title": " Trip plan "}
        )
        assert renamed.status_code == status.HTTP_204_NO_CONTENT
        assert api_store.conversations[conversation_id].title == "Trip plan"

        deleted = await client.delete(f"/api/v1/conversations/{conversation_id}")
        assert deleted.status_code == status.HTTP_204_NO_CONTENT
        assert conversation_id not in api_store.conversations

    @pytest.mark.asyncio
    async def test_star_and_report(self, client):
        conversation_id = await create_conversation(client)
        result = await client.post(
            f"/api/v1/conversations/{conversation_id}/messages",
            params={"stream": "false"},
            json={"content": "hi"},
        )
        message_id = result.json()["assistant_message"]["id"]
        base = f"/api/v1/conversations/{conversation_id}/messages/{message_id}"

        starred = await client.post(f"{base}/star")
        reported = await client.post(f"{base}/report", json={"reason": "Outdated"})
        listing = await client.get("/api/v1/messages/starred")

        assert starred.json()["starred"] is True
        assert reported.json()["reported"]["reason"] == "Outdated"
        assert [m["id"] for m in listing.json()] == [message_id]

    @pytest.mark.asyncio
    async def test_star_unknown_message(self, client):
        conversation_id = await create_conversation(client)

        response = await client.post(
            f"/api/v1/conversations/{conversation_id}/messages/missing/star"
        )

        assert response.status_code == status.HTTP_404_NOT_FOUND

    @pytest.mark.asyncio
    async def test_cancel_without_turn(self, client):
        conversation_id = await create_conversation(client)

        response = await client.post(f"/api/v1/conversations/{conversation_id}/cancel")

        assert response.status_code == status.HTTP_202_ACCEPTED
        assert response.json() == {"cancelled": False}

    @pytest.mark.asyncio
    async def test_list_conversations(self, client):
        first = await create_conversation(client, title="First")
        second = await create_conversation(client, title="Second")
        await client.post(
            f"/api/v1/conversations/{first}/messages",
            params={"stream": "false"},
            json={"content": "hi"},
        )

        response = await client.get("/api/v1/conversations")
        other = await client.get("/api/v1/conversations", headers={"X-User-ID": "user-2"})

        assert response.status_code == status.HTTP_200_OK
        assert [c["id"] for c in response.json()] == [first, second]
        assert other.json() == []

    @pytest.mark.asyncio
    async def test_create_conversation_titles_from_first_message(self, client):
        response = await client.post(
            "/api/v1/conversations", json={"first_message": "hello assistant"}
        )

        assert response.status_code == status.HTTP_201_CREATED
        assert response.json()["title"] == "Greeting the assistant"

    @pytest.mark.asyncio
    async def test_starred_listing_survives_session_expiry(self, client, services):
        conversation_id = await create_conversation(client)
        result = await client.post(
            f"/api/v1/conversations/{conversation_id}/messages",
            params={"stream": "false"},
            json={"content": "hi"},
        )
        message_id = result.json()["assistant_message"]["id"]
        await client.post(
            f"/api/v1/conversations/{conversation_id}/messages/{message_id}/star"
        )

        await services.pipeline.session_cache.delete(USER, conversation_id)
        listing = await client.get("/api/v1/messages/starred")

        assert [m["id"] for m in listing.json()] == [message_id]

    @pytest.mark.asyncio
    async def test_busy_turn_slot_rejects_json_request(self, client, services):
        conversation_id = await create_conversation(client)
        running = asyncio.Event()
        services.active_turns[conversation_id] = running

        response = await client.post(
            f"/api/v1/conversations/{conversation_id}/messages",
            params={"stream": "false"},
            json={"content": "hi"},
        )

        assert response.status_code == status.HTTP_409_CONFLICT
        assert services.active_turns[conversation_id] is running

        cancelled = await client.post(f"/api/v1/conversations/{conversation_id}/cancel")
        assert cancelled.json() == {"cancelled": True}
        assert running.is_set()

    @pytest.mark.asyncio
    async def test_busy_turn_slot_fails_stream(self, client, services):
        conversation_id = await create_conversation(client)
        running = asyncio.Event()
        services.active_turns[conversation_id] = running

        response = await client.post(
            f"/api/v1/conversations/{conversation_id}/messages", json={"content": "hi"}
        )

        events = parse_sse(response.text)
        assert [kind for kind, _ in events] == ["done"]
        assert events[0][1]["status"] == "failed"
        assert events[0][1]["error"] == "TURN_IN_PROGRESS"
        assert services.active_turns[conversation_id] is running


class TestHealthEndpoints:
    @pytest.mark.asyncio
    async def test_healthz(self, client, settings):
        response = await client.get("/healthz")

        assert response.json()["status"] == "ok"
        assert response.json()["version"] == settings.app_version

    @pytest.mark.asyncio
    async def test_liveness_and_readiness(self, client):
        assert (await client.get("/healthz/live")).json() == {"status": "alive"}
        assert (await client.get("/healthz/ready")).json() == {"ready": True}

    @pytest.mark.asyncio
    async def test_tools_health_lists_connected(self, client):
        response = await client.get("/healthz/tools")

        assert response.json()["status"] == "ok"
        assert sorted(response.json()["connected"]) == ["docs", "github"]

    @pytest.mark.asyncio
    async def test_cache_health(self, client):
        data = (await client.get("/healthz/cache")).json()

        assert "response_cache" in data
        assert "session_cache" in data


class TestCacheAdministration:
    @pytest.mark.asyncio
    async def test_admin_requires_api_key(self, client):
        response = await client.get("/api/v1/admin/cache/stats", headers={"X-API-Key": "x"})

        assert response.status_code == status.HTTP_401_UNAUTHORIZED

    @pytest.mark.asyncio
    async def test_stats_and_clear(self, client):
        conversation_id = await create_conversation(client)
        await client.post(
            f"/api/v1/conversations/{conversation_id}/messages",
            params={"stream": "false"},
            json={"content": "hi"},
        )

        stats = await client.get("/api/v1/admin/cache/stats")
        cleared = await client.post("/api/v1/admin/cache/clear")

        assert stats.json()["rebuilding"] is False
        assert cleared.json()["removed"] == 2

    @pytest.mark.asyncio
    async def test_invalidate_requires_topics(self, client):
        response = await client.post("/api/v1/admin/cache/invalidate", json={"topics": []})

        assert response.status_code == status.HTTP_400_BAD_REQUEST

    @pytest.mark.asyncio
    async def test_invalidate_and_refresh(self, client):
        invalidated = await client.post(
            "/api/v1/admin/cache/invalidate", json={"topics": ["azure"]}
        )
        refreshed = await client.post("/api/v1/admin/cache/refresh")
        recreated = await client.post("/api/v1/admin/cache/recreate")

        assert invalidated.json() == {"removed": 0}
        assert refreshed.json() == {"status": "refreshed"}
        assert recreated.json() == {"status": "recreated"}

from __future__ import annotations

import json

from httpx import ASGITransport, AsyncClient
import pytest

from kbembed.apps.api.deps import (
    get_extractor,
    get_keyring,
    get_limiter,
    get_oauth_client,
    get_provider,
    get_session_verifier,
    get_store,
)
from kbembed.apps.api.main import create_app
from kbembed.core.config import get_settings
from kbembed.domain.records import ChunkMatch, ProjectRecord, SourceRecord
from kbembed.ingestion.extraction import SourceExtractor
from kbembed.providers.google.oauth import TokenGrant
from kbembed.services.audit import EVENT_BLOCKED_ORIGIN
from kbembed.services.crypto.utils import b64url_encode
from kbembed.services.rate_limit import MemoryRateLimiter
from kbembed.tests.utils.google import FakeDrive, FakeOAuth, FakeSessions
from kbembed.tests.utils.keys import make_keyring
from kbembed.tests.utils.providers import ScriptedProvider
from kbembed.tests.utils.settings import make_settings
from kbembed.tests.utils.store import InMemoryStore


ORIGIN = "https://acme.example"
DOCS_ORIGIN = "https://docs.acme.example"


class ApiHarness:
    def __init__(self, **settings) -> None:
        values = {
            "google_oauth_client_id": "client-id",
            "google_oauth_client_secret": "client-secret",
            "google_oauth_redirect_uri": "https://api.example/v1/oauth/google/callback",
            "auth_base_url": "https://auth.example",
            "owner_app_url": "https://owner.example",
        }
        values.update(settings)
        self.settings = make_settings(**values)
        self.store = InMemoryStore(
            matches=[
                ChunkMatch(
                    id=7,
                    source_id="s-1",
                    chunk_index=0,
                    content="Refunds are processed within five business days.",
                    metadata={"title": "Handbook"},
                    similarity=0.9,
                )
            ]
        )
        self.store.add_project(
            ProjectRecord(
                id="p-1",
                handle="acme",
                owner_account_id="owner-1",
                allowed_origins=(ORIGIN, DOCS_ORIGIN),
                rate_limit_burst=3,
            )
        )
        self.store.add_source(SourceRecord(id="s-1", project_id="p-1", source_type="gdoc", drive_file_id="f-1"))
        self.provider = ScriptedProvider(
            generation={"answer": "Five business days.", "citations": [{"chunk_id": 7}]}
        )
        self.limiter = MemoryRateLimiter(time_provider=lambda: 1_000.0)
        self.keyring, _keys = make_keyring(1)
        self.oauth = FakeOAuth(
            grant=TokenGrant(
                access_token="at",
                refresh_token="rt",
                id_token=None,
                scopes=(self.settings.google_drive_scope,),
            ),
            subject="google-sub",
        )
        self.sessions = FakeSessions(accounts={"owner-session": "owner-1"})
        self.drive = FakeDrive()

        app = create_app()
        app.dependency_overrides[get_settings] = lambda: self.settings
        app.dependency_overrides[get_store] = lambda: self.store
        app.dependency_overrides[get_provider] = lambda: self.provider
        app.dependency_overrides[get_limiter] = lambda: self.limiter
        app.dependency_overrides[get_keyring] = lambda: self.keyring
        app.dependency_overrides[get_oauth_client] = lambda: self.oauth
        app.dependency_overrides[get_session_verifier] = lambda: self.sessions
        app.dependency_overrides[get_extractor] = lambda: SourceExtractor(self.drive, self.provider, self.settings)
        self.app = app

    def client(self, *, raise_app_exceptions: bool = True) -> AsyncClient:
        transport = ASGITransport(app=self.app, raise_app_exceptions=raise_app_exceptions)
        return AsyncClient(transport=transport, base_url="http://test")

    async def embed_token(self, client: AsyncClient, origin: str = ORIGIN) -> str:
        response = await client.post("/v1/embed/session", json={"project_handle": "acme"}, headers={"Origin": origin})
        assert response.status_code == 200
        return response.json()["data"]["embed_token"]


@pytest.mark.asyncio
async def test_health_envelope_and_ids() -> None:
    async with ApiHarness().client() as client:
        response = await client.get("/v1/health", headers={"x-trace-id": "trace-abc"})
    body = response.json()
    assert response.status_code == 200
    assert body["api_version"] == "v1"
    assert body["data"] == {"status": "ok"}
    assert response.headers["x-request-id"] == body["request_id"]
    assert response.headers["x-trace-id"] == "trace-abc"


@pytest.mark.asyncio
async def test_widget_session_then_chat() -> None:
    harness = ApiHarness()
    async with harness.client() as client:
        token = await harness.embed_token(client)
        response = await client.post(
            "/v1/chat",
            json={"embed_token": token, "message": "How long do refunds take?"},
            headers={"Origin": ORIGIN},
        )
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["answer"] == "Five business days."
    assert data["citations"][0]["chunk_id"] == 7
    assert data["ui"] == {"has_citations": True}
    assert response.headers["access-control-allow-origin"] == ORIGIN


@pytest.mark.asyncio
async def test_token_replayed_from_another_allowed_origin_is_blocked() -> None:
    harness = ApiHarness()
    async with harness.client() as client:
        token = await harness.embed_token(client, ORIGIN)
        response = await client.post(
            "/v1/chat",
            json={"embed_token": token, "message": "hello"},
            headers={"Origin": DOCS_ORIGIN},
        )
    body = response.json()
    assert response.status_code == 403
    assert body["error"]["code"] == "blocked_origin"
    assert body["error"]["details"] == {"project_handle": "acme"}
    assert body["request_id"] == response.headers["x-request-id"]
    assert harness.store.events(EVENT_BLOCKED_ORIGIN) == []


@pytest.mark.asyncio
async def test_unlisted_origin_cannot_get_a_session() -> None:
    harness = ApiHarness()
    async with harness.client() as client:
        response = await client.post(
            "/v1/embed/session",
            json={"project_handle": "acme"},
            headers={"Origin": "https://evil.example"},
        )
    assert response.status_code == 403
    assert response.json()["error"]["code"] == "blocked_origin"
    assert harness.store.events(EVENT_BLOCKED_ORIGIN)


@pytest.mark.asyncio
async def test_rate_limited_chat_sets_retry_after() -> None:
    harness = ApiHarness()
    async with harness.client() as client:
        token = await harness.embed_token(client)
        statuses = []
        for _ in range(4):
            response = await client.post(
                "/v1/chat",
                json={"embed_token": token, "message": "hi"},
                headers={"Origin": ORIGIN},
            )
            statuses.append(response.status_code)
    assert statuses == [200, 200, 200, 429]
    assert response.headers["retry-after"] == "1"
    assert response.json()["error"]["retryable"] is True


@pytest.mark.asyncio
async def test_preflight_is_answered_without_routing() -> None:
    async with ApiHarness().client() as client:
        response = await client.options("/v1/chat", headers={"Origin": ORIGIN})
    assert response.status_code == 204
    assert response.headers["access-control-allow-origin"] == ORIGIN
    assert "POST" in response.headers["access-control-allow-methods"]
    assert "x-request-id" in response.headers


@pytest.mark.asyncio
async def test_invalid_json_and_wrong_method() -> None:
    async with ApiHarness().client() as client:
        bad_json = await client.post(
            "/v1/chat",
            content=b"{not json",
            headers={"Origin": ORIGIN, "content-type": "application/json"},
        )
        wrong_method = await client.get("/v1/chat")
        missing = await client.get("/v1/nope")
    assert bad_json.status_code == 400
    assert bad_json.json()["error"]["code"] == "invalid_request"
    assert wrong_method.status_code == 405
    assert wrong_method.json()["error"]["code"] == "method_not_allowed"
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "not_found"


@pytest.mark.asyncio
async def test_resync_requires_owner_session() -> None:
    harness = ApiHarness()
    async with harness.client() as client:
        no_token = await client.post("/v1/kb/resync", json={"project_id": "p-1"})
        bad_token = await client.post(
            "/v1/kb/resync", json={"project_id": "p-1"}, headers={"Authorization": "Bearer nope"}
        )
        no_project = await client.post("/v1/kb/resync", json={}, headers={"Authorization": "Bearer owner-session"})
        ok = await client.post(
            "/v1/kb/resync", json={"project_id": "p-1"}, headers={"Authorization": "Bearer owner-session"}
        )
    assert no_token.status_code == 401
    assert no_token.json()["error"]["message"] == "Missing bearer token."
    assert bad_token.json()["error"]["code"] == "invalid_owner_session"
    assert no_project.status_code == 400
    assert ok.status_code == 200
    assert ok.json()["data"]["enqueued_count"] == 1


@pytest.mark.asyncio
async def test_oauth_callback_redirects_to_owner_settings() -> None:
    harness = ApiHarness()
    state = b64url_encode(json.dumps({"user_id": "owner-1", "session_token": "owner-session"}).encode())
    async with harness.client() as client:
        success = await client.get("/v1/oauth/google/callback", params={"code": "c-1", "state": state})
        denied = await client.get("/v1/oauth/google/callback", params={"error": "access_denied"})
        bad_state = await client.get("/v1/oauth/google/callback", params={"code": "c-1", "state": "e30"})
    assert success.status_code == 302
    assert success.headers["location"] == "https://owner.example/settings?status=success"
    assert "owner-1" in harness.store.connections
    assert denied.headers["location"] == "https://owner.example/settings?status=error&reason=consent_revoked"
    assert bad_state.status_code == 400
    assert bad_state.json()["error"]["code"] == "invalid_state"


@pytest.mark.asyncio
async def test_ingest_runner_secret() -> None:
    harness = ApiHarness(ingest_runner_secret="runner-secret")
    async with harness.client() as client:
        denied = await client.post("/v1/ingest/run", headers={"Authorization": "Bearer wrong"})
        allowed = await client.post("/v1/ingest/run", headers={"Authorization": "Bearer runner-secret"})
    assert denied.status_code == 401
    assert denied.json()["error"]["code"] == "unauthorized"
    assert allowed.status_code == 200
    assert allowed.json()["data"] == {"processed_jobs": 0, "pdf_fallbacks_used": 0}


@pytest.mark.asyncio
async def test_unhandled_error_keeps_widget_headers() -> None:
    harness = ApiHarness()

    async def broken_lookup(handle: str):
        raise RuntimeError("connection reset")

    harness.store.get_project_by_handle = broken_lookup
    async with harness.client(raise_app_exceptions=False) as client:
        response = await client.post(
            "/v1/embed/session",
            json={"project_handle": "acme"},
            headers={"Origin": ORIGIN, "x-trace-id": "trace-500"},
        )
    body = response.json()
    assert response.status_code == 500
    assert body["error"]["code"] == "internal_error"
    assert "connection reset" not in response.text
    assert response.headers["access-control-allow-origin"] == ORIGIN
    assert response.headers["x-trace-id"] == "trace-500"
    assert response.headers["x-request-id"] == body["request_id"]

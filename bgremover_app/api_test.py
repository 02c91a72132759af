from io import BytesIO
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient
from PIL import Image

from bgremover_app.api import SessionRegistry, create_app
from bgremover_app.config import Settings
from bgremover_app.identity import TokenIdentityProvider
from bgremover_app.models import Identity, PersistedResult, SessionPhase, UploadedFile
from bgremover_app.preview import PreviewRegistry
from bgremover_app.quota import InMemoryQuotaStore
from bgremover_app.results import InMemoryResultStore
from bgremover_app.services import Services
from bgremover_app.session import SessionContext, SessionState

SECRET = "test-secret"


@pytest.fixture
def png_bytes():
    buf = BytesIO()
    Image.new("RGB", (32, 32), (0, 128, 255)).save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        predictions_base_url="http://front/api/predictions",
        poll_interval_seconds=0.01,
        anonymous_limit=2,
        signed_in_limit=102,
        jwt_secret=SECRET,
    )


@pytest.fixture
def services():
    storage = AsyncMock()
    storage.upload.return_value = "https://s3/cat.png"
    results = InMemoryResultStore()
    return Services(
        storage=storage,
        quota=InMemoryQuotaStore(results=results),
        results=results,
        previews=PreviewRegistry(),
    )


@pytest.fixture
def calls():
    return []


@pytest.fixture
def client(settings, services, calls):
    def handler(request: httpx.Request) -> httpx.Response:
        calls.append((request.method, request.url.path))
        if request.method == "POST" and request.url.path == "/api/predictions":
            return httpx.Response(201, json={"id": "p1", "status": "processing"})
        if request.url.path == "/api/predictions/p1":
            return httpx.Response(200, json={"id": "p1", "status": "succeeded", "output": "https://s3/cat-out.png"})
        return httpx.Response(404, json={"detail": "unexpected"})

    app = create_app(settings, services=services, transport=httpx.MockTransport(handler))
    with TestClient(app) as test_client:
        yield test_client


def _upload(client, session_id, png_bytes, name="cat.png"):
    return client.post(f"/sessions/{session_id}/uploads", files={"file": (name, png_bytes, "image/png")})


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_anonymous_flow_end_to_end(client, png_bytes, services, calls):
    session = client.post("/sessions").json()
    assert session["phase"] == "idle"
    assert (session["used"], session["limit"]) == (0, 2)

    assert _upload(client, session["session_id"], png_bytes).status_code == 202

    state = client.get(f"/sessions/{session['session_id']}").json()
    assert state["phase"] == "succeeded"
    assert state["output"] == "https://s3/cat-out.png"
    assert state["loading"] is False
    assert state["used"] == 1
    assert calls == [("POST", "/api/predictions"), ("GET", "/api/predictions/p1")]
    assert services.results.records == {}

    preview = client.get(f"/sessions/{session['session_id']}/preview")
    assert preview.status_code == 200
    assert preview.headers["content-type"] == "image/png"


def test_gate_returns_402_without_network(client, png_bytes, services, calls):
    session_id = client.post("/sessions").json()["session_id"]
    services.quota._used[f"anon:{session_id}"] = 2

    response = _upload(client, session_id, png_bytes)

    assert response.status_code == 402
    assert response.json()["gate"]["action"] == "sign_in"
    assert calls == []
    services.storage.upload.assert_not_awaited()


def test_sign_in_lifts_gate(client, png_bytes, services):
    session_id = client.post("/sessions").json()["session_id"]
    services.quota._used[f"anon:{session_id}"] = 2
    _upload(client, session_id, png_bytes)
    token = TokenIdentityProvider(SECRET).issue_token(Identity(id="u1"))

    state = client.post(f"/sessions/{session_id}/sign-in", json={"token": token}).json()

    assert state["signed_in"] is True
    assert state["gate"] is None
    assert state["limit"] == 102

    assert _upload(client, session_id, png_bytes).status_code == 202
    assert len(services.results.for_profile("u1")) == 1


def test_sign_in_rejects_bad_token(client):
    session_id = client.post("/sessions").json()["session_id"]
    response = client.post(f"/sessions/{session_id}/sign-in", json={"token": "nope"})
    assert response.status_code == 401


def test_signed_in_session_from_header(client, png_bytes, services):
    token = TokenIdentityProvider(SECRET).issue_token(Identity(id="u9"))
    session = client.post("/sessions", headers={"Authorization": f"Bearer {token}"}).json()
    assert session["signed_in"] is True
    provider = client.app.state.registry.identity_provider(session["session_id"])
    assert provider.current() == Identity(id="u9")

    _upload(client, session["session_id"], png_bytes)

    saved = services.results.for_profile("u9")
    assert [r.output for r in saved] == ["https://s3/cat-out.png"]


def test_download_and_reset(client, png_bytes):
    session_id = client.post("/sessions").json()["session_id"]
    _upload(client, session_id, png_bytes)

    assert client.get(f"/sessions/{session_id}/download").status_code == 400
    assert client.post(f"/sessions/{session_id}/result-loaded").json()["result_loaded"] is True

    with patch("bgremover_app.api.fetch_output", return_value=b"cutout") as fetch:
        response = client.get(f"/sessions/{session_id}/download")
    assert response.status_code == 200
    assert response.content == b"cutout"
    assert response.headers["content-disposition"] == "attachment; filename=\"cat-new.png\"; filename*=UTF-8''cat-new.png"
    fetch.assert_called_once_with("https://s3/cat-out.png", 30)

    state = client.post(f"/sessions/{session_id}/reset").json()
    assert state["phase"] == "idle"
    assert state["output"] is None
    assert state["preview_url"] is None
    assert client.post(f"/sessions/{session_id}/reset").json() == state
    assert client.get(f"/sessions/{session_id}/preview").status_code == 404


def test_unknown_session(client):
    assert client.get("/sessions/missing").status_code == 404


def test_close_session(client):
    session_id = client.post("/sessions").json()["session_id"]
    assert client.delete(f"/sessions/{session_id}").status_code == 204
    assert client.get(f"/sessions/{session_id}").status_code == 404


def test_download_with_non_ascii_name(client, png_bytes):
    session_id = client.post("/sessions").json()["session_id"]
    _upload(client, session_id, png_bytes, name="фото.png")
    client.post(f"/sessions/{session_id}/result-loaded")

    with patch("bgremover_app.api.fetch_output", return_value=b"cutout"):
        response = client.get(f"/sessions/{session_id}/download")

    assert response.status_code == 200
    disposition = response.headers["content-disposition"]
    assert 'filename="____-new.png"' in disposition
    assert "filename*=UTF-8''%D1%84%D0%BE%D1%82%D0%BE-new.png" in disposition


def test_signed_in_quota_runs_out_after_saved_results(client, png_bytes, services, calls):
    token = TokenIdentityProvider(SECRET).issue_token(Identity(id="u5"))
    session_id = client.post("/sessions", headers={"Authorization": f"Bearer {token}"}).json()["session_id"]
    for n in range(102):
        result = PersistedResult(input=f"https://s3/{n}.png", output=f"https://o/{n}.png", profile="u5")
        services.results.records[result.id] = result

    response = _upload(client, session_id, png_bytes)

    assert response.status_code == 402
    body = response.json()
    assert body["gate"]["action"] == "purchase"
    assert (body["used"], body["limit"]) == (102, 102)
    assert calls == []


def _registry(settings, previews):
    now = [0.0]
    context = SessionContext(
        storage=AsyncMock(),
        predictions=AsyncMock(),
        quota=InMemoryQuotaStore(),
        results=InMemoryResultStore(),
        previews=previews,
        settings=settings,
    )
    return SessionRegistry(context, clock=lambda: now[0]), now


def _with_preview(session, previews, png_bytes, phase=SessionPhase.SUCCEEDED):
    preview = previews.create(png_bytes)
    session.state = SessionState(
        phase=phase,
        local_file=UploadedFile(name="cat.png", content_type="image/png", data=png_bytes, preview=preview),
    )
    return preview


def test_registry_sweeps_idle_sessions(settings, png_bytes):
    previews = PreviewRegistry()
    registry, now = _registry(settings.model_copy(update={"session_idle_ttl_seconds": 60.0}), previews)
    idle = registry.create()
    busy = registry.create()
    fresh = registry.create()
    idle_preview = _with_preview(idle, previews, png_bytes)
    _with_preview(busy, previews, png_bytes, phase=SessionPhase.POLLING)

    now[0] = 30.0
    registry.get(fresh.session_id)
    now[0] = 61.0

    assert registry.sweep() == 1
    assert len(registry) == 2
    assert previews.is_revoked(idle_preview)
    assert len(previews) == 1
    assert registry.get(busy.session_id) is busy
    assert registry.get(fresh.session_id) is fresh
    with pytest.raises(HTTPException):
        registry.get(idle.session_id)


def test_registry_sweeps_before_opening_a_session(settings):
    registry, now = _registry(settings.model_copy(update={"session_idle_ttl_seconds": 10.0}), PreviewRegistry())
    for _ in range(3):
        registry.create()

    now[0] = 11.0
    registry.create()

    assert len(registry) == 1

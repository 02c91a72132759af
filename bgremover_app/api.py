"""
FastAPI layer for the background-removal front end.

Endpoints:
 - GET /health
 - POST /api/predictions, GET /api/predictions/{id}   (provider proxy)
 - POST /sessions                                     (open a session)
 - GET /sessions/{id}                                 (state + usage)
 - GET /sessions/{id}/preview                         (local preview PNG)
 - POST /sessions/{id}/uploads                        (start a submission)
 - POST /sessions/{id}/reset
 - POST /sessions/{id}/result-loaded
 - GET /sessions/{id}/download
 - POST /sessions/{id}/sign-in
 - POST /sessions/{id}/gate/close
 - DELETE /sessions/{id}
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager, suppress
import logging
import time
from typing import Callable, Dict, Optional
import uuid

import httpx
from fastapi import BackgroundTasks, FastAPI, File, Header, HTTPException, Request, UploadFile, status
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel
import requests
from starlette.concurrency import run_in_threadpool

from . import config
from .download import content_disposition, fetch_output
from .identity import TokenIdentityProvider
from .models import GatePrompt, UsageCounter
from .predictions import PredictionClient
from .proxy import make_predictions_router
from .services import Services, default_services
from .session import RemovalSession, SessionContext, SessionState

logger = logging.getLogger(__name__)


class GateResponse(BaseModel):
    title: str
    message: str
    action: str
    note: Optional[str] = None


class SessionStateResponse(BaseModel):
    session_id: str
    phase: str
    loading: bool
    error: Optional[str] = None
    prediction_id: Optional[str] = None
    prediction_status: Optional[str] = None
    output: Optional[str] = None
    preview_url: Optional[str] = None
    storage_url: Optional[str] = None
    result_loaded: bool
    photo_name: Optional[str] = None
    gate: Optional[GateResponse] = None
    signed_in: bool
    used: int
    limit: int


class SignInRequest(BaseModel):
    token: str


def _gate_response(prompt: Optional[GatePrompt]) -> Optional[GateResponse]:
    if prompt is None:
        return None
    return GateResponse(title=prompt.title, message=prompt.message, action=prompt.action, note=prompt.note)


def _state_response(session: RemovalSession, state: SessionState, usage: UsageCounter) -> SessionStateResponse:
    prediction = state.prediction
    return SessionStateResponse(
        session_id=session.session_id,
        phase=state.phase.value,
        loading=state.loading,
        error=state.error,
        prediction_id=prediction.id if prediction else None,
        prediction_status=prediction.status.value if prediction else None,
        output=state.output,
        preview_url=state.local_file.preview.url if state.local_file else None,
        storage_url=state.storage_url,
        result_loaded=state.result_loaded,
        photo_name=state.photo_name,
        gate=_gate_response(state.gate),
        signed_in=session.identity is not None,
        used=usage.used,
        limit=usage.limit,
    )


class SessionRegistry:
    """
    In-process sessions keyed by id; each gets its own identity provider.

    Sessions untouched for `session_idle_ttl_seconds` are closed by `sweep()`,
    which releases their previews. Sessions with a submission in flight are kept.
    """

    def __init__(self, context: SessionContext, clock: Callable[[], float] = time.monotonic):
        self.context = context
        self.clock = clock
        self._sessions: Dict[str, RemovalSession] = {}
        self._identities: Dict[str, TokenIdentityProvider] = {}
        self._last_seen: Dict[str, float] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def create(self, token: Optional[str] = None) -> RemovalSession:
        self.sweep()
        settings = self.context.settings
        provider = TokenIdentityProvider(settings.jwt_secret, settings.jwt_algorithm)
        session_id = uuid.uuid4().hex
        session = RemovalSession(session_id, self.context, identity=provider.resolve(token))
        self._sessions[session_id] = session
        self._identities[session_id] = provider
        self._last_seen[session_id] = self.clock()
        return session

    def get(self, session_id: str) -> RemovalSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown session")
        self._last_seen[session_id] = self.clock()
        return session

    def identity_provider(self, session_id: str) -> TokenIdentityProvider:
        return self._identities[session_id]

    def close(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        self._identities.pop(session_id, None)
        self._last_seen.pop(session_id, None)
        if session is not None:
            session.close()

    def close_all(self) -> None:
        for session_id in list(self._sessions):
            self.close(session_id)

    def sweep(self) -> int:
        ttl = self.context.settings.session_idle_ttl_seconds
        now = self.clock()
        stale = [
            session_id
            for session_id, seen in self._last_seen.items()
            if now - seen > ttl and not self._sessions[session_id].busy
        ]
        for session_id in stale:
            logger.info("Closing idle session %s", session_id)
            self.close(session_id)
        return len(stale)


async def _sweep_sessions(registry: SessionRegistry, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        registry.sweep()


def _bearer(authorization: Optional[str]) -> Optional[str]:
    if authorization and authorization.lower().startswith("bearer "):
        return authorization[7:].strip()
    return None


def create_app(
    settings: Optional[config.Settings] = None,
    services: Optional[Services] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    settings = settings or config.get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        sweeper = asyncio.create_task(_sweep_sessions(app.state.registry, settings.session_sweep_interval_seconds))
        try:
            yield
        finally:
            sweeper.cancel()
            with suppress(asyncio.CancelledError):
                await sweeper
            app.state.registry.close_all()
            await app.state.http.aclose()

    app = FastAPI(title="Background Removal", version="0.1.0", lifespan=lifespan)

    http = httpx.AsyncClient(transport=transport, timeout=settings.request_timeout_seconds)
    services = services or default_services(settings)
    context = SessionContext(
        storage=services.storage,
        predictions=PredictionClient(http, settings.predictions_base_url),
        quota=services.quota,
        results=services.results,
        previews=services.previews,
        settings=settings,
    )
    app.state.http = http
    app.state.registry = SessionRegistry(context)
    app.include_router(make_predictions_router(http, settings))

    def registry(request: Request) -> SessionRegistry:
        return request.app.state.registry

    async def render(session: RemovalSession) -> SessionStateResponse:
        return _state_response(session, session.state, await session.usage())

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.post("/sessions", response_model=SessionStateResponse, status_code=status.HTTP_201_CREATED)
    async def open_session(request: Request, authorization: Optional[str] = Header(None)):
        session = registry(request).create(_bearer(authorization))
        logger.info("Opened session %s signed_in=%s", session.session_id, session.identity is not None)
        return await render(session)

    @app.get("/sessions/{session_id}", response_model=SessionStateResponse)
    async def get_session(session_id: str, request: Request):
        return await render(registry(request).get(session_id))

    @app.get("/sessions/{session_id}/preview")
    def get_preview(session_id: str, request: Request):
        session = registry(request).get(session_id)
        local_file = session.state.local_file
        png = session.context.previews.get(local_file.preview) if local_file else None
        if png is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No preview")
        return Response(content=png, media_type="image/png")

    @app.post("/sessions/{session_id}/uploads", response_model=SessionStateResponse, status_code=status.HTTP_202_ACCEPTED)
    async def upload(session_id: str, request: Request, background_tasks: BackgroundTasks, file: UploadFile = File(...)):
        session = registry(request).get(session_id)
        if session.busy:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="A submission is already in progress")
        prompt = await session.check_gate()
        if prompt is not None:
            body = await render(session)
            return JSONResponse(status_code=status.HTTP_402_PAYMENT_REQUIRED, content=body.model_dump())

        data = await file.read()
        filename = file.filename or "photo.png"
        background_tasks.add_task(session.submit, filename, data, file.content_type)
        return await render(session)

    @app.post("/sessions/{session_id}/reset", response_model=SessionStateResponse)
    async def reset(session_id: str, request: Request):
        session = registry(request).get(session_id)
        session.reset()
        return await render(session)

    @app.post("/sessions/{session_id}/result-loaded", response_model=SessionStateResponse)
    async def result_loaded(session_id: str, request: Request):
        session = registry(request).get(session_id)
        if not session.mark_result_loaded():
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No result to show yet")
        return await render(session)

    @app.get("/sessions/{session_id}/download")
    async def download(session_id: str, request: Request):
        session = registry(request).get(session_id)
        output = session.state.output
        if output is None or not session.state.result_loaded:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No finished result to download")
        try:
            content = await run_in_threadpool(fetch_output, output, settings.request_timeout_seconds)
        except requests.RequestException as exc:
            logger.exception("Failed to fetch output %s: %s", output, exc)
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Could not download result") from exc
        filename = session.download_name()
        return Response(
            content=content,
            media_type="image/png",
            headers={"Content-Disposition": content_disposition(filename)},
        )

    @app.post("/sessions/{session_id}/sign-in", response_model=SessionStateResponse)
    async def sign_in(session_id: str, body: SignInRequest, request: Request):
        reg = registry(request)
        session = reg.get(session_id)
        identity = await session.sign_in(reg.identity_provider(session_id), body.token)
        if identity is None:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Sign-in failed")
        return await render(session)

    @app.post("/sessions/{session_id}/gate/close", response_model=SessionStateResponse)
    async def close_gate(session_id: str, request: Request):
        session = registry(request).get(session_id)
        session.close_gate()
        return await render(session)

    @app.delete("/sessions/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
    def close_session(session_id: str, request: Request):
        reg = registry(request)
        reg.get(session_id)
        reg.close(session_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    return app


settings = config.get_settings()
logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))

app = create_app(settings)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)

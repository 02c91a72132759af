"""
Per-user removal session: the upload -> create -> poll -> finalize flow.

`RemovalSession.submit` runs one submission to completion:

    idle -> uploading -> awaiting_job -> polling* -> succeeded | failed

Everything the UI shows lives in `SessionState`, replaced (never mutated in
place) on each transition and pushed to subscribers. Each submission owns a
CancellationToken; `reset()` or a newer submission cancels it, after which the
old flow stops at its next suspension point without touching state, quota or
the document store.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, replace
from enum import Enum
import logging
from pathlib import Path
from typing import Awaitable, Callable, List, Optional

from . import config
from .download import append_new_to_name, download_photo
from .identity import IdentityProvider
from .models import (
    FailedPrediction,
    GatePrompt,
    Identity,
    PersistedResult,
    Prediction,
    SessionPhase,
    SucceededPrediction,
    UploadedFile,
    UsageCounter,
)
from .predictions import PredictionClient, PredictionRequestError
from .preview import PreviewRegistry
from .quota import QuotaStore, gate_prompt, scope_for
from .results import ResultStore
from .storage import Storage

logger = logging.getLogger(__name__)

ACTIVE_PHASES = frozenset({SessionPhase.UPLOADING, SessionPhase.AWAITING_JOB, SessionPhase.POLLING})


class SubmissionOutcome(str, Enum):
    GATED = "gated"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ResultNotReadyError(Exception):
    pass


class CancellationToken:
    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


@dataclass(frozen=True)
class SessionState:
    phase: SessionPhase = SessionPhase.IDLE
    loading: bool = False
    error: Optional[str] = None
    prediction: Optional[Prediction] = None
    local_file: Optional[UploadedFile] = None
    storage_url: Optional[str] = None
    result_loaded: bool = False
    gate: Optional[GatePrompt] = None
    photo_name: Optional[str] = None

    @property
    def output(self) -> Optional[str]:
        if isinstance(self.prediction, SucceededPrediction):
            return self.prediction.output
        return None


@dataclass
class SessionContext:
    """Collaborators a session talks to. Passed in explicitly so the flow runs in isolation."""

    storage: Storage
    predictions: PredictionClient
    quota: QuotaStore
    results: ResultStore
    previews: PreviewRegistry
    settings: config.Settings = field(default_factory=config.get_settings)
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep


StateListener = Callable[[SessionState], None]


class RemovalSession:
    def __init__(self, session_id: str, context: SessionContext, identity: Optional[Identity] = None):
        self.session_id = session_id
        self.context = context
        self.identity = identity
        self.state = SessionState()
        self._token: Optional[CancellationToken] = None
        self._listeners: List[StateListener] = []

    # -- observation -------------------------------------------------------

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def _publish(self, state: SessionState) -> None:
        self.state = state
        for listener in list(self._listeners):
            listener(self.state)

    def _update(self, **changes) -> None:
        self._publish(replace(self.state, **changes))

    @property
    def busy(self) -> bool:
        return self.state.phase in ACTIVE_PHASES

    # -- quota ---------------------------------------------------------------

    def _scope(self, identity: Optional[Identity]) -> str:
        return scope_for(self.session_id, identity)

    def _limit(self, identity: Optional[Identity]) -> int:
        return config.limit_for(identity is not None, self.context.settings)

    async def usage(self) -> UsageCounter:
        identity = self.identity
        return await self.context.quota.get(self._scope(identity), self._limit(identity))

    async def check_gate(self, identity: Optional[Identity] = None) -> Optional[GatePrompt]:
        """Open the quota gate if the counter is used up; returns the prompt when it did."""
        identity = identity if identity is not None else self.identity
        usage = await self.context.quota.get(self._scope(identity), self._limit(identity))
        if not usage.exhausted:
            return None
        logger.info("Session %s gated at %d/%d", self.session_id, usage.used, usage.limit)
        prompt = gate_prompt(identity, self.context.settings)
        self._update(gate=prompt)
        return prompt

    # -- submission ----------------------------------------------------------

    def _release_preview(self) -> None:
        local_file = self.state.local_file
        if local_file is not None:
            self.context.previews.revoke(local_file.preview)
            self._update(local_file=None)

    def _fail(self, detail: str) -> SubmissionOutcome:
        logger.info("Session %s failed: %s", self.session_id, detail)
        self._update(phase=SessionPhase.FAILED, error=detail, loading=False)
        return SubmissionOutcome.FAILED

    async def submit(self, filename: str, data: bytes, content_type: Optional[str] = None) -> SubmissionOutcome:
        """
        Run one submission for the selected file.

        Returns GATED without any network traffic when the quota is used up,
        CANCELLED when reset or superseded mid-flight, otherwise the terminal
        outcome. Handled failures never raise; they land in `state.error`.
        """
        ctx = self.context
        identity = self.identity
        scope, limit = self._scope(identity), self._limit(identity)

        if await self.check_gate(identity) is not None:
            return SubmissionOutcome.GATED

        if self._token is not None:
            self._token.cancel()
        token = self._token = CancellationToken()

        self._release_preview()
        try:
            preview = await asyncio.to_thread(ctx.previews.create, data)
        except ValueError as exc:
            if token.cancelled:
                return SubmissionOutcome.CANCELLED
            self._update(local_file=None, storage_url=None, prediction=None, result_loaded=False)
            return self._fail(str(exc))
        if token.cancelled:
            ctx.previews.revoke(preview)
            return SubmissionOutcome.CANCELLED

        content_type = content_type or "application/octet-stream"
        self._update(
            phase=SessionPhase.UPLOADING,
            loading=True,
            error=None,
            prediction=None,
            storage_url=None,
            result_loaded=False,
            photo_name=filename,
            local_file=UploadedFile(name=filename, content_type=content_type, data=data, preview=preview),
        )

        try:
            url = await ctx.storage.upload(data, filename, content_type)
        except Exception as exc:  # noqa: BLE001
            if token.cancelled:
                return SubmissionOutcome.CANCELLED
            logger.exception("Upload failed for session %s", self.session_id)
            return self._fail(f"Upload failed: {exc}")
        if token.cancelled:
            return SubmissionOutcome.CANCELLED
        self._update(storage_url=url, phase=SessionPhase.AWAITING_JOB)

        try:
            prediction = await ctx.predictions.create(url)
        except PredictionRequestError as exc:
            if token.cancelled:
                return SubmissionOutcome.CANCELLED
            logger.error("Prediction error for session %s: %s", self.session_id, exc.detail)
            return self._fail(exc.detail)
        if token.cancelled:
            return SubmissionOutcome.CANCELLED
        self._update(prediction=prediction, phase=SessionPhase.POLLING)

        while not prediction.is_terminal:
            await ctx.sleep(ctx.settings.poll_interval_seconds)
            if token.cancelled:
                return SubmissionOutcome.CANCELLED
            try:
                prediction = await ctx.predictions.get(prediction.id)
            except PredictionRequestError as exc:
                if token.cancelled:
                    return SubmissionOutcome.CANCELLED
                logger.error("Poll error for prediction %s in session %s: %s", prediction.id, self.session_id, exc.detail)
                return self._fail(exc.detail)
            if token.cancelled:
                return SubmissionOutcome.CANCELLED
            logger.debug("Prediction %s is %s", prediction.id, prediction.status.value)
            self._update(prediction=prediction, loading=False)

        if isinstance(prediction, FailedPrediction):
            return self._fail(prediction.detail)

        try:
            if identity is not None:
                await ctx.results.create(PersistedResult(input=url, output=prediction.output, profile=identity.id))
            else:
                await ctx.quota.increment(scope, limit)
        except Exception as exc:  # noqa: BLE001
            if token.cancelled:
                return SubmissionOutcome.CANCELLED
            logger.exception("Could not record prediction %s for session %s", prediction.id, self.session_id)
            return self._fail(f"Could not save result: {exc}")
        if token.cancelled:
            return SubmissionOutcome.CANCELLED
        self._update(phase=SessionPhase.SUCCEEDED, loading=False)
        logger.info("Prediction %s succeeded: %s", prediction.id, prediction.output)
        return SubmissionOutcome.SUCCEEDED

    # -- reset / display -----------------------------------------------------

    def reset(self) -> None:
        """Back to idle: drop the file, storage URL, result flag, error and prediction."""
        if self._token is not None:
            self._token.cancel()
            self._token = None
        self._release_preview()
        self._publish(SessionState())

    def mark_result_loaded(self) -> bool:
        """Called once the output image finished loading client-side."""
        if self.state.output is None:
            return False
        self._update(result_loaded=True)
        return True

    def download_name(self) -> str:
        name = self.state.photo_name or "photo.png"
        return append_new_to_name(name, self.context.settings.download_suffix)

    async def download(self, dest_dir: Path) -> Path:
        output = self.state.output
        if output is None or not self.state.result_loaded:
            raise ResultNotReadyError("No finished result to download")
        return await asyncio.to_thread(
            download_photo,
            output,
            self.download_name(),
            Path(dest_dir),
            self.context.settings.request_timeout_seconds,
        )

    # -- quota gate ----------------------------------------------------------

    def close_gate(self) -> None:
        self._update(gate=None)

    async def sign_in(self, provider: IdentityProvider, credential: str) -> Optional[Identity]:
        identity = await provider.sign_in(credential)
        if identity is not None:
            self.identity = identity
            self.close_gate()
        return identity

    def close(self) -> None:
        """Session teardown: stop any in-flight flow and release the preview."""
        if self._token is not None:
            self._token.cancel()
            self._token = None
        self._release_preview()

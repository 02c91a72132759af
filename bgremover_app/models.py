"""
Domain types shared by the submission flow, the collaborators, and the API.

Predictions are modelled as a small tagged variant: one dataclass per status,
built from the provider's JSON by `parse_prediction`. Callers branch on the
class (or `is_terminal`) instead of comparing raw status strings.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Union
import uuid


class PredictionStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


# Provider statuses outside our four collapse onto the nearest one.
_STATUS_ALIASES = {
    "starting": PredictionStatus.PENDING,
    "queued": PredictionStatus.PENDING,
    "canceled": PredictionStatus.FAILED,
    "cancelled": PredictionStatus.FAILED,
}


@dataclass(frozen=True)
class PendingPrediction:
    id: str
    raw: Dict[str, Any] = field(default_factory=dict, compare=False)
    status = PredictionStatus.PENDING
    is_terminal = False


@dataclass(frozen=True)
class ProcessingPrediction:
    id: str
    raw: Dict[str, Any] = field(default_factory=dict, compare=False)
    status = PredictionStatus.PROCESSING
    is_terminal = False


@dataclass(frozen=True)
class SucceededPrediction:
    id: str
    output: str
    raw: Dict[str, Any] = field(default_factory=dict, compare=False)
    status = PredictionStatus.SUCCEEDED
    is_terminal = True


@dataclass(frozen=True)
class FailedPrediction:
    id: str
    detail: str
    raw: Dict[str, Any] = field(default_factory=dict, compare=False)
    status = PredictionStatus.FAILED
    is_terminal = True


Prediction = Union[PendingPrediction, ProcessingPrediction, SucceededPrediction, FailedPrediction]


def _resolve_output(output: Any) -> Optional[str]:
    # Some models return a list of frames/files; the last one is the final image.
    if isinstance(output, (list, tuple)):
        output = output[-1] if output else None
    if output is None:
        return None
    return str(output)


def parse_prediction(payload: Dict[str, Any]) -> Prediction:
    """
    Build a Prediction variant from the provider's job JSON.

    Raises:
        ValueError: when the payload has no id or an unknown status.
    """
    if not isinstance(payload, dict) or not payload.get("id"):
        raise ValueError("Prediction payload is missing an id")
    prediction_id = str(payload["id"])
    raw_status = str(payload.get("status") or "").lower()
    status = _STATUS_ALIASES.get(raw_status)
    if status is None:
        try:
            status = PredictionStatus(raw_status)
        except ValueError as exc:
            raise ValueError(f"Unknown prediction status: {raw_status!r}") from exc

    if status is PredictionStatus.PENDING:
        return PendingPrediction(id=prediction_id, raw=payload)
    if status is PredictionStatus.PROCESSING:
        return ProcessingPrediction(id=prediction_id, raw=payload)
    if status is PredictionStatus.SUCCEEDED:
        output = _resolve_output(payload.get("output"))
        if output is None:
            return FailedPrediction(
                id=prediction_id, detail="Prediction finished without output", raw=payload
            )
        return SucceededPrediction(id=prediction_id, output=output, raw=payload)

    detail = payload.get("detail") or payload.get("error")
    if not detail:
        detail = "Prediction was canceled" if raw_status.startswith("cancel") else "Prediction failed"
    return FailedPrediction(id=prediction_id, detail=str(detail), raw=payload)


class SessionPhase(str, Enum):
    IDLE = "idle"
    UPLOADING = "uploading"
    AWAITING_JOB = "awaiting_job"
    POLLING = "polling"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class Identity:
    id: str
    email: Optional[str] = None
    name: Optional[str] = None


@dataclass(frozen=True)
class PreviewRef:
    """Handle to a locally generated preview; resolved through the preview registry."""

    key: str

    @property
    def url(self) -> str:
        return f"preview://{self.key}"


@dataclass
class UploadedFile:
    name: str
    content_type: str
    data: bytes = field(repr=False)
    preview: PreviewRef


@dataclass
class UsageCounter:
    used: int
    limit: int

    @property
    def exhausted(self) -> bool:
        return self.used >= self.limit

    @property
    def remaining(self) -> int:
        return max(self.limit - self.used, 0)


@dataclass(frozen=True)
class PersistedResult:
    input: str
    output: str
    profile: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def to_document(self) -> Dict[str, Any]:
        return {
            "_id": self.id,
            "input": self.input,
            "output": self.output,
            "profile": self.profile,
            "createdAt": self.created_at,
        }


@dataclass(frozen=True)
class GatePrompt:
    title: str
    message: str
    action: str  # "sign_in" | "purchase"
    note: Optional[str] = None

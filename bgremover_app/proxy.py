"""
Prediction proxy routes.

The browser never sees the provider token: it calls these routes, which
forward to the Replicate-compatible predictions API.

Endpoints:
 - POST /api/predictions
 - GET /api/predictions/{prediction_id}
"""

from __future__ import annotations

import logging

import httpx
from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from . import config

logger = logging.getLogger(__name__)


class CreatePredictionRequest(BaseModel):
    image: str


def _upstream_detail(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text or f"Upstream returned {resp.status_code}"
    if isinstance(body, dict) and body.get("detail"):
        return str(body["detail"])
    return f"Upstream returned {resp.status_code}"


def _error(detail: str) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"detail": detail})


def make_predictions_router(client: httpx.AsyncClient, settings: config.Settings) -> APIRouter:
    router = APIRouter(prefix="/api/predictions", tags=["predictions"])

    def _headers() -> dict:
        return {
            "Authorization": f"Token {settings.replicate_api_token}",
            "Content-Type": "application/json",
        }

    @router.post("")
    async def create_prediction(body: CreatePredictionRequest):
        if not settings.replicate_api_token:
            return _error("Prediction provider is not configured")
        try:
            resp = await client.post(
                settings.replicate_api_url,
                headers=_headers(),
                json={"version": settings.replicate_model_version, "input": {"image": body.image}},
                timeout=settings.request_timeout_seconds,
            )
        except httpx.HTTPError as exc:
            logger.exception("Prediction provider unreachable: %s", exc)
            return _error("Prediction provider unreachable")

        if resp.status_code != status.HTTP_201_CREATED:
            detail = _upstream_detail(resp)
            logger.error("Prediction create rejected (%s): %s", resp.status_code, detail)
            return _error(detail)
        return JSONResponse(status_code=status.HTTP_201_CREATED, content=resp.json())

    @router.get("/{prediction_id}")
    async def get_prediction(prediction_id: str):
        if not settings.replicate_api_token:
            return _error("Prediction provider is not configured")
        try:
            resp = await client.get(
                f"{settings.replicate_api_url.rstrip('/')}/{prediction_id}",
                headers=_headers(),
                timeout=settings.request_timeout_seconds,
            )
        except httpx.HTTPError as exc:
            logger.exception("Prediction provider unreachable: %s", exc)
            return _error("Prediction provider unreachable")

        if resp.status_code != status.HTTP_200_OK:
            return _error(_upstream_detail(resp))
        return JSONResponse(status_code=status.HTTP_200_OK, content=resp.json())

    return router

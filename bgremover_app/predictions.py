"""
Async client for the prediction endpoints: create a job, fetch it by id.

Both calls return a parsed Prediction or raise PredictionRequestError carrying
the `detail` the server sent back.
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from .models import Prediction, parse_prediction

logger = logging.getLogger(__name__)


class PredictionRequestError(Exception):
    def __init__(self, detail: str, status_code: Optional[int] = None):
        super().__init__(detail)
        self.detail = detail
        self.status_code = status_code


def _error_detail(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and body.get("detail"):
        return str(body["detail"])
    return f"Prediction request failed with status {resp.status_code}"


class PredictionClient:
    def __init__(self, client: httpx.AsyncClient, base_url: str):
        self.client = client
        self.base_url = base_url.rstrip("/")

    async def _send(self, method: str, url: str, expected_status: int, **kwargs) -> Prediction:
        try:
            resp = await self.client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise PredictionRequestError(str(exc) or exc.__class__.__name__) from exc

        if resp.status_code != expected_status:
            raise PredictionRequestError(_error_detail(resp), resp.status_code)
        try:
            return parse_prediction(resp.json())
        except ValueError as exc:
            raise PredictionRequestError(f"Malformed prediction response: {exc}", resp.status_code) from exc

    async def create(self, image_url: str) -> Prediction:
        return await self._send("POST", self.base_url, 201, json={"image": image_url})

    async def get(self, prediction_id: str) -> Prediction:
        return await self._send("GET", f"{self.base_url}/{prediction_id}", 200)

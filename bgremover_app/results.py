"""Document-store collaborator: write-once records of finished removals."""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Protocol

from .models import PersistedResult

logger = logging.getLogger(__name__)


class ResultStore(Protocol):
    async def create(self, result: PersistedResult) -> str:
        ...


class MongoResultStore:
    def __init__(self, collection):
        self.collection = collection

    async def create(self, result: PersistedResult) -> str:
        await asyncio.to_thread(self.collection.insert_one, result.to_document())
        logger.info("Saved prediction %s for profile=%s", result.id, result.profile)
        return result.id


class InMemoryResultStore:
    def __init__(self):
        self.records: Dict[str, PersistedResult] = {}

    async def create(self, result: PersistedResult) -> str:
        if result.id in self.records:
            raise ValueError(f"Result {result.id} already exists")
        self.records[result.id] = result
        return result.id

    def for_profile(self, profile: str) -> List[PersistedResult]:
        return [r for r in self.records.values() if r.profile == profile]

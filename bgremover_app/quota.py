"""
Quota collaborator and the gate shown once a session runs out of credits.

Counters are keyed by scope: `anon:<session id>` for anonymous sessions,
`user:<profile id>` for signed-in ones. Signed-in usage is not counted
separately: it is the number of results saved for the profile. The gate
check is advisory (read-then-act); two submissions fired before the counter
moves can both pass.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, Optional, Protocol

from pymongo import ReturnDocument

from . import config
from .models import GatePrompt, Identity, UsageCounter
from .results import InMemoryResultStore

logger = logging.getLogger(__name__)


def scope_for(session_id: str, identity: Optional[Identity]) -> str:
    if identity is not None:
        return f"user:{identity.id}"
    return f"anon:{session_id}"


def profile_of(scope: str) -> Optional[str]:
    if scope.startswith("user:"):
        return scope[len("user:"):]
    return None


class QuotaStore(Protocol):
    async def get(self, scope: str, limit: int) -> UsageCounter:
        ...

    async def increment(self, scope: str, limit: int) -> UsageCounter:
        ...


class InMemoryQuotaStore:
    def __init__(self, initial: Optional[Dict[str, int]] = None, results: Optional[InMemoryResultStore] = None):
        self._used: Dict[str, int] = dict(initial or {})
        self.results = results
        self._lock = asyncio.Lock()

    async def get(self, scope: str, limit: int) -> UsageCounter:
        profile = profile_of(scope)
        if profile is not None and self.results is not None:
            return UsageCounter(used=len(self.results.for_profile(profile)), limit=limit)
        return UsageCounter(used=self._used.get(scope, 0), limit=limit)

    async def increment(self, scope: str, limit: int) -> UsageCounter:
        async with self._lock:
            self._used[scope] = self._used.get(scope, 0) + 1
            return UsageCounter(used=self._used[scope], limit=limit)


class MongoQuotaStore:
    """
    Anonymous counters live in a `usage` collection, one document per scope
    (`{_id: scope, used: n}`). Signed-in usage counts the profile's documents
    in the results collection.
    """

    def __init__(self, collection, results_collection=None):
        self.collection = collection
        self.results_collection = results_collection

    async def get(self, scope: str, limit: int) -> UsageCounter:
        profile = profile_of(scope)
        if profile is not None and self.results_collection is not None:
            used = await asyncio.to_thread(self.results_collection.count_documents, {"profile": profile})
            return UsageCounter(used=int(used), limit=limit)
        doc = await asyncio.to_thread(self.collection.find_one, {"_id": scope})
        used = int(doc["used"]) if doc else 0
        return UsageCounter(used=used, limit=limit)

    async def increment(self, scope: str, limit: int) -> UsageCounter:
        doc = await asyncio.to_thread(
            self.collection.find_one_and_update,
            {"_id": scope},
            {"$inc": {"used": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return UsageCounter(used=int(doc["used"]), limit=limit)


def gate_prompt(identity: Optional[Identity], settings: Optional[config.Settings] = None) -> GatePrompt:
    """Prompt shown when the counter is exhausted: sign in when anonymous, buy credits otherwise."""
    settings = settings or config.get_settings()
    message = "Oh oh, you've used up all your credits."
    if identity is None:
        bonus = settings.signed_in_limit - settings.anonymous_limit
        return GatePrompt(
            title="Sign in to continue",
            message=message,
            action="sign_in",
            note=f"Good news is by signing up you get an additional {bonus} free credits!",
        )
    return GatePrompt(title="Purchase more credits to continue", message=message, action="purchase")

"""Default collaborator wiring, importable without building the web app."""

from __future__ import annotations

from dataclasses import dataclass
import logging

from pymongo import MongoClient

from . import config
from .preview import PreviewRegistry
from .quota import InMemoryQuotaStore, MongoQuotaStore, QuotaStore
from .results import InMemoryResultStore, MongoResultStore, ResultStore
from .storage import R2Storage, Storage

logger = logging.getLogger(__name__)


@dataclass
class Services:
    storage: Storage
    quota: QuotaStore
    results: ResultStore
    previews: PreviewRegistry


def default_services(settings: config.Settings) -> Services:
    if settings.mongo_url:
        db = MongoClient(settings.mongo_url)[settings.mongo_db_name]
        quota: QuotaStore = MongoQuotaStore(db["usage"], results_collection=db["predictions"])
        results: ResultStore = MongoResultStore(db["predictions"])
    else:
        logger.warning("MONGO_URL not set; quota and results are kept in memory")
        memory_results = InMemoryResultStore()
        quota = InMemoryQuotaStore(results=memory_results)
        results = memory_results
    return Services(
        storage=R2Storage(settings),
        quota=quota,
        results=results,
        previews=PreviewRegistry(settings.preview_max_edge),
    )

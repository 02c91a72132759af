from unittest.mock import MagicMock

import pytest

from bgremover_app.models import PersistedResult
from bgremover_app.results import InMemoryResultStore, MongoResultStore


@pytest.mark.asyncio
async def test_mongo_create_inserts_document():
    collection = MagicMock()
    result = PersistedResult(input="https://in", output="https://out", profile="u1")

    result_id = await MongoResultStore(collection).create(result)

    assert result_id == result.id
    collection.insert_one.assert_called_once_with(result.to_document())


@pytest.mark.asyncio
async def test_in_memory_is_write_once():
    store = InMemoryResultStore()
    result = PersistedResult(input="https://in", output="https://out", profile="u1")
    await store.create(result)
    with pytest.raises(ValueError):
        await store.create(result)
    assert store.for_profile("u1") == [result]

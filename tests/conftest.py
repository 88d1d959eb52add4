import asyncio

import pytest

from recall.core.dao import MemoryStore
from recall.core.schema import Memory, MemoryEmbedding


@pytest.fixture
def store(tmp_path):
    """Memory store on a throwaway SQLite file."""
    return MemoryStore(str(tmp_path / "recall.db"))


@pytest.fixture
def add_memory(store):
    """Persist a memory with a given vector and return it."""
    def _add(user_id, content, vector, title=None):
        memory = Memory(user_id=user_id, content=content, title=title)
        embedding = MemoryEmbedding(memory_id="", vector=vector, model_name="scripted")
        return asyncio.run(store.create(memory, embedding))
    return _add

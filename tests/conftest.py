"""
Shared fixtures for DocMirror tests.
"""

import pytest

from replica.docmirror.store.memory import InMemoryDocumentStore


@pytest.fixture
async def primary():
    """Connected in-memory primary store."""
    store = InMemoryDocumentStore(name="primary")
    await store.connect()
    yield store
    await store.close()


@pytest.fixture
async def mirror():
    """Connected in-memory mirror store."""
    store = InMemoryDocumentStore(name="mirror")
    await store.connect()
    yield store
    await store.close()

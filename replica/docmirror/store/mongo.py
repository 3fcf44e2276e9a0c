"""
MongoDB document store implementation.

This module provides the production backend for both sides of a sync,
built on the asyncio client shipped with pymongo. It works with:
- MongoDB Atlas
- Self-hosted replica sets (change streams need a replica set or sharded cluster)
- Standalone servers, as a mirror only

Invariants:
    - connect() pings the server so an unreachable store fails fast
    - Driver errors never leak: they are re-raised as StoreError subclasses
    - A change stream that ends (invalidate, closed cursor) ends the iterator

How to change safely:
    - Test against a real replica set before deploying
    - Keep upsert as replace_one(upsert=True) so replays stay idempotent
"""

from __future__ import annotations

import copy
import logging
from collections.abc import AsyncIterator, Mapping, Sequence
from typing import Any

from pymongo import AsyncMongoClient
from pymongo.errors import ConnectionFailure, PyMongoError

from .base import (
    KEY_FIELD,
    ChangeEvent,
    Document,
    DocumentNotFoundError,
    StoreConnectionError,
    StoreError,
)

logger = logging.getLogger(__name__)


class MongoDocumentStore:
    """MongoDB implementation of DocumentStore.

    Attributes:
        database: Database name
        collection_name: Collection name

    Example:
        >>> store = MongoDocumentStore("mongodb://localhost:27017", "efforts", "items")
        >>> await store.connect()
        >>> await store.upsert(1, {"name": "a"})
    """

    def __init__(
        self,
        uri: str,
        database: str,
        collection: str,
        server_selection_timeout_ms: int = 5000,
    ) -> None:
        """Initialize the store. No I/O happens until connect().

        Args:
            uri: MongoDB connection string
            database: Database name
            collection: Collection name
            server_selection_timeout_ms: How long to wait for a usable server
        """
        self._uri = uri
        self.database = database
        self.collection_name = collection
        self.server_selection_timeout_ms = server_selection_timeout_ms
        self._client: AsyncMongoClient | None = None
        self._collection: Any = None
        self._streams: list[Any] = []
        self._connected = False

    @property
    def is_connected(self) -> bool:
        """Whether connected to MongoDB."""
        return self._connected and self._client is not None

    async def connect(self) -> None:
        """Connect and verify the server answers.

        Raises:
            StoreConnectionError: If the server cannot be reached
        """
        if self._connected:
            return

        try:
            self._client = AsyncMongoClient(
                self._uri,
                serverSelectionTimeoutMS=self.server_selection_timeout_ms,
            )
            await self._client.admin.command("ping")
            self._collection = self._client[self.database][self.collection_name]
            self._connected = True

            logger.info(
                "Connected to MongoDB",
                extra={"database": self.database, "collection": self.collection_name},
            )

        except PyMongoError as e:
            self._connected = False
            if self._client is not None:
                await self._client.close()
                self._client = None
            raise StoreConnectionError(f"Failed to connect to MongoDB: {e}") from e

    async def close(self) -> None:
        """Close open change streams and the client."""
        for stream in list(self._streams):
            try:
                await stream.close()
            except PyMongoError as e:
                logger.warning(f"Error closing change stream: {e}")
        self._streams.clear()

        if self._client is not None:
            await self._client.close()
            self._client = None

        self._collection = None
        self._connected = False
        logger.info("MongoDB connection closed", extra={"collection": self.collection_name})

    async def get_all(self) -> list[Document]:
        collection = self._require_collection()
        try:
            return await collection.find({}).to_list(None)
        except PyMongoError as e:
            raise _wrap(e, "find") from e

    async def upsert(self, key: Any, document: Mapping[str, Any]) -> None:
        collection = self._require_collection()
        replacement = {name: value for name, value in document.items() if name != KEY_FIELD}
        replacement[KEY_FIELD] = copy.deepcopy(key)
        try:
            await collection.replace_one({KEY_FIELD: key}, replacement, upsert=True)
        except PyMongoError as e:
            raise _wrap(e, "replace_one") from e

    async def apply_partial_update(
        self,
        key: Any,
        fields: Mapping[str, Any],
        removed_fields: Sequence[str] | None = None,
    ) -> None:
        collection = self._require_collection()

        update: dict[str, Any] = {}
        if fields:
            update["$set"] = dict(fields)
        if removed_fields:
            update["$unset"] = {name: "" for name in removed_fields}

        try:
            if not update:
                # Nothing to change, but a missing key is still an error
                if await collection.count_documents({KEY_FIELD: key}, limit=1) == 0:
                    raise DocumentNotFoundError(key)
                return

            result = await collection.update_one({KEY_FIELD: key}, update)
        except PyMongoError as e:
            raise _wrap(e, "update_one") from e

        if result.matched_count == 0:
            raise DocumentNotFoundError(key)

    async def delete(self, key: Any) -> bool:
        collection = self._require_collection()
        try:
            result = await collection.delete_one({KEY_FIELD: key})
        except PyMongoError as e:
            raise _wrap(e, "delete_one") from e
        return result.deleted_count > 0

    async def watch_changes(self) -> AsyncIterator[ChangeEvent]:
        """Open a change stream on the collection.

        Raises:
            StoreConnectionError: If the stream cannot be opened
        """
        collection = self._require_collection()
        try:
            stream = await collection.watch()
        except PyMongoError as e:
            raise StoreConnectionError(f"Failed to open change stream: {e}") from e

        self._streams.append(stream)
        logger.info("Change stream opened", extra={"collection": self.collection_name})
        return self._iterate(stream)

    async def _iterate(self, stream: Any) -> AsyncIterator[ChangeEvent]:
        try:
            async for change in stream:
                yield ChangeEvent.from_change(change)
        except PyMongoError as e:
            raise StoreConnectionError(f"Change stream failed: {e}") from e
        finally:
            if stream in self._streams:
                self._streams.remove(stream)
            try:
                await stream.close()
            except PyMongoError as e:
                logger.debug(f"Error closing change stream: {e}")

    def _require_collection(self) -> Any:
        if not self._connected or self._collection is None:
            raise StoreConnectionError("Not connected")
        return self._collection


def _wrap(error: PyMongoError, operation: str) -> StoreError:
    if isinstance(error, ConnectionFailure):
        return StoreConnectionError(f"{operation} failed: {error}")
    return StoreError(f"{operation} failed: {error}")

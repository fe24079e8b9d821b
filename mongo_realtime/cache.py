"""
Per-collection document cache.

Each collection's documents are held in memory, most recently inserted first.
An entry is created lazily by fetching a full snapshot from the store and is
then kept current by applying change events one at a time.

The cache does not order mutations itself. The engine feeds each collection
through a single worker so mutations of one collection never interleave.
"""

import asyncio
import logging
from typing import Any
from typing import Awaitable
from typing import Callable
from typing import Mapping
from typing import Optional

from mongo_realtime import events


logger = logging.getLogger(__name__)


DOCUMENT = Mapping[str, Any]
"""A stored document. Identity is its '_id' field."""

SNAPSHOT_FETCHER = Callable[[str], Awaitable[list[DOCUMENT]]]
"""Coroutine function returning every document of a collection, newest first."""


def same_document(doc: DOCUMENT, doc_id: Any) -> bool:
    """Id based equality, tolerant of ObjectId vs string ids."""
    return events.document_key(doc.get("_id")) == events.document_key(doc_id)


class CollectionCache(object):
    """In-memory mirror of the documents of every collection in use."""

    def __init__(self, fetch_snapshot: SNAPSHOT_FETCHER) -> None:
        self._fetch_snapshot = fetch_snapshot
        self._entries: dict[str, list[DOCUMENT]] = {}
        # In-flight fetches with the mark of the call that requested them.
        self._pending: dict[str, tuple[asyncio.Task, int]] = {}

    # -----Population----------------------------------------------------------

    async def ensure(self, collection: str, mark: int = 0) -> Optional[int]:
        """
        Make sure a collection is cached, fetching a snapshot if needed.

        Concurrent calls for the same collection share a single fetch. The
        mark is an ordinal of the caller's choosing, recorded when a fetch is
        started. The engine passes the number of change events seen so far,
        so it can tell whether a snapshot was requested before or after a
        given event.

        Args:
            collection (str): Collection to populate.
            mark (int): Recorded if this call starts the fetch.
        Returns:
            Optional[int]: None if the collection was already cached,
                otherwise the mark of the call that started the fetch.
        Raises:
            Exception: Whatever the snapshot fetch raised. No entry is
                created, so the next call retries.
        """
        if collection in self._entries:
            return None

        pending = self._pending.get(collection)
        if pending is None:
            pending = (asyncio.create_task(self._populate(collection)), mark)
            self._pending[collection] = pending

        task, started_at = pending
        await asyncio.shield(task)
        return started_at

    async def _populate(self, collection: str) -> None:
        try:
            documents = await self._fetch_snapshot(collection)
            self._entries[collection] = list(documents)
            logger.debug(
                "Cached %d documents of collection '%s'", len(documents), collection
            )
        finally:
            self._pending.pop(collection, None)

    # -----Mutation------------------------------------------------------------

    def apply(self, collection: str, event: events.ChangeEvent) -> None:
        """
        Apply one change event to a cached collection.

        Inserts are prepended, unless a document with the same id is already
        cached (a snapshot read after the insert committed), in which case it
        is swapped in place like a replacement. Updates and replacements swap
        the matching document in place. Deletes remove it. Unknown ids and
        collection level operations leave the cache untouched, as does a
        collection that is not cached yet.
        """
        documents = self._entries.get(collection)
        if documents is None:
            return

        operation = event.operation_type

        if operation in (events.INSERT, events.UPDATE, events.REPLACE):
            if event.full_document is None:
                return
            for index, doc in enumerate(documents):
                if same_document(doc, event.document_id):
                    documents[index] = event.full_document
                    break
            else:
                if operation == events.INSERT:
                    documents.insert(0, event.full_document)

        elif operation == events.DELETE:
            self._entries[collection] = [
                doc for doc in documents if not same_document(doc, event.document_id)
            ]

    # -----Access--------------------------------------------------------------

    def get(self, collection: str) -> Optional[tuple[DOCUMENT, ...]]:
        """Current documents of a collection, or None if it is not cached."""
        documents = self._entries.get(collection)
        if documents is None:
            return None
        return tuple(documents)

    def is_cached(self, collection: str) -> bool:
        return collection in self._entries

    def collections(self) -> list[str]:
        return sorted(self._entries.keys())

    def discard(self, collection: str) -> None:
        """Forget a collection; the next ensure() fetches it again."""
        self._entries.pop(collection, None)

    def clear(self) -> None:
        self._entries.clear()
        for task, _ in self._pending.values():
            task.cancel()
        self._pending.clear()

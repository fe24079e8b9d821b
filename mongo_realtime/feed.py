"""
Change feed collaborator and the watch/ignore policy.

The engine only needs three things from the data store: the list of
collections, a full snapshot of one collection, and an ordered stream of
change documents. ChangeSource describes that contract; MongoChangeSource
implements it with pymongo's asyncio driver.

The watch/ignore policy decides which collections the feed reports:

    watch      ignore     passes
    empty      empty      every collection
    non-empty  empty      only collections in watch
    empty      non-empty  every collection except those in ignore
    non-empty  non-empty  collections in watch that are not in ignore
"""

import logging
from contextlib import asynccontextmanager
from typing import Any
from typing import AsyncContextManager
from typing import AsyncIterator
from typing import Mapping
from typing import Optional
from typing import Protocol
from typing import Sequence

from pymongo import DESCENDING
from pymongo.asynchronous.database import AsyncDatabase


logger = logging.getLogger(__name__)


CHANGE = Mapping[str, Any]
"""A raw change stream document."""


# -----Watch/Ignore Policy-----------------------------------------------------


def passes(
    collection: str,
    watch: Sequence[str] = (),
    ignore: Sequence[str] = (),
) -> bool:
    """
    Check a collection name against the watch/ignore policy.

    Args:
        collection (str): Collection name, compared exactly.
        watch (Sequence[str]): Collections to keep. Empty keeps all.
        ignore (Sequence[str]): Collections to drop. Wins over watch.
    Returns:
        bool: True if changes of the collection should be processed.
    """
    if watch and collection not in watch:
        return False
    return collection not in ignore


def build_pipeline(
    watch: Sequence[str] = (), ignore: Sequence[str] = ()
) -> list[dict[str, Any]]:
    """Aggregation pipeline applying the watch/ignore policy server side."""
    conditions = []
    if watch:
        conditions.append({"ns.coll": {"$in": list(watch)}})
    if ignore:
        conditions.append({"ns.coll": {"$nin": list(ignore)}})

    if not conditions:
        return []
    if len(conditions) == 1:
        return [{"$match": conditions[0]}]
    return [{"$match": {"$and": conditions}}]


# -----Collaborator Contract---------------------------------------------------


class ChangeSource(Protocol):
    """Data store seen by the engine."""

    async def list_collections(self) -> list[str]:
        """Names of the collections of the database."""

    async def fetch_snapshot(self, collection: str) -> list[Mapping[str, Any]]:
        """Every document of a collection, most recently inserted first."""

    def watch(
        self, pipeline: list[dict[str, Any]]
    ) -> AsyncContextManager[AsyncIterator[CHANGE]]:
        """Open the change feed. Iterating the result yields change documents."""


class MongoChangeSource(object):
    """ChangeSource backed by a pymongo AsyncDatabase."""

    def __init__(
        self,
        database: AsyncDatabase,
        full_document: Optional[str] = "updateLookup",
        full_document_before_change: Optional[str] = "whenAvailable",
    ) -> None:
        self.database = database
        self.full_document = full_document
        self.full_document_before_change = full_document_before_change

    async def list_collections(self) -> list[str]:
        names = await self.database.list_collection_names(
            filter={"name": {"$regex": r"^(?!system\.)"}}
        )
        return sorted(names)

    async def fetch_snapshot(self, collection: str) -> list[Mapping[str, Any]]:
        cursor = self.database[collection].find({}, sort=[("$natural", DESCENDING)])
        return await cursor.to_list()

    @asynccontextmanager
    async def watch(
        self, pipeline: list[dict[str, Any]]
    ) -> AsyncIterator[AsyncIterator[CHANGE]]:
        stream = await self.database.watch(
            pipeline,
            full_document=self.full_document,
            full_document_before_change=self.full_document_before_change,
        )
        logger.info("Change stream opened on database '%s'", self.database.name)
        try:
            yield stream
        finally:
            await stream.close()
            logger.info("Change stream closed on database '%s'", self.database.name)

"""
List-streams: named, filtered views over one collection's cache.

A stream is registered under a unique id and bound to a collection. Whenever
that collection changes, every document in the cache is run through the
stream's filter and the surviving documents are published on
'db:stream:{id}'.

Filters may be sync or async and may raise. Every document is evaluated
concurrently and a filter failing for one document only drops that document.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any
from typing import Awaitable
from typing import Callable
from typing import Iterable
from typing import Optional
from typing import Sequence
from typing import Union

from mongo_realtime import cache
from mongo_realtime import errors
from mongo_realtime import handlers


logger = logging.getLogger(__name__)


FILTER = Callable[[cache.DOCUMENT], Union[bool, Awaitable[bool]]]
"""
Document predicate of a stream. Truthy keeps the document. Can be sync or
async. Raising is treated as False for that document only.
"""


def accept_all(_: cache.DOCUMENT) -> bool:
    """Default stream filter."""
    return True


@dataclass(frozen=True)
class ListStream(object):
    """A registered list-stream."""

    id: str
    """Unique stream id, published as 'db:stream:{id}'."""

    collection: str
    """The collection whose cache the stream filters."""

    filter: FILTER = accept_all
    """Predicate selecting the documents of the view."""

    owner: Optional[str] = None
    """
    Id of the connection that registered the stream, if any.
    Owned streams are removed when their connection goes away.
    """


class StreamRegistry(object):
    """
    Registry of list-streams keyed by id.

    With safe mode on, registering an id twice raises DuplicateStreamError.
    With safe mode off, the second registration replaces the first.
    """

    def __init__(self, safe_mode: bool = True) -> None:
        self.safe_mode = bool(safe_mode)
        self._streams: dict[str, ListStream] = {}

    # -----Registration--------------------------------------------------------

    def add(
        self,
        stream_id: str,
        collection: str,
        filter_: Optional[FILTER] = None,
        owner: Optional[str] = None,
    ) -> ListStream:
        """
        Register a list-stream.

        Args:
            stream_id (str): Unique id of the stream.
            collection (str): Collection the stream is bound to.
            filter_ (Optional[FILTER]): Document predicate. Defaults to
                accepting every document.
            owner (Optional[str]): Connection id owning the stream.
        Returns:
            ListStream: The registered stream.
        Raises:
            InvalidArgumentError: If stream_id or collection is empty.
            DuplicateStreamError: If safe mode is on and stream_id is taken.
        """
        if not stream_id:
            raise errors.InvalidArgumentError("Stream id is required")
        if not collection:
            raise errors.InvalidArgumentError("Collection is required")

        if self.safe_mode and stream_id in self._streams:
            raise errors.DuplicateStreamError(stream_id)

        stream = ListStream(
            id=stream_id,
            collection=collection,
            filter=filter_ if filter_ is not None else accept_all,
            owner=owner,
        )
        self._streams[stream_id] = stream
        logger.debug("Registered stream '%s' on '%s'", stream_id, collection)
        return stream

    def remove(self, stream_id: str) -> None:
        """Remove a stream. Unknown ids are ignored."""
        if self._streams.pop(stream_id, None) is not None:
            logger.debug("Removed stream '%s'", stream_id)

    def remove_owned_by(self, owner: str) -> list[str]:
        """Remove every stream registered by a connection; returns their ids."""
        owned = [s.id for s in self._streams.values() if s.owner == owner]
        for stream_id in owned:
            self.remove(stream_id)
        return owned

    def clear(self) -> None:
        self._streams.clear()

    # -----Lookup--------------------------------------------------------------

    def get(self, stream_id: str) -> Optional[ListStream]:
        return self._streams.get(stream_id)

    def ids(self) -> list[str]:
        return sorted(self._streams.keys())

    def bound_to(self, collection: str) -> list[ListStream]:
        """Streams bound to a collection, in registration order."""
        return [s for s in list(self._streams.values()) if s.collection == collection]

    def __contains__(self, stream_id: object) -> bool:
        return stream_id in self._streams

    def __len__(self) -> int:
        return len(self._streams)

    # -----Evaluation----------------------------------------------------------

    @staticmethod
    async def _matches(stream: ListStream, doc: cache.DOCUMENT) -> bool:
        try:
            result = stream.filter(doc)
            if inspect.isawaitable(result):
                result = await result
            return bool(result)
        except Exception as e:
            failure = errors.FilterEvaluationFailure(stream.id, doc.get("_id"), e)
            logger.debug(
                "%s (filter %s)", failure, handlers.get_callable_name(stream.filter)
            )
            return False

    async def evaluate(
        self, stream: ListStream, documents: Sequence[cache.DOCUMENT]
    ) -> list[cache.DOCUMENT]:
        """
        Run a stream's filter over documents, concurrently.

        Args:
            stream (ListStream): Stream whose filter to apply.
            documents (Sequence[DOCUMENT]): Documents in cache order.
        Returns:
            list[DOCUMENT]: The documents the filter kept, in the same order.
        """
        results = await asyncio.gather(
            *(self._matches(stream, doc) for doc in documents)
        )
        return [doc for doc, keep in zip(documents, results) if keep]


def auto_provision(
    registry: StreamRegistry,
    collections: Iterable[str],
    auto_list_stream: Optional[Iterable[str]],
) -> list[str]:
    """
    Register one unfiltered stream per collection, keyed by the collection.

    Args:
        registry (StreamRegistry): Registry to add to. Its uniqueness policy
            applies as for any other registration.
        collections (Iterable[str]): Collections discovered in the database.
        auto_list_stream (Optional[Iterable[str]]): None streams every
            collection, an empty list none, otherwise only the named ones.
    Returns:
        list[str]: Ids of the streams registered.
    """
    collections = list(collections)
    if auto_list_stream is None:
        selected = collections
    else:
        wanted = set(auto_list_stream)
        selected = [c for c in collections if c in wanted]

    for collection in selected:
        registry.add(collection, collection)

    if selected:
        logger.info("Auto-registered %d list streams", len(selected))
    return selected


def describe(stream: ListStream) -> dict[str, Any]:
    """Plain description of a stream for introspection output."""
    return {
        "collection": stream.collection,
        "filter": handlers.get_callable_name(stream.filter),
        "owner": stream.owner,
    }

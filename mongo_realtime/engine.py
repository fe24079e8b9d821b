"""
# Realtime Engine

Ties the change feed to the cache, the list-streams, the connected clients and
the in-process listeners.

Every change read from the feed takes two independent paths:

1. It is classified into topics and its payload is published on each of them.
2. It is queued on its collection's worker, which applies it to the cache and
   then recomputes and publishes every list-stream bound to that collection.

Each collection has exactly one worker, so mutations of one collection are
applied strictly in feed order while different collections proceed
independently. Publication runs in background tasks and never holds up the
next mutation.

An engine is a plain object. Create as many as needed; re-initializing means
closing the old engine and starting a new one, see init().
"""

import asyncio
import contextlib
import inspect
import logging
from typing import Any
from typing import Awaitable
from typing import Callable
from typing import Mapping
from typing import Optional

from mongo_realtime import broadcaster
from mongo_realtime import cache
from mongo_realtime import config as config_
from mongo_realtime import errors
from mongo_realtime import events
from mongo_realtime import feed
from mongo_realtime import gate
from mongo_realtime import handlers
from mongo_realtime import listeners
from mongo_realtime import streams


logger = logging.getLogger(__name__)


class RealtimeEngine(object):
    """
    Primary change distribution coordinator.

    To manage list-streams use add_stream() and remove_stream().
    To manage in-process listeners use listen(), remove_listener() and
    remove_all_listeners().
    Connections are admitted with connect() and released with disconnect().
    """

    def __init__(self, config: config_.RealtimeConfig) -> None:
        if config.source is None:
            raise errors.ConfigurationError("A change source is required")

        self.config = config
        self.source: feed.ChangeSource = config.source

        self.cache = cache.CollectionCache(self.source.fetch_snapshot)
        self.streams = streams.StreamRegistry(safe_mode=config.safe_list_stream)
        self.listeners = listeners.ListenerRegistry(config.listener_exception_handler)
        self.broadcaster = broadcaster.Broadcaster()
        self.gate = gate.ConnectionGate(config.authentify, config.middlewares)

        self.collections: list[str] = []
        """Collections discovered at start()."""

        self._queues: dict[str, asyncio.Queue] = {}
        self._workers: dict[str, asyncio.Task] = {}
        self._tasks: set[asyncio.Task] = set()

        # Ordinal of the last change event accepted by process().
        self._seen = 0

        # Recomputes are numbered from one counter that never resets, so a
        # replaced stream's late views always rank below its successor's.
        self._generation = 0
        self._delivered_generation: dict[str, int] = {}

        self._feed_task: Optional[asyncio.Task] = None
        self._exit_stack = contextlib.AsyncExitStack()
        self._closed = False

    # -----Lifecycle-----------------------------------------------------------

    async def start(self) -> None:
        """
        Discover collections, auto-register list-streams and open the feed.

        Raises:
            DuplicateStreamError: If safe mode is on and an auto-registered
                stream collides with one registered before start().
        """
        self.collections = await self.source.list_collections()
        streams.auto_provision(
            self.streams, self.collections, self.config.auto_list_stream
        )

        pipeline = feed.build_pipeline(self.config.watch, self.config.ignore)
        changes = await self._exit_stack.enter_async_context(
            self.source.watch(pipeline)
        )
        self._feed_task = asyncio.create_task(self._consume(changes))
        logger.info(
            "Realtime engine started on %d collections", len(self.collections)
        )

    async def _consume(self, changes: Any) -> None:
        try:
            async for change in changes:
                try:
                    self.process(change)
                except Exception:
                    logger.error(
                        "Skipping unreadable change document: %r", change, exc_info=True
                    )
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.error("Change feed stopped with an error", exc_info=True)
        else:
            logger.info("Change feed exhausted")

    async def close(self) -> None:
        """Stop the feed, the workers and pending deliveries; close every connection."""
        if self._closed:
            return
        self._closed = True

        if self._feed_task is not None:
            self._feed_task.cancel()
            await asyncio.gather(self._feed_task, return_exceptions=True)
        await self._exit_stack.aclose()

        pending = list(self._workers.values()) + list(self._tasks)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._workers.clear()
        self._queues.clear()
        self._tasks.clear()

        await self.broadcaster.close()
        logger.info("Realtime engine closed")

    @property
    def closed(self) -> bool:
        return self._closed

    async def drain(self) -> None:
        """Wait until every queued mutation and scheduled delivery has finished."""
        while True:
            for queue in list(self._queues.values()):
                await queue.join()

            pending = [task for task in self._tasks if not task.done()]
            if not pending:
                return
            await asyncio.wait(pending)

    # -----Change Processing---------------------------------------------------

    def process(self, change: Mapping[str, Any]) -> Optional[events.ChangeEvent]:
        """
        Take one raw change document from the feed.

        Publication of its topics and the cache mutation are scheduled, not
        awaited. Must be called from the event loop.

        Args:
            change (Mapping): Raw change stream document.
        Returns:
            Optional[ChangeEvent]: The parsed event, or None if the engine is
                closed or the watch/ignore policy dropped it.
        Raises:
            KeyError: If the document has no 'operationType'. The feed
                consumer logs it and moves on to the next document.
        """
        if self._closed:
            return None

        event = events.ChangeEvent.from_change(change)
        if not feed.passes(event.collection, self.config.watch, self.config.ignore):
            return None

        self._spawn(self._publish_change(event))
        if event.collection:
            self._seen += 1
            self._enqueue(self._seen, event)
        return event

    def _enqueue(self, mark: int, event: events.ChangeEvent) -> None:
        collection = event.collection
        queue = self._queues.get(collection)
        if queue is None:
            queue = asyncio.Queue()
            self._queues[collection] = queue
            self._workers[collection] = asyncio.create_task(
                self._run_worker(collection, queue)
            )
        queue.put_nowait((mark, event))

    async def _run_worker(self, collection: str, queue: asyncio.Queue) -> None:
        while True:
            mark, event = await queue.get()
            try:
                await self._mutate(collection, mark, event)
            except Exception:
                logger.error(
                    "Could not apply %s on '%s'",
                    event.operation_type,
                    collection,
                    exc_info=True,
                )
            finally:
                queue.task_done()

    async def _mutate(
        self, collection: str, mark: int, event: events.ChangeEvent
    ) -> None:
        requested_at = await self.cache.ensure(collection, mark)
        # A snapshot requested once this event was seen already contains it.
        if requested_at is None or requested_at < mark:
            self.cache.apply(collection, event)
        self.recompute(collection)

    async def _publish_change(self, event: events.ChangeEvent) -> None:
        payload = events.change_payload(event)
        for topic in events.classify(event):
            await self._deliver(topic, payload)

    # -----List-Streams--------------------------------------------------------

    def add_stream(
        self,
        stream_id: str,
        collection: str,
        filter_: Optional[streams.FILTER] = None,
        owner: Optional[str] = None,
    ) -> streams.ListStream:
        """
        Register a list-stream, published on 'db:stream:{stream_id}'.

        Args:
            stream_id (str): Unique id of the stream.
            collection (str): Collection to stream.
            filter_ (Optional[FILTER]): Document predicate, sync or async.
            owner (Optional[str]): Connection id; the stream is removed when
                that connection disconnects.
        Raises:
            InvalidArgumentError: If stream_id or collection is empty.
            DuplicateStreamError: If safe mode is on and stream_id is taken.
        """
        stream = self.streams.add(stream_id, collection, filter_, owner)

        if not self._closed and not self.cache.is_cached(collection):
            try:
                asyncio.get_running_loop()
            except RuntimeError:
                return stream
            self._spawn(self.cache.ensure(collection, self._seen))
        return stream

    def remove_stream(self, stream_id: str) -> None:
        """Delete a list-stream. Unknown ids are ignored."""
        self.streams.remove(stream_id)
        self._delivered_generation.pop(stream_id, None)

    def recompute(self, collection: str) -> None:
        """Schedule a fresh view of every stream bound to a collection."""
        documents = self.cache.get(collection)
        if documents is None:
            return

        for stream in self.streams.bound_to(collection):
            self._generation += 1
            self._spawn(self._publish_stream(stream, documents, self._generation))

    async def _publish_stream(
        self,
        stream: streams.ListStream,
        documents: tuple[cache.DOCUMENT, ...],
        generation: int,
    ) -> None:
        view = await self.streams.evaluate(stream, documents)

        # The stream was removed or replaced while its filter ran.
        if self.streams.get(stream.id) is not stream:
            return
        # A later recompute finished first, this view is stale.
        if self._delivered_generation.get(stream.id, 0) > generation:
            return
        self._delivered_generation[stream.id] = generation

        await self._deliver(events.stream_topic(stream.id), view)

    async def snapshot(self, stream_id: str) -> Optional[list[cache.DOCUMENT]]:
        """
        Current filtered view of a stream, computed on demand.

        Returns:
            Optional[list[DOCUMENT]]: The view, or None for an unknown stream.
        """
        stream = self.streams.get(stream_id)
        if stream is None:
            return None

        await self.cache.ensure(stream.collection, self._seen)
        documents = self.cache.get(stream.collection) or ()
        return await self.streams.evaluate(stream, documents)

    # -----Listeners-----------------------------------------------------------

    def listen(self, topic: str, callback: handlers.CALLBACK, priority: int = 0) -> None:
        """Register an in-process callback on a topic."""
        self.listeners.listen(topic, callback, priority)

    def remove_listener(
        self, topic: str, callback: Optional[handlers.CALLBACK] = None
    ) -> None:
        """Remove one callback of a topic, or all of them if none is given."""
        self.listeners.remove_listener(topic, callback)

    def remove_all_listeners(self) -> None:
        self.listeners.remove_all_listeners()

    def notify(self, topic: str, payload: Any) -> None:
        """
        Call the synchronous listeners of a topic.

        Async listeners are skipped (and logged at debug level). Use
        notify_async() to reach every listener, which is also what the
        engine does for changes read from the feed.
        """
        self.listeners.notify(topic, payload)

    async def notify_async(self, topic: str, payload: Any) -> None:
        """Call every listener of a topic, awaiting async ones."""
        await self.listeners.notify_async(topic, payload)

    # -----Connections---------------------------------------------------------

    async def connect(self, connection: broadcaster.Connection) -> None:
        """
        Admit a connection and start delivering topics to it.

        Raises:
            ConnectionRejectedError: If the gate refused the connection. The
                connection is not registered.
        """
        await self.gate.admit(connection)
        self.broadcaster.add(connection)
        logger.debug("Connection %s admitted", connection.id)
        await _call(self.config.on_connect, connection)

    async def disconnect(
        self, connection: broadcaster.Connection, reason: str = "client disconnect"
    ) -> None:
        """Stop delivering to a connection and drop the streams it owned."""
        if connection not in self.broadcaster:
            return

        self.broadcaster.discard(connection)
        for stream_id in self.streams.remove_owned_by(connection.id):
            self._delivered_generation.pop(stream_id, None)
        logger.debug("Connection %s left: %s", connection.id, reason)
        await _call(self.config.on_disconnect, connection, reason)

    async def handle_stream_register(
        self,
        connection: broadcaster.Connection,
        stream_id: str,
        correlation_id: str,
    ) -> bool:
        """
        Answer a client's snapshot request for a stream.

        The reply goes to the requesting connection only, on
        'db:stream[register][{correlation_id}]'.

        Returns:
            bool: False if the stream is unknown or the reply failed.
        """
        view = await self.snapshot(stream_id)
        if view is None:
            return False

        return await self.broadcaster.send_to(
            connection, events.register_reply_topic(correlation_id), view
        )

    # -----Delivery------------------------------------------------------------

    async def _deliver(self, topic: str, payload: Any) -> None:
        await asyncio.gather(
            self.broadcaster.publish(topic, payload),
            self.listeners.notify_async(topic, payload),
        )

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return

        exception = task.exception()
        if exception is not None:
            logger.error(
                "Background delivery failed: %s: %s",
                exception.__class__.__name__,
                exception,
                exc_info=exception,
            )

    # -----Introspection-------------------------------------------------------

    def get_statistics(self) -> dict[str, object]:
        """
        Get overall engine statistics.

        Example:
            {
                "connections": 12,
                "streams": 4,
                "cached_collections": ["orders", "users"],
                "listener_topics": 3,
                "pending_tasks": 0,
                "failed_deliveries": 1,
            }
        """
        return {
            "connections": len(self.broadcaster),
            "streams": len(self.streams),
            "cached_collections": self.cache.collections(),
            "listener_topics": len(self.listeners),
            "pending_tasks": len(self._tasks),
            "failed_deliveries": self.broadcaster.failed_deliveries,
        }

    def to_dict(self) -> dict[str, object]:
        """Convert the registered streams and listeners to a dictionary."""
        return {
            "streams": {
                stream_id: streams.describe(self.streams.get(stream_id))
                for stream_id in self.streams.ids()
            },
            "listeners": self.listeners.to_dict(),
        }


async def _call(callback: Optional[Callable[..., Any]], *args: Any) -> None:
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


async def init(
    config: config_.RealtimeConfig,
    replacing: Optional[RealtimeEngine] = None,
) -> RealtimeEngine:
    """
    Build and start an engine.

    Args:
        config (RealtimeConfig): Engine options.
        replacing (Optional[RealtimeEngine]): An engine to tear down first, so
            no client is served by both.
    Returns:
        RealtimeEngine: The started engine.
    Raises:
        ConfigurationError: If config has no source. Nothing is started and
            `replacing` is left untouched.
    """
    engine = RealtimeEngine(config)

    if replacing is not None:
        await replacing.close()

    await engine.start()
    return engine

"""
In-process listener registry.

Listeners are callbacks registered on a topic. They are notified with the same
payloads that are broadcast to connected clients, but independently of network
delivery: a slow or failing client never affects a listener and vice versa.

Supports both synchronous and asynchronous callbacks.
Use notify() for sync-only, fire-and-forget behavior.
Use notify_async() to also await async callbacks.
"""

import inspect
import json
import logging
import os
from dataclasses import dataclass
from typing import Any
from typing import Optional
from typing import Union

from mongo_realtime import handlers


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Listener(object):
    """A listener with a callback and priority."""

    callback: handlers.CALLBACK
    """The end point that payloads are forwarded to. i.e. what gets ran."""

    topic: str
    """The topic the listener is registered on."""

    is_async: bool
    """If the callback is a coroutine function."""

    priority: int = 0
    """
    Where in the execution order the callback should take place.
    Higher numbers are executed before lower numbers, equal priorities run in
    registration order.
    """


class ListenerRegistry(object):
    """
    Topic -> ordered listeners.

    A topic exists in the registry while it has at least one listener.
    """

    def __init__(
        self,
        exception_handler: Optional[
            handlers.LISTENER_EXCEPTION_HANDLER
        ] = handlers.log_and_continue_listener_exception,
    ) -> None:
        self._topics: dict[str, list[Listener]] = {}
        self._exception_handler = exception_handler

    # -----Listener Management-------------------------------------------------

    def listen(
        self, topic: str, callback: handlers.CALLBACK, priority: int = 0
    ) -> None:
        """
        Register a callback on a topic.

        Args:
            topic (str): Topic name (e.g., 'db:insert:users').
            callback (Callable): Function called with the topic payload. Can be
                sync or async.
            priority (int): Higher priorities are ran before lower priorities.
        """
        listener = Listener(
            callback=callback,
            topic=topic,
            is_async=inspect.iscoroutinefunction(callback),
            priority=priority,
        )
        entry = self._topics.setdefault(topic, [])
        entry.append(listener)
        # Stable sort keeps registration order within one priority.
        entry.sort(key=lambda l: l.priority, reverse=True)

    def remove_listener(
        self, topic: str, callback: Optional[handlers.CALLBACK] = None
    ) -> None:
        """
        Remove one callback from a topic, or every callback if none is given.

        Args:
            topic (str): Topic name.
            callback (Optional[Callable]): Function to remove.
        """
        if topic not in self._topics:
            return

        if callback is None:
            del self._topics[topic]
            return

        remaining = [l for l in self._topics[topic] if l.callback != callback]
        if remaining:
            self._topics[topic] = remaining
        else:
            del self._topics[topic]

    def remove_all_listeners(self) -> None:
        """Unregister every callback of every topic."""
        self._topics.clear()

    def set_exception_handler(
        self, handler: Optional[handlers.LISTENER_EXCEPTION_HANDLER]
    ) -> None:
        """
        Set the policy for listener errors.

        Args:
            Optional[handlers.LISTENER_EXCEPTION_HANDLER]:
                Callable receiving a handlers.ListenerFailure. Returns STOP to
                skip the remaining listeners, CONTINUE otherwise.
                Pass None to re-raise exceptions.
        """
        self._exception_handler = handler

    # -----Notification--------------------------------------------------------

    def notify(self, topic: str, payload: Any) -> None:
        """
        Call the synchronous listeners of a topic with a payload.

        Asynchronous listeners are NOT called, only logged at debug level. Use
        notify_async() to reach every listener.

        Args:
            topic (str): Topic name.
            payload (Any): Value passed to every callback.
        """
        for listener in list(self._topics.get(topic, ())):
            if listener.is_async:
                logger.debug(
                    "notify() skipped async listener %s on '%s'; use notify_async()",
                    handlers.get_callable_name(listener.callback),
                    topic,
                )
                continue

            try:
                listener.callback(payload)
            except Exception as e:
                if self._exception_handler is None:
                    raise

                failure = handlers.ListenerFailure(listener.callback, topic, payload, e)
                if self._exception_handler(failure):
                    break

    async def notify_async(self, topic: str, payload: Any) -> None:
        """
        Call every listener of a topic, awaiting async ones in order.

        Args:
            topic (str): Topic name.
            payload (Any): Value passed to every callback.
        """
        for listener in list(self._topics.get(topic, ())):
            try:
                if listener.is_async:
                    await listener.callback(payload)
                else:
                    listener.callback(payload)
            except Exception as e:
                if self._exception_handler is None:
                    raise

                failure = handlers.ListenerFailure(listener.callback, topic, payload, e)
                if self._exception_handler(failure):
                    break

    # -----Introspection-------------------------------------------------------

    def get_listener_count(self, topic: str) -> int:
        return len(self._topics.get(topic, ()))

    def is_listening(self, callback: handlers.CALLBACK, topic: str) -> bool:
        """Check if a specific callback is registered on a topic."""
        return any(l.callback == callback for l in self._topics.get(topic, ()))

    def get_topics(self) -> list[str]:
        """Get all topics with at least one listener."""
        return sorted(self._topics.keys())

    def get_subscriptions(self, callback: handlers.CALLBACK) -> list[str]:
        """
        Get all topics a callback is registered on.

        Example:
            >>> registry.listen('db:insert', on_change)
            >>> registry.listen('db:delete', on_change)
            >>> registry.get_subscriptions(on_change)
            ['db:delete', 'db:insert']
        """
        return sorted(
            topic
            for topic, entry in self._topics.items()
            if any(l.callback == callback for l in entry)
        )

    def get_listeners(self, topic: str) -> list[Listener]:
        return list(self._topics.get(topic, ()))

    def to_dict(self) -> dict[str, list[str]]:
        """Convert the registry structure to a dictionary."""
        data = {}
        for topic in sorted(self._topics.keys()):
            described = []
            for listener in self._topics[topic]:
                priority_str = (
                    f" [priority={listener.priority}]" if listener.priority != 0 else ""
                )
                async_str = " [async]" if listener.is_async else ""
                described.append(
                    f"{handlers.get_callable_name(listener.callback)}"
                    f"{priority_str}{async_str}"
                )
            data[topic] = described
        return data

    def to_string(self) -> str:
        """Returns a string representation of the registry."""
        return json.dumps(self.to_dict(), indent=4)

    def export(self, filepath: Union[str, os.PathLike]) -> None:
        """Export the registry structure to filepath."""
        with open(filepath, "w") as outfile:
            json.dump(self.to_dict(), outfile, indent=4)

    def __len__(self) -> int:
        return len(self._topics)

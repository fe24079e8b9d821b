"""
Fan-out of topic payloads to connected clients.

The broadcaster only tracks live connections and hands each payload to them.
Delivery itself belongs to the transport behind each Connection. Delivery is
best-effort: nothing is acknowledged, queued or retried, and a connection that
fails to send never delays or prevents delivery to the others.
"""

import asyncio
import logging
from typing import Any
from typing import Optional
from typing import Protocol


logger = logging.getLogger(__name__)


class Connection(Protocol):
    """A connected client as seen by the engine."""

    id: str
    """Unique connection id."""

    topics: Optional[set[str]]
    """Topics the client asked for. None or empty means every topic."""

    async def send(self, topic: str, payload: Any) -> None:
        """Deliver one payload on a topic to the client."""


def wants(connection: Connection, topic: str) -> bool:
    topics = getattr(connection, "topics", None)
    return not topics or topic in topics


class Broadcaster(object):
    """Set of live connections plus best-effort publication to them."""

    def __init__(self) -> None:
        self._connections: dict[str, Connection] = {}
        self.failed_deliveries = 0

    # -----Connections---------------------------------------------------------

    def add(self, connection: Connection) -> None:
        self._connections[connection.id] = connection

    def discard(self, connection: Connection) -> None:
        self._connections.pop(connection.id, None)

    def get(self, connection_id: str) -> Optional[Connection]:
        return self._connections.get(connection_id)

    def connections(self) -> list[Connection]:
        """Snapshot of the live connections, safe to iterate while they change."""
        return list(self._connections.values())

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, connection: object) -> bool:
        return getattr(connection, "id", None) in self._connections

    # -----Delivery------------------------------------------------------------

    async def send_to(self, connection: Connection, topic: str, payload: Any) -> bool:
        """
        Deliver a payload to one connection.

        Returns:
            bool: False if the transport raised, True otherwise.
        """
        try:
            await connection.send(topic, payload)
            return True
        except Exception as e:
            self.failed_deliveries += 1
            logger.warning(
                "Delivery of '%s' to connection %s failed: %s: %s",
                topic,
                connection.id,
                e.__class__.__name__,
                e,
            )
            return False

    async def publish(self, topic: str, payload: Any) -> int:
        """
        Deliver a payload to every connection interested in a topic.

        Args:
            topic (str): Topic name.
            payload (Any): Value to deliver.
        Returns:
            int: Number of connections the payload reached.
        """
        recipients = [c for c in self.connections() if wants(c, topic)]
        if not recipients:
            return 0

        results = await asyncio.gather(
            *(self.send_to(c, topic, payload) for c in recipients)
        )
        return sum(1 for delivered in results if delivered)

    async def close(self) -> None:
        """Close every connection that supports it and forget all of them."""
        connections = self.connections()
        self._connections.clear()
        for connection in connections:
            close = getattr(connection, "close", None)
            if close is None:
                continue
            try:
                await close()
            except Exception as e:
                logger.debug("Closing connection %s failed: %s", connection.id, e)

"""
Connection admission.

Every incoming connection goes through the gate once, before it receives any
topic. The gate first authenticates the connection with the configured
verifier, then runs the configured middlewares in order. Any of the two can
refuse the connection.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass
from dataclasses import field
from typing import Any
from typing import Awaitable
from typing import Callable
from typing import Mapping
from typing import Optional
from typing import Sequence
from typing import Union

from mongo_realtime import errors


logger = logging.getLogger(__name__)


AUTHENTIFY = Callable[[str, Any], Union[Any, Awaitable[Any]]]
"""
Verifier receiving (token, connection). The connection is admitted only when
it returns exactly True.
"""

NEXT = Callable[..., None]
"""Middleware continuation. Call with no argument to admit, with an error to refuse."""

MIDDLEWARE = Callable[[Any, NEXT], Union[None, Awaitable[None]]]
"""Middleware receiving (connection, next_)."""


@dataclass(frozen=True)
class Handshake(object):
    """What a client presented when connecting."""

    auth: Mapping[str, Any] = field(default_factory=dict)
    """Explicit auth payload sent by the client."""

    headers: Mapping[str, str] = field(default_factory=dict)
    """Request headers."""

    query: Mapping[str, str] = field(default_factory=dict)
    """Query string parameters."""


def extract_token(handshake: Optional[Handshake]) -> Optional[str]:
    """
    Find the credential a client presented.

    Looks at the auth payload's 'token', then the Authorization header, then
    the 'token' query parameter.
    """
    if handshake is None:
        return None

    token = handshake.auth.get("token")
    if token:
        return token

    for name, value in handshake.headers.items():
        if name.lower() == "authorization" and value:
            return value

    return handshake.query.get("token") or None


class ConnectionGate(object):
    """Authentication plus middleware chain, evaluated once per connection."""

    def __init__(
        self,
        authentify: Optional[AUTHENTIFY] = None,
        middlewares: Sequence[MIDDLEWARE] = (),
    ) -> None:
        self.authentify = authentify
        self.middlewares = list(middlewares)

    async def authenticate(self, connection: Any) -> None:
        """
        Raises:
            AuthenticationError: With reason NO_TOKEN_PROVIDED, UNAUTHORIZED
                or AUTH_ERROR.
        """
        if self.authentify is None:
            return

        token = extract_token(getattr(connection, "handshake", None))
        if not token:
            raise errors.AuthenticationError(errors.NO_TOKEN_PROVIDED)

        try:
            authorized = self.authentify(token, connection)
            if inspect.isawaitable(authorized):
                authorized = await authorized
        except Exception as e:
            logger.warning("Verifier raised for connection %s: %s", connection.id, e)
            raise errors.AuthenticationError(errors.AUTH_ERROR) from e

        # Exactly True, not merely truthy.
        if authorized is not True:
            raise errors.AuthenticationError(errors.UNAUTHORIZED)

    @staticmethod
    async def _run_middleware(middleware: MIDDLEWARE, connection: Any) -> None:
        loop = asyncio.get_running_loop()
        outcome: asyncio.Future = loop.create_future()

        def next_(err: Optional[BaseException] = None) -> None:
            if not outcome.done():
                outcome.set_result(err)

        try:
            result = middleware(connection, next_)
            if inspect.isawaitable(result):
                await result
        except errors.ConnectionRejectedError:
            raise
        except Exception as e:
            next_(e)

        err = await outcome
        if err is not None:
            raise errors.ConnectionRejectedError(str(err) or err.__class__.__name__)

    async def admit(self, connection: Any) -> None:
        """
        Decide whether a connection may join.

        Args:
            connection (Any): The incoming connection. Its 'handshake'
                attribute, if any, is searched for a token.
        Raises:
            ConnectionRejectedError: If authentication or a middleware refused
                the connection. AuthenticationError for the former.
        """
        await self.authenticate(connection)
        for middleware in self.middlewares:
            await self._run_middleware(middleware, connection)

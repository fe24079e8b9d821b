"""
Engine configuration.

Everything the engine is told at initialization. Loading these values from
files or the environment is left to the embedding application.
"""

from dataclasses import dataclass
from dataclasses import field
from typing import Any
from typing import Callable
from typing import Optional

from mongo_realtime import feed
from mongo_realtime import gate
from mongo_realtime import handlers


@dataclass
class RealtimeConfig(object):
    """Recognized initialization options."""

    source: Optional[feed.ChangeSource] = None
    """Data store collaborator. Required."""

    watch: list[str] = field(default_factory=list)
    """Collections to watch. Empty watches every collection."""

    ignore: list[str] = field(default_factory=list)
    """Collections to ignore. Wins over watch."""

    auto_list_stream: Optional[list[str]] = None
    """
    Collections to stream automatically under their own name.
    None streams every collection, an empty list streams none.
    """

    safe_list_stream: bool = True
    """If True, registering an existing stream id raises DuplicateStreamError."""

    authentify: Optional[gate.AUTHENTIFY] = None
    """Token verifier. None admits every connection."""

    middlewares: list[gate.MIDDLEWARE] = field(default_factory=list)
    """Run in order on every admitted connection."""

    on_connect: Optional[Callable[[Any], Any]] = None
    """Called with the connection once it has been admitted."""

    on_disconnect: Optional[Callable[[Any, str], Any]] = None
    """Called with the connection and a reason when it goes away."""

    listener_exception_handler: Optional[
        handlers.LISTENER_EXCEPTION_HANDLER
    ] = handlers.log_and_continue_listener_exception
    """Policy for listener callbacks that raise. None re-raises."""

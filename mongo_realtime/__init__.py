"""
# MongoDB Realtime Relay

Relays a MongoDB change stream to connected clients in real time.

Each change is published on a hierarchy of topics (db:change, db:insert,
db:change:users, ...) and every registered list-stream, a named and filtered
view over one collection, is recomputed and pushed on db:stream:{id}.
In-process listeners receive the same payloads as clients.

    engine = await mongo_realtime.init(
        mongo_realtime.RealtimeConfig(source=MongoChangeSource(client["app"]))
    )
    engine.add_stream("admins", "users", lambda doc: doc.get("role") == "admin")
    engine.listen("db:insert:users", on_new_user)
"""

# Remember to run release.py after bumping the version in pyproject.toml!

from mongo_realtime import events
from mongo_realtime import handlers
from mongo_realtime.config import RealtimeConfig
from mongo_realtime.engine import RealtimeEngine
from mongo_realtime.engine import init
from mongo_realtime.errors import AuthenticationError
from mongo_realtime.errors import ConfigurationError
from mongo_realtime.errors import ConnectionRejectedError
from mongo_realtime.errors import DuplicateStreamError
from mongo_realtime.errors import FilterEvaluationFailure
from mongo_realtime.errors import InvalidArgumentError
from mongo_realtime.errors import RealtimeError
from mongo_realtime.events import ChangeEvent
from mongo_realtime.events import classify
from mongo_realtime.feed import MongoChangeSource
from mongo_realtime.gate import Handshake
from mongo_realtime.handlers import ListenerFailure
from mongo_realtime.handlers import ListenerFailureCollector


version_major = 1
version_minor = 0
version_patch = 0
__version__ = f"{version_major}.{version_minor}.{version_patch}"


__all__ = [
    "AuthenticationError",
    "ChangeEvent",
    "ConfigurationError",
    "ConnectionRejectedError",
    "DuplicateStreamError",
    "FilterEvaluationFailure",
    "Handshake",
    "InvalidArgumentError",
    "ListenerFailure",
    "ListenerFailureCollector",
    "MongoChangeSource",
    "RealtimeConfig",
    "RealtimeEngine",
    "RealtimeError",
    "classify",
    "events",
    "handlers",
    "init",
]

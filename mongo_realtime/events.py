"""
Change events and the topic names derived from them.

A raw change stream document is wrapped in an immutable ChangeEvent, then
classified into the topics a client can listen to. Topics form a hierarchy
from the broadest (every change) to the narrowest (one operation type on one
document):

    db:change
    db:{type}
    db:change:{collection}
    db:{type}:{collection}
    db:change:{collection}:{id}
    db:{type}:{collection}:{id}

The collection part is always lower-cased. The two document level topics only
exist when the change carries a document key.
"""

from dataclasses import dataclass
from dataclasses import field
from typing import Any
from typing import Mapping
from typing import Optional


INSERT = "insert"
UPDATE = "update"
REPLACE = "replace"
DELETE = "delete"
INVALIDATE = "invalidate"
DROP = "drop"
DROP_DATABASE = "dropDatabase"
RENAME = "rename"

OPERATION_TYPES = frozenset(
    {INSERT, UPDATE, REPLACE, DELETE, INVALIDATE, DROP, DROP_DATABASE, RENAME}
)

TOPIC_ROOT = "db"
CHANGE_TOPIC = f"{TOPIC_ROOT}:change"
STREAM_REGISTER = f"{TOPIC_ROOT}:stream[register]"


@dataclass(frozen=True)
class ChangeEvent(object):
    """A single change observed on the change feed."""

    operation_type: str
    """One of OPERATION_TYPES."""

    database: str
    """Name of the database the change happened in."""

    collection: str
    """Collection name as reported by the feed. Empty for database events."""

    document_id: Optional[Any] = None
    """The changed document's _id, None for collection level operations."""

    full_document: Optional[Mapping[str, Any]] = None
    """The document after the change, when the feed looked it up."""

    full_document_before_change: Optional[Mapping[str, Any]] = None
    """The pre-image, when the collection records them."""

    update_description: Optional[Mapping[str, Any]] = None
    """updatedFields / removedFields for update operations."""

    cluster_time: Optional[Any] = None
    """Logical timestamp of the change."""

    raw: Mapping[str, Any] = field(default_factory=dict, compare=False, repr=False)
    """The untouched change document."""

    @classmethod
    def from_change(cls, change: Mapping[str, Any]) -> "ChangeEvent":
        """Build an event from a raw change stream document."""
        ns = change.get("ns") or {}
        document_key = change.get("documentKey") or {}
        return cls(
            operation_type=change["operationType"],
            database=ns.get("db", ""),
            collection=ns.get("coll", ""),
            document_id=document_key.get("_id"),
            full_document=change.get("fullDocument"),
            full_document_before_change=change.get("fullDocumentBeforeChange"),
            update_description=change.get("updateDescription"),
            cluster_time=change.get("clusterTime"),
            raw=change,
        )

    @property
    def has_document_id(self) -> bool:
        return self.document_id is not None and self.document_id != ""


def document_key(doc_id: Any) -> str:
    """String form of an id, used for topic names and id comparison."""
    return str(doc_id)


def classify(event: ChangeEvent) -> list[str]:
    """
    Return the ordered, duplicate free list of topics for an event.

    Args:
        event (ChangeEvent): The change to classify.
    Returns:
        list[str]: Four topics, or six when the event carries a document id.
    Example:
        >>> classify(ChangeEvent("insert", "app", "Users", document_id=7))
        ['db:change', 'db:insert', 'db:change:users', 'db:insert:users',
         'db:change:users:7', 'db:insert:users:7']
    """
    collection = event.collection.lower()
    type_topic = f"{TOPIC_ROOT}:{event.operation_type}"
    collection_topic = f"{CHANGE_TOPIC}:{collection}"
    type_collection_topic = f"{type_topic}:{collection}"

    topics = [CHANGE_TOPIC, type_topic, collection_topic, type_collection_topic]

    if event.has_document_id:
        doc_id = document_key(event.document_id)
        topics.append(f"{collection_topic}:{doc_id}")
        topics.append(f"{type_collection_topic}:{doc_id}")

    # A type named "change" would repeat the collection topics.
    return list(dict.fromkeys(topics))


def change_payload(event: ChangeEvent) -> dict[str, Any]:
    """
    Payload delivered on the classified topics.

    The raw change document, plus 'col' (lower-cased collection name) and
    'docId' when the change targets a single document.
    """
    payload = dict(event.raw)
    payload["col"] = event.collection.lower()
    if event.has_document_id:
        payload["docId"] = event.document_id
    return payload


def stream_topic(stream_id: str) -> str:
    """Topic a list-stream's filtered view is published on."""
    return f"{TOPIC_ROOT}:stream:{stream_id}"


def register_reply_topic(correlation_id: str) -> str:
    """Topic a snapshot replay request is answered on."""
    return f"{STREAM_REGISTER}[{correlation_id}]"

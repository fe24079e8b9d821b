"""
Unit tests for the in-process listener registry.

Tests cover registration order, priorities, removal of one or every callback,
sync-only notify() versus notify_async(), and the introspection/export API.
"""

# -----------------------------------------------------------------------------
# Most tests register functions that append to a local list and validate that
# the list contains the expected items.
# -----------------------------------------------------------------------------

import json
from pathlib import Path
from typing import Any

import pytest

from mongo_realtime.listeners import ListenerRegistry


# -----Registration------------------------------------------------------------


def test_listen_and_notify() -> None:
    """Test that a listener receives the payload of its topic."""
    registry = ListenerRegistry()
    received: list[Any] = []

    registry.listen("db:insert", received.append)
    registry.notify("db:insert", {"_id": 1})

    assert received == [{"_id": 1}]


def test_other_topics_are_not_delivered() -> None:
    """Test that a listener only hears its own topic."""
    registry = ListenerRegistry()
    received: list[Any] = []

    registry.listen("db:insert", received.append)
    registry.notify("db:delete", {"_id": 1})
    registry.notify("db:insert:users", {"_id": 1})

    assert received == []


def test_registration_order_is_kept() -> None:
    """Test that callbacks of one topic run in the order they were added."""
    registry = ListenerRegistry()
    order: list[str] = []

    registry.listen("t", lambda payload: order.append("first"))
    registry.listen("t", lambda payload: order.append("second"))
    registry.listen("t", lambda payload: order.append("third"))
    registry.notify("t", None)

    assert order == ["first", "second", "third"]


def test_priority_runs_first() -> None:
    """Test that higher priorities run earlier, ties in registration order."""
    registry = ListenerRegistry()
    order: list[str] = []

    registry.listen("t", lambda payload: order.append("low"), priority=1)
    registry.listen("t", lambda payload: order.append("high-a"), priority=10)
    registry.listen("t", lambda payload: order.append("default"))
    registry.listen("t", lambda payload: order.append("high-b"), priority=10)
    registry.notify("t", None)

    assert order == ["high-a", "high-b", "low", "default"]


def test_same_callback_twice_is_called_twice() -> None:
    """Test that listening twice appends twice."""
    registry = ListenerRegistry()
    received: list[Any] = []

    registry.listen("t", received.append)
    registry.listen("t", received.append)
    registry.notify("t", 1)

    assert received == [1, 1]


# -----Removal-----------------------------------------------------------------


def test_remove_specific_listener() -> None:
    """Test that removing one callback keeps the others."""
    registry = ListenerRegistry()
    calls: list[str] = []

    def keep(payload: Any) -> None:
        calls.append("keep")

    def drop(payload: Any) -> None:
        calls.append("drop")

    registry.listen("t", keep)
    registry.listen("t", drop)
    registry.remove_listener("t", drop)
    registry.notify("t", None)

    assert calls == ["keep"]
    assert registry.is_listening(keep, "t")
    assert not registry.is_listening(drop, "t")


def test_remove_without_callback_clears_topic() -> None:
    """Test that removing with no callback clears every callback of the topic."""
    registry = ListenerRegistry()
    calls: list[str] = []

    registry.listen("t", lambda payload: calls.append("a"))
    registry.listen("t", lambda payload: calls.append("b"))
    registry.listen("other", lambda payload: calls.append("other"))
    registry.remove_listener("t")
    registry.notify("t", None)
    registry.notify("other", None)

    assert calls == ["other"]
    assert registry.get_topics() == ["other"]


def test_topic_deleted_when_emptied() -> None:
    """Test that removing the last callback deletes the topic entry."""
    registry = ListenerRegistry()

    def handler(payload: Any) -> None:
        pass

    registry.listen("t", handler)
    registry.remove_listener("t", handler)

    assert registry.get_topics() == []
    assert len(registry) == 0


def test_remove_unknown_is_harmless() -> None:
    """Test that removing from an unknown topic does nothing."""
    registry = ListenerRegistry()

    registry.remove_listener("missing")
    registry.remove_listener("missing", print)

    assert registry.get_topics() == []


def test_remove_all_listeners() -> None:
    """Test that every topic is cleared."""
    registry = ListenerRegistry()
    calls: list[str] = []

    registry.listen("a", lambda payload: calls.append("a"))
    registry.listen("b", lambda payload: calls.append("b"))
    registry.remove_all_listeners()
    registry.notify("a", None)
    registry.notify("b", None)

    assert calls == []
    assert len(registry) == 0


def test_listener_removed_during_notify() -> None:
    """Test that removing a listener while notifying does not skip others."""
    registry = ListenerRegistry()
    calls: list[str] = []

    def remover(payload: Any) -> None:
        calls.append("remover")
        registry.remove_listener("t", remover)

    registry.listen("t", remover)
    registry.listen("t", lambda payload: calls.append("next"))
    registry.notify("t", None)
    registry.notify("t", None)

    assert calls == ["remover", "next", "next"]


# -----Async-------------------------------------------------------------------


def test_notify_skips_async_listeners() -> None:
    """Test that notify() only calls synchronous callbacks."""
    registry = ListenerRegistry()
    sync_called: list[bool] = []
    async_called: list[bool] = []

    def sync_handler(payload: Any) -> None:
        sync_called.append(True)

    async def async_handler(payload: Any) -> None:
        async_called.append(True)

    registry.listen("t", sync_handler)
    registry.listen("t", async_handler)
    registry.notify("t", None)

    assert sync_called == [True]
    assert async_called == []


@pytest.mark.asyncio
async def test_notify_async_calls_both_in_order() -> None:
    """Test that notify_async() calls sync and async callbacks in order."""
    registry = ListenerRegistry()
    order: list[str] = []

    async def first(payload: Any) -> None:
        order.append("async-first")

    def second(payload: Any) -> None:
        order.append("sync-second")

    async def third(payload: Any) -> None:
        order.append("async-third")

    registry.listen("t", first)
    registry.listen("t", second)
    registry.listen("t", third)
    await registry.notify_async("t", None)

    assert order == ["async-first", "sync-second", "async-third"]


# -----Introspection-----------------------------------------------------------


def test_get_subscriptions() -> None:
    """Test listing the topics of a callback."""
    registry = ListenerRegistry()

    def on_change(payload: Any) -> None:
        pass

    registry.listen("db:insert", on_change)
    registry.listen("db:delete", on_change)
    registry.listen("db:update", print)

    assert registry.get_subscriptions(on_change) == ["db:delete", "db:insert"]
    assert registry.get_listener_count("db:insert") == 1
    assert registry.get_listener_count("missing") == 0


def test_get_listeners_flags_async() -> None:
    """Test that listener records know whether their callback is async."""
    registry = ListenerRegistry()

    async def async_handler(payload: Any) -> None:
        pass

    registry.listen("t", async_handler, priority=3)

    listener = registry.get_listeners("t")[0]
    assert listener.is_async is True
    assert listener.priority == 3
    assert listener.topic == "t"


def test_export_creates_valid_json_file(tmp_path: Path) -> None:
    """Test that export writes the same structure as to_dict()."""
    registry = ListenerRegistry()

    def handler1(payload: Any) -> None:
        pass

    async def handler2(payload: Any) -> None:
        pass

    registry.listen("db:insert", handler1, priority=10)
    registry.listen("db:stream:admins", handler2)

    output_file = tmp_path / "listeners.json"
    registry.export(output_file)

    with open(output_file) as f:
        data = json.load(f)

    assert data == registry.to_dict()
    assert data["db:insert"] == ["handler1 [priority=10]"]
    assert data["db:stream:admins"] == ["handler2 [async]"]
    assert json.loads(registry.to_string()) == data


def test_export_accepts_str_paths(tmp_path: Path) -> None:
    """Test that export accepts string paths too."""
    registry = ListenerRegistry()

    string_file = str(tmp_path / "empty.json")
    registry.export(string_file)

    with open(string_file) as f:
        assert json.load(f) == {}

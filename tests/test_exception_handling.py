"""
Unit tests for listener exception handling.

Tests verify the default policy (log and keep notifying), re-raising when no
policy is set, stopping delivery, and the silent and collecting policies, for
both sync and async listeners.
"""

import logging
from typing import Any

import pytest

from mongo_realtime import handlers
from mongo_realtime.listeners import ListenerRegistry


def test_default_handler_logs_and_continues(caplog) -> None:
    """Test that by default a failing listener does not stop the others."""
    registry = ListenerRegistry()
    calls: list[str] = []

    def failing_handler(payload: Any) -> None:
        calls.append("failing")
        raise ValueError("Test exception")

    def next_handler(payload: Any) -> None:
        calls.append("next")

    registry.listen("db:insert", failing_handler)
    registry.listen("db:insert", next_handler)

    with caplog.at_level(logging.WARNING, logger="mongo_realtime.handlers"):
        registry.notify("db:insert", None)

    assert calls == ["failing", "next"]
    assert (
        "Listener failing_handler failed on 'db:insert': ValueError: Test exception"
        in caplog.text
    )


def test_none_handler_reraises() -> None:
    """Test that with no policy the listener's exception propagates."""
    registry = ListenerRegistry(exception_handler=None)

    def failing_handler(payload: Any) -> None:
        raise ValueError("Test exception")

    registry.listen("t", failing_handler)

    with pytest.raises(ValueError, match="Test exception"):
        registry.notify("t", None)


def test_stop_handler_ends_delivery(caplog) -> None:
    """Test that stop_and_log stops the remaining listeners."""
    registry = ListenerRegistry()
    registry.set_exception_handler(handlers.stop_and_log_listener_exception)
    calls: list[str] = []

    def failing_handler(payload: Any) -> None:
        calls.append("failing")
        raise ValueError("boom")

    def should_not_run(payload: Any) -> None:
        calls.append("should_not_run")

    registry.listen("t", failing_handler)
    registry.listen("t", should_not_run)

    with caplog.at_level(logging.ERROR, logger="mongo_realtime.handlers"):
        registry.notify("t", None)

    assert calls == ["failing"]
    assert "remaining listeners skipped" in caplog.text
    assert caplog.records[0].exc_info[0] is ValueError


def test_silent_handler_continues() -> None:
    """Test that the silent policy keeps notifying."""
    registry = ListenerRegistry(handlers.silent_listener_exception)
    calls: list[str] = []

    def failing_handler(payload: Any) -> None:
        calls.append("failing")
        raise ValueError("Test exception")

    registry.listen("t", failing_handler)
    registry.listen("t", lambda payload: calls.append("succeeding"))
    registry.notify("t", None)

    assert calls == ["failing", "succeeding"]


def test_collector_records_topic_and_payload() -> None:
    """Test that the collector keeps callback, topic, payload and exception."""
    collector = handlers.ListenerFailureCollector()
    registry = ListenerRegistry(collector)

    class Handler:
        def on_change(self, payload: Any) -> None:
            raise RuntimeError("Instance method error")

    handler = Handler()
    registry.listen("db:delete:users", handler.on_change)
    registry.notify("db:delete:users", {"docId": 4})

    assert len(collector) == 1
    assert collector.to_dicts() == [
        {
            "callback": "Handler.on_change",
            "topic": "db:delete:users",
            "payload": {"docId": 4},
            "exception": "RuntimeError: Instance method error",
        }
    ]
    assert isinstance(collector.failures[0].exception, RuntimeError)

    collector.clear()
    assert collector.failures == []


def test_collectors_are_independent() -> None:
    """Test that two registries never share collected failures."""
    first, second = handlers.ListenerFailureCollector(), handlers.ListenerFailureCollector()
    first_registry, second_registry = ListenerRegistry(first), ListenerRegistry(second)

    def failing(payload: Any) -> None:
        raise ValueError(payload)

    first_registry.listen("t", failing)
    second_registry.listen("t", failing)
    first_registry.notify("t", "a")
    first_registry.notify("t", "b")
    second_registry.notify("t", "c")

    assert [f.payload for f in first.failures] == ["a", "b"]
    assert [f.payload for f in second.failures] == ["c"]


def test_collector_stop_after() -> None:
    """Test that a collector can stop delivery after enough failures."""
    collector = handlers.ListenerFailureCollector(stop_after=2)
    registry = ListenerRegistry(collector)
    calls: list[int] = []

    def failing(payload: Any) -> None:
        calls.append(payload)
        raise ValueError("x")

    for _ in range(3):
        registry.listen("t", failing)
    registry.notify("t", 1)

    assert calls == [1, 1]
    assert len(collector) == 2


def test_handler_receives_failure() -> None:
    """Test that a custom policy gets the callback, topic, payload and exception."""
    seen: list[handlers.ListenerFailure] = []

    def capture_handler(failure: handlers.ListenerFailure) -> bool:
        seen.append(failure)
        return handlers.CONTINUE

    registry = ListenerRegistry(capture_handler)

    def my_failing_callback(payload: Any) -> None:
        raise ValueError("Test")

    registry.listen("db:change", my_failing_callback)
    registry.notify("db:change", {"col": "users"})

    assert len(seen) == 1
    assert seen[0].callback is my_failing_callback
    assert seen[0].callback_name == "my_failing_callback"
    assert seen[0].topic == "db:change"
    assert seen[0].payload == {"col": "users"}
    assert isinstance(seen[0].exception, ValueError)


@pytest.mark.asyncio
async def test_handler_with_notify_async() -> None:
    """Test that exceptions from sync and async listeners both reach the policy."""
    collector = handlers.ListenerFailureCollector()
    registry = ListenerRegistry(collector)
    calls: list[str] = []

    async def failing_async(payload: Any) -> None:
        calls.append("failing_async")
        raise ValueError("Async error")

    def failing_sync(payload: Any) -> None:
        calls.append("failing_sync")
        raise TypeError("Sync error")

    async def succeeding_async(payload: Any) -> None:
        calls.append("succeeding_async")

    registry.listen("t", failing_async)
    registry.listen("t", failing_sync)
    registry.listen("t", succeeding_async)
    await registry.notify_async("t", None)

    assert calls == ["failing_async", "failing_sync", "succeeding_async"]
    assert [f.callback_name for f in collector.failures] == [
        "failing_async",
        "failing_sync",
    ]


@pytest.mark.asyncio
async def test_stop_handler_with_notify_async() -> None:
    """Test that a policy returning STOP ends async delivery."""
    registry = ListenerRegistry(lambda failure: handlers.STOP)
    calls: list[str] = []

    async def failing(payload: Any) -> None:
        calls.append("failing")
        raise ValueError("Stop")

    async def should_not_run(payload: Any) -> None:
        calls.append("should_not_run")

    registry.listen("t", failing)
    registry.listen("t", should_not_run)
    await registry.notify_async("t", None)

    assert calls == ["failing"]


def test_notify_logs_skipped_async_listener(caplog) -> None:
    """Test that notify() reports async listeners it does not call."""
    registry = ListenerRegistry()

    async def on_insert(payload: Any) -> None:
        pass

    registry.listen("db:insert", on_insert)

    with caplog.at_level(logging.DEBUG, logger="mongo_realtime.listeners"):
        registry.notify("db:insert", None)

    assert "skipped async listener on_insert on 'db:insert'" in caplog.text


def test_get_callable_name() -> None:
    """Test naming of functions, bound methods and other callables."""

    class Handler:
        def on_event(self, payload: Any) -> None:
            pass

    class CallableObject:
        def __call__(self, payload: Any) -> None:
            pass

        def __str__(self) -> str:
            return "callable-object"

    def plain(payload: Any) -> None:
        pass

    assert handlers.get_callable_name(plain) == "plain"
    assert handlers.get_callable_name(Handler().on_event) == "Handler.on_event"
    assert handlers.get_callable_name(CallableObject()) == "callable-object"

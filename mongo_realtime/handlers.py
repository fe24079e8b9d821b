"""
Failure policies for in-process listeners.

When a listener raises while a topic is being delivered, the registry wraps
what went wrong in a ListenerFailure (the callback, the topic, the payload it
was given and the exception) and hands it to its policy. The policy answers
STOP to abandon the remaining listeners of that delivery, or CONTINUE.

Policies are plain callables, so any function taking a ListenerFailure works.
Collected failures live on a ListenerFailureCollector instance, never in
module state, so two engines never see each other's failures.
"""

import logging
from dataclasses import dataclass
from typing import Any
from typing import Callable
from typing import Coroutine
from typing import Optional
from typing import Union


logger = logging.getLogger(__name__)


CALLBACK = Union[Callable[..., Any], Callable[..., Coroutine[Any, Any, Any]]]
"""A listener callback. Receives the topic payload. Can be sync or async."""

STOP = True
CONTINUE = False


def get_callable_name(callable_: Callable) -> str:
    """Readable name of a function, bound method or callable object."""
    owner = getattr(callable_, "__self__", None)
    name = getattr(callable_, "__name__", None)
    if name is None:
        return str(callable_)
    if owner is not None:
        return f"{owner.__class__.__name__}.{name}"
    return name


@dataclass(frozen=True)
class ListenerFailure(object):
    """One listener raising during one delivery."""

    callback: CALLBACK
    topic: str
    payload: Any
    exception: Exception

    @property
    def callback_name(self) -> str:
        return get_callable_name(self.callback)

    def describe(self) -> str:
        return (
            f"Listener {self.callback_name} failed on '{self.topic}': "
            f"{self.exception.__class__.__name__}: {self.exception}"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "callback": self.callback_name,
            "topic": self.topic,
            "payload": self.payload,
            "exception": f"{self.exception.__class__.__name__}: {self.exception}",
        }


LISTENER_EXCEPTION_HANDLER = Callable[[ListenerFailure], bool]
"""Policy deciding, for one failure, whether delivery goes on."""


# -----Policies----------------------------------------------------------------


def stop_and_log_listener_exception(failure: ListenerFailure) -> bool:
    """Log the failure with its traceback and skip the remaining listeners."""
    logger.error(
        "%s; remaining listeners skipped",
        failure.describe(),
        exc_info=failure.exception,
    )
    return STOP


def log_and_continue_listener_exception(failure: ListenerFailure) -> bool:
    """Default policy: one warning per failure, the other listeners still run."""
    logger.warning(failure.describe())
    return CONTINUE


def silent_listener_exception(_: ListenerFailure) -> bool:
    return CONTINUE


class ListenerFailureCollector(object):
    """
    Policy keeping every failure for later inspection.

    Pass an instance as the exception handler of a registry or engine, then
    read `failures`.

    Example:
        >>> collector = ListenerFailureCollector()
        >>> engine = RealtimeEngine(RealtimeConfig(
        ...     source=source, listener_exception_handler=collector))
        >>> [f.topic for f in collector.failures]
    """

    def __init__(self, stop_after: Optional[int] = None) -> None:
        """
        Args:
            stop_after (Optional[int]): Answer STOP once this many failures
                were collected. None always continues.
        """
        self.stop_after = stop_after
        self.failures: list[ListenerFailure] = []

    def __call__(self, failure: ListenerFailure) -> bool:
        self.failures.append(failure)
        if self.stop_after is not None and len(self.failures) >= self.stop_after:
            return STOP
        return CONTINUE

    def clear(self) -> None:
        self.failures.clear()

    def to_dicts(self) -> list[dict[str, Any]]:
        return [failure.to_dict() for failure in self.failures]

    def __len__(self) -> int:
        return len(self.failures)

"""Named-event listener registry shared by channels, clients and subscriptions.

Each emitter instance owns a registry mapping an event name to an ordered
list of listener handles. Listeners run in registration order, one failing
listener never prevents the others from running, and every registration
can be removed explicitly through the handle returned by on().

Key features:
- Closed set of event names per emitter class (typos raise ValueError)
- Plain callables and coroutine functions are both accepted
- emit() for fire-and-forget, emit_async() to await every listener in order
- once() registrations remove themselves after the first invocation
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, ClassVar

import structlog

logger = structlog.get_logger(__name__)

Listener = Callable[[Any], Any]

_handle_ids = itertools.count(1)


@dataclass(eq=False)
class ListenerHandle:
    """A single registration returned by EventEmitter.on().

    Attributes:
        event: Event name the listener is registered for
        listener: The registered callable
        once: Remove the registration after the first invocation
    """

    event: str
    listener: Listener
    once: bool = False
    handle_id: int = field(default_factory=lambda: next(_handle_ids))
    _emitter: EventEmitter | None = field(default=None, repr=False)

    @property
    def active(self) -> bool:
        return self._emitter is not None

    def remove(self) -> bool:
        """Unregister this listener. Returns False if it was already removed."""
        if self._emitter is None:
            return False
        return self._emitter.off(self)


class EventEmitter:
    """Ordered per-instance listener registry.

    Subclasses declare the event names they emit in `events`.

    Example:
        >>> item.on("changed", lambda value: print(value.value))
        >>> handle = subscription.on("keepalive", on_keepalive)
        >>> handle.remove()

    Thread Safety:
        Designed for use within a single asyncio event loop.
    """

    events: ClassVar[frozenset[str]] = frozenset()

    def __init__(self) -> None:
        self._listeners: dict[str, list[ListenerHandle]] = {}
        self._running_tasks: set[asyncio.Task[Any]] = set()

    def on(self, event: str, listener: Listener) -> ListenerHandle:
        """Register `listener` for `event`.

        Args:
            event: One of the emitter's event names
            listener: Callable receiving the event payload; may be async

        Returns:
            Handle that can be passed to off() or removed directly

        Raises:
            ValueError: If the event name is not emitted by this class
        """
        return self._register(event, listener, once=False)

    def once(self, event: str, listener: Listener) -> ListenerHandle:
        """Register `listener` for the next `event` only."""
        return self._register(event, listener, once=True)

    def off(self, event: str | ListenerHandle, listener: Listener | None = None) -> bool:
        """Unregister a listener.

        Accepts either the handle returned by on() or an (event, listener)
        pair. In the latter form every registration of that listener for the
        event is removed.

        Returns:
            True if at least one registration was removed
        """
        if isinstance(event, ListenerHandle):
            handle = event
            handles = self._listeners.get(handle.event, [])
            if handle not in handles:
                return False
            handles.remove(handle)
            handle._emitter = None
            return True

        self._check_event(event)
        handles = self._listeners.get(event, [])
        removed = [h for h in handles if h.listener == listener]
        for handle in removed:
            handles.remove(handle)
            handle._emitter = None
        return bool(removed)

    def remove_all_listeners(self, event: str | None = None) -> None:
        """Drop every registration, or every registration for one event."""
        events = [event] if event is not None else list(self._listeners)
        for name in events:
            for handle in self._listeners.pop(name, []):
                handle._emitter = None

    def listeners(self, event: str) -> list[Listener]:
        """Return the listeners for `event` in invocation order."""
        self._check_event(event)
        return [h.listener for h in self._listeners.get(event, [])]

    def listener_count(self, event: str) -> int:
        return len(self.listeners(event))

    def emit(self, event: str, payload: Any = None) -> int:
        """Invoke the listeners for `event` without waiting on async ones.

        Synchronous listeners run inline in registration order. Coroutines
        returned by async listeners are scheduled as tasks in the same order.

        Returns:
            Number of listeners invoked
        """
        handles = self._take(event)
        for handle in handles:
            try:
                result = handle.listener(payload)
            except Exception as e:
                self._log_failure(handle, e)
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(self._await_listener(handle, result))
                self._running_tasks.add(task)
                task.add_done_callback(self._running_tasks.discard)
        return len(handles)

    async def emit_async(self, event: str, payload: Any = None) -> int:
        """Invoke the listeners for `event`, awaiting each one in order.

        A listener only starts once the previous one has finished, so
        listeners observe notifications in delivery order.

        Returns:
            Number of listeners invoked
        """
        handles = self._take(event)
        for handle in handles:
            try:
                result = handle.listener(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                self._log_failure(handle, e)
        return len(handles)

    async def wait_listeners(self) -> None:
        """Wait for async listeners scheduled by emit() to finish."""
        if self._running_tasks:
            await asyncio.gather(*self._running_tasks, return_exceptions=True)

    # --- Internal methods ---

    def _register(self, event: str, listener: Listener, once: bool) -> ListenerHandle:
        self._check_event(event)
        if not callable(listener):
            raise TypeError(f"listener for {event!r} must be callable")
        handle = ListenerHandle(event=event, listener=listener, once=once, _emitter=self)
        self._listeners.setdefault(event, []).append(handle)
        logger.debug(
            "listener_registered",
            emitter=type(self).__name__,
            event_name=event,
            handle_id=handle.handle_id,
        )
        return handle

    def _take(self, event: str) -> list[ListenerHandle]:
        """Snapshot the listeners for one emission and expire once-handles."""
        self._check_event(event)
        handles = list(self._listeners.get(event, []))
        for handle in handles:
            if handle.once:
                self.off(handle)
        return handles

    def _check_event(self, event: str) -> None:
        if event not in self.events:
            raise ValueError(
                f"{type(self).__name__} does not emit {event!r} "
                f"(known events: {', '.join(sorted(self.events))})"
            )

    async def _await_listener(self, handle: ListenerHandle, awaitable: Any) -> None:
        try:
            await awaitable
        except Exception as e:
            self._log_failure(handle, e)

    def _log_failure(self, handle: ListenerHandle, error: Exception) -> None:
        logger.error(
            "event_listener_failed",
            emitter=type(self).__name__,
            event_name=handle.event,
            listener=getattr(handle.listener, "__name__", repr(handle.listener)),
            error=str(error),
            exc_info=True,
        )

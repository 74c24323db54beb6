"""Log and error notifications for whoever is driving the proxy.

Replaces the old OnLog/OnError events with an injected sink. Every message is
stamped with local wall-clock time ([HH:mm:ss]) and also written through
logfire, so nothing is lost when nobody subscribes.

Subscribers are called inline, in emission order. They may be plain functions
or coroutine functions; coroutines are scheduled on the running loop and not
awaited.
"""

import asyncio
from typing import Awaitable, Callable

import logfire
import pendulum

# (message) -> None or Awaitable[None]
EventCallback = Callable[[str], None] | Callable[[str], Awaitable[None]]


def timestamp() -> str:
    """Local time as HH:mm:ss."""
    return pendulum.now().format("HH:mm:ss")


def format_log(message: str) -> str:
    return f"[{timestamp()}] {message}"


def format_error(message: str) -> str:
    return f"[{timestamp()}] ERROR: {message}"


class ProxyEvents:
    """Fan-out of formatted log/error messages to subscribers.

    Usage:
        events = ProxyEvents(on_log=print, on_error=print)
        proxy = XmlaProxy(events=events)
    """

    def __init__(
        self,
        on_log: EventCallback | None = None,
        on_error: EventCallback | None = None,
    ):
        self._log_subscribers: list[EventCallback] = []
        self._error_subscribers: list[EventCallback] = []
        # Keep references so scheduled coroutine callbacks aren't collected mid-flight
        self._pending: set[asyncio.Task] = set()

        if on_log:
            self._log_subscribers.append(on_log)
        if on_error:
            self._error_subscribers.append(on_error)

    def subscribe_log(self, callback: EventCallback) -> None:
        self._log_subscribers.append(callback)

    def subscribe_error(self, callback: EventCallback) -> None:
        self._error_subscribers.append(callback)

    def unsubscribe(self, callback: EventCallback) -> None:
        """Remove ``callback`` from both lists. Unknown callbacks are ignored."""
        for subscribers in (self._log_subscribers, self._error_subscribers):
            while callback in subscribers:
                subscribers.remove(callback)

    def log(self, message: str) -> None:
        logfire.info(message)
        self._dispatch(self._log_subscribers, format_log(message))

    def error(self, message: str) -> None:
        logfire.error(message)
        self._dispatch(self._error_subscribers, format_error(message))

    def _dispatch(self, subscribers: list[EventCallback], formatted: str) -> None:
        for callback in list(subscribers):
            try:
                result = callback(formatted)
            except Exception as e:
                logfire.warning(f"Event subscriber error: {e}")
                continue

            if asyncio.iscoroutine(result):
                try:
                    loop = asyncio.get_running_loop()
                except RuntimeError:
                    result.close()
                    logfire.warning("Async event subscriber called with no running loop")
                    continue
                task = loop.create_task(result)
                self._pending.add(task)
                task.add_done_callback(self._pending.discard)

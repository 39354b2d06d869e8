"""Central publish/subscribe bus with a middleware chain and a message buffer.

Every published message is appended to a bounded buffer, run through the
registered middleware in registration order, and then handed to the
subscribers of its event. Middleware has the signature::

    async def middleware(message, context, proceed):
        ...
        await proceed()

A middleware that never awaits ``proceed`` ends the chain: the message stays
in the buffer but no subscriber is notified and no error is raised.
"""

import inspect
import json
import logging
from collections import deque
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, Union

from botline.models import MiddlewareContext

logger = logging.getLogger("botline.bus")

Middleware = Callable[[Any, MiddlewareContext, Callable[[], Awaitable[None]]], Awaitable[None]]
Handler = Callable[..., Union[None, Awaitable[None]]]

ERROR_EVENT = "error"
DEFAULT_BUFFER_SIZE = 100


@dataclass(frozen=True)
class BufferEntry:
    """A published message as recorded in the buffer."""
    event: str
    message: str
    context: MiddlewareContext
    timestamp: datetime


def _preview(message: Any) -> str:
    if isinstance(message, str):
        return message
    return json.dumps(message, default=str)


def _snapshot(context: MiddlewareContext) -> MiddlewareContext:
    return replace(context, args=list(context.args), extra=dict(context.extra))


class MessageBus:
    """Publish/subscribe bus shared by routers, commands and the HTTP layer."""

    def __init__(self, max_buffer_size: int = DEFAULT_BUFFER_SIZE):
        if max_buffer_size < 1:
            raise ValueError("max_buffer_size must be at least 1")
        self.max_buffer_size = max_buffer_size
        self._buffer: deque[BufferEntry] = deque(maxlen=max_buffer_size)
        self._middleware: list[Middleware] = []
        self._subscribers: dict[str, list[Handler]] = {}

    # --- Middleware ---

    def use(self, middleware: Middleware) -> None:
        """Append a middleware to the end of the chain."""
        self._middleware.append(middleware)
        logger.debug("middleware_registered name=%s", getattr(middleware, "__name__", "anonymous"))

    @property
    def middleware(self) -> list[Middleware]:
        return list(self._middleware)

    async def _run_middleware(self, message: Any, context: MiddlewareContext) -> bool:
        """Run the chain once. Returns True if every middleware proceeded."""
        chain = tuple(self._middleware)
        index = 0
        completed = False

        async def proceed() -> None:
            nonlocal index, completed
            if index < len(chain):
                middleware = chain[index]
                index += 1
                await middleware(message, context, proceed)
            else:
                completed = True

        await proceed()
        return completed

    # --- Subscriptions ---

    def subscribe(self, event: str, handler: Handler) -> None:
        """Call ``handler(message, context)`` whenever ``event`` is published."""
        self._subscribers.setdefault(event, []).append(handler)

    def unsubscribe(self, event: str, handler: Handler) -> bool:
        """Remove a handler. Returns False if it was not subscribed."""
        handlers = self._subscribers.get(event, [])
        if handler not in handlers:
            return False
        handlers.remove(handler)
        return True

    def on_error(self, handler: Handler) -> None:
        """Observe publish failures: ``handler(error, details)``."""
        self.subscribe(ERROR_EVENT, handler)

    async def emit(self, event: str, *args: Any) -> None:
        """Notify subscribers of ``event`` directly, skipping buffer and middleware."""
        for handler in list(self._subscribers.get(event, [])):
            result = handler(*args)
            if inspect.isawaitable(result):
                await result

    async def _emit_error(self, error: Exception, details: dict) -> None:
        for handler in list(self._subscribers.get(ERROR_EVENT, [])):
            try:
                result = handler(error, details)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("error_observer_failed event=%s", details.get("event"))

    # --- Publishing ---

    async def publish(self, event: str, message: Any, context: Optional[MiddlewareContext] = None) -> bool:
        """Buffer a message, run the middleware chain, then notify subscribers.

        Args:
            event: Event name, e.g. "message:incoming"
            message: Message text (other payloads are buffered as JSON)
            context: Per-message context; middleware may annotate it

        Returns:
            True if subscribers were notified, False if a middleware stopped
            the chain without raising.

        Raises:
            Exception: Whatever a middleware or subscriber raised, after it has
                been reported to the error observers.
        """
        if context is None:
            context = MiddlewareContext()
        preview = _preview(message)

        try:
            self._buffer.append(BufferEntry(
                event=event,
                message=preview,
                context=_snapshot(context),
                timestamp=datetime.now(timezone.utc),
            ))

            if not await self._run_middleware(message, context):
                logger.debug("message_dropped event=%s preview=%s", event, preview[:50])
                return False

            await self.emit(event, message, context)
        except Exception as e:
            logger.error("publish_failed event=%s error=%s", event, e)
            await self._emit_error(e, {"event": event, "message": message, "context": context})
            raise

        logger.debug("message_published event=%s preview=%s", event, preview[:50])
        return True

    # --- Buffer ---

    def get_recent_messages(self, count: int = 10) -> list[BufferEntry]:
        """Return the last ``count`` buffer entries, oldest first."""
        if count <= 0:
            return []
        return list(self._buffer)[-count:]

    def get_buffer_stats(self) -> dict:
        """Report buffer size, capacity and the oldest/newest timestamps."""
        return {
            "size": len(self._buffer),
            "max_size": self.max_buffer_size,
            "oldest": self._buffer[0].timestamp if self._buffer else None,
            "newest": self._buffer[-1].timestamp if self._buffer else None,
        }

    def clear_buffer(self) -> None:
        self._buffer.clear()
        logger.debug("message_buffer_cleared")

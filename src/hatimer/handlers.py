"""Handler registry: per-event-type ordered handler lists, concurrent dispatch."""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from typing import Any

from hatimer.errors import HandlerError
from hatimer.logging import get_logger
from hatimer.models import Event

logger = get_logger(__name__)

Handler = Callable[[Any], Awaitable[None] | None]


class HandlerRegistry:
    """Maps event types to the handlers that receive their ``arg``.

    Owned by a single HATimer; nothing is shared between instances.

    Example::

        registry = HandlerRegistry()

        async def send_reminder(arg):
            await mailer.send(arg["user_id"])

        registry.register("reminder", send_reminder)
        errors = await registry.dispatch(event)
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = {}

    def register(self, event_type: str, handler: Handler) -> None:
        """Append ``handler``; all handlers of a type run on each delivery."""
        self._handlers.setdefault(event_type, []).append(handler)
        logger.debug(
            "handler_registered",
            event_type=event_type,
            handler=getattr(handler, "__qualname__", repr(handler)),
        )

    def unregister(self, event_type: str, handler: Handler) -> bool:
        """Remove the first registration of ``handler``. Returns False if absent."""
        handlers = self._handlers.get(event_type)
        if not handlers or handler not in handlers:
            return False
        handlers.remove(handler)
        if not handlers:
            del self._handlers[event_type]
        return True

    def handlers_for(self, event_type: str) -> list[Handler]:
        return list(self._handlers.get(event_type, ()))

    def has_handlers(self, event_type: str) -> bool:
        return bool(self._handlers.get(event_type))

    @property
    def event_types(self) -> list[str]:
        return list(self._handlers)

    async def dispatch(self, event: Event) -> list[HandlerError]:
        """Invoke every handler for ``event`` concurrently and wait for all.

        Handlers start in registration order. A raising handler does not
        affect its siblings; its exception comes back wrapped in
        ``HandlerError``.
        """
        handlers = self.handlers_for(event.event_type)

        async def call(handler: Handler) -> None:
            result = handler(event.arg)
            if inspect.isawaitable(result):
                await result

        outcomes = await asyncio.gather(
            *[call(handler) for handler in handlers],
            return_exceptions=True,
        )

        errors: list[HandlerError] = []
        for handler, outcome in zip(handlers, outcomes):
            if isinstance(outcome, Exception):
                name = getattr(handler, "__qualname__", repr(handler))
                error = HandlerError(
                    f"Handler {name} failed: {outcome}", cause=outcome
                ).with_context(event_id=event.id, event_type=event.event_type, handler=name)
                logger.warning("event_handler_error", **error.to_dict()["context"], error=str(outcome))
                errors.append(error)
            elif isinstance(outcome, BaseException):
                raise outcome
        return errors

    def __len__(self) -> int:
        return sum(len(handlers) for handlers in self._handlers.values())


__all__ = ["Handler", "HandlerRegistry"]

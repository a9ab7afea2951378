"""Handler contract and the immutable handler registry."""

from __future__ import annotations

import inspect
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Iterable
from typing import Union

from src.modules.events.outcomes import HandlerOutcome
from src.modules.events.payloads import Event, EventPayloadBase

logger = logging.getLogger(__name__)

HandlerFunction = Callable[[Event], Union[HandlerOutcome, Awaitable[HandlerOutcome]]]


class EventHandler(ABC):
    """A named reaction to one or more event kinds.

    ``id`` is persisted with every recorded outcome, so it must stay stable
    across deployments. An empty ``event_types`` tuple subscribes the handler to
    every event kind. Handlers must not keep per-event state in memory; retry
    bookkeeping lives in the ``event_handler_state`` table.
    """

    id: str
    event_types: tuple[type[EventPayloadBase], ...] = ()

    def can_handle(self, payload: EventPayloadBase) -> bool:
        if not self.event_types:
            return True
        return isinstance(payload, self.event_types)

    def handles_kind(self, kind: str) -> bool:
        if not self.event_types:
            return True
        return any(t.model_fields["kind"].default == kind for t in self.event_types)

    @abstractmethod
    async def handle(self, event: Event) -> HandlerOutcome:
        """Process the event and report the outcome."""

    def __repr__(self) -> str:
        return f"<{type(self).__name__} id={self.id!r}>"


class FunctionHandler(EventHandler):
    """Adapts a plain (sync or async) function to :class:`EventHandler`."""

    def __init__(
        self,
        handler_id: str,
        func: HandlerFunction,
        event_types: tuple[type[EventPayloadBase], ...] = (),
    ) -> None:
        self.id = handler_id
        self.func = func
        self.event_types = event_types

    async def handle(self, event: Event) -> HandlerOutcome:
        result = self.func(event)
        if inspect.isawaitable(result):
            result = await result
        return result


def on(
    handler_id: str, *event_types: type[EventPayloadBase]
) -> Callable[[HandlerFunction], FunctionHandler]:
    """Decorator turning a function into a named handler for ``event_types``."""

    def decorator(func: HandlerFunction) -> FunctionHandler:
        return FunctionHandler(handler_id, func, tuple(event_types))

    return decorator


class HandlerRegistry:
    """Ordered, immutable set of handlers with unique ids."""

    def __init__(self, handlers: Iterable[EventHandler] = ()) -> None:
        handlers = tuple(handlers)
        seen: set[str] = set()
        for handler in handlers:
            if handler.id in seen:
                raise ValueError(f"Handler with id '{handler.id}' is already registered")
            seen.add(handler.id)
        self._handlers: tuple[EventHandler, ...] = handlers

    @property
    def handlers(self) -> tuple[EventHandler, ...]:
        return self._handlers

    def handlers_for(self, payload: EventPayloadBase) -> tuple[EventHandler, ...]:
        """Handlers subscribed to the payload's kind, in registration order."""
        return tuple(h for h in self._handlers if h.can_handle(payload))

    def handlers_for_kind(self, kind: str) -> tuple[EventHandler, ...]:
        """Same as :meth:`handlers_for`, without decoding the stored payload."""
        return tuple(h for h in self._handlers if h.handles_kind(kind))

    def __len__(self) -> int:
        return len(self._handlers)


class HandlerRegistryBuilder:
    """Collects handlers at startup and produces a :class:`HandlerRegistry`."""

    def __init__(self) -> None:
        self._handlers: list[EventHandler] = []

    def register(self, handler: EventHandler) -> HandlerRegistryBuilder:
        self._handlers.append(handler)
        logger.info("Registered handler %s", handler.id)
        return self

    def handle(
        self, handler_id: str, *event_types: type[EventPayloadBase]
    ) -> Callable[[HandlerFunction], FunctionHandler]:
        """Decorator form of :meth:`register` for inline handlers."""

        def decorator(func: HandlerFunction) -> FunctionHandler:
            handler = on(handler_id, *event_types)(func)
            self.register(handler)
            return handler

        return decorator

    def build(self) -> HandlerRegistry:
        return HandlerRegistry(self._handlers)

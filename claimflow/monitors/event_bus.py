"""
Claim Event Bus

Typed publish/subscribe channel for state and workflow events.
"""
import asyncio
import inspect
import logging
from collections import deque
from typing import Awaitable, Callable, Deque, Dict, List, Optional, Type, TypeVar, Union

from .events import ClaimEvent

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=ClaimEvent)

Handler = Callable[[E], Union[None, Awaitable[None]]]


class EventBus:
    """
    Routes published events to handlers registered for their type.

    A handler registered for a base class (e.g. StateEvent) receives every
    subclass event. Handlers may be plain functions or coroutines; they run
    in registration order and a failing handler never breaks the publisher.
    """

    def __init__(self, history_size: int = 500):
        """
        Initialize the event bus.

        Args:
            history_size: How many recent events to keep for late consumers
        """
        self._event_handlers: Dict[Type[ClaimEvent], List[Handler]] = {}
        self._history: Deque[ClaimEvent] = deque(maxlen=history_size)

    def register_handler(self, event_type: Type[E], handler: Handler) -> None:
        """
        Register a handler to be called when an event of event_type is published.

        Args:
            event_type: The event class (or base class) to listen for
            handler: Function or coroutine called with the event
        """
        if event_type not in self._event_handlers:
            self._event_handlers[event_type] = []
        self._event_handlers[event_type].append(handler)
        logger.debug(f"Registered handler for {event_type.name}")

    def register_catch_all(self, handler: Handler) -> None:
        """Register a handler for every event on the bus."""
        self.register_handler(ClaimEvent, handler)

    def unregister_handler(self, event_type: Type[E], handler: Handler) -> bool:
        handlers = self._event_handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)
            return True
        return False

    @property
    def history(self) -> List[ClaimEvent]:
        return list(self._history)

    def _handlers_for(self, event: ClaimEvent) -> List[Handler]:
        handlers: List[Handler] = []
        for event_type, registered in self._event_handlers.items():
            if isinstance(event, event_type):
                handlers.extend(registered)
        return handlers

    async def publish(self, event: ClaimEvent) -> None:
        """
        Publish an event to every matching handler.

        Args:
            event: The event to deliver
        """
        self._history.append(event)

        for handler in self._handlers_for(event):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(f"Handler failed for {event.name} on claim {event.claim_id}")

    async def wait_for(
        self,
        event_type: Type[E],
        predicate: Optional[Callable[[E], bool]] = None,
        timeout: Optional[float] = None
    ) -> E:
        """
        Wait for the next event of event_type matching predicate.

        Raises:
            asyncio.TimeoutError: If no matching event arrives within timeout
        """
        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()

        def _on_event(event: E) -> None:
            if future.done():
                return
            if predicate is None or predicate(event):
                future.set_result(event)

        self.register_handler(event_type, _on_event)
        try:
            return await asyncio.wait_for(future, timeout)
        finally:
            self.unregister_handler(event_type, _on_event)

# territory/event_handlers.py

"""Handler registry for per-interaction territory event subscriptions.

Consumers subscribe to an Interaction, optionally narrowed by a filter on
the event itself. The last-minute defense filter is the common case: a
reward system wants defenses only when they landed just before expiry.
"""

from dataclasses import dataclass
from datetime import timedelta
from typing import Awaitable, Callable, Iterable, Optional

from .events import Interaction, TerritoryEvent
from .exceptions import HandlerExecutionError
from .logging import get_logger

logger = get_logger(__name__)

# Type alias for event handlers
EventHandler = Callable[[TerritoryEvent], Awaitable[None]]
EventFilter = Callable[[TerritoryEvent], bool]


def last_minute_defenses(window: timedelta) -> EventFilter:
    """Filter accepting defenses that landed within `window` of expiry."""

    def accept(event: TerritoryEvent) -> bool:
        return event.is_last_minute_defense(window)

    accept.__name__ = f"last_minute_defenses_{int(window.total_seconds())}s"
    return accept


@dataclass(frozen=True)
class _Subscription:
    handler: EventHandler
    when: Optional[EventFilter] = None

    @property
    def name(self) -> str:
        return getattr(self.handler, "__name__", repr(self.handler))


class EventHandlerRegistry:
    """Routes TerritoryEvents to the consumers that care about them.

    XP, missions, feeds and notifications live outside the engine; they
    register here for the interactions they consume.
    """

    def __init__(self):
        self._handlers: dict[Interaction, list[_Subscription]] = {i: [] for i in Interaction}
        self._wildcard_handlers: list[_Subscription] = []
        self.logger = get_logger(f"{__name__}.EventHandlerRegistry")

    def on(
        self,
        interaction: Interaction | str,
        handler: EventHandler,
        when: Optional[EventFilter] = None,
    ) -> None:
        """Subscribe a handler to one interaction.

        Args:
            interaction: Interaction (or its value) to subscribe to
            handler: Async callable that processes the event
            when: Optional predicate; the handler only runs when it returns True

        Raises:
            ValueError: If `interaction` is not a known interaction
        """
        interaction = Interaction(interaction)
        self._handlers[interaction].append(_Subscription(handler, when))

        self.logger.debug(
            "handler.registered",
            interaction=interaction.value,
            filtered=when is not None,
            handler_count=len(self._handlers[interaction]),
        )

    def on_all(self, handler: EventHandler, when: Optional[EventFilter] = None) -> None:
        """Subscribe a handler to every interaction."""
        self._wildcard_handlers.append(_Subscription(handler, when))

        self.logger.debug(
            "handler.registered_wildcard",
            wildcard_handler_count=len(self._wildcard_handlers),
        )

    def on_last_minute_defense(self, handler: EventHandler, window: timedelta) -> None:
        self.on(Interaction.DEFENSE, handler, when=last_minute_defenses(window))

    @staticmethod
    def _discard(subscriptions: list[_Subscription], handler: EventHandler) -> bool:
        for subscription in subscriptions:
            if subscription.handler == handler:
                subscriptions.remove(subscription)
                return True
        return False

    def off(self, interaction: Interaction | str, handler: EventHandler) -> bool:
        """Unsubscribe a handler from one interaction.

        Returns:
            True if handler was removed, False if not found
        """
        interaction = Interaction(interaction)
        if self._discard(self._handlers[interaction], handler):
            self.logger.debug("handler.unregistered", interaction=interaction.value)
            return True
        return False

    def off_all(self, handler: EventHandler) -> bool:
        """Unsubscribe a wildcard handler."""
        if self._discard(self._wildcard_handlers, handler):
            self.logger.debug("handler.unregistered_wildcard")
            return True
        return False

    async def dispatch(self, event: TerritoryEvent, fail_fast: bool = False) -> int:
        """Dispatch an event to every handler whose filter accepts it.

        A filter that raises counts as a failed handler.

        Returns:
            Number of handlers that failed

        Raises:
            HandlerExecutionError: If fail_fast=True and a handler raises an exception
        """
        subscriptions = self._handlers[event.interaction] + self._wildcard_handlers
        if not subscriptions:
            return 0

        self.logger.debug(
            "event.dispatching",
            interaction=event.interaction.value,
            cell_id=event.cell_id,
            event_id=str(event.event_id),
            handler_count=len(subscriptions),
        )

        failures = 0
        for subscription in subscriptions:
            try:
                if subscription.when is not None and not subscription.when(event):
                    continue
                await subscription.handler(event)
            except Exception as e:
                self.logger.error(
                    "handler.execution_failed",
                    interaction=event.interaction.value,
                    event_id=str(event.event_id),
                    handler=subscription.name,
                    error=str(e),
                )
                if fail_fast:
                    raise HandlerExecutionError(
                        f"Handler {subscription.name} failed for event {event.event_id}: {e}"
                    ) from e
                failures += 1

        return failures

    async def dispatch_all(self, events: Iterable[TerritoryEvent], fail_fast: bool = False) -> int:
        """Dispatch events in order; returns the total number of handler failures."""
        failures = 0
        for event in events:
            failures += await self.dispatch(event, fail_fast)

        if failures:
            self.logger.warning("event.dispatch_completed_with_errors", error_count=failures)
        return failures

    def get_handler_count(self, interaction: Interaction | str | None = None) -> int:
        """Number of registered handlers, for one interaction or in total."""
        if interaction is None:
            total = sum(len(handlers) for handlers in self._handlers.values())
            return total + len(self._wildcard_handlers)
        return len(self._handlers[Interaction(interaction)])

    def clear(self) -> None:
        """Remove all registered handlers."""
        for subscriptions in self._handlers.values():
            subscriptions.clear()
        self._wildcard_handlers.clear()
        self.logger.info("handlers.cleared")

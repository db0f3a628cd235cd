"""Event sinks: where lifecycle signals go once the services emit them."""
from __future__ import annotations

import logging
from collections import defaultdict
from typing import Callable, DefaultDict, Iterable, List, Protocol, Type

from .models import FeatureUsed, LedgerEvent

logger = logging.getLogger(__name__)
events_logger = logging.getLogger("planledger.events")

EventHandler = Callable[[LedgerEvent], None]


class EventSink(Protocol):
    """Fire-and-forget receiver of lifecycle events."""

    def dispatch(self, event: LedgerEvent) -> None:
        ...


class NullEventSink(EventSink):
    def dispatch(self, event: LedgerEvent) -> None:
        return None


class LoggingEventSink(EventSink):
    """Sink that records every event to the ``planledger.events`` logger."""

    def dispatch(self, event: LedgerEvent) -> None:
        if isinstance(event, FeatureUsed):
            events_logger.info(
                "Ledger event %s subscription=%s subscriber=%s feature=%s units=%s",
                event.name,
                event.subscription.id,
                event.subscriber,
                event.feature.slug,
                event.units,
            )
            return
        events_logger.info(
            "Ledger event %s subscription=%s subscriber=%s plan=%s",
            event.name,
            event.subscription.id,
            event.subscriber,
            event.subscription.plan_id,
        )


class EventDispatcher(EventSink):
    """Fans events out to handlers registered per event type.

    Handlers also receive events of subclasses of the type they listen to, so
    listening to :class:`LedgerEvent` captures everything. A failing handler is
    logged and skipped; delivery is best effort and never retried.
    """

    def __init__(self, sinks: Iterable[EventSink] = ()) -> None:
        self._handlers: DefaultDict[Type[LedgerEvent], List[EventHandler]] = defaultdict(list)
        self._sinks: List[EventSink] = list(sinks)

    def listen(self, event_type: Type[LedgerEvent], handler: EventHandler) -> None:
        self._handlers[event_type].append(handler)

    def add_sink(self, sink: EventSink) -> None:
        self._sinks.append(sink)

    def handlers_for(self, event: LedgerEvent) -> List[EventHandler]:
        handlers: List[EventHandler] = []
        for event_type in type(event).__mro__:
            handlers.extend(self._handlers.get(event_type, ()))
        return handlers

    def dispatch(self, event: LedgerEvent) -> None:
        for sink in self._sinks:
            self._deliver(sink.dispatch, event)
        for handler in self.handlers_for(event):
            self._deliver(handler, event)

    def _deliver(self, handler: EventHandler, event: LedgerEvent) -> None:
        try:
            handler(event)
        except Exception:
            logger.exception("Event handler %r failed for %s", handler, event.name)


__all__ = ["EventDispatcher", "EventHandler", "EventSink", "LoggingEventSink", "NullEventSink"]

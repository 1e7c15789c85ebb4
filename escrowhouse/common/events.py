"""In-process event bus for engine state changes.

The engine only emits events; delivery to homeowners and contractors is the
notification service's job (see ``escrowhouse.integrations.notifications``).
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

from escrowhouse.common.enums import EventType
from escrowhouse.common.logging import get_logger

logger = get_logger("events")

EventHandler = Callable[[str, dict[str, Any]], Awaitable[None]]

_subscribers: list[EventHandler] = []


def subscribe(handler: EventHandler) -> None:
    if handler not in _subscribers:
        _subscribers.append(handler)


def unsubscribe(handler: EventHandler) -> None:
    if handler in _subscribers:
        _subscribers.remove(handler)


async def emit(event: EventType | str, data: dict[str, Any]) -> None:
    """Deliver an event to every subscriber.

    Safe to call from anywhere – a failing subscriber is logged and skipped so
    that a committed ledger change is never reported as failed.
    """
    name = event.value if isinstance(event, EventType) else event
    logger.info("Event %s %s", name, data)
    for handler in list(_subscribers):
        try:
            await handler(name, data)
        except Exception as e:
            logger.warning("Event handler failed for %s (non-critical): %s", name, e)

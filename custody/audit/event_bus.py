"""Lightweight publish/subscribe event bus for audit events."""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterable, List, Optional

logger = logging.getLogger(__name__)

AuditEventHandler = Callable[["AuditEvent"], Optional[Awaitable[None]] | None]


@dataclass(frozen=True)
class AuditEvent:
    """Envelope describing an audit event published to the bus.

    ``actor`` is the user on whose behalf the action ran (``None`` for system
    sweeps); ``subject`` is the object acted upon, usually a transaction id or
    wallet address.
    """

    name: str
    component: str
    actor: Optional[str]
    subject: str
    severity: str = "info"
    payload: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(tz=timezone.utc))

    def with_payload(self, **updates: Any) -> "AuditEvent":
        """Return a copy of the event with additional payload attributes."""

        merged = dict(self.payload)
        merged.update(updates)
        return replace(self, payload=merged)


class EventBus:
    """Event bus with async-aware handlers; handler failures never propagate."""

    def __init__(self) -> None:
        self._subscribers: List[AuditEventHandler] = []
        self._lock = asyncio.Lock()

    def subscribe(self, handler: AuditEventHandler) -> None:
        """Register a new event handler."""

        self._subscribers.append(handler)

    async def publish(self, event: AuditEvent) -> None:
        """Publish the event to all registered subscribers."""

        async with self._lock:
            handlers: Iterable[AuditEventHandler] = list(self._subscribers)

        for handler in handlers:
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result  # type: ignore[func-returns-value]
            except Exception:
                # sink failures stay inside the bus
                logger.exception("Audit event handler failed", extra={"event": event.name})

"""Audit trail facade used by the custody core."""

from __future__ import annotations

import logging
from collections import deque
from typing import Any, Deque, Iterable, List, Optional

from custody.metrics import record_audit_event, record_guardrail_violation

from .event_bus import AuditEvent, AuditEventHandler, EventBus
from .guardrails import Guardrail, GuardrailEngine, GuardrailViolation, default_guardrails

logger = logging.getLogger(__name__)


class AuditTrail:
    """Facade around the audit event bus, guardrails, and sinks.

    Sink failures are logged by the bus and never abort the triggering
    operation.
    """

    def __init__(
        self,
        *,
        guardrails: Iterable[Guardrail] | None = None,
        history_limit: int = 200,
    ) -> None:
        self._bus = EventBus()
        self._history: Deque[AuditEvent] = deque(maxlen=history_limit)
        self._guardrail_engine = GuardrailEngine(list(guardrails or ()), self._bus)
        self._bus.subscribe(self._history.append)
        self._bus.subscribe(self._guardrail_engine.handle_event)
        self._bus.subscribe(self._log_sink)
        self._bus.subscribe(self._metrics_sink)

    @property
    def history(self) -> List[AuditEvent]:
        return list(self._history)

    def register_guardrail(self, guardrail: Guardrail) -> None:
        self._guardrail_engine.register(guardrail)

    def subscribe(self, handler: AuditEventHandler) -> None:
        self._bus.subscribe(handler)

    async def emit(self, event: AuditEvent) -> None:
        await self._bus.publish(event)

    async def record(
        self,
        name: str,
        *,
        component: str,
        actor: Optional[str],
        subject: str,
        severity: str = "info",
        **payload: Any,
    ) -> None:
        await self.emit(
            AuditEvent(
                name=name,
                component=component,
                actor=actor,
                subject=subject,
                severity=severity,
                payload=payload,
            )
        )

    @staticmethod
    def _log_sink(event: AuditEvent) -> None:
        if isinstance(event, GuardrailViolation):
            logger.warning(
                "Guardrail violation",
                extra={"guardrail": event.guardrail_id, "subject": event.subject, "reason": event.reason},
            )
        else:
            logger.info(
                "Audit event %s", event.name, extra={"component": event.component, "subject": event.subject}
            )

    @staticmethod
    def _metrics_sink(event: AuditEvent) -> None:
        if isinstance(event, GuardrailViolation):
            record_guardrail_violation(event.guardrail_id, event.severity)
        record_audit_event(event.severity)


def bootstrap_default_audit_trail() -> AuditTrail:
    """Create the audit trail with the default guardrails."""

    return AuditTrail(guardrails=default_guardrails())

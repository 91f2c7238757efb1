"""Guardrail definitions and evaluation utilities."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional

from .event_bus import AuditEvent, EventBus


@dataclass(frozen=True)
class GuardrailViolation(AuditEvent):
    """Audit event emitted when a guardrail is breached."""

    guardrail_id: str = ""
    reason: str = ""


@dataclass
class Guardrail:
    """Declarative guardrail definition."""

    id: str
    description: str
    severity: str
    predicate: Callable[[AuditEvent], bool]
    reason: Callable[[AuditEvent], str] = field(default=lambda event: "")

    def evaluate(self, event: AuditEvent) -> Optional[GuardrailViolation]:
        if not self.predicate(event):
            return None
        return GuardrailViolation(
            name="guardrail.violation",
            component=event.component,
            actor=event.actor,
            subject=event.subject,
            severity=self.severity,
            payload={"event": event.name, **event.payload},
            guardrail_id=self.id,
            reason=self.reason(event),
        )


class GuardrailEngine:
    """Evaluates guardrails against published audit events."""

    def __init__(self, guardrails: Iterable[Guardrail], bus: EventBus) -> None:
        self._guardrails: List[Guardrail] = list(guardrails)
        self._bus = bus

    async def handle_event(self, event: AuditEvent) -> None:
        if isinstance(event, GuardrailViolation):
            return

        for guardrail in self._guardrails:
            violation = guardrail.evaluate(event)
            if violation is not None:
                await self._bus.publish(violation)

    def register(self, guardrail: Guardrail) -> None:
        self._guardrails.append(guardrail)


def default_guardrails() -> List[Guardrail]:
    """Guardrails raised on signing and settlement failures."""

    return [
        Guardrail(
            id="signing-failure",
            description="Failures to decrypt or sign with custodial keys",
            severity="high",
            predicate=lambda event: event.name in ("signer.sign.failed", "signer.send.failed")
            and event.payload.get("error_code") == "signing_failed",
            reason=lambda event: str(event.payload.get("error", "unknown failure")),
        ),
        Guardrail(
            id="broadcast-rejected",
            description="Signed transactions rejected by the network",
            severity="high",
            predicate=lambda event: event.name == "signer.send.failed"
            and event.payload.get("error_code") == "broadcast_rejected",
            reason=lambda event: str(event.payload.get("error", "rejected")),
        ),
        Guardrail(
            id="onchain-failure",
            description="Transactions reverted on chain after broadcast",
            severity="high",
            predicate=lambda event: event.name == "transaction.failed"
            and event.payload.get("stage") == "onchain",
            reason=lambda event: "receipt status 0",
        ),
    ]

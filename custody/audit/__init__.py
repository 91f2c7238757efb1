"""Audit trail, guardrails, and event bus for the custody core."""

from .event_bus import AuditEvent, EventBus
from .guardrails import Guardrail, GuardrailEngine, GuardrailViolation
from .service import AuditTrail, bootstrap_default_audit_trail

__all__ = [
    "AuditEvent",
    "EventBus",
    "Guardrail",
    "GuardrailViolation",
    "GuardrailEngine",
    "AuditTrail",
    "bootstrap_default_audit_trail",
]

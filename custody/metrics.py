"""Prometheus metric definitions and helpers for the custody service."""

from __future__ import annotations

from typing import Optional

from prometheus_client import Counter, Gauge, Histogram

TRANSFERS_TOTAL = Counter(
    "custody_transfers_total",
    "Transfers processed by the state machine partitioned by currency and outcome.",
    ["currency", "outcome"],
)

TRANSFER_DURATION_SECONDS = Histogram(
    "custody_transfer_duration_seconds",
    "Time spent building, signing and broadcasting a transfer.",
    ["currency"],
)

NONCES_ALLOCATED_TOTAL = Counter(
    "custody_nonces_allocated_total",
    "Nonces handed out by the allocator partitioned by chain and source.",
    ["chain", "source"],
)

PRICE_FETCH_TOTAL = Counter(
    "custody_price_fetch_total",
    "Reference price lookups partitioned by result (cache, fresh, stale, fallback).",
    ["result"],
)

PRICE_CONSECUTIVE_FAILURES = Gauge(
    "custody_price_consecutive_failures",
    "Consecutive failures observed against the upstream price source.",
)

BALANCE_READS_TOTAL = Counter(
    "custody_balance_reads_total",
    "Balance reads partitioned by cache outcome.",
    ["cache"],
)

RECONCILED_TOTAL = Counter(
    "custody_reconciled_total",
    "Transactions moved to a terminal state by the reconciler.",
    ["status"],
)

RECONCILE_ERRORS_TOTAL = Counter(
    "custody_reconcile_errors_total",
    "Receipt lookups that failed during reconciliation.",
)

AUDIT_EVENTS_TOTAL = Counter(
    "custody_audit_events_total",
    "Audit events emitted partitioned by severity.",
    ["severity"],
)

GUARDRAIL_VIOLATIONS_TOTAL = Counter(
    "custody_guardrail_violations_total",
    "Guardrail violations partitioned by guardrail id and severity.",
    ["guardrail_id", "severity"],
)


def record_transfer(currency: str, outcome: str, duration_seconds: Optional[float] = None) -> None:
    """Increment transfer counters and optionally record duration."""

    TRANSFERS_TOTAL.labels(currency=currency, outcome=outcome).inc()
    if duration_seconds is not None:
        TRANSFER_DURATION_SECONDS.labels(currency=currency).observe(duration_seconds)


def record_nonce_allocated(chain: str, source: str) -> None:
    NONCES_ALLOCATED_TOTAL.labels(chain=chain, source=source).inc()


def record_price_fetch(result: str) -> None:
    PRICE_FETCH_TOTAL.labels(result=result).inc()


def set_price_consecutive_failures(count: int) -> None:
    PRICE_CONSECUTIVE_FAILURES.set(count)


def record_balance_read(cache: str) -> None:
    BALANCE_READS_TOTAL.labels(cache=cache).inc()


def record_reconciled(status: str) -> None:
    RECONCILED_TOTAL.labels(status=status).inc()


def record_reconcile_error() -> None:
    RECONCILE_ERRORS_TOTAL.inc()


def record_audit_event(severity: str) -> None:
    AUDIT_EVENTS_TOTAL.labels(severity=severity).inc()


def record_guardrail_violation(guardrail_id: str, severity: str) -> None:
    GUARDRAIL_VIOLATIONS_TOTAL.labels(guardrail_id=guardrail_id, severity=severity).inc()

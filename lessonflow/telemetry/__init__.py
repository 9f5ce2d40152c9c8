"""Telemetry helpers and metrics."""

from .metrics import (
    ERROR_COUNTER,
    ITEM_COUNT,
    PROVIDER_CALLS,
    REQUEST_COUNT,
    REQUEST_LATENCY,
    SWEEP_COUNT,
    SWEEP_DURATION,
    observe_request,
    observe_sweep,
    record_items,
    record_provider_call,
)

__all__ = [
    "ERROR_COUNTER",
    "ITEM_COUNT",
    "PROVIDER_CALLS",
    "REQUEST_COUNT",
    "REQUEST_LATENCY",
    "SWEEP_COUNT",
    "SWEEP_DURATION",
    "observe_request",
    "observe_sweep",
    "record_items",
    "record_provider_call",
]

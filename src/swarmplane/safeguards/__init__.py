"""Swarmplane safeguards: bounded calls, conflict retry, circuit breaker."""

from swarmplane.safeguards.limits import (
    CircuitBreaker,
    CircuitBreakerOpen,
    bounded_call,
    retry_on_conflict,
)

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerOpen",
    "bounded_call",
    "retry_on_conflict",
]

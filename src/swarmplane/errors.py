"""
Swarmplane Errors
=================

Error taxonomy shared by every reconciler. The class decides how a failure
is handled:

- ValidationError: terminal, recorded on the object and never retried
- TransientInfraError (ConflictError, ExternalTimeout): requeue with backoff
- CapacityError: non-fatal, work stays queued
- AgentLivenessError: the agent is marked Failed and its work is released
- RetryExhausted: terminal, carries the last underlying error
"""

from __future__ import annotations

from typing import Optional


class SwarmError(Exception):
    """Base class for all control-plane errors."""

    reason = "Error"

    def __init__(self, message: str, reason: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if reason is not None:
            self.reason = reason


class ValidationError(SwarmError):
    """Raised when a spec can never be satisfied as written."""

    reason = "ValidationFailed"


class InvalidDependencyGraph(ValidationError):
    """Raised for dependency cycles or references to unknown subtasks."""

    reason = "InvalidDependencyGraph"


class InvalidConfiguration(ValidationError):
    """Raised for malformed cluster topology, ratio or bound settings."""

    reason = "InvalidConfiguration"


class TransientInfraError(SwarmError):
    """Raised when an external dependency is temporarily unavailable."""

    reason = "TransientError"


class ConflictError(TransientInfraError):
    """Raised when a write carries a stale resource version."""

    reason = "Conflict"


class ExternalTimeout(TransientInfraError):
    """Raised when a bounded external call exceeds its timeout."""

    reason = "ExternalTimeout"


class NotFoundError(SwarmError):
    """Raised when a stored object does not exist."""

    reason = "NotFound"


class AlreadyExistsError(SwarmError):
    """Raised when creating an object whose name is taken."""

    reason = "AlreadyExists"


class CapacityError(SwarmError):
    """Raised when no agent can accept a subtask right now."""

    reason = "InsufficientCapacity"


class AgentLivenessError(SwarmError):
    """Raised when an agent misses its heartbeat deadline."""

    reason = "HeartbeatTimeout"


class RetryExhausted(SwarmError):
    """Raised when a subtask has failed more often than its retry budget."""

    reason = "RetryExhausted"

    def __init__(self, message: str, last_error: str = ""):
        super().__init__(message)
        self.last_error = last_error

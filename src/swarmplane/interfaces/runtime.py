"""
Agent runtime interface.

The control plane never executes work itself. It hands assignments to an
``AgentRuntime`` and later collects the runtime's outcome reports and
heartbeats. Delivery is at-least-once; an assignment is identified by
(task, subtask, attempt), so re-dispatching the same attempt is harmless.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional, Protocol

from pydantic import BaseModel, Field

logger = logging.getLogger("swarmplane.runtime")


class Assignment(BaseModel):
    task: str
    subtask: str
    attempt: int
    agent: str
    type: str = ""
    required_capabilities: list[str] = Field(default_factory=list)
    parameters: dict[str, Any] = Field(default_factory=dict)
    environment: dict[str, str] = Field(default_factory=dict)

    @property
    def key(self) -> tuple[str, str, int]:
        return (self.task, self.subtask, self.attempt)


class SubtaskReport(BaseModel):
    """Outcome of one subtask attempt as reported by the runtime."""
    task: str
    subtask: str
    attempt: int
    agent: str = ""
    succeeded: bool
    result: dict[str, Any] = Field(default_factory=dict)
    artifact_available: bool = False
    error: str = ""

    @property
    def key(self) -> tuple[str, str, int]:
        return (self.task, self.subtask, self.attempt)


class AgentRuntime(Protocol):
    async def dispatch(self, assignment: Assignment) -> None: ...

    async def cancel(self, task: str, subtask: str, attempt: int) -> None: ...

    async def poll_reports(self, task: str) -> list[SubtaskReport]: ...

    async def ack_reports(self, task: str, reports: list[SubtaskReport]) -> None: ...

    async def last_heartbeat(self, agent: str) -> Optional[datetime]: ...


class InMemoryAgentRuntime:
    """Runtime double driven by tests and local simulations.

    Reports stay pending until acknowledged, so a reconcile pass that fails
    to persist its status sees the same reports again.
    """

    def __init__(self):
        self.assignments: dict[tuple[str, str, int], Assignment] = {}
        self.dispatch_log: list[tuple[str, str, int]] = []
        self.cancelled: list[tuple[str, str, int]] = []
        self._reports: dict[str, list[SubtaskReport]] = {}
        self._heartbeats: dict[str, datetime] = {}
        self.fail_dispatch = False

    async def dispatch(self, assignment: Assignment) -> None:
        if self.fail_dispatch:
            raise ConnectionError(f"runtime unreachable for {assignment.agent}")
        self.dispatch_log.append(assignment.key)
        if assignment.key in self.assignments:
            return
        self.assignments[assignment.key] = assignment
        logger.debug(f"Dispatched {assignment.task}/{assignment.subtask}#{assignment.attempt} to {assignment.agent}")

    async def cancel(self, task: str, subtask: str, attempt: int) -> None:
        self.cancelled.append((task, subtask, attempt))

    async def poll_reports(self, task: str) -> list[SubtaskReport]:
        return list(self._reports.get(task, []))

    async def ack_reports(self, task: str, reports: list[SubtaskReport]) -> None:
        acked = {r.key for r in reports}
        remaining = [r for r in self._reports.get(task, []) if r.key not in acked]
        if remaining:
            self._reports[task] = remaining
        else:
            self._reports.pop(task, None)

    async def last_heartbeat(self, agent: str) -> Optional[datetime]:
        return self._heartbeats.get(agent)

    # ── simulation helpers ───────────────────────────────────────────────

    def heartbeat(self, agent: str, at: datetime) -> None:
        self._heartbeats[agent] = at

    def running(self, task: Optional[str] = None) -> list[Assignment]:
        return [a for a in self.assignments.values() if task is None or a.task == task]

    def latest_assignment(self, task: str, subtask: str) -> Optional[Assignment]:
        matching = [a for a in self.assignments.values() if a.task == task and a.subtask == subtask]
        return max(matching, key=lambda a: a.attempt) if matching else None

    def report(self, report: SubtaskReport) -> None:
        self._reports.setdefault(report.task, []).append(report)

    def complete(
        self,
        task: str,
        subtask: str,
        result: Optional[dict[str, Any]] = None,
        artifact_available: bool = False,
    ) -> SubtaskReport:
        """Report success for the latest dispatched attempt of a subtask."""
        assignment = self.latest_assignment(task, subtask)
        if assignment is None:
            raise KeyError(f"{task}/{subtask} was never dispatched")
        report = SubtaskReport(
            task=task,
            subtask=subtask,
            attempt=assignment.attempt,
            agent=assignment.agent,
            succeeded=True,
            result=result or {},
            artifact_available=artifact_available,
        )
        self.report(report)
        return report

    def fail(self, task: str, subtask: str, error: str = "subtask failed") -> SubtaskReport:
        """Report failure for the latest dispatched attempt of a subtask."""
        assignment = self.latest_assignment(task, subtask)
        if assignment is None:
            raise KeyError(f"{task}/{subtask} was never dispatched")
        report = SubtaskReport(
            task=task,
            subtask=subtask,
            attempt=assignment.attempt,
            agent=assignment.agent,
            succeeded=False,
            error=error,
        )
        self.report(report)
        return report

"""
Task Scheduler
==============

Reconciler for Task objects. Each pass:

1. validates the dependency graph (a cycle or unknown reference fails the
   task permanently with InvalidDependencyGraph)
2. handles cancellation, timeout and resume
3. folds in runtime reports, work released by failed agents and
   assignments lost with their agent
4. promotes Retrying subtasks whose backoff has elapsed
5. applies the failure policy and marks Pending subtasks Ready or Skipped
6. claims ledger slots on the least-loaded qualifying agents and dispatches
7. checkpoints newly completed subtasks
8. aggregates phase, progress and result, then persists the status once

Subtask phases: Pending -> Ready -> Running -> Completed | Retrying | Failed,
with Skipped for dependents that can never run and Cancelled for work
stopped by cancellation, fail-fast or timeout.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

import networkx as nx

from swarmplane.audit import EventRecorder
from swarmplane.conditions import (
    CAPACITY_AVAILABLE,
    READY,
    find_condition,
    mark_failed,
    mark_progressing,
    mark_ready,
    set_condition,
)
from swarmplane.config import Settings
from swarmplane.controller.reconciler import ReconcileResult, Reconciler, earliest
from swarmplane.errors import (
    CapacityError,
    InvalidDependencyGraph,
    NotFoundError,
    RetryExhausted,
    TransientInfraError,
)
from swarmplane.interfaces.runtime import Assignment, SubtaskReport
from swarmplane.models import (
    Agent,
    AssignedAgent,
    FailurePolicy,
    SubtaskPhase,
    SubtaskRef,
    SubtaskSpec,
    SubtaskStatus,
    Task,
    TaskPhase,
    TaskResult,
    TaskStrategy,
    TERMINAL_SUBTASK_PHASES,
    TERMINAL_TASK_PHASES,
    utcnow,
)
from swarmplane.safeguards import bounded_call
from swarmplane.scheduler.assignment import claim_slot, find_claim, release_slot, select_agent
from swarmplane.scheduler.backoff import next_attempt_time
from swarmplane.scheduler.dag import Readiness, build_dag, dependency_readiness, topological_order
from swarmplane.scheduler.queue import ReleasedSubtask, ReleaseQueue

logger = logging.getLogger("swarmplane.scheduler")

TASK_FINALIZER = "swarmplane.io/task-cleanup"

_NOT_RESUMABLE = frozenset({InvalidDependencyGraph.reason, "TaskTimeout", "Cancelled"})
_QUEUED = frozenset({SubtaskPhase.PENDING, SubtaskPhase.READY, SubtaskPhase.RETRYING})


class TaskReconciler(Reconciler):
    kind = Task

    def __init__(
        self,
        store,
        runtime,
        checkpoints,
        release_queue: ReleaseQueue,
        settings: Optional[Settings] = None,
        events: Optional[EventRecorder] = None,
        metrics=None,
        clock: Callable[[], datetime] = utcnow,
    ):
        super().__init__(store, clock, metrics)
        self.runtime = runtime
        self.checkpoints = checkpoints
        self.release_queue = release_queue
        self.settings = settings or Settings()
        self.events = events
        self._notes: dict[str, list[tuple[str, str, str, Optional[TaskPhase]]]] = {}

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # Reconcile entry point
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    async def _reconcile(self, name: str) -> ReconcileResult:
        try:
            task = await self.store.get(Task, name)
        except NotFoundError:
            self._drop_released(name)
            raise
        self._notes.pop(name, None)
        if task.metadata.deletion_timestamp is not None:
            return await self._finalize(task)
        task = await self.ensure_finalizer(task, TASK_FINALIZER)

        before = task.status.model_copy(deep=True)
        status = task.status
        now = self.clock()

        try:
            graph = build_dag(task.spec.subtasks, task.spec.dependencies)
        except InvalidDependencyGraph as e:
            if status.phase not in TERMINAL_TASK_PHASES:
                self._finish(task, TaskPhase.FAILED, e.reason, str(e), now)
            await self._persist(task, before)
            self._drop_released(name)
            return ReconcileResult.done()

        for spec in task.spec.subtasks:
            if spec.name not in status.subtasks:
                status.subtasks[spec.name] = SubtaskStatus(name=spec.name)

        if status.phase is None:
            self._set_phase(task, TaskPhase.PENDING, "Accepted",
                            f"{len(task.spec.subtasks)} subtasks accepted", now)
            mark_progressing(status.conditions, "Accepted", "waiting to be scheduled", now)
            await self._persist(task, before)
            return ReconcileResult.requeue(0)

        if status.phase in (TaskPhase.COMPLETED, TaskPhase.CANCELLED):
            self._drop_released(name)
            return ReconcileResult.done()

        if status.phase == TaskPhase.FAILED:
            self._drop_released(name)
            if not self._resumable(task):
                return ReconcileResult.done()
            status.resume_count += 1
            self._set_phase(task, TaskPhase.RESUMING, "Resuming",
                            f"resume attempt {status.resume_count}/{self.settings.scheduler.max_resumes}", now)
            await self._persist(task, before)
            return ReconcileResult.requeue(0)

        if status.phase == TaskPhase.RESUMING:
            await self._restore(task, now)

        agents = await self.store.list(Agent, owner=task.spec.cluster)
        reports = await bounded_call(
            lambda: self.runtime.poll_reports(name),
            self.settings.controller.external_timeout_seconds,
            f"report poll {name}",
        )
        released = self.release_queue.pending(name)

        if task.spec.cancel:
            await self._abort(task, agents, SubtaskPhase.CANCELLED, "cancellation requested", now)
            self._finish(task, TaskPhase.CANCELLED, "Cancelled", "cancellation requested", now)
            checkpoint_due = False
        else:
            checkpoint_due = await self._advance(task, graph, agents, reports, released, now)

        await self._persist(task, before)
        if reports:
            await bounded_call(
                lambda: self.runtime.ack_reports(name, reports),
                self.settings.controller.external_timeout_seconds,
                f"report ack {name}",
            )
        if released:
            self.release_queue.ack(name, released)
        if self.metrics is not None:
            ready = sum(1 for s in status.subtasks.values() if s.phase == SubtaskPhase.READY)
            await self.metrics.record("task_queue_depth", ready, task=name)
        return self._next_requeue(task, now, checkpoint_due)

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # Scheduling pass
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    async def _advance(
        self,
        task: Task,
        graph: nx.DiGraph,
        agents: list[Agent],
        reports: list[SubtaskReport],
        released: list[ReleasedSubtask],
        now: datetime,
    ) -> bool:
        """Run one scheduling pass; returns True if a checkpoint save is still owed."""
        status = task.status
        if status.start_time is None:
            status.start_time = now

        timeout = task.spec.timeout_seconds
        if timeout is not None and (now - status.start_time).total_seconds() > timeout:
            message = f"task exceeded its timeout of {timeout:.0f}s"
            await self._abort(task, agents, SubtaskPhase.FAILED, message, now)
            self._finish(task, TaskPhase.FAILED, "TaskTimeout", message, now)
            return False

        for report in reports:
            await self._apply_report(task, report, now)

        for item in released:
            sub = status.subtasks.get(item.ref.subtask)
            if sub is not None and sub.phase == SubtaskPhase.RUNNING and sub.attempt == item.ref.attempt:
                self._subtask_failed(task, sub, f"agent {item.agent} released the subtask: {item.reason}", now)

        agents_by_name = {a.metadata.name: a for a in agents}
        for sub in status.subtasks.values():
            if sub.phase != SubtaskPhase.RUNNING:
                continue
            holder = agents_by_name.get(sub.assigned_agent or "")
            ref = SubtaskRef(task=task.metadata.name, subtask=sub.name, attempt=sub.attempt)
            if holder is None or ref not in holder.status.assigned_subtasks:
                self._subtask_failed(task, sub, f"assignment to agent {sub.assigned_agent} was lost", now)

        for sub in status.subtasks.values():
            if sub.phase == SubtaskPhase.RETRYING and sub.next_attempt_at is not None and sub.next_attempt_at <= now:
                sub.phase = SubtaskPhase.PENDING
                sub.next_attempt_at = None

        failure_policy = task.spec.failure_policy or self.settings.scheduler.failure_policy
        failed = [s for s in status.subtasks.values() if s.phase == SubtaskPhase.FAILED]
        if failed and failure_policy == FailurePolicy.FAIL_FAST:
            last = max(failed, key=lambda s: (s.completion_time or now, s.name))
            exhausted = RetryExhausted(
                f"subtask {last.name} failed after {last.retry_count} retries: {last.error}",
                last_error=last.error,
            )
            await self._abort(task, agents, SubtaskPhase.CANCELLED, "another subtask exhausted its retries", now)
            checkpoint_due = await self._checkpoint(task)
            self._finish(task, TaskPhase.FAILED, exhausted.reason, exhausted.message, now)
            return checkpoint_due

        order = topological_order(graph)
        for name in order:
            sub = status.subtasks[name]
            if sub.phase != SubtaskPhase.PENDING:
                continue
            readiness = dependency_readiness(graph, name, status.subtasks)
            if readiness == Readiness.READY:
                sub.phase = SubtaskPhase.READY
            elif readiness == Readiness.BLOCKED:
                sub.phase = SubtaskPhase.SKIPPED
                sub.completion_time = now
                sub.error = "dependencies can no longer be satisfied"

        shortage = await self._assign(task, agents_by_name, order, now)
        await self._dispatch(task, agents_by_name)
        checkpoint_due = await self._checkpoint(task)
        self._aggregate(task, failure_policy, shortage, agents_by_name, now)
        return checkpoint_due

    async def _apply_report(self, task: Task, report: SubtaskReport, now: datetime) -> None:
        sub = task.status.subtasks.get(report.subtask)
        if sub is None or sub.phase != SubtaskPhase.RUNNING or sub.attempt != report.attempt:
            logger.debug(f"Ignoring stale report for {task.metadata.name}/{report.subtask}#{report.attempt}")
            return
        agent = sub.assigned_agent
        ref = SubtaskRef(task=task.metadata.name, subtask=sub.name, attempt=sub.attempt)
        if report.succeeded:
            sub.phase = SubtaskPhase.COMPLETED
            sub.result = dict(report.result)
            sub.artifact_available = report.artifact_available
            sub.completion_time = now
            sub.error = ""
            logger.info(f"Task {task.metadata.name}: subtask {sub.name} completed on {agent}")
        else:
            self._subtask_failed(task, sub, report.error or "subtask failed", now)
        if agent:
            await release_slot(
                self.store, agent, ref, report.succeeded,
                attempts=self.settings.scheduler.ledger_retry_attempts,
            )

    def _subtask_failed(self, task: Task, sub: SubtaskStatus, error: str, now: datetime) -> None:
        sub.error = error
        sub.dispatched = False
        retry_at = next_attempt_time(task.spec.retry_policy, sub.retry_count, now)
        if retry_at is None:
            sub.phase = SubtaskPhase.FAILED
            sub.completion_time = now
            self._note(task, "Warning", "SubtaskFailed",
                       f"subtask {sub.name} failed permanently after {sub.retry_count} retries: {error}")
            return
        sub.retry_count += 1
        task.status.retry_count += 1
        sub.phase = SubtaskPhase.RETRYING
        sub.next_attempt_at = retry_at
        delay = (retry_at - now).total_seconds()
        self._note(task, "Warning", "SubtaskRetrying",
                   f"subtask {sub.name} retry {sub.retry_count}/{task.spec.retry_policy.max_retries} "
                   f"in {delay:.0f}s: {error}")

    async def _assign(
        self,
        task: Task,
        pool: dict[str, Agent],
        order: list[str],
        now: datetime,
    ) -> list[str]:
        """Claim agents for Ready subtasks; returns the names left without one."""
        status = task.status
        specs = {s.name: s for s in task.spec.subtasks}
        ready = [status.subtasks[n] for n in order if status.subtasks[n].phase == SubtaskPhase.READY]
        if task.spec.strategy == TaskStrategy.SEQUENTIAL:
            running = sum(1 for s in status.subtasks.values() if s.phase == SubtaskPhase.RUNNING)
            ready = ready[:max(0, 1 - running)]

        shortage = []
        for sub in ready:
            spec = specs[sub.name]
            ref = SubtaskRef(task=task.metadata.name, subtask=sub.name, attempt=sub.attempt + 1)
            owner = find_claim(list(pool.values()), ref)
            if owner is None:
                owner = await self._claim(task, spec, ref, pool)
            if owner is None:
                shortage.append(sub.name)
                continue
            pool[owner.metadata.name] = owner
            sub.phase = SubtaskPhase.RUNNING
            sub.attempt = ref.attempt
            sub.assigned_agent = owner.metadata.name
            sub.start_time = now
            sub.completion_time = None
            sub.dispatched = False
            sub.next_attempt_at = None
            logger.info(f"Task {task.metadata.name}: assigned {sub.name}#{sub.attempt} to {owner.metadata.name}")
        return shortage

    async def _claim(
        self,
        task: Task,
        spec: SubtaskSpec,
        ref: SubtaskRef,
        pool: dict[str, Agent],
    ) -> Optional[Agent]:
        required = list(dict.fromkeys(task.spec.required_capabilities + spec.required_capabilities))
        preferred = spec.preferred_agent_types or task.spec.preferred_agent_types
        excluded: set[str] = set()
        while True:
            candidates = [a for name, a in pool.items() if name not in excluded]
            candidate = select_agent(candidates, required, preferred)
            if candidate is None:
                return None
            try:
                return await claim_slot(
                    self.store, candidate.metadata.name, ref,
                    attempts=self.settings.scheduler.ledger_retry_attempts,
                )
            except CapacityError as e:
                logger.info(f"Task {task.metadata.name}: {e}")
                excluded.add(candidate.metadata.name)

    async def _dispatch(self, task: Task, pool: dict[str, Agent]) -> None:
        specs = {s.name: s for s in task.spec.subtasks}
        for sub in task.status.subtasks.values():
            if sub.phase != SubtaskPhase.RUNNING or sub.dispatched:
                continue
            agent = pool.get(sub.assigned_agent or "")
            if agent is None:
                continue
            spec = specs[sub.name]
            assignment = Assignment(
                task=task.metadata.name,
                subtask=sub.name,
                attempt=sub.attempt,
                agent=agent.metadata.name,
                type=spec.type,
                required_capabilities=list(spec.required_capabilities),
                parameters={**task.spec.parameters, **spec.parameters},
                environment=self._environment(task, sub, agent),
            )
            try:
                await bounded_call(
                    lambda: self.runtime.dispatch(assignment),
                    self.settings.scheduler.dispatch_timeout_seconds,
                    f"dispatch {task.metadata.name}/{sub.name}",
                )
            except (TransientInfraError, OSError) as e:
                logger.warning(f"Task {task.metadata.name}: dispatch of {sub.name} failed, will retry: {e}")
                continue
            sub.dispatched = True

    @staticmethod
    def _environment(task: Task, sub: SubtaskStatus, agent: Agent) -> dict[str, str]:
        env = {
            "SWARMPLANE_TASK": task.metadata.name,
            "SWARMPLANE_SUBTASK": sub.name,
            "SWARMPLANE_ATTEMPT": str(sub.attempt),
            "SWARMPLANE_AGENT": agent.metadata.name,
            "SWARMPLANE_AGENT_PORT": str(agent.spec.port),
            "SWARMPLANE_PEERS": ",".join(agent.spec.peers or []),
        }
        for mount in agent.spec.secret_mounts:
            key = mount["secret"].upper().replace("-", "_").replace(".", "_")
            env[f"SWARMPLANE_SECRET_{key}"] = mount["mount_path"]
        return env

    async def _checkpoint(self, task: Task) -> bool:
        """Persist newly completed subtasks; returns True if the save must be retried."""
        status = task.status
        completed = {n: s for n, s in status.subtasks.items() if s.phase == SubtaskPhase.COMPLETED}
        if len(completed) <= status.checkpoint_step:
            return False
        payload = {
            "completed": {
                n: {"result": s.result, "artifact_available": s.artifact_available}
                for n, s in completed.items()
            }
        }
        try:
            await bounded_call(
                lambda: self.checkpoints.save(task.metadata.name, len(completed), payload),
                self.settings.checkpoint.timeout_seconds,
                f"checkpoint save {task.metadata.name}",
            )
        except (TransientInfraError, OSError) as e:
            logger.warning(f"Task {task.metadata.name}: checkpoint save failed, will retry: {e}")
            return True
        status.checkpoint_step = len(completed)
        return False

    def _aggregate(
        self,
        task: Task,
        failure_policy: FailurePolicy,
        shortage: list[str],
        pool: dict[str, Agent],
        now: datetime,
    ) -> None:
        status = task.status
        subs = list(status.subtasks.values())
        total = len(subs)
        completed = sum(1 for s in subs if s.phase == SubtaskPhase.COMPLETED)
        status.progress = int(100 * completed / total) if total else 100

        holders: dict[str, AssignedAgent] = {}
        for sub in subs:
            if sub.phase == SubtaskPhase.RUNNING and sub.assigned_agent:
                agent = pool.get(sub.assigned_agent)
                entry = holders.setdefault(
                    sub.assigned_agent,
                    AssignedAgent(name=sub.assigned_agent, type=agent.spec.type if agent else None),
                )
                entry.subtasks.append(sub.name)
        status.assigned_agents = [holders[n] for n in sorted(holders)]

        if shortage:
            set_condition(
                status.conditions, CAPACITY_AVAILABLE, False, "NoQualifyingAgent",
                f"no agent in cluster {task.spec.cluster} can take {', '.join(shortage)}", now,
            )
        elif find_condition(status.conditions, CAPACITY_AVAILABLE) is not None:
            set_condition(status.conditions, CAPACITY_AVAILABLE, True, "AgentsAvailable", "", now)

        if any(s.phase not in TERMINAL_SUBTASK_PHASES for s in subs):
            if any(s.phase == SubtaskPhase.RUNNING for s in subs):
                self._set_phase(task, TaskPhase.RUNNING, "Running", f"{completed}/{total} subtasks completed", now)
            else:
                message = (
                    f"waiting for a qualifying agent for {', '.join(shortage)}" if shortage
                    else f"{completed}/{total} subtasks completed, waiting to schedule"
                )
                self._set_phase(task, TaskPhase.SCHEDULED, "Scheduled", message, now)
                status.message = message
            return

        failed = [s.name for s in subs if s.phase == SubtaskPhase.FAILED]
        if not failed:
            self._finish(task, TaskPhase.COMPLETED, "Succeeded", f"{completed}/{total} subtasks completed", now)
        elif failure_policy == FailurePolicy.PARTIAL_SUCCESS:
            message = f"{completed}/{total} subtasks completed, failed: {', '.join(failed)}"
            self._finish(task, TaskPhase.COMPLETED, "PartialSuccess", message, now)
            set_condition(status.conditions, "PartialSuccess", True, "PartialSuccess", message, now)
        else:
            message = f"{completed}/{total} subtasks completed, failed: {', '.join(failed)}"
            self._finish(task, TaskPhase.FAILED, "PartialFailure", message, now)

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # Termination, resume, deletion
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    async def _abort(
        self,
        task: Task,
        agents: list[Agent],
        running_phase: SubtaskPhase,
        message: str,
        now: datetime,
    ) -> None:
        """Stop every unfinished subtask; running work gets an advisory cancel."""
        for sub in task.status.subtasks.values():
            if sub.phase in TERMINAL_SUBTASK_PHASES:
                continue
            if sub.phase == SubtaskPhase.RUNNING:
                await self._withdraw(task, sub)
                sub.phase = running_phase
            else:
                await self._release_unrecorded_claim(task, sub, agents)
                sub.phase = SubtaskPhase.CANCELLED
            sub.error = message
            sub.completion_time = now
            sub.next_attempt_at = None

    async def _withdraw(self, task: Task, sub: SubtaskStatus) -> None:
        """Advisory cancel plus ledger release for a running subtask."""
        ref = SubtaskRef(task=task.metadata.name, subtask=sub.name, attempt=sub.attempt)
        if sub.assigned_agent:
            await self._revoke(ref, sub.assigned_agent)

    async def _release_unrecorded_claim(self, task: Task, sub: SubtaskStatus, agents: list[Agent]) -> None:
        """Release a claim for the next attempt whose status write never landed."""
        ref = SubtaskRef(task=task.metadata.name, subtask=sub.name, attempt=sub.attempt + 1)
        holder = find_claim(agents, ref)
        if holder is not None:
            logger.info(f"Task {ref.task}: releasing unrecorded claim {ref.subtask}#{ref.attempt} "
                        f"on {holder.metadata.name}")
            await self._revoke(ref, holder.metadata.name)

    async def _revoke(self, ref: SubtaskRef, agent: str) -> None:
        try:
            await bounded_call(
                lambda: self.runtime.cancel(ref.task, ref.subtask, ref.attempt),
                self.settings.controller.external_timeout_seconds,
                f"cancel {ref.task}/{ref.subtask}",
            )
        except (TransientInfraError, OSError) as e:
            logger.warning(f"Task {ref.task}: advisory cancel of {ref.subtask} failed: {e}")
        await release_slot(
            self.store, agent, ref, None,
            attempts=self.settings.scheduler.ledger_retry_attempts,
        )

    def _finish(self, task: Task, phase: TaskPhase, reason: str, message: str, now: datetime) -> None:
        status = task.status
        subs = list(status.subtasks.values())
        completed = sum(1 for s in subs if s.phase == SubtaskPhase.COMPLETED)
        status.reason = reason
        status.message = message
        status.completion_time = now
        status.assigned_agents = []
        status.progress = int(100 * completed / len(subs)) if subs else 100
        status.result = TaskResult(
            success=phase == TaskPhase.COMPLETED and reason == "Succeeded",
            summary=message,
            execution_seconds=(now - status.start_time).total_seconds() if status.start_time else 0.0,
            agents_used=len({s.assigned_agent for s in subs if s.phase == SubtaskPhase.COMPLETED and s.assigned_agent}),
            subtasks_completed=completed,
            subtasks_failed=sum(1 for s in subs if s.phase == SubtaskPhase.FAILED),
            subtasks_skipped=sum(1 for s in subs if s.phase == SubtaskPhase.SKIPPED),
        )
        if phase == TaskPhase.COMPLETED:
            mark_ready(status.conditions, reason, message, now)
        elif phase == TaskPhase.FAILED:
            mark_failed(status.conditions, reason, message, now)
        else:
            set_condition(status.conditions, READY, False, reason, message, now)
        self._set_phase(task, phase, reason, message, now)

    def _resumable(self, task: Task) -> bool:
        return (
            task.spec.resume
            and task.status.reason not in _NOT_RESUMABLE
            and task.status.resume_count < self.settings.scheduler.max_resumes
        )

    async def _restore(self, task: Task, now: datetime) -> None:
        """Rebuild subtask state from the last checkpoint."""
        status = task.status
        checkpoint = await bounded_call(
            lambda: self.checkpoints.load(task.metadata.name),
            self.settings.checkpoint.timeout_seconds,
            f"checkpoint load {task.metadata.name}",
        )
        completed = checkpoint.completed if checkpoint is not None else {}

        for name, sub in list(status.subtasks.items()):
            if name in completed:
                data = completed[name]
                status.subtasks[name] = SubtaskStatus(
                    name=name,
                    phase=SubtaskPhase.COMPLETED,
                    attempt=sub.attempt,
                    assigned_agent=sub.assigned_agent,
                    result=dict(data.get("result") or {}),
                    artifact_available=bool(data.get("artifact_available", False)),
                    completion_time=sub.completion_time or now,
                )
            else:
                status.subtasks[name] = SubtaskStatus(name=name, attempt=sub.attempt)

        status.start_time = now
        status.completion_time = None
        status.result = None
        status.reason = ""
        status.checkpoint_step = len(completed)
        if checkpoint is None:
            message = "no checkpoint found, restarting from the root subtasks"
        else:
            message = f"resumed from checkpoint with {len(completed)} completed subtasks"
        mark_progressing(status.conditions, "Resumed", message, now)
        self._set_phase(task, TaskPhase.SCHEDULED, "Resumed", message, now)

    async def _finalize(self, task: Task) -> ReconcileResult:
        agents = await self.store.list(Agent, owner=task.spec.cluster)
        for sub in task.status.subtasks.values():
            if sub.phase == SubtaskPhase.RUNNING:
                await self._withdraw(task, sub)
            else:
                await self._release_unrecorded_claim(task, sub, agents)
        self._drop_released(task.metadata.name)
        await bounded_call(
            lambda: self.checkpoints.delete(task.metadata.name),
            self.settings.checkpoint.timeout_seconds,
            f"checkpoint delete {task.metadata.name}",
        )
        await self.remove_finalizer(task, TASK_FINALIZER)
        return ReconcileResult.done()

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # Bookkeeping
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    def _next_requeue(self, task: Task, now: datetime, checkpoint_due: bool) -> ReconcileResult:
        status = task.status
        if status.phase in TERMINAL_TASK_PHASES:
            return ReconcileResult.requeue(0) if status.phase == TaskPhase.FAILED and self._resumable(task) \
                else ReconcileResult.done()

        scheduler = self.settings.scheduler
        subs = list(status.subtasks.values())
        delays: list[Optional[float]] = []
        if any(s.phase == SubtaskPhase.RUNNING for s in subs):
            delays.append(scheduler.poll_interval_seconds)
        if any(s.phase == SubtaskPhase.RUNNING and not s.dispatched for s in subs) or checkpoint_due:
            delays.append(self.settings.backoff.base_seconds)
        if any(s.phase == SubtaskPhase.READY for s in subs):
            delays.append(scheduler.capacity_requeue_seconds)
        retry_times = [s.next_attempt_at for s in subs if s.phase == SubtaskPhase.RETRYING and s.next_attempt_at]
        if retry_times:
            delays.append((min(retry_times) - now).total_seconds())
        if task.spec.timeout_seconds is not None and status.start_time is not None:
            elapsed = (now - status.start_time).total_seconds()
            delays.append(task.spec.timeout_seconds - elapsed)

        delay = earliest(*delays)
        return ReconcileResult.requeue(delay) if delay is not None else ReconcileResult.done()

    def _set_phase(self, task: Task, phase: TaskPhase, reason: str, message: str, now: datetime) -> None:
        previous = task.status.phase
        if previous == phase:
            return
        task.status.phase = phase
        task.status.message = message
        kind = "Warning" if phase == TaskPhase.FAILED else "Normal"
        self._notes.setdefault(task.metadata.name, []).append((kind, reason, message, phase))
        logger.info(f"Task {task.metadata.name}: {previous.value if previous else 'None'} -> {phase.value} ({reason})")

    def _note(self, task: Task, kind: str, reason: str, message: str) -> None:
        self._notes.setdefault(task.metadata.name, []).append((kind, reason, message, None))

    async def _persist(self, task: Task, before) -> Task:
        task = await self.write_status(task, before)
        for kind, reason, message, phase in self._notes.pop(task.metadata.name, []):
            if self.events is not None:
                if kind == "Warning":
                    self.events.warning(task, reason, message)
                else:
                    self.events.normal(task, reason, message)
            if self.metrics is not None:
                if phase is not None:
                    await self.metrics.increment("task_phase_transitions_total", to=phase.value)
                elif reason == "SubtaskRetrying":
                    await self.metrics.increment("subtask_retries_total", task=task.metadata.name)
        return task

    def _drop_released(self, name: str) -> None:
        """Acknowledge released work for a task that will not schedule again."""
        pending = self.release_queue.pending(name)
        if pending:
            self.release_queue.ack(name, pending)

"""The workflow state machine.

:func:`advance` applies one event to a snapshot of a workflow instance and
its tasks and returns the resulting :class:`~backend.flowdesk.engine.state.Transition`.
It performs no I/O: the clock, the user directory and the task id factory
are passed in, and the caller decides how the result is persisted.

Execution uses tokens. A token waits on a human step (listed in
``InstanceState.active_steps``) until its tasks settle, or on a join step
(listed in ``InstanceState.join_arrivals``) until no other live token can
still reach that join. Every other step type is automatic and is passed
through within the same call.
"""

from __future__ import annotations

import copy
import logging
import uuid
from collections import deque
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta
from string import Template
from typing import Any

from ..errors import InvalidTransition, NotFound, PermissionDenied, ValidationError
from . import events as ev
from . import roles
from .conditions import OUTCOME_VARIABLE, evaluate
from .definition import WorkflowConnection, WorkflowDefinition, WorkflowStep
from .state import (
    DEFAULT_PRIORITY,
    SYSTEM_ACTOR,
    URGENT_PRIORITY,
    Actor,
    AuditEntry,
    Directory,
    InstanceState,
    Notification,
    TaskState,
    Transition,
)
from .statuses import (
    HUMAN_STEP_TYPES,
    INSTANCE_TRANSITIONS,
    TASK_TRANSITIONS,
    AssignmentType,
    AuditAction,
    EntityType,
    InstanceStatus,
    StepType,
    TaskOutcome,
    TaskStatus,
    TimeoutAction,
    can_transition,
    is_final_status,
)
from .values import ensure_json_object, lookup_path

logger = logging.getLogger(__name__)

MAX_AUTOMATIC_HOPS = 200

_STEP_LEVEL_ACTIONS = frozenset({AuditAction.STEP_ENTERED, AuditAction.NOTIFICATION_QUEUED})

_ALLOWED_OUTCOMES = {
    StepType.APPROVAL.value: frozenset({TaskOutcome.APPROVED.value, TaskOutcome.REJECTED.value}),
    StepType.FORM.value: frozenset(
        {TaskOutcome.COMPLETED.value, TaskOutcome.APPROVED.value, TaskOutcome.REJECTED.value}
    ),
}


def new_task_id() -> str:
    return f"task_{uuid.uuid4().hex}"


def _priority(value: Any) -> int:
    if isinstance(value, int) and not isinstance(value, bool) and 1 <= value <= URGENT_PRIORITY:
        return value
    return DEFAULT_PRIORITY


class _Run:
    """Working copy of the state while a single event is applied."""

    def __init__(
        self,
        instance: InstanceState,
        tasks: Iterable[TaskState],
        definition: WorkflowDefinition,
        actor: Actor,
        now: datetime,
        directory: Directory,
        id_factory: Callable[[], str],
    ) -> None:
        self.instance = copy.deepcopy(instance)
        self.tasks: dict[str, TaskState] = {task.id: copy.deepcopy(task) for task in tasks}
        self.definition = definition
        self.actor = actor
        self.now = now
        self.directory = directory
        self.id_factory = id_factory
        self.audit: list[AuditEntry] = []
        self.notifications: list[Notification] = []
        self.touched: set[str] = set()
        self.pending: deque[tuple[str, str | None]] = deque()
        self.hops = 0

    # -- bookkeeping -------------------------------------------------------

    def record(
        self,
        action: AuditAction,
        entity_type: EntityType,
        entity_id: Any,
        *,
        description: str | None = None,
        old: dict[str, Any] | None = None,
        new: dict[str, Any] | None = None,
        task_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        actor: Actor | None = None,
    ) -> None:
        if action in _STEP_LEVEL_ACTIONS and not self.definition.settings.enable_audit_logging:
            return
        self.audit.append(
            AuditEntry(
                action=action.value,
                entity_type=entity_type.value,
                entity_id=None if entity_id is None else str(entity_id),
                user_id=(actor or self.actor).user_id,
                timestamp=self.now,
                description=description,
                old_values=old,
                new_values=new,
                workflow_instance_id=self.instance.id,
                task_id=task_id,
                metadata=dict(metadata or {}),
            )
        )

    def set_instance_status(self, status: InstanceStatus) -> None:
        if not can_transition(INSTANCE_TRANSITIONS, self.instance.status, status):
            raise InvalidTransition(
                f"workflow instance {self.instance.id} cannot go from {self.instance.status} to {status.value}"
            )
        self.instance.status = status.value

    def move_task(self, task: TaskState, status: TaskStatus) -> None:
        if not can_transition(TASK_TRANSITIONS, task.status, status):
            raise InvalidTransition(f"task {task.id} cannot go from {task.status} to {status.value}")
        task.status = status.value
        self.touched.add(task.id)

    def add_task(self, task: TaskState) -> None:
        self.tasks[task.id] = task
        self.touched.add(task.id)

    def task(self, task_id: str) -> TaskState:
        task = self.tasks.get(task_id)
        if task is None:
            raise NotFound(f"task {task_id} not found in workflow instance {self.instance.id}")
        if task.instance_id != self.instance.id:
            raise InvalidTransition(f"task {task_id} belongs to another workflow instance")
        return task

    def open_tasks(self, step_id: str | None = None) -> list[TaskState]:
        return [
            task
            for task in self.tasks.values()
            if task.is_open and (step_id is None or task.step_id == step_id)
        ]

    # -- guards ------------------------------------------------------------

    def require_started(self) -> None:
        if self.instance.started_at is None:
            raise InvalidTransition(f"workflow instance {self.instance.id} has not been started")

    def require_running(self) -> None:
        self.require_started()
        if self.instance.status == InstanceStatus.SUSPENDED:
            raise InvalidTransition(f"workflow instance {self.instance.id} is suspended")

    def require_admin(self, what: str) -> None:
        if not self.actor.has_role(roles.ADMIN):
            raise PermissionDenied(f"only administrators can {what}")

    def authorize_task_actor(self, task: TaskState) -> None:
        if self.actor.user_id == task.assigned_to_id or self.actor.has_role(roles.ADMIN):
            return
        raise PermissionDenied(f"user {self.actor.user_id} is not assigned to task {task.id}")

    # -- routing -----------------------------------------------------------

    def drain(self) -> None:
        """Run queued tokens forward until every token waits or the instance stops."""

        while self.instance.status == InstanceStatus.ACTIVE:
            if self.pending:
                step_id, source = self.pending.popleft()
                self.enter(self.definition.step(step_id), source)
                continue
            if not self.fire_ready_join():
                break
        if self.instance.status != InstanceStatus.ACTIVE:
            self.pending.clear()

    def enter(self, step: WorkflowStep, source: str | None) -> None:
        self.hops += 1
        if self.hops > MAX_AUTOMATIC_HOPS:
            self.fail(f"routing stopped after {MAX_AUTOMATIC_HOPS} automatic steps at step {step.id}")
            return

        self.instance.current_step_id = step.id
        skipped = self.should_skip(step)
        self.record(
            AuditAction.STEP_ENTERED,
            EntityType.WORKFLOW_INSTANCE,
            self.instance.id,
            description=f"{'Skipped' if skipped else 'Entered'} step {step.display_name}",
            metadata={"stepId": step.id, "stepType": step.type, "fromStepId": source, "skipped": skipped},
        )
        if skipped:
            self.leave(step)
            return

        if step.type == StepType.END:
            self.finish(step)
        elif step.type == StepType.PARALLEL:
            self.fan_out(step)
        elif step.type == StepType.JOIN:
            self.instance.join_arrivals.setdefault(step.id, []).append(source or "")
        elif step.type == StepType.NOTIFICATION:
            self.notify(step)
            self.leave(step)
        elif step.type in HUMAN_STEP_TYPES:
            self.assign(step)
        else:
            self.leave(step)

    def should_skip(self, step: WorkflowStep) -> bool:
        if not self.definition.settings.allow_step_skipping or not step.conditions:
            return False
        if step.type not in HUMAN_STEP_TYPES and step.type != StepType.NOTIFICATION:
            return False
        return not all(evaluate(condition, self.instance.variables) for condition in step.conditions)

    def choose_route(self, step: WorkflowStep) -> WorkflowConnection | None:
        """First conditional connection that holds, else the first unconditional one."""

        default = None
        for connection in self.definition.outgoing(step.id):
            if not connection.is_conditional:
                if default is None:
                    default = connection
                continue
            if evaluate(connection.parsed_condition, self.instance.variables):
                return connection
        return default

    def leave(self, step: WorkflowStep) -> None:
        route = self.choose_route(step)
        if route is None:
            self.fail(f"no outgoing connection of step {step.id} matches the workflow variables")
            return
        self.pending.append((route.to_step_id, step.id))

    def fan_out(self, step: WorkflowStep) -> None:
        branches = [
            connection
            for connection in self.definition.outgoing(step.id)
            if evaluate(connection.parsed_condition, self.instance.variables)
        ]
        if not branches:
            self.fail(f"no branch of parallel step {step.id} matches the workflow variables")
            return
        for connection in branches:
            self.pending.append((connection.to_step_id, step.id))

    def fire_ready_join(self) -> bool:
        """Fire one join no other live token can still reach; return whether one fired."""

        arrivals = self.instance.join_arrivals
        for join_id in [key for key, value in arrivals.items() if not value]:
            del arrivals[join_id]
        if not arrivals:
            return False

        for join_id in list(arrivals):
            live = list(self.instance.active_steps) + [other for other in arrivals if other != join_id]
            if not any(self.definition.can_reach(step_id, join_id) for step_id in live):
                self.fire_join(join_id)
                return True

        if not self.instance.active_steps:
            # Joins waiting on each other around a loop: release the oldest.
            self.fire_join(next(iter(arrivals)))
            return True
        return False

    def fire_join(self, join_id: str) -> None:
        branches = self.instance.join_arrivals.pop(join_id)
        logger.debug("join %s fired after %d branch(es)", join_id, len(branches))
        step = self.definition.step(join_id)
        self.instance.current_step_id = step.id
        self.leave(step)

    # -- step behaviour ----------------------------------------------------

    def resolve_assignees(self, step: WorkflowStep) -> list[str]:
        assignment = step.assignment
        if assignment is None:
            return []
        if assignment.type == AssignmentType.USER:
            candidates: list[Any] = [assignment.user_id]
        elif assignment.type == AssignmentType.ROLE:
            candidates = self.directory.users_with_role(assignment.role or "")
        elif assignment.type == AssignmentType.GROUP:
            candidates = self.directory.users_in_group(assignment.group_id or "")
        else:
            candidates = self.dynamic_assignees(assignment.dynamic_expression or "")

        resolved: list[str] = []
        for user_id in candidates:
            if isinstance(user_id, str) and user_id and user_id not in resolved and self.directory.is_active_user(user_id):
                resolved.append(user_id)
        return resolved

    def dynamic_assignees(self, expression: str) -> list[Any]:
        path = expression.strip()
        if path.startswith("${") and path.endswith("}"):
            path = path[2:-1].strip()
        if path.startswith("variables."):
            path = path[len("variables."):]
        found, value = lookup_path(self.instance.variables, path)
        if not found:
            return []
        if isinstance(value, str):
            return [value]
        if isinstance(value, list):
            return value
        return []

    def assign(self, step: WorkflowStep) -> None:
        if step.id in self.instance.active_steps:
            return

        assignees = self.resolve_assignees(step)
        if not assignees:
            self.record(
                AuditAction.SYSTEM_ERROR,
                EntityType.WORKFLOW_INSTANCE,
                self.instance.id,
                description=f"No active assignee for step {step.display_name}",
                metadata={"stepId": step.id},
            )
            self.fail(f"step {step.id} has no active assignee")
            return

        due_date = self.now + timedelta(hours=step.timeout_hours) if step.timeout_hours else None
        for user_id in assignees:
            task = TaskState(
                id=self.id_factory(),
                instance_id=self.instance.id,
                step_id=step.id,
                assigned_to_id=user_id,
                type=step.type,
                title=str(step.properties.get("taskTitle") or step.display_name),
                description=step.description,
                priority=_priority(step.properties.get("priority")),
                assigned_at=self.now,
                due_date=due_date,
            )
            self.add_task(task)
            self.record(
                AuditAction.TASK_ASSIGNED,
                EntityType.TASK,
                task.id,
                description=f"Assigned {step.display_name} to {user_id}",
                new=task.snapshot(),
                task_id=task.id,
            )
        self.instance.active_steps.append(step.id)

    def notification_recipients(self, step: WorkflowStep) -> list[str]:
        if step.assignment is not None:
            return self.resolve_assignees(step)
        raw = step.properties.get("recipients") or []
        if isinstance(raw, str):
            raw = [raw]
        recipients: list[str] = []
        for value in raw:
            if isinstance(value, str) and value and value not in recipients:
                recipients.append(value)
        return recipients

    def render(self, step: WorkflowStep) -> tuple[str, str]:
        subject = str(step.properties.get("subject") or step.display_name)
        body = str(step.properties.get("message") or "")
        template = self.definition.settings.notification_templates.get(step.properties.get("template") or "")
        if isinstance(template, str):
            body = template
        elif isinstance(template, dict):
            subject = str(template.get("subject") or subject)
            body = str(template.get("body") or body)

        values = {
            key: value
            for key, value in self.instance.variables.items()
            if isinstance(value, (str, int, float, bool)) and key.isidentifier()
        }
        values.update(instanceId=self.instance.id, stepName=step.display_name)
        return Template(subject).safe_substitute(values), Template(body).safe_substitute(values)

    def notify(self, step: WorkflowStep) -> None:
        if not self.definition.settings.enable_notifications:
            return
        recipients = self.notification_recipients(step)
        if not recipients:
            logger.warning("notification step %s of instance %s has no recipients", step.id, self.instance.id)
            return
        subject, body = self.render(step)
        self.notifications.append(
            Notification(
                instance_id=self.instance.id,
                step_id=step.id,
                recipients=tuple(recipients),
                subject=subject,
                body=body,
            )
        )
        self.record(
            AuditAction.NOTIFICATION_QUEUED,
            EntityType.WORKFLOW_INSTANCE,
            self.instance.id,
            description=f"Queued notification '{subject}'",
            metadata={"stepId": step.id, "recipients": recipients},
        )

    def complete(
        self,
        task: TaskState,
        outcome: str,
        comments: str | None,
        data: dict[str, Any],
        actor: Actor,
    ) -> None:
        old = task.snapshot()
        self.move_task(task, TaskStatus.COMPLETED)
        task.outcome = outcome
        task.comments = comments
        task.completed_at = self.now
        task.data = {**task.data, **data}
        self.record(
            AuditAction.TASK_COMPLETED,
            EntityType.TASK,
            task.id,
            description=f"Task {task.title} completed with outcome {outcome}",
            old=old,
            new=task.snapshot(),
            task_id=task.id,
            actor=actor,
        )

        variables = self.instance.variables
        variables.update(data)
        step_results = variables.get("steps")
        if not isinstance(step_results, dict):
            step_results = variables["steps"] = {}
        step_results[task.step_id] = {"outcome": outcome, "completedBy": actor.user_id, "comments": comments}
        variables[OUTCOME_VARIABLE] = outcome

        step = self.definition.step(task.step_id)
        siblings = self.open_tasks(step.id)
        require_all = step.assignment is not None and step.assignment.require_all_approvers
        if require_all and outcome != TaskOutcome.REJECTED:
            if siblings:
                return
        else:
            reason = f"Step settled by {actor.user_id} with outcome {outcome}"
            for sibling in siblings:
                self.cancel_task(sibling, reason, actor)
        self.release(step, outcome)

    def cancel_task(self, task: TaskState, reason: str | None, actor: Actor | None = None) -> None:
        old = task.snapshot()
        self.move_task(task, TaskStatus.CANCELLED)
        task.outcome = TaskOutcome.CANCELLED.value
        task.comments = reason
        task.completed_at = self.now
        self.record(
            AuditAction.TASK_CANCELLED,
            EntityType.TASK,
            task.id,
            description=reason,
            old=old,
            new=task.snapshot(),
            task_id=task.id,
            actor=actor,
        )

    def release(self, step: WorkflowStep, outcome: str) -> None:
        """Move the token waiting on a human step onward."""

        if step.id in self.instance.active_steps:
            self.instance.active_steps.remove(step.id)
        self.instance.variables[OUTCOME_VARIABLE] = outcome
        self.instance.current_step_id = step.id
        self.leave(step)
        self.drain()

    def escalate(self, task: TaskState, step: WorkflowStep) -> None:
        old = task.snapshot()
        target = step.properties.get("escalateTo")
        if not isinstance(target, str) or target == task.assigned_to_id or not self.directory.is_active_user(target):
            target = next(
                (user_id for user_id in self.directory.users_with_role(roles.ADMIN) if user_id != task.assigned_to_id),
                None,
            )

        if target is not None:
            task.assigned_to_id = target
            task.assigned_at = self.now
            if task.status != TaskStatus.PENDING:
                self.move_task(task, TaskStatus.PENDING)
        task.priority = URGENT_PRIORITY
        task.escalation_level += 1
        if target is not None and step.timeout_hours:
            task.due_date = self.now + timedelta(hours=step.timeout_hours)
        else:
            task.due_date = None
        self.touched.add(task.id)

        logger.info("escalated task %s to %s", task.id, target or "nobody")
        self.record(
            AuditAction.TASK_ESCALATED,
            EntityType.TASK,
            task.id,
            description=f"Task {task.title} escalated to {target}" if target else f"Task {task.title} marked urgent",
            old=old,
            new=task.snapshot(),
            task_id=task.id,
            metadata={"escalatedTo": target, "escalationLevel": task.escalation_level},
        )

    # -- instance lifecycle ------------------------------------------------

    def close(self, status: InstanceStatus, outcome: str, reason: str) -> dict[str, Any]:
        old = self.instance.snapshot()
        for task in self.open_tasks():
            self.cancel_task(task, reason)
        self.set_instance_status(status)
        self.instance.active_steps.clear()
        self.instance.join_arrivals.clear()
        self.pending.clear()
        self.instance.final_outcome = outcome
        self.instance.completed_at = self.now
        return old

    def finish(self, step: WorkflowStep) -> None:
        outcome = step.properties.get("outcome") or self.instance.variables.get(OUTCOME_VARIABLE) or "completed"
        old = self.close(InstanceStatus.COMPLETED, str(outcome), "Workflow completed")
        self.record(
            AuditAction.WORKFLOW_COMPLETED,
            EntityType.WORKFLOW_INSTANCE,
            self.instance.id,
            description=f"Workflow completed at {step.display_name} with outcome {self.instance.final_outcome}",
            old=old,
            new=self.instance.snapshot(),
        )

    def fail(self, reason: str) -> None:
        logger.warning("workflow instance %s failed: %s", self.instance.id, reason)
        old = self.close(InstanceStatus.ERROR, "error", "Workflow failed")
        self.instance.comments = reason
        self.record(
            AuditAction.WORKFLOW_FAILED,
            EntityType.WORKFLOW_INSTANCE,
            self.instance.id,
            description=reason,
            old=old,
            new=self.instance.snapshot(),
        )


# -- event handlers ------------------------------------------------------------


def _start_workflow(run: _Run, event: ev.StartWorkflow) -> None:
    instance = run.instance
    if instance.started_at is not None or instance.current_step_id:
        raise InvalidTransition(f"workflow instance {instance.id} has already been started")
    if instance.status != InstanceStatus.ACTIVE:
        raise InvalidTransition(f"workflow instance {instance.id} is {instance.status}")

    variables = copy.deepcopy(run.definition.variables)
    variables.update(ensure_json_object(event.variables, name="variables"))
    instance.variables = variables
    instance.started_at = run.now
    if event.comments:
        instance.comments = event.comments

    start = run.definition.start_step
    instance.current_step_id = start.id
    run.record(
        AuditAction.WORKFLOW_STARTED,
        EntityType.WORKFLOW_INSTANCE,
        instance.id,
        description=f"Workflow started by {event.actor.user_id}",
        new={"workflowId": instance.workflow_id, "status": instance.status, "startedById": instance.started_by_id},
    )
    run.pending.append((start.id, None))
    run.drain()


def _open_task_for_actor(run: _Run, event: ev.TaskEvent) -> TaskState:
    run.require_running()
    task = run.task(event.task_id)
    if not task.is_open:
        raise InvalidTransition(f"task {task.id} is {task.status}")
    run.authorize_task_actor(task)
    return task


def _start_task(run: _Run, event: ev.StartTask) -> None:
    task = _open_task_for_actor(run, event)
    old = task.snapshot()
    run.move_task(task, TaskStatus.IN_PROGRESS)
    run.record(
        AuditAction.TASK_STARTED,
        EntityType.TASK,
        task.id,
        description=f"Task {task.title} started",
        old=old,
        new=task.snapshot(),
        task_id=task.id,
    )


def _complete_task(run: _Run, event: ev.CompleteTask) -> None:
    task = _open_task_for_actor(run, event)
    outcome = str(event.outcome or "").strip().lower()
    allowed = _ALLOWED_OUTCOMES.get(task.type, _ALLOWED_OUTCOMES[StepType.FORM.value])
    if outcome not in allowed:
        raise ValidationError(
            f"outcome {event.outcome!r} is not valid for a {task.type} task",
            errors=[f"outcome must be one of: {', '.join(sorted(allowed))}"],
        )
    data = ensure_json_object(event.data, name="data")
    run.complete(task, outcome, event.comments, data, event.actor)


def _reassign_task(run: _Run, event: ev.ReassignTask) -> None:
    run.require_running()
    run.require_admin("reassign tasks")
    task = run.task(event.task_id)
    if not task.is_open:
        raise InvalidTransition(f"task {task.id} is {task.status}")
    step = run.definition.step(task.step_id)
    if step.assignment is not None and not step.assignment.allow_reassignment:
        raise PermissionDenied(f"step {step.id} does not allow reassignment")

    new_assignee = (event.new_assignee_id or "").strip()
    if not new_assignee:
        raise ValidationError("new assignee is required")
    if new_assignee == task.assigned_to_id:
        raise InvalidTransition(f"task {task.id} is already assigned to {new_assignee}")
    if not run.directory.is_active_user(new_assignee):
        raise ValidationError(f"user {new_assignee} is not an active user")

    old = task.snapshot()
    if task.status != TaskStatus.PENDING:
        run.move_task(task, TaskStatus.PENDING)
    task.assigned_to_id = new_assignee
    task.assigned_at = run.now
    if event.comments:
        task.comments = event.comments
    run.touched.add(task.id)
    run.record(
        AuditAction.TASK_REASSIGNED,
        EntityType.TASK,
        task.id,
        description=f"Task {task.title} reassigned from {old['assignedToId']} to {new_assignee}",
        old=old,
        new=task.snapshot(),
        task_id=task.id,
    )


def _defer_task(run: _Run, event: ev.DeferTask) -> None:
    task = _open_task_for_actor(run, event)
    old = task.snapshot()
    run.move_task(task, TaskStatus.DEFERRED)
    if event.comments:
        task.comments = event.comments
    run.record(
        AuditAction.TASK_DEFERRED,
        EntityType.TASK,
        task.id,
        description=event.comments or f"Task {task.title} deferred",
        old=old,
        new=task.snapshot(),
        task_id=task.id,
    )


def _resume_task(run: _Run, event: ev.ResumeTask) -> None:
    task = _open_task_for_actor(run, event)
    if task.status != TaskStatus.DEFERRED:
        raise InvalidTransition(f"task {task.id} is {task.status}, not Deferred")
    old = task.snapshot()
    run.move_task(task, TaskStatus.PENDING)
    run.record(
        AuditAction.TASK_RESUMED,
        EntityType.TASK,
        task.id,
        description=f"Task {task.title} resumed",
        old=old,
        new=task.snapshot(),
        task_id=task.id,
    )


def _cancel_task(run: _Run, event: ev.CancelTask) -> None:
    run.require_running()
    run.require_admin("cancel tasks")
    task = run.task(event.task_id)
    if not task.is_open:
        raise InvalidTransition(f"task {task.id} is {task.status}")
    run.cancel_task(task, event.comments or f"Cancelled by {event.actor.user_id}")
    if not run.open_tasks(task.step_id) and task.step_id in run.instance.active_steps:
        run.release(run.definition.step(task.step_id), TaskOutcome.CANCELLED.value)


def _suspend_instance(run: _Run, event: ev.SuspendInstance) -> None:
    run.require_started()
    run.require_admin("suspend workflows")
    old = run.instance.snapshot()
    run.set_instance_status(InstanceStatus.SUSPENDED)
    run.record(
        AuditAction.WORKFLOW_SUSPENDED,
        EntityType.WORKFLOW_INSTANCE,
        run.instance.id,
        description=event.reason or "Workflow suspended",
        old=old,
        new=run.instance.snapshot(),
    )


def _resume_instance(run: _Run, event: ev.ResumeInstance) -> None:
    run.require_started()
    run.require_admin("resume workflows")
    old = run.instance.snapshot()
    run.set_instance_status(InstanceStatus.ACTIVE)
    run.record(
        AuditAction.WORKFLOW_RESUMED,
        EntityType.WORKFLOW_INSTANCE,
        run.instance.id,
        description="Workflow resumed",
        old=old,
        new=run.instance.snapshot(),
    )


def _cancel_instance(run: _Run, event: ev.CancelInstance) -> None:
    if event.actor.user_id != run.instance.started_by_id and not event.actor.has_role(roles.ADMIN):
        raise PermissionDenied("only the initiator or an administrator can cancel a workflow")
    reason = event.reason or f"Cancelled by {event.actor.user_id}"
    old = run.close(InstanceStatus.CANCELLED, TaskOutcome.CANCELLED.value, reason)
    run.record(
        AuditAction.WORKFLOW_CANCELLED,
        EntityType.WORKFLOW_INSTANCE,
        run.instance.id,
        description=reason,
        old=old,
        new=run.instance.snapshot(),
    )


def _task_timed_out(run: _Run, event: ev.TaskTimedOut) -> None:
    run.require_running()
    task = run.task(event.task_id)
    if task.status not in {TaskStatus.PENDING.value, TaskStatus.IN_PROGRESS.value}:
        raise InvalidTransition(f"task {task.id} is {task.status}")
    if task.due_date is None or task.due_date >= run.now:
        raise InvalidTransition(f"task {task.id} is not overdue")

    step = run.definition.step(task.step_id)
    action = step.timeout_action or run.definition.settings.default_timeout_action or TimeoutAction.ESCALATE.value
    if action == TimeoutAction.ESCALATE:
        run.escalate(task, step)
        return

    outcome = TaskOutcome.APPROVED.value if action == TimeoutAction.AUTO_APPROVE else TaskOutcome.REJECTED.value
    run.complete(task, outcome, f"Automatically {outcome} after timeout", {}, SYSTEM_ACTOR)


def _instance_expired(run: _Run, event: ev.InstanceExpired) -> None:
    run.require_started()
    max_days = run.definition.settings.max_execution_days
    if not max_days or run.instance.started_at + timedelta(days=max_days) > run.now:
        raise InvalidTransition(f"workflow instance {run.instance.id} has not expired")
    reason = f"Exceeded the maximum execution time of {max_days} day(s)"
    old = run.close(InstanceStatus.CANCELLED, "expired", reason)
    run.record(
        AuditAction.WORKFLOW_CANCELLED,
        EntityType.WORKFLOW_INSTANCE,
        run.instance.id,
        description=reason,
        old=old,
        new=run.instance.snapshot(),
    )


_HANDLERS: dict[type[ev.Event], Callable[[_Run, Any], None]] = {
    ev.StartWorkflow: _start_workflow,
    ev.StartTask: _start_task,
    ev.CompleteTask: _complete_task,
    ev.ReassignTask: _reassign_task,
    ev.DeferTask: _defer_task,
    ev.ResumeTask: _resume_task,
    ev.CancelTask: _cancel_task,
    ev.SuspendInstance: _suspend_instance,
    ev.ResumeInstance: _resume_instance,
    ev.CancelInstance: _cancel_instance,
    ev.TaskTimedOut: _task_timed_out,
    ev.InstanceExpired: _instance_expired,
}


def advance(
    instance: InstanceState,
    tasks: Iterable[TaskState],
    definition: WorkflowDefinition,
    event: ev.Event,
    *,
    now: datetime,
    directory: Directory,
    id_factory: Callable[[], str] = new_task_id,
) -> Transition:
    """Apply ``event`` to the instance and return the resulting transition.

    The inputs are never mutated. Illegal events raise
    :class:`~backend.flowdesk.errors.InvalidTransition`,
    :class:`~backend.flowdesk.errors.PermissionDenied`,
    :class:`~backend.flowdesk.errors.NotFound` or
    :class:`~backend.flowdesk.errors.ValidationError`; routing problems inside the
    definition do not raise but move the instance to ``Error``.
    """

    handler = _HANDLERS.get(type(event))
    if handler is None:
        raise TypeError(f"unsupported workflow event {type(event).__name__}")
    if is_final_status(InstanceStatus, instance.status):
        raise InvalidTransition(f"workflow instance {instance.id} is {instance.status}")

    run = _Run(instance, tasks, definition, event.actor, now, directory, id_factory)
    handler(run, event)
    run.instance.last_activity_at = now
    return Transition(
        instance=run.instance,
        tasks=list(run.tasks.values()),
        changed_task_ids=set(run.touched),
        audit=run.audit,
        notifications=run.notifications,
    )

"""Running workflow instances: the transactional boundary around the engine.

Every operation loads the instance and its tasks, lets
:func:`~backend.flowdesk.engine.advance` compute the transition and persists
the new state, the changed tasks and the audit entries in one commit.
``row_version`` on instances and tasks turns concurrent writers into a
:class:`~backend.flowdesk.errors.ConcurrencyConflict`.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from flask import current_app
from sqlalchemy import or_
from sqlalchemy.orm.exc import StaleDataError

from ..engine import (
    CancelInstance,
    CancelTask,
    CompleteTask,
    DeferTask,
    Event,
    InstanceExpired,
    InstanceState,
    ReassignTask,
    ResumeInstance,
    ResumeTask,
    StartTask,
    StartWorkflow,
    SuspendInstance,
    TaskState,
    Transition,
    advance,
    due_events,
    parse_definition,
    roles,
)
from ..engine.statuses import (
    InstanceStatus,
    SubmissionStatus,
    TaskOutcome,
    TaskStatus,
    TaskType,
    is_final_status,
    is_valid_value,
)
from ..errors import (
    ConcurrencyConflict,
    FlowdeskError,
    InvalidTransition,
    NotFound,
    PermissionDenied,
    ValidationError,
)
from ..extensions import db
from ..models.form import FormSubmission
from ..models.instance import WorkflowInstance
from ..models.task import Task
from ..models.user import User
from ..utils.clock import utcnow
from . import audit
from .directory import DatabaseDirectory, actor_for
from .workflows import get_workflow

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 200

_directory = DatabaseDirectory()


# -- conversion between rows and engine state ----------------------------------


def _instance_state(row: WorkflowInstance) -> InstanceState:
    return InstanceState(
        id=row.id,
        workflow_id=row.workflow_id,
        started_by_id=row.started_by_id,
        status=row.status,
        current_step_id=row.current_step_id or "",
        active_steps=list(row.active_steps or []),
        join_arrivals={key: list(value) for key, value in (row.join_arrivals or {}).items()},
        variables=copy.deepcopy(row.variables or {}),
        form_submission_id=row.form_submission_id,
        started_at=row.started_at,
        completed_at=row.completed_at,
        last_activity_at=row.last_activity_at,
        final_outcome=row.final_outcome,
        comments=row.comments,
    )


def _task_state(row: Task) -> TaskState:
    return TaskState(
        id=row.id,
        instance_id=row.workflow_instance_id,
        step_id=row.step_id,
        assigned_to_id=row.assigned_to_id,
        type=row.type,
        title=row.title,
        status=row.status,
        description=row.description,
        priority=row.priority,
        assigned_at=row.assigned_at,
        due_date=row.due_date,
        completed_at=row.completed_at,
        outcome=row.outcome,
        comments=row.comments,
        data=copy.deepcopy(row.data or {}),
        escalation_level=row.escalation_level or 0,
    )


def _copy_task(state: TaskState, row: Task) -> None:
    row.workflow_instance_id = state.instance_id
    row.step_id = state.step_id
    row.assigned_to_id = state.assigned_to_id
    row.type = state.type
    row.status = state.status
    row.title = state.title
    row.description = state.description
    row.priority = state.priority
    row.assigned_at = state.assigned_at
    row.due_date = state.due_date
    row.completed_at = state.completed_at
    row.outcome = state.outcome
    row.comments = state.comments
    row.data = copy.deepcopy(state.data)
    row.escalation_level = state.escalation_level


def _apply(row: WorkflowInstance, transition: Transition) -> None:
    state = transition.instance
    row.status = state.status
    row.current_step_id = state.current_step_id
    row.active_steps = list(state.active_steps)
    row.join_arrivals = {key: list(value) for key, value in state.join_arrivals.items()}
    row.variables = copy.deepcopy(state.variables)
    row.started_at = state.started_at
    row.completed_at = state.completed_at
    row.last_activity_at = state.last_activity_at
    row.final_outcome = state.final_outcome
    row.comments = state.comments

    existing = {task.id: task for task in row.tasks}
    for task_state in transition.changed_tasks:
        task_row = existing.get(task_state.id)
        if task_row is None:
            task_row = Task(id=task_state.id)
            row.tasks.append(task_row)
        _copy_task(task_state, task_row)

    audit.record_entries(transition.audit)
    for notification in transition.notifications:
        current_app.logger.info(
            "Notification for instance %s step %s to %s: %s",
            notification.instance_id,
            notification.step_id,
            ", ".join(notification.recipients),
            notification.subject,
        )
    _sync_submission(row)


def _sync_submission(row: WorkflowInstance) -> None:
    """Keep the linked form submission's status in step with the instance."""

    if row.form_submission_id is None:
        return
    submission = db.session.get(FormSubmission, row.form_submission_id)
    if submission is None or is_final_status(SubmissionStatus, submission.status):
        return

    if row.status in {InstanceStatus.ACTIVE.value, InstanceStatus.SUSPENDED.value}:
        status = SubmissionStatus.IN_PROGRESS.value
    elif row.status == InstanceStatus.COMPLETED:
        status = {
            TaskOutcome.APPROVED.value: SubmissionStatus.APPROVED.value,
            TaskOutcome.REJECTED.value: SubmissionStatus.REJECTED.value,
        }.get(row.final_outcome or "", SubmissionStatus.COMPLETED.value)
    else:
        status = SubmissionStatus.CANCELLED.value

    if submission.status != status:
        submission.status = status
        submission.updated_at = utcnow()


def _run(row: WorkflowInstance, state: InstanceState, event: Event, now: datetime | None) -> Transition:
    """Advance ``row`` by ``event`` and commit, or roll back on any domain error."""

    try:
        transition = advance(
            state,
            [_task_state(task) for task in row.tasks],
            parse_definition(row.definition_snapshot),
            event,
            now=now or utcnow(),
            directory=_directory,
        )
        _apply(row, transition)
        db.session.commit()
    except StaleDataError as exc:
        db.session.rollback()
        current_app.logger.warning("Concurrent update of workflow instance %s: %s", state.id, exc)
        raise ConcurrencyConflict("the workflow was changed by another request; reload and retry") from exc
    except FlowdeskError:
        db.session.rollback()
        raise
    return transition


# -- loading -------------------------------------------------------------------


def get_instance(instance_id: int) -> WorkflowInstance:
    row = db.session.get(WorkflowInstance, instance_id)
    if row is None:
        raise NotFound(f"workflow instance {instance_id} not found")
    return row


def get_task(task_id: str) -> Task:
    row = db.session.get(Task, task_id)
    if row is None:
        raise NotFound(f"task {task_id} not found")
    return row


def get_instance_by_submission(form_submission_id: int) -> WorkflowInstance:
    row = WorkflowInstance.query.filter_by(form_submission_id=form_submission_id).one_or_none()
    if row is None:
        raise NotFound(f"no workflow instance for form submission {form_submission_id}")
    return row


def _check_submission(form_submission_id: int, user: User) -> None:
    """A submission starts at most one instance, once submitted, by its submitter or an admin."""

    submission = db.session.get(FormSubmission, form_submission_id)
    if submission is None:
        raise NotFound(f"form submission {form_submission_id} not found")
    if submission.submitted_by_id != user.id and not roles.has_permission(user.role, roles.ADMIN):
        raise PermissionDenied("only the submitter or an administrator can start a workflow for this submission")
    if submission.status != SubmissionStatus.SUBMITTED:
        raise InvalidTransition(f"form submission {form_submission_id} is {submission.status}, not Submitted")
    taken = WorkflowInstance.query.filter_by(form_submission_id=form_submission_id)
    if db.session.query(taken.exists()).scalar():
        raise InvalidTransition(f"form submission {form_submission_id} already has a workflow instance")


def _dispatch(row: WorkflowInstance, event: Event, *, now: datetime | None = None) -> Transition:
    return _run(row, _instance_state(row), event, now)


# -- instance operations ----------------------------------------------------------


def start_workflow(
    workflow_id: int,
    user: User,
    *,
    variables: dict[str, Any] | None = None,
    form_submission_id: int | None = None,
    comments: str | None = None,
    now: datetime | None = None,
) -> WorkflowInstance:
    """Create an instance of the workflow's current version and run it to its first wait."""

    workflow = get_workflow(workflow_id)
    if not workflow.is_active or workflow.is_template:
        raise InvalidTransition(f"workflow {workflow_id} is not published")
    if form_submission_id is not None:
        _check_submission(form_submission_id, user)

    row = WorkflowInstance(
        workflow_id=workflow.id,
        workflow_version=workflow.version,
        definition_snapshot=copy.deepcopy(workflow.workflow_definition),
        started_by_id=user.id,
        form_submission_id=form_submission_id,
        status=InstanceStatus.ACTIVE.value,
        current_step_id="",
        active_steps=[],
        join_arrivals={},
        variables={},
    )
    db.session.add(row)
    db.session.flush()

    event = StartWorkflow(actor=actor_for(user), variables=variables or {}, comments=comments)
    _run(row, _instance_state(row), event, now)
    current_app.logger.info(
        "Workflow instance %s of workflow %s v%s started by %s (%s)",
        row.id,
        workflow.id,
        workflow.version,
        user.id,
        row.status,
    )
    return row


def suspend_instance(instance_id: int, user: User, reason: str | None = None) -> WorkflowInstance:
    row = get_instance(instance_id)
    _dispatch(row, SuspendInstance(actor=actor_for(user), reason=reason))
    return row


def resume_instance(instance_id: int, user: User) -> WorkflowInstance:
    row = get_instance(instance_id)
    _dispatch(row, ResumeInstance(actor=actor_for(user)))
    return row


def cancel_instance(instance_id: int, user: User, reason: str | None = None) -> WorkflowInstance:
    row = get_instance(instance_id)
    _dispatch(row, CancelInstance(actor=actor_for(user), reason=reason))
    current_app.logger.info("Workflow instance %s cancelled by %s", instance_id, user.id)
    return row


def list_instances(
    *,
    started_by_id: str | None = None,
    workflow_id: int | None = None,
    status: str | None = None,
    page: int = 1,
    page_size: int = DEFAULT_PAGE_SIZE,
) -> tuple[list[WorkflowInstance], int]:
    if status is not None and not is_valid_value(InstanceStatus, status):
        raise ValidationError(f"unknown instance status {status!r}")
    query = WorkflowInstance.query
    if started_by_id is not None:
        query = query.filter(WorkflowInstance.started_by_id == started_by_id)
    if workflow_id is not None:
        query = query.filter(WorkflowInstance.workflow_id == workflow_id)
    if status is not None:
        query = query.filter(WorkflowInstance.status == status)
    return _paginate(query.order_by(WorkflowInstance.id.desc()), page, page_size)


# -- task operations ----------------------------------------------------------------


def _task_event(task_id: str, event: Event, *, now: datetime | None = None) -> Task:
    task = get_task(task_id)
    _dispatch(task.instance, event, now=now)
    return task


def start_task(task_id: str, user: User) -> Task:
    return _task_event(task_id, StartTask(actor=actor_for(user), task_id=task_id))


def complete_task(
    task_id: str,
    user: User,
    outcome: str,
    *,
    comments: str | None = None,
    data: dict[str, Any] | None = None,
) -> Task:
    return _task_event(
        task_id,
        CompleteTask(actor=actor_for(user), task_id=task_id, outcome=outcome, comments=comments, data=data or {}),
    )


def reassign_task(task_id: str, user: User, new_assignee_id: str, *, comments: str | None = None) -> Task:
    return _task_event(
        task_id,
        ReassignTask(actor=actor_for(user), task_id=task_id, new_assignee_id=new_assignee_id, comments=comments),
    )


def defer_task(task_id: str, user: User, *, comments: str | None = None) -> Task:
    return _task_event(task_id, DeferTask(actor=actor_for(user), task_id=task_id, comments=comments))


def resume_task(task_id: str, user: User) -> Task:
    return _task_event(task_id, ResumeTask(actor=actor_for(user), task_id=task_id))


def cancel_task(task_id: str, user: User, *, reason: str | None = None) -> Task:
    return _task_event(task_id, CancelTask(actor=actor_for(user), task_id=task_id, comments=reason))


def _paginate(query, page: int, page_size: int) -> tuple[list[Any], int]:
    page = max(1, page)
    page_size = max(1, min(page_size, MAX_PAGE_SIZE))
    total = query.count()
    items = query.offset((page - 1) * page_size).limit(page_size).all()
    return items, total


def list_tasks(
    *,
    assignee_id: str | None = None,
    status: str | None = None,
    task_type: str | None = None,
    priority: int | None = None,
    urgent: bool | None = None,
    overdue: bool | None = None,
    instance_id: int | None = None,
    now: datetime | None = None,
    page: int = 1,
    page_size: int = DEFAULT_PAGE_SIZE,
) -> tuple[list[Task], int]:
    """Filter tasks; overdue means pending with a due date in the past."""

    if status is not None and not is_valid_value(TaskStatus, status):
        raise ValidationError(f"unknown task status {status!r}")
    if task_type is not None and not is_valid_value(TaskType, task_type):
        raise ValidationError(f"unknown task type {task_type!r}")
    if priority is not None and not 1 <= priority <= 4:
        raise ValidationError("priority must be between 1 and 4")

    now = now or utcnow()
    query = Task.query
    if assignee_id is not None:
        query = query.filter(Task.assigned_to_id == assignee_id)
    if status is not None:
        query = query.filter(Task.status == status)
    if task_type is not None:
        query = query.filter(Task.type == task_type)
    if priority is not None:
        query = query.filter(Task.priority == priority)
    if urgent is True:
        query = query.filter(Task.priority >= 4)
    elif urgent is False:
        query = query.filter(Task.priority < 4)
    if overdue is True:
        query = query.filter(
            Task.status == TaskStatus.PENDING.value, Task.due_date.isnot(None), Task.due_date < now
        )
    elif overdue is False:
        query = query.filter(
            or_(Task.status != TaskStatus.PENDING.value, Task.due_date.is_(None), Task.due_date >= now)
        )
    if instance_id is not None:
        query = query.filter(Task.workflow_instance_id == instance_id)

    query = query.order_by(Task.priority.desc(), Task.due_date.is_(None), Task.due_date.asc(), Task.assigned_at.asc())
    return _paginate(query, page, page_size)


# -- timeouts ---------------------------------------------------------------------


@dataclass
class SweepResult:
    instances: int = 0
    timed_out: int = 0
    expired: int = 0
    skipped: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "instances": self.instances,
            "timedOut": self.timed_out,
            "expired": self.expired,
            "skipped": list(self.skipped),
        }


def _sweep_candidates(now: datetime, batch: int) -> list[int]:
    overdue = (
        db.session.query(Task.workflow_instance_id)
        .join(WorkflowInstance, WorkflowInstance.id == Task.workflow_instance_id)
        .filter(
            WorkflowInstance.status == InstanceStatus.ACTIVE.value,
            Task.status.in_([TaskStatus.PENDING.value, TaskStatus.IN_PROGRESS.value]),
            Task.due_date.isnot(None),
            Task.due_date < now,
        )
        .order_by(Task.due_date.asc())
        .limit(batch)
        .all()
    )
    # The shortest possible execution limit is one day.
    long_running = (
        db.session.query(WorkflowInstance.id)
        .filter(
            WorkflowInstance.status.in_([InstanceStatus.ACTIVE.value, InstanceStatus.SUSPENDED.value]),
            WorkflowInstance.started_at.isnot(None),
            WorkflowInstance.started_at <= now - timedelta(days=1),
        )
        .order_by(WorkflowInstance.started_at.asc())
        .limit(batch)
        .all()
    )
    ids: list[int] = []
    for (instance_id,) in [*overdue, *long_running]:
        if instance_id not in ids:
            ids.append(instance_id)
    return ids


def sweep_timeouts(now: datetime | None = None, *, batch: int | None = None) -> SweepResult:
    """Apply overdue task timeouts and instance expiry.

    Each event is committed on its own, so one failing instance does not
    hold back the others; skipped events are logged and reported in the result.
    """

    now = now or utcnow()
    batch = batch or int(current_app.config.get("TIMEOUT_SWEEP_BATCH", 500))
    result = SweepResult()

    for instance_id in _sweep_candidates(now, batch):
        result.instances += 1
        row = get_instance(instance_id)
        events = due_events(
            _instance_state(row),
            [_task_state(task) for task in row.tasks],
            parse_definition(row.definition_snapshot),
            now,
        )
        for event in events:
            try:
                _dispatch(get_instance(instance_id), event, now=now)
            except (InvalidTransition, ConcurrencyConflict, NotFound) as exc:
                current_app.logger.warning(
                    "Timeout %s for instance %s skipped: %s", type(event).__name__, instance_id, exc.message
                )
                result.skipped.append(f"{instance_id}:{type(event).__name__}")
                continue
            if isinstance(event, InstanceExpired):
                result.expired += 1
            else:
                result.timed_out += 1

    if result.timed_out or result.expired:
        current_app.logger.info(
            "Timeout sweep handled %s task timeout(s) and %s expired instance(s)", result.timed_out, result.expired
        )
    return result

"""Detection of overdue tasks and expired workflow instances."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timedelta

from .definition import WorkflowDefinition
from .events import Event, InstanceExpired, TaskTimedOut
from .state import InstanceState, TaskState
from .statuses import InstanceStatus, TaskStatus


def is_expired(instance: InstanceState, definition: WorkflowDefinition, now: datetime) -> bool:
    max_days = definition.settings.max_execution_days
    if not max_days or instance.started_at is None:
        return False
    return instance.started_at + timedelta(days=max_days) <= now


def due_events(
    instance: InstanceState,
    tasks: Iterable[TaskState],
    definition: WorkflowDefinition,
    now: datetime,
) -> list[Event]:
    """Return the timeout events that should be applied to ``instance`` at ``now``.

    An expired instance yields a single :class:`InstanceExpired`, since
    cancelling it settles every open task. Otherwise one
    :class:`TaskTimedOut` is returned per pending or in-progress task whose
    due date has passed, oldest first. Suspended instances only expire;
    their task clocks are frozen.
    """

    if instance.status not in {InstanceStatus.ACTIVE.value, InstanceStatus.SUSPENDED.value}:
        return []
    if is_expired(instance, definition, now):
        return [InstanceExpired()]
    if instance.status != InstanceStatus.ACTIVE.value:
        return []

    overdue = [
        task
        for task in tasks
        if task.instance_id == instance.id
        and task.status in {TaskStatus.PENDING.value, TaskStatus.IN_PROGRESS.value}
        and task.due_date is not None
        and task.due_date < now
    ]
    overdue.sort(key=lambda task: task.due_date)
    return [TaskTimedOut(task_id=task.id) for task in overdue]

"""Plain data carried in and out of the workflow state machine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from . import roles
from .statuses import AuditAction, EntityType, InstanceStatus, TaskStatus, is_valid_value

URGENT_PRIORITY = 4
DEFAULT_PRIORITY = 1


@dataclass(frozen=True)
class Actor:
    """The user on whose behalf an event is applied."""

    user_id: str
    role: str = roles.USER

    def has_role(self, required_role: str) -> bool:
        return roles.has_permission(self.role, required_role)


SYSTEM_ACTOR = Actor(user_id="system", role=roles.SUPER_ADMIN)


class Directory(Protocol):
    """Lookup of users used to resolve step assignments."""

    def is_active_user(self, user_id: str) -> bool: ...

    def users_with_role(self, role: str) -> list[str]: ...

    def users_in_group(self, group_id: str) -> list[str]: ...


@dataclass
class StaticDirectory:
    """In-memory :class:`Directory`, handy for previews and tests."""

    users: dict[str, str] = field(default_factory=dict)
    groups: dict[str, list[str]] = field(default_factory=dict)
    inactive: set[str] = field(default_factory=set)

    def is_active_user(self, user_id: str) -> bool:
        return user_id in self.users and user_id not in self.inactive

    def users_with_role(self, role: str) -> list[str]:
        return [
            user_id
            for user_id, user_role in self.users.items()
            if user_role == role and user_id not in self.inactive
        ]

    def users_in_group(self, group_id: str) -> list[str]:
        return [user_id for user_id in self.groups.get(group_id, []) if self.is_active_user(user_id)]


@dataclass
class TaskState:
    id: str
    instance_id: int
    step_id: str
    assigned_to_id: str
    type: str
    title: str
    status: str = TaskStatus.PENDING.value
    description: str | None = None
    priority: int = DEFAULT_PRIORITY
    assigned_at: datetime | None = None
    due_date: datetime | None = None
    completed_at: datetime | None = None
    outcome: str | None = None
    comments: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    escalation_level: int = 0

    @property
    def is_urgent(self) -> bool:
        return self.priority >= URGENT_PRIORITY

    @property
    def is_open(self) -> bool:
        return self.status in {
            TaskStatus.PENDING.value,
            TaskStatus.IN_PROGRESS.value,
            TaskStatus.DEFERRED.value,
        }

    def is_overdue(self, now: datetime) -> bool:
        return self.due_date is not None and self.due_date < now and self.status == TaskStatus.PENDING

    def snapshot(self) -> dict[str, Any]:
        """Return the audited fields of the task."""

        return {
            "status": self.status,
            "assignedToId": self.assigned_to_id,
            "priority": self.priority,
            "dueDate": self.due_date.isoformat() if self.due_date else None,
            "outcome": self.outcome,
        }


@dataclass
class InstanceState:
    id: int
    workflow_id: int
    started_by_id: str
    status: str = InstanceStatus.ACTIVE.value
    current_step_id: str = ""
    active_steps: list[str] = field(default_factory=list)
    join_arrivals: dict[str, list[str]] = field(default_factory=dict)
    variables: dict[str, Any] = field(default_factory=dict)
    form_submission_id: int | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    last_activity_at: datetime | None = None
    final_outcome: str | None = None
    comments: str | None = None

    def snapshot(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "currentStepId": self.current_step_id,
            "activeSteps": list(self.active_steps),
            "finalOutcome": self.final_outcome,
        }


@dataclass(frozen=True)
class AuditEntry:
    action: str
    entity_type: str
    entity_id: str | None
    user_id: str
    timestamp: datetime
    description: str | None = None
    old_values: dict[str, Any] | None = None
    new_values: dict[str, Any] | None = None
    workflow_instance_id: int | None = None
    task_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not is_valid_value(AuditAction, self.action):
            raise ValueError(f"unknown audit action {self.action!r}")
        if not is_valid_value(EntityType, self.entity_type):
            raise ValueError(f"unknown audit entity type {self.entity_type!r}")


@dataclass(frozen=True)
class Notification:
    instance_id: int
    step_id: str
    recipients: tuple[str, ...]
    subject: str
    body: str


@dataclass
class Transition:
    """Result of applying one event: the new state plus its side effects."""

    instance: InstanceState
    tasks: list[TaskState]
    changed_task_ids: set[str] = field(default_factory=set)
    audit: list[AuditEntry] = field(default_factory=list)
    notifications: list[Notification] = field(default_factory=list)

    @property
    def changed_tasks(self) -> list[TaskState]:
        return [task for task in self.tasks if task.id in self.changed_task_ids]

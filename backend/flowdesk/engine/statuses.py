"""Closed value sets used by forms, workflows, tasks and the audit trail."""

from __future__ import annotations

from collections.abc import Mapping
from enum import Enum


class SubmissionStatus(str, Enum):
    DRAFT = "Draft"
    SUBMITTED = "Submitted"
    IN_PROGRESS = "InProgress"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"


class TaskStatus(str, Enum):
    PENDING = "Pending"
    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"
    DEFERRED = "Deferred"


class InstanceStatus(str, Enum):
    ACTIVE = "Active"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"
    SUSPENDED = "Suspended"
    ERROR = "Error"


class StepType(str, Enum):
    START = "start"
    FORM = "form"
    APPROVAL = "approval"
    NOTIFICATION = "notification"
    DECISION = "decision"
    PARALLEL = "parallel"
    JOIN = "join"
    END = "end"


class TaskType(str, Enum):
    FORM = "form"
    APPROVAL = "approval"
    REVIEW = "review"
    NOTIFICATION = "notification"
    DECISION = "decision"


class TaskOutcome(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DEFERRED = "deferred"


class TimeoutAction(str, Enum):
    ESCALATE = "escalate"
    AUTO_APPROVE = "auto-approve"
    AUTO_REJECT = "auto-reject"


class AssignmentType(str, Enum):
    USER = "user"
    ROLE = "role"
    GROUP = "group"
    DYNAMIC = "dynamic"


class AuditAction(str, Enum):
    LOGIN = "Login"
    LOGOUT = "Logout"
    PASSWORD_CHANGE = "PasswordChange"
    PROFILE_UPDATE = "ProfileUpdate"

    FORM_CREATED = "FormCreated"
    FORM_UPDATED = "FormUpdated"
    FORM_DELETED = "FormDeleted"
    FORM_PUBLISHED = "FormPublished"
    FORM_SUBMISSION = "FormSubmission"
    FORM_SUBMISSION_UPDATED = "FormSubmissionUpdated"

    WORKFLOW_CREATED = "WorkflowCreated"
    WORKFLOW_UPDATED = "WorkflowUpdated"
    WORKFLOW_DELETED = "WorkflowDeleted"
    WORKFLOW_STARTED = "WorkflowStarted"
    WORKFLOW_COMPLETED = "WorkflowCompleted"
    WORKFLOW_CANCELLED = "WorkflowCancelled"
    WORKFLOW_SUSPENDED = "WorkflowSuspended"
    WORKFLOW_RESUMED = "WorkflowResumed"
    WORKFLOW_FAILED = "WorkflowFailed"
    STEP_ENTERED = "StepEntered"
    NOTIFICATION_QUEUED = "NotificationQueued"

    TASK_ASSIGNED = "TaskAssigned"
    TASK_STARTED = "TaskStarted"
    TASK_COMPLETED = "TaskCompleted"
    TASK_REASSIGNED = "TaskReassigned"
    TASK_DEFERRED = "TaskDeferred"
    TASK_RESUMED = "TaskResumed"
    TASK_ESCALATED = "TaskEscalated"
    TASK_CANCELLED = "TaskCancelled"

    SYSTEM_ERROR = "SystemError"
    CONFIGURATION_CHANGE = "ConfigurationChange"
    DATA_EXPORT = "DataExport"
    DATA_IMPORT = "DataImport"


class EntityType(str, Enum):
    USER = "User"
    FORM = "Form"
    FORM_SUBMISSION = "FormSubmission"
    WORKFLOW = "Workflow"
    WORKFLOW_INSTANCE = "WorkflowInstance"
    TASK = "Task"
    SYSTEM = "System"


_FINAL_STATUSES: dict[type[Enum], frozenset[str]] = {
    SubmissionStatus: frozenset(
        {
            SubmissionStatus.APPROVED.value,
            SubmissionStatus.REJECTED.value,
            SubmissionStatus.COMPLETED.value,
            SubmissionStatus.CANCELLED.value,
        }
    ),
    TaskStatus: frozenset({TaskStatus.COMPLETED.value, TaskStatus.CANCELLED.value}),
    InstanceStatus: frozenset(
        {
            InstanceStatus.COMPLETED.value,
            InstanceStatus.CANCELLED.value,
            InstanceStatus.ERROR.value,
        }
    ),
}

INSTANCE_TRANSITIONS: Mapping[str, frozenset[str]] = {
    InstanceStatus.ACTIVE.value: frozenset(
        {
            InstanceStatus.SUSPENDED.value,
            InstanceStatus.COMPLETED.value,
            InstanceStatus.CANCELLED.value,
            InstanceStatus.ERROR.value,
        }
    ),
    InstanceStatus.SUSPENDED.value: frozenset(
        {InstanceStatus.ACTIVE.value, InstanceStatus.CANCELLED.value}
    ),
    InstanceStatus.COMPLETED.value: frozenset(),
    InstanceStatus.CANCELLED.value: frozenset(),
    InstanceStatus.ERROR.value: frozenset(),
}

TASK_TRANSITIONS: Mapping[str, frozenset[str]] = {
    TaskStatus.PENDING.value: frozenset(
        {
            TaskStatus.IN_PROGRESS.value,
            TaskStatus.COMPLETED.value,
            TaskStatus.CANCELLED.value,
            TaskStatus.DEFERRED.value,
        }
    ),
    TaskStatus.IN_PROGRESS.value: frozenset(
        {
            TaskStatus.PENDING.value,
            TaskStatus.COMPLETED.value,
            TaskStatus.CANCELLED.value,
            TaskStatus.DEFERRED.value,
        }
    ),
    TaskStatus.DEFERRED.value: frozenset({TaskStatus.PENDING.value, TaskStatus.CANCELLED.value}),
    TaskStatus.COMPLETED.value: frozenset(),
    TaskStatus.CANCELLED.value: frozenset(),
}


def _value(member: str | Enum) -> str:
    return member.value if isinstance(member, Enum) else str(member)


def all_statuses(enum_cls: type[Enum]) -> tuple[str, ...]:
    """Return the string values of a status enum in declaration order."""

    return tuple(member.value for member in enum_cls)


def is_valid_value(enum_cls: type[Enum], value: str | Enum | None) -> bool:
    """Membership check for any of the closed sets above."""

    if value is None:
        return False
    return _value(value) in {member.value for member in enum_cls}


def is_final_status(enum_cls: type[Enum], status: str | Enum | None) -> bool:
    """Return whether ``status`` is final for the given status enum.

    Unknown values are reported as non-final instead of raising.
    """

    if status is None:
        return False
    return _value(status) in _FINAL_STATUSES.get(enum_cls, frozenset())


def can_transition(table: Mapping[str, frozenset[str]], old: str | Enum, new: str | Enum) -> bool:
    return _value(new) in table.get(_value(old), frozenset())


def is_terminal_step_type(step_type: str | Enum) -> bool:
    return _value(step_type) == StepType.END.value


def is_parallel_step_type(step_type: str | Enum) -> bool:
    return _value(step_type) in {StepType.PARALLEL.value, StepType.JOIN.value}


HUMAN_STEP_TYPES = frozenset({StepType.FORM.value, StepType.APPROVAL.value})

"""Pure workflow engine: definitions, conditions and the state machine."""

from .definition import WorkflowDefinition, definition_to_dict, parse_definition
from .events import (
    CancelInstance,
    CancelTask,
    CompleteTask,
    DeferTask,
    Event,
    InstanceExpired,
    ReassignTask,
    ResumeInstance,
    ResumeTask,
    StartTask,
    StartWorkflow,
    SuspendInstance,
    TaskTimedOut,
)
from .machine import advance, new_task_id
from .state import (
    SYSTEM_ACTOR,
    Actor,
    AuditEntry,
    Directory,
    InstanceState,
    Notification,
    StaticDirectory,
    TaskState,
    Transition,
)
from .timeouts import due_events, is_expired

__all__ = [
    "Actor",
    "AuditEntry",
    "CancelInstance",
    "CancelTask",
    "CompleteTask",
    "DeferTask",
    "Directory",
    "Event",
    "InstanceExpired",
    "InstanceState",
    "Notification",
    "ReassignTask",
    "ResumeInstance",
    "ResumeTask",
    "StartTask",
    "StartWorkflow",
    "StaticDirectory",
    "SuspendInstance",
    "SYSTEM_ACTOR",
    "TaskState",
    "TaskTimedOut",
    "Transition",
    "WorkflowDefinition",
    "advance",
    "definition_to_dict",
    "due_events",
    "is_expired",
    "new_task_id",
    "parse_definition",
]

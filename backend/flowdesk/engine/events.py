"""Events accepted by :func:`backend.flowdesk.engine.machine.advance`."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .state import SYSTEM_ACTOR, Actor


@dataclass(frozen=True, kw_only=True)
class Event:
    actor: Actor


@dataclass(frozen=True, kw_only=True)
class StartWorkflow(Event):
    variables: dict[str, Any] = field(default_factory=dict)
    comments: str | None = None


@dataclass(frozen=True, kw_only=True)
class TaskEvent(Event):
    task_id: str
    comments: str | None = None


@dataclass(frozen=True, kw_only=True)
class StartTask(TaskEvent):
    pass


@dataclass(frozen=True, kw_only=True)
class CompleteTask(TaskEvent):
    outcome: str
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, kw_only=True)
class ReassignTask(TaskEvent):
    new_assignee_id: str


@dataclass(frozen=True, kw_only=True)
class DeferTask(TaskEvent):
    pass


@dataclass(frozen=True, kw_only=True)
class ResumeTask(TaskEvent):
    pass


@dataclass(frozen=True, kw_only=True)
class CancelTask(TaskEvent):
    pass


@dataclass(frozen=True, kw_only=True)
class SuspendInstance(Event):
    reason: str | None = None


@dataclass(frozen=True, kw_only=True)
class ResumeInstance(Event):
    pass


@dataclass(frozen=True, kw_only=True)
class CancelInstance(Event):
    reason: str | None = None


@dataclass(frozen=True, kw_only=True)
class TaskTimedOut(TaskEvent):
    actor: Actor = SYSTEM_ACTOR


@dataclass(frozen=True, kw_only=True)
class InstanceExpired(Event):
    actor: Actor = SYSTEM_ACTOR

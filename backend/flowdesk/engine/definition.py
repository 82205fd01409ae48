"""Workflow definitions: the step graph a workflow instance executes."""

from __future__ import annotations

from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from ..errors import DefinitionError, ValidationError
from . import conditions
from .statuses import (
    HUMAN_STEP_TYPES,
    AssignmentType,
    StepType,
    TimeoutAction,
    is_parallel_step_type,
    is_valid_value,
)
from .values import ensure_json_object

MAX_TIMEOUT_HOURS = 24 * 365


def _get(payload: Mapping[str, Any], camel: str, snake: str | None = None, default: Any = None) -> Any:
    if camel in payload:
        return payload[camel]
    if snake is not None and snake in payload:
        return payload[snake]
    return default


@dataclass(frozen=True)
class StepAssignment:
    type: str
    user_id: str | None = None
    role: str | None = None
    group_id: str | None = None
    dynamic_expression: str | None = None
    allow_reassignment: bool = True
    require_all_approvers: bool = False


@dataclass(frozen=True)
class WorkflowStep:
    id: str
    type: str
    name: str = ""
    description: str | None = None
    order: int = 0
    properties: dict[str, Any] = field(default_factory=dict)
    assignment: StepAssignment | None = None
    conditions: tuple[dict[str, Any], ...] = ()
    timeout_hours: int | None = None
    timeout_action: str | None = None

    @property
    def is_human(self) -> bool:
        return self.type in HUMAN_STEP_TYPES

    @property
    def is_parallel(self) -> bool:
        return is_parallel_step_type(self.type)

    @property
    def display_name(self) -> str:
        return self.name or self.id


@dataclass(frozen=True)
class WorkflowConnection:
    id: str
    from_step_id: str
    to_step_id: str
    condition: str | None = None
    label: str | None = None
    parsed_condition: dict[str, Any] | None = field(default=None, compare=False, repr=False)

    @property
    def is_conditional(self) -> bool:
        return self.parsed_condition is not None


@dataclass(frozen=True)
class WorkflowSettings:
    allow_parallel_execution: bool = False
    require_all_steps: bool = True
    allow_step_skipping: bool = False
    enable_notifications: bool = True
    enable_audit_logging: bool = True
    max_execution_days: int | None = None
    default_timeout_action: str | None = TimeoutAction.ESCALATE.value
    notification_templates: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class WorkflowDefinition:
    """A validated, immutable step graph with lookup helpers."""

    steps: tuple[WorkflowStep, ...]
    connections: tuple[WorkflowConnection, ...]
    settings: WorkflowSettings = field(default_factory=WorkflowSettings)
    variables: dict[str, Any] = field(default_factory=dict)
    _steps_by_id: dict[str, WorkflowStep] = field(init=False, repr=False, compare=False)
    _outgoing: dict[str, tuple[WorkflowConnection, ...]] = field(init=False, repr=False, compare=False)
    _incoming: dict[str, tuple[WorkflowConnection, ...]] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        outgoing: dict[str, list[WorkflowConnection]] = {}
        incoming: dict[str, list[WorkflowConnection]] = {}
        for connection in self.connections:
            outgoing.setdefault(connection.from_step_id, []).append(connection)
            incoming.setdefault(connection.to_step_id, []).append(connection)
        object.__setattr__(self, "_steps_by_id", {step.id: step for step in self.steps})
        object.__setattr__(self, "_outgoing", {key: tuple(value) for key, value in outgoing.items()})
        object.__setattr__(self, "_incoming", {key: tuple(value) for key, value in incoming.items()})

    def has_step(self, step_id: str | None) -> bool:
        return step_id in self._steps_by_id

    def step(self, step_id: str) -> WorkflowStep:
        """Return the step with ``step_id``; unknown ids are a definition error."""

        try:
            return self._steps_by_id[step_id]
        except KeyError:
            raise DefinitionError(f"unknown step id {step_id!r}") from None

    def outgoing(self, step_id: str) -> tuple[WorkflowConnection, ...]:
        return self._outgoing.get(step_id, ())

    def incoming(self, step_id: str) -> tuple[WorkflowConnection, ...]:
        return self._incoming.get(step_id, ())

    @property
    def start_step(self) -> WorkflowStep:
        for step in self.steps:
            if step.type == StepType.START:
                return step
        raise DefinitionError("workflow has no start step")

    def reachable_from(self, step_id: str) -> set[str]:
        seen: set[str] = set()
        queue = deque([step_id])
        while queue:
            current = queue.popleft()
            for connection in self.outgoing(current):
                if connection.to_step_id not in seen:
                    seen.add(connection.to_step_id)
                    queue.append(connection.to_step_id)
        return seen

    def can_reach(self, source_id: str, target_id: str) -> bool:
        """Return whether ``target_id`` is reachable from ``source_id`` in one or more hops."""

        return target_id in self.reachable_from(source_id)


def _parse_assignment(payload: Any, step_id: str, errors: list[str]) -> StepAssignment | None:
    if payload is None:
        return None
    if not isinstance(payload, Mapping):
        errors.append(f"step {step_id}: assignment must be an object")
        return None

    assignment = StepAssignment(
        type=str(_get(payload, "type", default="") or "").strip().lower(),
        user_id=_get(payload, "userId", "user_id"),
        role=_get(payload, "role"),
        group_id=_get(payload, "groupId", "group_id"),
        dynamic_expression=_get(payload, "dynamicExpression", "dynamic_expression"),
        allow_reassignment=bool(_get(payload, "allowReassignment", "allow_reassignment", True)),
        require_all_approvers=bool(
            _get(payload, "requireAllApprovers", "require_all_approvers", False)
        ),
    )

    required = {
        AssignmentType.USER.value: ("userId", assignment.user_id),
        AssignmentType.ROLE.value: ("role", assignment.role),
        AssignmentType.GROUP.value: ("groupId", assignment.group_id),
        AssignmentType.DYNAMIC.value: ("dynamicExpression", assignment.dynamic_expression),
    }
    if assignment.type not in required:
        errors.append(f"step {step_id}: assignment type {assignment.type!r} is not supported")
    else:
        name, value = required[assignment.type]
        if not isinstance(value, str) or not value.strip():
            errors.append(f"step {step_id}: {assignment.type} assignment needs {name}")
    return assignment


def _parse_step(payload: Any, index: int, errors: list[str]) -> WorkflowStep | None:
    if not isinstance(payload, Mapping):
        errors.append(f"steps[{index}] must be an object")
        return None

    step_id = str(_get(payload, "id", default="") or "").strip()
    if not step_id:
        errors.append(f"steps[{index}] is missing an id")
        return None

    step_type = str(_get(payload, "type", default="") or "").strip().lower()
    if not is_valid_value(StepType, step_type):
        errors.append(f"step {step_id}: type {step_type!r} is not supported")

    properties = _get(payload, "properties", default=None) or {}
    if not isinstance(properties, Mapping):
        errors.append(f"step {step_id}: properties must be an object")
        properties = {}
    template = properties.get("template")
    if template is not None and not isinstance(template, str):
        errors.append(f"step {step_id}: properties.template must be a template name")

    raw_conditions = _get(payload, "conditions", default=None) or []
    if not isinstance(raw_conditions, list):
        errors.append(f"step {step_id}: conditions must be a list")
        raw_conditions = []
    step_conditions: list[dict[str, Any]] = []
    for raw in raw_conditions:
        try:
            parsed = conditions.parse_condition(raw)
        except conditions.ConditionError as exc:
            errors.append(f"step {step_id}: {exc}")
            continue
        if parsed is not None:
            step_conditions.append(parsed)

    timeout_hours = _get(payload, "timeoutHours", "timeout_hours")
    if timeout_hours is not None:
        if isinstance(timeout_hours, bool) or not isinstance(timeout_hours, (int, float)):
            errors.append(f"step {step_id}: timeoutHours must be a number")
            timeout_hours = None
        elif not 0 < timeout_hours <= MAX_TIMEOUT_HOURS:
            errors.append(f"step {step_id}: timeoutHours must be between 1 and {MAX_TIMEOUT_HOURS}")
            timeout_hours = None

    timeout_action = _get(payload, "timeoutAction", "timeout_action")
    if timeout_action is not None and not is_valid_value(TimeoutAction, timeout_action):
        errors.append(f"step {step_id}: timeoutAction {timeout_action!r} is not supported")

    order = _get(payload, "order", default=index)
    return WorkflowStep(
        id=step_id,
        type=step_type,
        name=str(_get(payload, "name", default="") or ""),
        description=_get(payload, "description"),
        order=order if isinstance(order, int) else index,
        properties=dict(properties),
        assignment=_parse_assignment(_get(payload, "assignment"), step_id, errors),
        conditions=tuple(step_conditions),
        timeout_hours=timeout_hours,
        timeout_action=timeout_action,
    )


def _parse_connection(payload: Any, index: int, errors: list[str]) -> WorkflowConnection | None:
    if not isinstance(payload, Mapping):
        errors.append(f"connections[{index}] must be an object")
        return None

    source = str(_get(payload, "fromStepId", "from_step_id", "") or "").strip()
    target = str(_get(payload, "toStepId", "to_step_id", "") or "").strip()
    connection_id = str(_get(payload, "id", default="") or f"c{index + 1}")
    if not source or not target:
        errors.append(f"connection {connection_id}: fromStepId and toStepId are required")
        return None

    raw_condition = _get(payload, "condition")
    parsed = None
    try:
        parsed = conditions.parse_condition(raw_condition)
    except conditions.ConditionError as exc:
        errors.append(f"connection {connection_id}: {exc}")

    return WorkflowConnection(
        id=connection_id,
        from_step_id=source,
        to_step_id=target,
        condition=raw_condition if raw_condition is None or isinstance(raw_condition, str) else None,
        label=_get(payload, "label"),
        parsed_condition=parsed,
    )


def _parse_settings(payload: Any, errors: list[str]) -> WorkflowSettings:
    if payload is None:
        return WorkflowSettings()
    if not isinstance(payload, Mapping):
        errors.append("settings must be an object")
        return WorkflowSettings()

    defaults = WorkflowSettings()
    max_days = _get(payload, "maxExecutionDays", "max_execution_days")
    if max_days is not None and (isinstance(max_days, bool) or not isinstance(max_days, int) or max_days <= 0):
        errors.append("settings.maxExecutionDays must be a positive integer")
        max_days = None

    default_action = _get(
        payload, "defaultTimeoutAction", "default_timeout_action", defaults.default_timeout_action
    )
    if default_action is not None and not is_valid_value(TimeoutAction, default_action):
        errors.append(f"settings.defaultTimeoutAction {default_action!r} is not supported")

    templates = _get(payload, "notificationTemplates", "notification_templates") or {}
    return WorkflowSettings(
        allow_parallel_execution=bool(
            _get(payload, "allowParallelExecution", "allow_parallel_execution", defaults.allow_parallel_execution)
        ),
        require_all_steps=bool(_get(payload, "requireAllSteps", "require_all_steps", defaults.require_all_steps)),
        allow_step_skipping=bool(
            _get(payload, "allowStepSkipping", "allow_step_skipping", defaults.allow_step_skipping)
        ),
        enable_notifications=bool(
            _get(payload, "enableNotifications", "enable_notifications", defaults.enable_notifications)
        ),
        enable_audit_logging=bool(
            _get(payload, "enableAuditLogging", "enable_audit_logging", defaults.enable_audit_logging)
        ),
        max_execution_days=max_days,
        default_timeout_action=default_action,
        notification_templates=dict(templates) if isinstance(templates, Mapping) else {},
    )


def _check_graph(definition: WorkflowDefinition, errors: list[str]) -> None:
    starts = [step for step in definition.steps if step.type == StepType.START]
    if len(starts) != 1:
        errors.append(f"workflow needs exactly one start step, found {len(starts)}")
    if not any(step.type == StepType.END for step in definition.steps):
        errors.append("workflow needs at least one end step")

    for connection in definition.connections:
        for endpoint in (connection.from_step_id, connection.to_step_id):
            if not definition.has_step(endpoint):
                errors.append(f"connection {connection.id}: unknown step {endpoint!r}")
        if definition.has_step(connection.to_step_id) and definition.step(connection.to_step_id).type == StepType.START:
            errors.append(f"connection {connection.id}: cannot lead into the start step")
        if definition.has_step(connection.from_step_id) and definition.step(connection.from_step_id).type == StepType.END:
            errors.append(f"connection {connection.id}: cannot leave an end step")

    for step in definition.steps:
        outgoing = definition.outgoing(step.id)
        incoming = definition.incoming(step.id)
        if step.type != StepType.END and not outgoing:
            errors.append(f"step {step.id}: has no outgoing connection")
        if step.type == StepType.PARALLEL and len(outgoing) < 2:
            errors.append(f"step {step.id}: parallel step needs at least two outgoing connections")
        if step.type == StepType.JOIN and len(incoming) < 2:
            errors.append(f"step {step.id}: join step needs at least two incoming connections")
        if step.is_human and step.assignment is None:
            errors.append(f"step {step.id}: {step.type} step needs an assignment")
        if step.type == StepType.NOTIFICATION and step.assignment is None and not step.properties.get("recipients"):
            errors.append(f"step {step.id}: notification step needs an assignment or recipients")
        if step.is_parallel and not definition.settings.allow_parallel_execution:
            errors.append(f"step {step.id}: parallel steps require settings.allowParallelExecution")

    if len(starts) == 1:
        reachable = definition.reachable_from(starts[0].id) | {starts[0].id}
        for step in definition.steps:
            if step.id not in reachable:
                errors.append(f"step {step.id}: is not reachable from the start step")


def parse_definition(payload: Any) -> WorkflowDefinition:
    """Parse and validate a workflow definition from its JSON form.

    Keys are accepted in camelCase (as stored by the form builder) or
    snake_case. All problems are collected and raised together as a
    :class:`DefinitionError`.
    """

    if not isinstance(payload, Mapping):
        raise DefinitionError("workflow definition must be an object")

    errors: list[str] = []
    raw_steps = payload.get("steps")
    raw_connections = payload.get("connections") or []
    if not isinstance(raw_steps, list) or not raw_steps:
        raise DefinitionError("workflow definition needs a non-empty steps list")
    if not isinstance(raw_connections, list):
        raise DefinitionError("workflow definition connections must be a list")

    steps: list[WorkflowStep] = []
    seen_ids: set[str] = set()
    for index, raw in enumerate(raw_steps):
        step = _parse_step(raw, index, errors)
        if step is None:
            continue
        if step.id in seen_ids:
            errors.append(f"step id {step.id!r} is used more than once")
            continue
        seen_ids.add(step.id)
        steps.append(step)

    connections = [
        connection
        for index, raw in enumerate(raw_connections)
        if (connection := _parse_connection(raw, index, errors)) is not None
    ]

    settings = _parse_settings(payload.get("settings"), errors)
    try:
        variables = ensure_json_object(payload.get("variables"), name="variables")
    except ValidationError as exc:
        errors.extend(exc.errors or [exc.message])
        variables = {}

    definition = WorkflowDefinition(
        steps=tuple(steps),
        connections=tuple(connections),
        settings=settings,
        variables=variables,
    )
    _check_graph(definition, errors)

    if errors:
        raise DefinitionError("workflow definition is invalid", errors=errors)
    return definition


def _assignment_to_dict(assignment: StepAssignment) -> dict[str, Any]:
    return {
        "type": assignment.type,
        "userId": assignment.user_id,
        "role": assignment.role,
        "groupId": assignment.group_id,
        "dynamicExpression": assignment.dynamic_expression,
        "allowReassignment": assignment.allow_reassignment,
        "requireAllApprovers": assignment.require_all_approvers,
    }


def definition_to_dict(definition: WorkflowDefinition) -> dict[str, Any]:
    """Serialise a definition back to the camelCase JSON form."""

    settings = definition.settings
    return {
        "steps": [
            {
                "id": step.id,
                "type": step.type,
                "name": step.name,
                "description": step.description,
                "order": step.order,
                "properties": dict(step.properties),
                "assignment": _assignment_to_dict(step.assignment) if step.assignment else None,
                "conditions": [dict(condition) for condition in step.conditions],
                "timeoutHours": step.timeout_hours,
                "timeoutAction": step.timeout_action,
            }
            for step in definition.steps
        ],
        "connections": [
            {
                "id": connection.id,
                "fromStepId": connection.from_step_id,
                "toStepId": connection.to_step_id,
                "condition": connection.condition
                if connection.condition is not None
                else connection.parsed_condition,
                "label": connection.label,
            }
            for connection in definition.connections
        ],
        "settings": {
            "allowParallelExecution": settings.allow_parallel_execution,
            "requireAllSteps": settings.require_all_steps,
            "allowStepSkipping": settings.allow_step_skipping,
            "enableNotifications": settings.enable_notifications,
            "enableAuditLogging": settings.enable_audit_logging,
            "maxExecutionDays": settings.max_execution_days,
            "defaultTimeoutAction": settings.default_timeout_action,
            "notificationTemplates": dict(settings.notification_templates),
        },
        "variables": dict(definition.variables),
    }

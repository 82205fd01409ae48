"""REST API endpoints for working on tasks."""

from __future__ import annotations

from http import HTTPStatus
from typing import Any

from flask import Blueprint, jsonify, request

from ..engine import roles
from ..errors import PermissionDenied, ValidationError
from ..models.task import Task
from ..services import runtime
from ..utils.auth import current_user, require_user
from ..utils.clock import isoformat, utcnow

bp = Blueprint("tasks", __name__)

_VIEWS = {"mine", "pending", "urgent", "overdue", "all"}


def serialize_task(task: Task) -> dict[str, Any]:
    """Return a JSON serialisable representation of a task."""

    return {
        "id": task.id,
        "workflowInstanceId": task.workflow_instance_id,
        "stepId": task.step_id,
        "assignedToId": task.assigned_to_id,
        "type": task.type,
        "status": task.status,
        "title": task.title,
        "description": task.description,
        "priority": task.priority,
        "isUrgent": task.is_urgent,
        "isOverdue": task.is_overdue(utcnow()),
        "assignedAt": isoformat(task.assigned_at),
        "dueDate": isoformat(task.due_date),
        "completedAt": isoformat(task.completed_at),
        "outcome": task.outcome,
        "comments": task.comments,
        "data": task.data or {},
        "escalationLevel": task.escalation_level,
    }


def json_payload() -> dict[str, Any]:
    payload = request.get_json(silent=True, force=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError("request body must be a JSON object")
    return payload


def _optional_text(payload: dict[str, Any], key: str) -> str | None:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{key} must be a string")
    return value.strip() or None


def pagination() -> tuple[int, int]:
    page = request.args.get("page", type=int) or 1
    page_size = request.args.get("pageSize", type=int) or runtime.DEFAULT_PAGE_SIZE
    return page, page_size


def _flag(name: str) -> bool | None:
    value = request.args.get(name)
    if value is None:
        return None
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _can_view(task: Task) -> bool:
    user = current_user()
    return (
        task.assigned_to_id == user.id
        or task.instance.started_by_id == user.id
        or roles.has_permission(user.role, roles.ADMIN)
    )


@bp.get("/tasks")
@require_user()
def list_tasks() -> tuple[object, int]:
    user = current_user()
    view = (request.args.get("view") or "mine").strip().lower()
    if view not in _VIEWS:
        raise ValidationError(f"view must be one of: {', '.join(sorted(_VIEWS))}")

    assignee_id = request.args.get("assigneeId") or user.id
    if assignee_id != user.id and not roles.has_permission(user.role, roles.ADMIN):
        raise PermissionDenied("only administrators can list other users' tasks")
    if view == "all":
        if not roles.has_permission(user.role, roles.ADMIN):
            raise PermissionDenied("only administrators can list all tasks")
        assignee_id = request.args.get("assigneeId")

    filters: dict[str, Any] = {
        "assignee_id": assignee_id,
        "status": request.args.get("status"),
        "task_type": request.args.get("type"),
        "priority": request.args.get("priority", type=int),
        "urgent": _flag("urgent"),
        "overdue": _flag("overdue"),
    }
    if view == "pending":
        filters["status"] = "Pending"
    elif view == "urgent":
        filters["urgent"] = True
    elif view == "overdue":
        filters["overdue"] = True

    page, page_size = pagination()
    items, total = runtime.list_tasks(page=page, page_size=page_size, **filters)
    return (
        jsonify({"items": [serialize_task(task) for task in items], "total": total, "page": page}),
        HTTPStatus.OK,
    )


@bp.get("/tasks/<task_id>")
@require_user()
def get_task(task_id: str) -> tuple[object, int]:
    task = runtime.get_task(task_id)
    if not _can_view(task):
        raise PermissionDenied("you are not involved in this task")
    return jsonify(serialize_task(task)), HTTPStatus.OK


@bp.post("/tasks/<task_id>/start")
@require_user()
def start_task(task_id: str) -> tuple[object, int]:
    task = runtime.start_task(task_id, current_user())
    return jsonify(serialize_task(task)), HTTPStatus.OK


@bp.post("/tasks/<task_id>/complete")
@require_user()
def complete_task(task_id: str) -> tuple[object, int]:
    payload = json_payload()
    outcome = payload.get("outcome")
    if not isinstance(outcome, str) or not outcome.strip():
        raise ValidationError("outcome is required")
    data = payload.get("data")
    if data is not None and not isinstance(data, dict):
        raise ValidationError("data must be an object")

    task = runtime.complete_task(
        task_id,
        current_user(),
        outcome,
        comments=_optional_text(payload, "comments"),
        data=data,
    )
    return jsonify(serialize_task(task)), HTTPStatus.OK


@bp.post("/tasks/<task_id>/reassign")
@require_user(roles.ADMIN)
def reassign_task(task_id: str) -> tuple[object, int]:
    payload = json_payload()
    assignee_id = _optional_text(payload, "assigneeId")
    if assignee_id is None:
        raise ValidationError("assigneeId is required")
    task = runtime.reassign_task(
        task_id, current_user(), assignee_id, comments=_optional_text(payload, "comments")
    )
    return jsonify(serialize_task(task)), HTTPStatus.OK


@bp.post("/tasks/<task_id>/defer")
@require_user()
def defer_task(task_id: str) -> tuple[object, int]:
    payload = json_payload()
    task = runtime.defer_task(task_id, current_user(), comments=_optional_text(payload, "comments"))
    return jsonify(serialize_task(task)), HTTPStatus.OK


@bp.post("/tasks/<task_id>/resume")
@require_user()
def resume_task(task_id: str) -> tuple[object, int]:
    task = runtime.resume_task(task_id, current_user())
    return jsonify(serialize_task(task)), HTTPStatus.OK


@bp.post("/tasks/<task_id>/cancel")
@require_user(roles.ADMIN)
def cancel_task(task_id: str) -> tuple[object, int]:
    payload = json_payload()
    task = runtime.cancel_task(task_id, current_user(), reason=_optional_text(payload, "reason"))
    return jsonify(serialize_task(task)), HTTPStatus.OK

"""REST API endpoints for starting and controlling workflow instances."""

from __future__ import annotations

from http import HTTPStatus
from typing import Any

from flask import Blueprint, current_app, jsonify, request

from ..engine import roles
from ..errors import PermissionDenied, ValidationError
from ..extensions import limiter
from ..models.instance import WorkflowInstance
from ..services import runtime
from ..utils.auth import current_user, require_user
from ..utils.clock import isoformat
from .tasks import json_payload, pagination, serialize_task

bp = Blueprint("instances", __name__)


def serialize_instance(instance: WorkflowInstance, *, include_tasks: bool = False) -> dict[str, Any]:
    """Return a JSON serialisable representation of a workflow instance."""

    payload: dict[str, Any] = {
        "id": instance.id,
        "workflowId": instance.workflow_id,
        "workflowVersion": instance.workflow_version,
        "startedById": instance.started_by_id,
        "formSubmissionId": instance.form_submission_id,
        "status": instance.status,
        "currentStepId": instance.current_step_id,
        "activeSteps": list(instance.active_steps or []),
        "variables": instance.variables or {},
        "startedAt": isoformat(instance.started_at),
        "completedAt": isoformat(instance.completed_at),
        "lastActivityAt": isoformat(instance.last_activity_at),
        "finalOutcome": instance.final_outcome,
        "comments": instance.comments,
    }
    if include_tasks:
        payload["tasks"] = [serialize_task(task) for task in instance.tasks]
    return payload


def ensure_can_view(instance: WorkflowInstance) -> None:
    user = current_user()
    if instance.started_by_id == user.id or roles.has_permission(user.role, roles.ADMIN):
        return
    if any(task.assigned_to_id == user.id for task in instance.tasks):
        return
    raise PermissionDenied("you are not involved in this workflow instance")


def _reason(payload: dict[str, Any]) -> str | None:
    value = payload.get("reason")
    if value is not None and not isinstance(value, str):
        raise ValidationError("reason must be a string")
    return (value or "").strip() or None


@bp.post("/workflows/<int:workflow_id>/instances")
@require_user()
def start_instance(workflow_id: int) -> tuple[object, int]:
    payload = json_payload()
    variables = payload.get("variables")
    if variables is not None and not isinstance(variables, dict):
        raise ValidationError("variables must be an object")
    submission_id = payload.get("formSubmissionId")
    if submission_id is not None and (isinstance(submission_id, bool) or not isinstance(submission_id, int)):
        raise ValidationError("formSubmissionId must be an integer")
    comments = payload.get("comments")
    if comments is not None and not isinstance(comments, str):
        raise ValidationError("comments must be a string")

    instance = runtime.start_workflow(
        workflow_id,
        current_user(),
        variables=variables,
        form_submission_id=submission_id,
        comments=comments,
    )
    return jsonify(serialize_instance(instance, include_tasks=True)), HTTPStatus.CREATED


@bp.get("/instances")
@require_user()
def list_instances() -> tuple[object, int]:
    user = current_user()
    started_by = request.args.get("startedById") or user.id
    if started_by != user.id and not roles.has_permission(user.role, roles.ADMIN):
        raise PermissionDenied("only administrators can list other users' workflows")
    if request.args.get("scope") == "all":
        if not roles.has_permission(user.role, roles.ADMIN):
            raise PermissionDenied("only administrators can list all workflows")
        started_by = None

    page, page_size = pagination()
    items, total = runtime.list_instances(
        started_by_id=started_by,
        workflow_id=request.args.get("workflowId", type=int),
        status=request.args.get("status"),
        page=page,
        page_size=page_size,
    )
    return (
        jsonify({"items": [serialize_instance(item) for item in items], "total": total, "page": page}),
        HTTPStatus.OK,
    )


@bp.get("/instances/<int:instance_id>")
@require_user()
def get_instance(instance_id: int) -> tuple[object, int]:
    instance = runtime.get_instance(instance_id)
    ensure_can_view(instance)
    return jsonify(serialize_instance(instance, include_tasks=True)), HTTPStatus.OK


@bp.get("/submissions/<int:submission_id>/instance")
@require_user()
def get_instance_for_submission(submission_id: int) -> tuple[object, int]:
    instance = runtime.get_instance_by_submission(submission_id)
    ensure_can_view(instance)
    return jsonify(serialize_instance(instance, include_tasks=True)), HTTPStatus.OK


@bp.post("/instances/<int:instance_id>/cancel")
@require_user()
def cancel_instance(instance_id: int) -> tuple[object, int]:
    instance = runtime.cancel_instance(instance_id, current_user(), _reason(json_payload()))
    return jsonify(serialize_instance(instance, include_tasks=True)), HTTPStatus.OK


@bp.post("/instances/<int:instance_id>/suspend")
@require_user(roles.ADMIN)
def suspend_instance(instance_id: int) -> tuple[object, int]:
    instance = runtime.suspend_instance(instance_id, current_user(), _reason(json_payload()))
    return jsonify(serialize_instance(instance)), HTTPStatus.OK


@bp.post("/instances/<int:instance_id>/resume")
@require_user(roles.ADMIN)
def resume_instance(instance_id: int) -> tuple[object, int]:
    instance = runtime.resume_instance(instance_id, current_user())
    return jsonify(serialize_instance(instance)), HTTPStatus.OK


@bp.post("/timeouts/sweep")
@require_user(roles.ADMIN)
@limiter.limit(lambda: current_app.config.get("TIMEOUT_SWEEP_RATE_LIMIT", "10 per minute"))
def sweep_timeouts() -> tuple[object, int]:
    result = runtime.sweep_timeouts()
    return jsonify(result.to_dict()), HTTPStatus.OK

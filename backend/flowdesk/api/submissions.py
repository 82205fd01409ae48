"""REST API endpoints for filling in and submitting forms."""

from __future__ import annotations

from http import HTTPStatus
from typing import Any

from flask import Blueprint, jsonify

from ..engine import roles
from ..errors import PermissionDenied, ValidationError
from ..models.form import FormSubmission
from ..services import submissions
from ..utils.auth import current_user, require_user
from ..utils.clock import isoformat
from .instances import serialize_instance
from .tasks import json_payload

bp = Blueprint("submissions", __name__)


def serialize_submission(submission: FormSubmission) -> dict[str, Any]:
    return {
        "id": submission.id,
        "formId": submission.form_id,
        "submittedById": submission.submitted_by_id,
        "status": submission.status,
        "formData": submission.form_data or {},
        "createdAt": isoformat(submission.created_at),
        "submittedAt": isoformat(submission.submitted_at),
        "updatedAt": isoformat(submission.updated_at),
        "comments": submission.comments,
        "hasSignature": bool(submission.signature),
    }


def _submitted(submission: FormSubmission, instance) -> dict[str, Any]:
    payload = serialize_submission(submission)
    payload["workflowInstance"] = serialize_instance(instance, include_tasks=True) if instance is not None else None
    return payload


def _signature(payload: dict[str, Any]) -> str | None:
    value = payload.get("signature")
    if value is not None and not isinstance(value, str):
        raise ValidationError("signature must be a string")
    return (value or "").strip() or None


@bp.post("/forms/<int:form_id>/validate")
@require_user()
def validate_form_data(form_id: int) -> tuple[object, int]:
    errors = submissions.validate_form_data(form_id, json_payload().get("formData"))
    return jsonify({"valid": not errors, "errors": errors}), HTTPStatus.OK


@bp.post("/forms/<int:form_id>/submissions")
@require_user()
def create_submission(form_id: int) -> tuple[object, int]:
    """Save a draft, or submit straight away with ``"submit": true``."""

    payload = json_payload()
    if payload.get("submit"):
        submission, instance = submissions.submit_form(
            form_id, current_user(), payload.get("formData"), signature=_signature(payload)
        )
        return jsonify(_submitted(submission, instance)), HTTPStatus.CREATED

    submission = submissions.create_draft(form_id, current_user(), payload.get("formData"))
    return jsonify(serialize_submission(submission)), HTTPStatus.CREATED


@bp.get("/submissions/<int:submission_id>")
@require_user()
def get_submission(submission_id: int) -> tuple[object, int]:
    submission = submissions.get_submission(submission_id)
    user = current_user()
    if submission.submitted_by_id != user.id and not roles.has_permission(user.role, roles.ADMIN):
        raise PermissionDenied("you cannot view this submission")
    return jsonify(serialize_submission(submission)), HTTPStatus.OK


@bp.put("/submissions/<int:submission_id>")
@require_user()
def update_submission(submission_id: int) -> tuple[object, int]:
    payload = json_payload()
    comments = payload.get("comments")
    if comments is not None and not isinstance(comments, str):
        raise ValidationError("comments must be a string")
    submission = submissions.update_submission(
        submission_id, current_user(), payload.get("formData"), comments=comments
    )
    return jsonify(serialize_submission(submission)), HTTPStatus.OK


@bp.post("/submissions/<int:submission_id>/submit")
@require_user()
def submit_submission(submission_id: int) -> tuple[object, int]:
    submission, instance = submissions.submit(
        submission_id, current_user(), signature=_signature(json_payload())
    )
    return jsonify(_submitted(submission, instance)), HTTPStatus.OK


@bp.delete("/submissions/<int:submission_id>")
@require_user()
def delete_submission(submission_id: int) -> tuple[object, int]:
    submissions.delete_submission(submission_id, current_user())
    return jsonify({"deleted": submission_id}), HTTPStatus.OK

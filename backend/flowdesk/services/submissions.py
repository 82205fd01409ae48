"""Form submissions: drafts, edits and submission into a workflow."""

from __future__ import annotations

from typing import Any

from flask import current_app

from ..engine import roles
from ..engine.statuses import AuditAction, EntityType, SubmissionStatus
from ..engine.values import ensure_json_object
from ..errors import FlowdeskError, InvalidTransition, NotFound, PermissionDenied, ValidationError
from ..extensions import db
from ..forms import can_edit_submission, validate_submission
from ..models.form import Form, FormSubmission
from ..models.instance import WorkflowInstance
from ..models.user import User
from ..utils.clock import utcnow
from . import audit, runtime


def get_form(form_id: int) -> Form:
    form = db.session.get(Form, form_id)
    if form is None:
        raise NotFound(f"form {form_id} not found")
    return form


def get_submission(submission_id: int) -> FormSubmission:
    submission = db.session.get(FormSubmission, submission_id)
    if submission is None:
        raise NotFound(f"form submission {submission_id} not found")
    return submission


def _require_owner(submission: FormSubmission, user: User) -> None:
    if submission.submitted_by_id != user.id and not roles.has_permission(user.role, roles.ADMIN):
        raise PermissionDenied("only the submitter or an administrator can change this submission")


def validate_form_data(form_id: int, data: Any) -> list[str]:
    """Return the validation errors of ``data`` against the form's fields."""

    form = get_form(form_id)
    return validate_submission(form.definition, ensure_json_object(data, name="formData"))


def create_draft(form_id: int, user: User, data: Any = None) -> FormSubmission:
    form = get_form(form_id)
    if not form.is_active:
        raise InvalidTransition(f"form {form_id} is not published")
    if not form.definition.settings.allow_save_draft:
        raise ValidationError(f"form {form_id} does not allow drafts")

    submission = FormSubmission(
        form_id=form.id,
        submitted_by_id=user.id,
        form_data=ensure_json_object(data, name="formData"),
        status=SubmissionStatus.DRAFT.value,
    )
    db.session.add(submission)
    db.session.flush()
    audit.log_action(
        AuditAction.FORM_SUBMISSION_UPDATED.value,
        EntityType.FORM_SUBMISSION.value,
        user.id,
        entity_id=submission.id,
        description=f"Draft saved for form {form.title}",
        new_values={"status": submission.status},
    )
    db.session.commit()
    return submission


def update_submission(
    submission_id: int,
    user: User,
    data: Any,
    *,
    comments: str | None = None,
) -> FormSubmission:
    """Replace the data of a draft, or of a submitted form that allows edits."""

    submission = get_submission(submission_id)
    _require_owner(submission, user)
    form = submission.form
    if not can_edit_submission(submission.status, form.definition.settings):
        raise InvalidTransition(f"form submission {submission_id} can no longer be edited ({submission.status})")

    form_data = ensure_json_object(data, name="formData")
    if submission.status != SubmissionStatus.DRAFT:
        errors = validate_submission(form.definition, form_data)
        if errors:
            raise ValidationError("form data is invalid", errors=errors)

    old = {"formData": submission.form_data}
    submission.form_data = form_data
    if comments is not None:
        submission.comments = comments
    submission.updated_at = utcnow()
    submission.updated_by_id = user.id
    audit.log_action(
        AuditAction.FORM_SUBMISSION_UPDATED.value,
        EntityType.FORM_SUBMISSION.value,
        user.id,
        entity_id=submission.id,
        description=f"Submission {submission.id} updated",
        old_values=old,
        new_values={"formData": form_data},
    )
    db.session.commit()
    return submission


def submit(
    submission_id: int,
    user: User,
    *,
    signature: str | None = None,
) -> tuple[FormSubmission, WorkflowInstance | None]:
    """Submit a draft and start the form's associated workflow, if any.

    The status change and the workflow start are committed together, so a
    workflow that cannot start leaves the submission a draft.
    """

    submission = get_submission(submission_id)
    _require_owner(submission, user)
    if submission.status != SubmissionStatus.DRAFT:
        raise InvalidTransition(f"form submission {submission_id} is already {submission.status}")

    form = submission.form
    definition = form.definition
    errors = validate_submission(definition, submission.form_data or {})
    if definition.settings.require_signature and not (signature or submission.signature):
        errors.append("signature is required")
    if errors:
        raise ValidationError("form data is invalid", errors=errors)

    now = utcnow()
    submission.status = SubmissionStatus.SUBMITTED.value
    submission.submitted_at = now
    if signature:
        submission.signature = signature
    audit.log_action(
        AuditAction.FORM_SUBMISSION.value,
        EntityType.FORM_SUBMISSION.value,
        user.id,
        entity_id=submission.id,
        description=f"Form {form.title} submitted",
        old_values={"status": SubmissionStatus.DRAFT.value},
        new_values={"status": submission.status},
    )

    if form.associated_workflow_id is None:
        db.session.commit()
        return submission, None

    db.session.flush()
    variables = dict(submission.form_data or {})
    variables.update(formId=form.id, submissionId=submission.id, submittedById=user.id)
    try:
        instance = runtime.start_workflow(
            form.associated_workflow_id,
            user,
            variables=variables,
            form_submission_id=submission.id,
            now=now,
        )
    except FlowdeskError:
        db.session.rollback()
        raise
    current_app.logger.info("Submission %s started workflow instance %s", submission.id, instance.id)
    return submission, instance


def submit_form(
    form_id: int,
    user: User,
    data: Any,
    *,
    signature: str | None = None,
) -> tuple[FormSubmission, WorkflowInstance | None]:
    """Create and submit a submission in one step."""

    form = get_form(form_id)
    if not form.is_active:
        raise InvalidTransition(f"form {form_id} is not published")
    submission = FormSubmission(
        form_id=form.id,
        submitted_by_id=user.id,
        form_data=ensure_json_object(data, name="formData"),
        status=SubmissionStatus.DRAFT.value,
    )
    db.session.add(submission)
    db.session.flush()
    try:
        return submit(submission.id, user, signature=signature)
    except FlowdeskError:
        db.session.rollback()
        raise


def delete_submission(submission_id: int, user: User) -> None:
    """Delete a draft submission."""

    submission = get_submission(submission_id)
    _require_owner(submission, user)
    if submission.status != SubmissionStatus.DRAFT:
        raise InvalidTransition("only drafts can be deleted")
    db.session.delete(submission)
    db.session.commit()

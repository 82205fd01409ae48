"""Tests for form submissions and the workflows they start."""

from __future__ import annotations

import pytest

from backend.flowdesk.errors import InvalidTransition, PermissionDenied, ValidationError
from backend.flowdesk.extensions import db
from backend.flowdesk.models import FormSubmission, WorkflowInstance
from backend.flowdesk.models.form import Form
from backend.flowdesk.services import runtime, submissions

LEAVE_FORM = {
    "fields": [
        {"id": "days", "type": "number", "label": "Days", "isRequired": True, "properties": {"min": 1}},
        {"id": "reason", "type": "text", "label": "Reason"},
    ],
}


@pytest.fixture()
def form_factory(users):
    def factory(definition=None, workflow=None, **extra):
        form = Form(
            title="Leave request",
            form_definition=definition or LEAVE_FORM,
            created_by_id=users["admin"].id,
            associated_workflow_id=workflow.id if workflow is not None else None,
            **extra,
        )
        db.session.add(form)
        db.session.commit()
        return form

    return factory


def test_submit_starts_the_associated_workflow(form_factory, workflow_factory, users):
    form = form_factory(workflow=workflow_factory())

    submission, instance = submissions.submit_form(form.id, users["requester"], {"days": 3})

    assert instance is not None
    assert instance.form_submission_id == submission.id
    assert instance.variables["days"] == 3
    assert instance.variables["submittedById"] == "requester"
    assert submission.status == "InProgress"
    assert submission.submitted_at is not None
    assert runtime.get_instance_by_submission(submission.id).id == instance.id

    runtime.complete_task(instance.tasks[0].id, users["approver"], "rejected")
    assert submissions.get_submission(submission.id).status == "Rejected"


def test_submission_status_follows_an_approval(form_factory, workflow_factory, users):
    form = form_factory(workflow=workflow_factory())
    submission, instance = submissions.submit_form(form.id, users["requester"], {"days": 1})
    runtime.complete_task(instance.tasks[0].id, users["approver"], "approved")
    assert submissions.get_submission(submission.id).status == "Approved"


def test_submit_without_workflow(form_factory, users):
    form = form_factory()
    submission, instance = submissions.submit_form(form.id, users["requester"], {"days": 2})
    assert instance is None
    assert submission.status == "Submitted"


def test_invalid_data_is_rejected_and_nothing_is_stored(form_factory, workflow_factory, users):
    form = form_factory(workflow=workflow_factory())
    with pytest.raises(ValidationError) as excinfo:
        submissions.submit_form(form.id, users["requester"], {"days": 0})
    assert excinfo.value.errors == ["days: Minimum value is 1"]
    assert FormSubmission.query.count() == 0
    assert WorkflowInstance.query.count() == 0


def test_workflow_failure_keeps_the_draft(form_factory, workflow_factory, users):
    workflow = workflow_factory()
    form = form_factory(workflow=workflow)
    draft = submissions.create_draft(form.id, users["requester"], {"days": 2})
    workflow.is_active = False
    db.session.commit()

    with pytest.raises(InvalidTransition):
        submissions.submit(draft.id, users["requester"])
    assert submissions.get_submission(draft.id).status == "Draft"


def test_signature_requirement(form_factory, users):
    form = form_factory({**LEAVE_FORM, "settings": {"requireSignature": True}})
    draft = submissions.create_draft(form.id, users["requester"], {"days": 2})
    with pytest.raises(ValidationError) as excinfo:
        submissions.submit(draft.id, users["requester"])
    assert excinfo.value.errors == ["signature is required"]

    submission, _ = submissions.submit(draft.id, users["requester"], signature="J. Doe")
    assert submission.signature == "J. Doe"


def test_draft_editing_rules(form_factory, users):
    form = form_factory()
    draft = submissions.create_draft(form.id, users["requester"], {"days": 1})

    with pytest.raises(PermissionDenied):
        submissions.update_submission(draft.id, users["approver"], {"days": 5})
    submissions.update_submission(draft.id, users["requester"], {"days": 5}, comments="longer trip")
    assert submissions.get_submission(draft.id).form_data == {"days": 5}

    submissions.submit(draft.id, users["requester"])
    with pytest.raises(InvalidTransition):
        submissions.update_submission(draft.id, users["requester"], {"days": 6})
    with pytest.raises(InvalidTransition):
        submissions.delete_submission(draft.id, users["requester"])


def test_drafts_can_be_deleted(form_factory, users):
    form = form_factory()
    draft = submissions.create_draft(form.id, users["requester"])
    submissions.delete_submission(draft.id, users["requester"])
    assert FormSubmission.query.count() == 0


def test_inactive_forms_take_no_submissions(form_factory, users):
    form = form_factory(is_active=False)
    with pytest.raises(InvalidTransition):
        submissions.create_draft(form.id, users["requester"])


def test_validate_form_data_skips_hidden_fields(form_factory):
    form = form_factory(
        {
            **LEAVE_FORM,
            "conditionalRules": [
                {"id": "r1", "condition": "reason", "value": "none", "action": "hide", "targetFieldId": "days"}
            ],
        }
    )
    assert submissions.validate_form_data(form.id, {"reason": "trip"}) == ["Days is required"]
    assert submissions.validate_form_data(form.id, {"reason": "none"}) == []
    with pytest.raises(ValidationError):
        submissions.validate_form_data(form.id, ["not", "an", "object"])


def test_malformed_form_definition_is_a_validation_error(form_factory, users):
    form = form_factory({"fields": [{"id": "code", "label": "Code", "validation": {"pattern": "["}}]})
    with pytest.raises(ValidationError) as excinfo:
        submissions.submit_form(form.id, users["requester"], {"code": "CC-1"})
    assert excinfo.value.errors[0].startswith("field 'code': invalid validation pattern")
    assert FormSubmission.query.count() == 0

from __future__ import annotations

import pytest

from backend.flowdesk.errors import DefinitionError, InvalidTransition, PermissionDenied, ValidationError
from backend.flowdesk.models import AuditLog, Workflow
from backend.flowdesk.services import runtime, workflows


def test_create_normalises_and_audits(users, approval_definition):
    workflow = workflows.create_workflow(users["admin"], "  Purchase  ", approval_definition(), category="finance")

    assert workflow.name == "Purchase"
    assert workflow.version == 1
    assert workflow.is_active
    assert workflow.workflow_definition["settings"]["defaultTimeoutAction"] == "escalate"
    assert workflow.definition.step("review").assignment.user_id == "approver"
    entry = AuditLog.query.filter_by(action="WorkflowCreated").one()
    assert entry.entity_id == str(workflow.id)
    assert entry.user_id == "admin"


def test_only_admins_manage_workflows(users, approval_definition):
    with pytest.raises(PermissionDenied):
        workflows.create_workflow(users["requester"], "Nope", approval_definition())


def test_names_are_unique_ignoring_case(users, approval_definition):
    workflows.create_workflow(users["admin"], "Purchase", approval_definition())
    with pytest.raises(ValidationError):
        workflows.create_workflow(users["admin"], "purchase", approval_definition())


def test_invalid_definition_is_not_stored(users):
    with pytest.raises(DefinitionError) as excinfo:
        workflows.create_workflow(users["admin"], "Broken", {"steps": [{"id": "start", "type": "start"}]})
    assert "workflow needs at least one end step" in excinfo.value.errors
    assert Workflow.query.count() == 0


def test_version_only_changes_with_the_definition(workflow_factory, users, approval_definition):
    workflow = workflow_factory()
    workflows.update_workflow(workflow.id, users["admin"], description="same graph", definition=approval_definition())
    assert workflows.get_workflow(workflow.id).version == 1

    workflows.update_workflow(workflow.id, users["admin"], definition=approval_definition("admin"))
    assert workflows.get_workflow(workflow.id).version == 2


def test_failed_update_changes_nothing(workflow_factory, users):
    workflow = workflow_factory()
    with pytest.raises(DefinitionError):
        workflows.update_workflow(workflow.id, users["admin"], name="Renamed", definition={"steps": "bad"})
    assert workflows.get_workflow(workflow.id).name == "Approval"


def test_templates_are_copied_not_started(users, approval_definition):
    template = workflows.create_workflow(users["admin"], "Template", approval_definition(), is_template=True)
    assert [item.id for item in workflows.list_templates()] == [template.id]
    with pytest.raises(InvalidTransition):
        workflows.set_published(template.id, users["admin"], True)
    with pytest.raises(InvalidTransition):
        runtime.start_workflow(template.id, users["requester"])

    copy = workflows.create_from_template(template.id, users["admin"], "From template")
    assert not copy.is_template
    assert copy.workflow_definition == template.workflow_definition
    assert [item.id for item in workflows.list_workflows()] == [copy.id]


def test_delete_refuses_workflows_with_instances(workflow_factory, users):
    used = workflow_factory(name="Used")
    unused = workflow_factory(name="Unused")
    runtime.start_workflow(used.id, users["requester"])

    with pytest.raises(InvalidTransition):
        workflows.delete_workflow(used.id, users["admin"])
    workflows.delete_workflow(unused.id, users["admin"])
    assert [item.name for item in workflows.list_workflows()] == ["Used"]

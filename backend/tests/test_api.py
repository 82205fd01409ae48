"""Tests for the instance, task, submission and audit REST API."""

from __future__ import annotations

import json

import pytest
from flask import g

from backend.flowdesk.extensions import _limiter_key_func, db
from backend.flowdesk.models import Form


def _start(client, headers, workflow_id, user_id="requester", **payload):
    return client.post(f"/api/workflows/{workflow_id}/instances", json=payload, headers=headers(user_id))


def test_requests_need_a_known_active_user(client, users, user_factory, headers):
    response = client.get("/api/tasks")
    assert response.status_code == 401
    assert response.get_json()["error"] == "unauthorized"

    assert client.get("/api/tasks", headers=headers("ghost")).status_code == 401

    user_factory("former", active=False)
    assert client.get("/api/tasks", headers=headers("former")).status_code == 401


def test_admin_routes_need_the_admin_role(client, users, headers):
    response = client.get("/api/audit", headers=headers("requester"))
    assert response.status_code == 403
    assert response.get_json()["error"] == "permission_denied"
    assert client.get("/api/audit", headers=headers("admin")).status_code == 200


def test_start_list_and_complete(client, workflow_factory, users, headers):
    workflow = workflow_factory()

    response = _start(client, headers, workflow.id, variables={"amount": 40}, comments="new laptop")
    assert response.status_code == 201
    instance = response.get_json()
    assert instance["status"] == "Active"
    assert instance["startedById"] == "requester"
    assert instance["activeSteps"] == ["review"]
    assert instance["comments"] == "new laptop"
    [task] = instance["tasks"]
    assert task["assignedToId"] == "approver"
    assert task["status"] == "Pending"
    assert task["assignedAt"].endswith("Z")

    listed = client.get("/api/tasks", headers=headers("approver")).get_json()
    assert listed["total"] == 1
    assert listed["items"][0]["id"] == task["id"]
    assert client.get("/api/tasks", headers=headers("requester")).get_json()["total"] == 0

    started = client.post(f"/api/tasks/{task['id']}/start", headers=headers("approver"))
    assert started.get_json()["status"] == "InProgress"

    completed = client.post(
        f"/api/tasks/{task['id']}/complete",
        json={"outcome": "approved", "comments": "go ahead"},
        headers=headers("approver"),
    )
    assert completed.status_code == 200
    assert completed.get_json()["outcome"] == "approved"

    detail = client.get(f"/api/instances/{instance['id']}", headers=headers("requester")).get_json()
    assert detail["status"] == "Completed"
    assert detail["finalOutcome"] == "approved"
    assert detail["completedAt"] is not None


def test_domain_errors_render_as_json(client, workflow_factory, users, headers):
    workflow = workflow_factory()
    task_id = _start(client, headers, workflow.id).get_json()["tasks"][0]["id"]

    wrong_user = client.post(
        f"/api/tasks/{task_id}/complete", json={"outcome": "approved"}, headers=headers("requester")
    )
    assert wrong_user.status_code == 403
    assert wrong_user.get_json()["error"] == "permission_denied"

    bad_outcome = client.post(f"/api/tasks/{task_id}/complete", json={"outcome": "perhaps"}, headers=headers("approver"))
    assert bad_outcome.status_code == 400
    payload = bad_outcome.get_json()
    assert payload["error"] == "validation_error"
    assert payload["errors"] == ["outcome must be one of: approved, rejected"]

    missing = client.post(f"/api/tasks/{task_id}/complete", json={}, headers=headers("approver"))
    assert missing.status_code == 400

    unknown = client.get("/api/tasks/task_nope", headers=headers("approver"))
    assert unknown.status_code == 404
    assert unknown.get_json()["error"] == "not_found"

    deferred = client.post(f"/api/tasks/{task_id}/defer", headers=headers("approver"))
    assert deferred.get_json()["status"] == "Deferred"
    conflict = client.post(f"/api/tasks/{task_id}/complete", json={"outcome": "approved"}, headers=headers("approver"))
    assert conflict.status_code == 409
    assert conflict.get_json()["error"] == "invalid_transition"


def test_unknown_routes_are_json_404(client):
    response = client.get("/api/does-not-exist")
    assert response.status_code == 404
    assert response.get_json() == {"error": "not_found", "message": "resource not found"}


def test_instance_visibility(client, workflow_factory, users, user_factory, headers):
    workflow = workflow_factory()
    user_factory("outsider")
    instance_id = _start(client, headers, workflow.id).get_json()["id"]

    assert client.get(f"/api/instances/{instance_id}", headers=headers("approver")).status_code == 200
    assert client.get(f"/api/instances/{instance_id}", headers=headers("outsider")).status_code == 403
    assert client.get(f"/api/instances/{instance_id}", headers=headers("admin")).status_code == 200

    mine = client.get("/api/instances", headers=headers("requester")).get_json()
    assert [item["id"] for item in mine["items"]] == [instance_id]
    assert client.get("/api/instances?scope=all", headers=headers("requester")).status_code == 403
    assert client.get("/api/instances?scope=all", headers=headers("admin")).get_json()["total"] == 1


def test_admin_instance_controls(client, workflow_factory, users, headers):
    workflow = workflow_factory()
    instance_id = _start(client, headers, workflow.id).get_json()["id"]

    assert client.post(f"/api/instances/{instance_id}/suspend", headers=headers("requester")).status_code == 403
    suspended = client.post(f"/api/instances/{instance_id}/suspend", json={"reason": "review"}, headers=headers("admin"))
    assert suspended.get_json()["status"] == "Suspended"
    resumed = client.post(f"/api/instances/{instance_id}/resume", headers=headers("admin"))
    assert resumed.get_json()["status"] == "Active"

    cancelled = client.post(
        f"/api/instances/{instance_id}/cancel", json={"reason": "duplicate"}, headers=headers("requester")
    )
    assert cancelled.status_code == 200
    body = cancelled.get_json()
    assert body["status"] == "Cancelled"
    assert [task["status"] for task in body["tasks"]] == ["Cancelled"]


def test_reassign_via_api(client, workflow_factory, users, headers):
    workflow = workflow_factory()
    task_id = _start(client, headers, workflow.id).get_json()["tasks"][0]["id"]

    assert (
        client.post(f"/api/tasks/{task_id}/reassign", json={"assigneeId": "admin"}, headers=headers("approver")).status_code
        == 403
    )
    response = client.post(f"/api/tasks/{task_id}/reassign", json={"assigneeId": "admin"}, headers=headers("admin"))
    assert response.status_code == 200
    assert response.get_json()["assignedToId"] == "admin"


def test_task_views(client, workflow_factory, users, headers):
    workflow = workflow_factory()
    _start(client, headers, workflow.id)

    assert client.get("/api/tasks?view=pending", headers=headers("approver")).get_json()["total"] == 1
    assert client.get("/api/tasks?view=urgent", headers=headers("approver")).get_json()["total"] == 0
    assert client.get("/api/tasks?view=all", headers=headers("approver")).status_code == 403
    assert client.get("/api/tasks?view=all", headers=headers("admin")).get_json()["total"] == 1
    assert client.get("/api/tasks?view=everything", headers=headers("admin")).status_code == 400


def test_audit_endpoints(client, workflow_factory, users, headers):
    workflow = workflow_factory()
    instance_id = _start(client, headers, workflow.id).get_json()["id"]

    trail = client.get(f"/api/instances/{instance_id}/audit", headers=headers("requester")).get_json()
    actions = [item["action"] for item in trail["items"]]
    assert "WorkflowStarted" in actions
    assert "TaskAssigned" in actions

    count = client.get("/api/audit/count?action=TaskAssigned", headers=headers("admin")).get_json()
    assert count == {"count": 1}
    assert client.get("/api/audit?from=yesterday", headers=headers("admin")).status_code == 400

    download = client.get(f"/api/audit/download?instanceId={instance_id}", headers=headers("admin"))
    assert download.status_code == 200
    assert download.headers["Content-Disposition"] == "attachment; filename=audit-log.ndjson"
    lines = download.get_data(as_text=True).splitlines()
    assert {json.loads(line)["workflowInstanceId"] for line in lines} == {instance_id}


def test_sweep_endpoint(client, users, headers):
    assert client.post("/api/timeouts/sweep", headers=headers("requester")).status_code == 403
    response = client.post("/api/timeouts/sweep", headers=headers("admin"))
    assert response.status_code == 200
    assert response.get_json() == {"instances": 0, "timedOut": 0, "expired": 0, "skipped": []}


def test_sweep_limit_is_per_user(app, client, user_factory, headers, monkeypatch):
    monkeypatch.setitem(app.config, "TIMEOUT_SWEEP_RATE_LIMIT", "2 per minute")
    user_factory("ops1", "Admin")
    user_factory("ops2", "Admin")

    assert [client.post("/api/timeouts/sweep", headers=headers("ops1")).status_code for _ in range(3)] == [
        200,
        200,
        429,
    ]
    assert client.post("/api/timeouts/sweep", headers=headers("ops2")).status_code == 200
    assert client.post("/api/timeouts/sweep").status_code == 401


@pytest.fixture()
def expense_form(workflow_factory, users):
    form = Form(
        title="Expense claim",
        form_definition={"fields": [{"id": "amount", "type": "number", "label": "Amount", "isRequired": True}]},
        created_by_id="admin",
        associated_workflow_id=workflow_factory().id,
    )
    db.session.add(form)
    db.session.commit()
    return form


def test_start_rejects_foreign_or_unsubmitted_submissions(client, expense_form, headers):
    draft = client.post(
        f"/api/forms/{expense_form.id}/submissions", json={"formData": {"amount": 5}}, headers=headers("requester")
    ).get_json()
    assert draft["status"] == "Draft"

    payload = {"formSubmissionId": draft["id"]}
    workflow_id = expense_form.associated_workflow_id
    assert _start(client, headers, workflow_id, "approver", **payload).status_code == 403
    assert _start(client, headers, workflow_id, "requester", **payload).status_code == 409
    assert _start(client, headers, workflow_id, "requester", formSubmissionId=9999).status_code == 404
    assert client.get(f"/api/submissions/{draft['id']}", headers=headers("requester")).get_json()["status"] == "Draft"


def test_submission_lifecycle(client, expense_form, headers):
    form_id = expense_form.id
    check = client.post(f"/api/forms/{form_id}/validate", json={"formData": {}}, headers=headers("requester"))
    assert check.get_json() == {"valid": False, "errors": ["Amount is required"]}

    draft = client.post(f"/api/forms/{form_id}/submissions", json={}, headers=headers("requester")).get_json()
    updated = client.put(
        f"/api/submissions/{draft['id']}", json={"formData": {"amount": 80}}, headers=headers("requester")
    )
    assert updated.get_json()["formData"] == {"amount": 80}
    assert client.get(f"/api/submissions/{draft['id']}", headers=headers("approver")).status_code == 403

    submitted = client.post(f"/api/submissions/{draft['id']}/submit", headers=headers("requester"))
    assert submitted.status_code == 200
    body = submitted.get_json()
    assert body["status"] == "InProgress"
    assert body["workflowInstance"]["formSubmissionId"] == draft["id"]

    again = _start(client, headers, expense_form.associated_workflow_id, formSubmissionId=draft["id"])
    assert again.status_code == 409
    linked = client.get(f"/api/submissions/{draft['id']}/instance", headers=headers("requester")).get_json()
    assert linked["id"] == body["workflowInstance"]["id"]


def test_submit_in_one_request_and_delete_drafts(client, expense_form, headers):
    direct = client.post(
        f"/api/forms/{expense_form.id}/submissions",
        json={"formData": {"amount": 3}, "submit": True},
        headers=headers("requester"),
    )
    assert direct.status_code == 201
    assert direct.get_json()["workflowInstance"]["status"] == "Active"

    invalid = client.post(
        f"/api/forms/{expense_form.id}/submissions", json={"formData": {}, "submit": True}, headers=headers("requester")
    )
    assert invalid.status_code == 400
    assert invalid.get_json()["errors"] == ["Amount is required"]

    draft = client.post(f"/api/forms/{expense_form.id}/submissions", json={}, headers=headers("requester")).get_json()
    assert client.delete(f"/api/submissions/{draft['id']}", headers=headers("requester")).get_json() == {
        "deleted": draft["id"]
    }
    assert client.get(f"/api/submissions/{draft['id']}", headers=headers("requester")).status_code == 404


def test_rate_limit_key_is_the_resolved_user(app):
    with app.test_request_context("/api/timeouts/sweep", environ_base={"REMOTE_ADDR": "10.0.0.7"}):
        assert _limiter_key_func() == "10.0.0.7"
        g.current_user_id = "ops1"
        assert _limiter_key_func() == "user:ops1"

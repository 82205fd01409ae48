"""Seed the database with demo users, an example approval workflow and its form."""
from __future__ import annotations

import pathlib
import sys

ROOT = pathlib.Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from backend.flowdesk import create_app
from backend.flowdesk.engine import roles
from backend.flowdesk.extensions import db
from backend.flowdesk.models.form import Form
from backend.flowdesk.models.user import User
from backend.flowdesk.models.workflow import Workflow
from backend.flowdesk.services import workflows

EXAMPLE_WORKFLOW_NAME = "Expense Approval"
EXAMPLE_FORM_TITLE = "Expense Claim"

DEMO_USERS = (
    {"id": "admin", "user_name": "admin", "email": "admin@example.com", "role": roles.SUPER_ADMIN, "groups": []},
    {"id": "approver", "user_name": "approver", "email": "approver@example.com", "role": roles.ADMIN, "groups": ["finance"]},
    {"id": "requester", "user_name": "requester", "email": "requester@example.com", "role": roles.USER, "groups": []},
)

EXAMPLE_DEFINITION = {
    "steps": [
        {"id": "start", "type": "start", "name": "Start"},
        {
            "id": "amount-check",
            "type": "decision",
            "name": "Large expense?",
        },
        {
            "id": "finance-approval",
            "type": "approval",
            "name": "Finance approval",
            "assignment": {"type": "group", "groupId": "finance"},
            "timeoutHours": 48,
            "timeoutAction": "escalate",
        },
        {
            "id": "manager-approval",
            "type": "approval",
            "name": "Manager approval",
            "assignment": {"type": "role", "role": roles.ADMIN},
            "timeoutHours": 72,
        },
        {
            "id": "notify",
            "type": "notification",
            "name": "Notify requester",
            "assignment": {"type": "dynamic", "dynamicExpression": "${submittedById}"},
            "properties": {"subject": "Expense ${outcome}"},
        },
        {"id": "end", "type": "end", "name": "Done"},
    ],
    "connections": [
        {"fromStepId": "start", "toStepId": "amount-check"},
        {
            "fromStepId": "amount-check",
            "toStepId": "finance-approval",
            "condition": {"var": "amount", "op": "gt", "value": 1000},
            "label": "over 1000",
        },
        {"fromStepId": "amount-check", "toStepId": "manager-approval"},
        {"fromStepId": "finance-approval", "toStepId": "notify"},
        {"fromStepId": "manager-approval", "toStepId": "notify"},
        {"fromStepId": "notify", "toStepId": "end"},
    ],
    "settings": {"maxExecutionDays": 30, "defaultTimeoutAction": "escalate"},
}

EXAMPLE_FORM = {
    "fields": [
        {"id": "amount", "type": "number", "label": "Amount", "isRequired": True, "properties": {"min": 0}},
        {"id": "purpose", "type": "textarea", "label": "Purpose", "isRequired": True},
        {"id": "hasReceipt", "type": "checkbox", "label": "Receipt attached"},
        {"id": "receiptNote", "type": "text", "label": "Why is there no receipt?", "isRequired": True},
    ],
    "conditionalRules": [
        {"targetFieldId": "receiptNote", "condition": "hasReceipt", "action": "hide", "value": True},
    ],
    "settings": {"allowSaveDraft": True},
}


def _ensure_user(values: dict[str, object]) -> bool:
    if db.session.get(User, values["id"]) is not None:
        return False
    db.session.add(User(**values))
    return True


def _ensure_example_workflow(admin: User) -> tuple[Workflow, bool]:
    workflow = Workflow.query.filter_by(name=EXAMPLE_WORKFLOW_NAME).first()
    if workflow is not None:
        return workflow, False
    workflow = workflows.create_workflow(
        admin,
        EXAMPLE_WORKFLOW_NAME,
        EXAMPLE_DEFINITION,
        description="Routes expense claims to finance or a manager depending on the amount.",
        category="finance",
    )
    return workflow, True


def _ensure_example_form(admin: User, workflow: Workflow) -> bool:
    form = Form.query.filter_by(title=EXAMPLE_FORM_TITLE).first()
    if form is not None:
        return False
    db.session.add(
        Form(
            title=EXAMPLE_FORM_TITLE,
            description="Submit an expense for approval.",
            form_definition=EXAMPLE_FORM,
            category="finance",
            created_by_id=admin.id,
            associated_workflow_id=workflow.id,
        )
    )
    return True


def main() -> None:
    app = create_app()
    with app.app_context():
        created_users = sum(int(_ensure_user(dict(values))) for values in DEMO_USERS)
        db.session.commit()

        admin = db.session.get(User, "admin")
        workflow, created_workflow = _ensure_example_workflow(admin)
        created_form = _ensure_example_form(admin, workflow)
        db.session.commit()

        print(
            "Seed completed",
            f"users created={created_users}",
            f"workflows created={int(created_workflow)}",
            f"forms created={int(created_form)}",
        )


if __name__ == "__main__":
    main()

from __future__ import annotations

import pathlib
import sys
from collections.abc import Callable

import pytest
from flask import g
from sqlalchemy.pool import StaticPool

ROOT = pathlib.Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _load_dependencies():
    from flowdesk import Config, create_app
    from backend.flowdesk.extensions import db

    return Config, create_app, db


ConfigBase, create_app, db = _load_dependencies()


class TestConfig(ConfigBase):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite+pysqlite:///:memory:"
    SQLALCHEMY_ENGINE_OPTIONS = {
        "poolclass": StaticPool,
        "connect_args": {"check_same_thread": False},
    }
    CORS_ALLOWED_ORIGINS = "http://localhost"
    DB_INIT_MAX_RETRIES = 1


@pytest.fixture(scope="module")
def app():
    app = create_app(TestConfig)
    ctx = app.app_context()
    ctx.push()
    yield app
    db.session.remove()
    ctx.pop()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture(autouse=True)
def cleanup_rows(app):
    from backend.flowdesk.models import AuditLog, Form, FormSubmission, Task, User, Workflow, WorkflowInstance

    yield

    db.session.rollback()
    for model in (AuditLog, Task, WorkflowInstance, FormSubmission, Form, Workflow, User):
        db.session.query(model).delete()
    db.session.commit()
    db.session.expunge_all()
    # The module-wide app context outlives each request, so its g does too.
    g.pop("current_user", None)
    g.pop("current_user_id", None)


@pytest.fixture()
def user_factory(app):
    from backend.flowdesk.models.user import User

    def factory(user_id: str, role: str = "User", *, groups: list[str] | None = None, active: bool = True) -> User:
        user = User(
            id=user_id,
            user_name=user_id,
            email=f"{user_id}@example.com",
            first_name=user_id.title(),
            role=role,
            groups=list(groups or []),
            is_active=active,
        )
        db.session.add(user)
        db.session.commit()
        return user

    return factory


@pytest.fixture()
def users(user_factory: Callable[..., object]):
    """Three standard users: a requester, an approver and an administrator."""

    return {
        "requester": user_factory("requester"),
        "approver": user_factory("approver", groups=["finance"]),
        "admin": user_factory("admin", "Admin"),
    }


@pytest.fixture()
def headers():
    def factory(user_id: str) -> dict[str, str]:
        return {"X-User-Id": user_id}

    return factory


def _approval_definition(assignee: str = "approver", **step_overrides) -> dict:
    """A start -> approval -> end definition with branches for both outcomes."""

    approval = {
        "id": "review",
        "type": "approval",
        "name": "Review",
        "assignment": {"type": "user", "userId": assignee},
    }
    approval.update(step_overrides)
    return {
        "steps": [
            {"id": "start", "type": "start"},
            approval,
            {"id": "approved", "type": "end", "properties": {"outcome": "approved"}},
            {"id": "rejected", "type": "end", "properties": {"outcome": "rejected"}},
        ],
        "connections": [
            {"fromStepId": "start", "toStepId": "review"},
            {"fromStepId": "review", "toStepId": "rejected", "condition": "rejected"},
            {"fromStepId": "review", "toStepId": "approved"},
        ],
    }


@pytest.fixture()
def workflow_factory(app, users):
    from backend.flowdesk.services import workflows

    def factory(definition: dict | None = None, name: str = "Approval") -> object:
        return workflows.create_workflow(users["admin"], name, definition or _approval_definition())

    return factory


@pytest.fixture()
def approval_definition():
    return _approval_definition

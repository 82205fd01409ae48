"""Creating, versioning and publishing workflow definitions."""

from __future__ import annotations

import copy
from typing import Any

from flask import current_app
from sqlalchemy import func

from ..engine import definition_to_dict, parse_definition, roles
from ..engine.statuses import AuditAction, EntityType
from ..errors import InvalidTransition, NotFound, PermissionDenied, ValidationError
from ..extensions import db
from ..models.instance import WorkflowInstance
from ..models.user import User
from ..models.workflow import Workflow
from . import audit


def _require_admin(user: User, what: str) -> None:
    if not roles.has_permission(user.role, roles.ADMIN):
        raise PermissionDenied(f"only administrators can {what}")


def _normalize_name(value: Any) -> str:
    name = (value or "").strip() if isinstance(value, str) else ""
    if not name:
        raise ValidationError("name is required")
    return name


def _is_name_unique(name: str, workflow_id: int | None = None) -> bool:
    query = Workflow.query.filter(func.lower(Workflow.name) == name.lower())
    if workflow_id is not None:
        query = query.filter(Workflow.id != workflow_id)
    return not db.session.query(query.exists()).scalar()


def _summary(workflow: Workflow) -> dict[str, Any]:
    return {"name": workflow.name, "version": workflow.version, "isActive": workflow.is_active}


def get_workflow(workflow_id: int) -> Workflow:
    workflow = db.session.get(Workflow, workflow_id)
    if workflow is None:
        raise NotFound(f"workflow {workflow_id} not found")
    return workflow


def list_workflows(*, active_only: bool = False, category: str | None = None) -> list[Workflow]:
    query = Workflow.query.filter(Workflow.is_template.is_(False))
    if active_only:
        query = query.filter(Workflow.is_active.is_(True))
    if category:
        query = query.filter(Workflow.category == category)
    return query.order_by(Workflow.created_at.desc(), Workflow.id.desc()).all()


def list_templates() -> list[Workflow]:
    return Workflow.query.filter(Workflow.is_template.is_(True)).order_by(Workflow.name.asc()).all()


def create_workflow(
    user: User,
    name: str,
    definition: Any,
    *,
    description: str | None = None,
    category: str | None = None,
    is_template: bool = False,
) -> Workflow:
    """Validate ``definition`` and store it as version 1 of a new workflow."""

    _require_admin(user, "create workflows")
    name = _normalize_name(name)
    if not _is_name_unique(name):
        raise ValidationError(f"a workflow named {name!r} already exists")
    parsed = parse_definition(definition)

    workflow = Workflow(
        name=name,
        description=description,
        category=category,
        is_template=is_template,
        workflow_definition=definition_to_dict(parsed),
        version=1,
        created_by_id=user.id,
    )
    db.session.add(workflow)
    db.session.flush()
    audit.log_action(
        AuditAction.WORKFLOW_CREATED.value,
        EntityType.WORKFLOW.value,
        user.id,
        entity_id=workflow.id,
        description=f"Workflow {name} created",
        new_values=_summary(workflow),
    )
    db.session.commit()
    current_app.logger.info("Workflow %s (%s) created by %s", workflow.id, name, user.id)
    return workflow


def update_workflow(
    workflow_id: int,
    user: User,
    *,
    name: str | None = None,
    description: str | None = None,
    category: str | None = None,
    definition: Any = None,
) -> Workflow:
    """Update a workflow; a changed definition bumps ``version``.

    Running instances keep the definition snapshot they were started with.
    """

    _require_admin(user, "update workflows")
    workflow = get_workflow(workflow_id)
    old = _summary(workflow)
    normalized = definition_to_dict(parse_definition(definition)) if definition is not None else None

    if name is not None:
        name = _normalize_name(name)
        if not _is_name_unique(name, workflow.id):
            raise ValidationError(f"a workflow named {name!r} already exists")
        workflow.name = name
    if description is not None:
        workflow.description = description
    if category is not None:
        workflow.category = category
    if normalized is not None and normalized != workflow.workflow_definition:
        workflow.workflow_definition = normalized
        workflow.version += 1
    workflow.updated_by_id = user.id

    audit.log_action(
        AuditAction.WORKFLOW_UPDATED.value,
        EntityType.WORKFLOW.value,
        user.id,
        entity_id=workflow.id,
        description=f"Workflow {workflow.name} updated",
        old_values=old,
        new_values=_summary(workflow),
    )
    db.session.commit()
    return workflow


def set_published(workflow_id: int, user: User, published: bool) -> Workflow:
    """Publish (activate) or unpublish a workflow."""

    _require_admin(user, "publish workflows")
    workflow = get_workflow(workflow_id)
    if workflow.is_template and published:
        raise InvalidTransition("templates cannot be published; create a workflow from the template instead")
    old = _summary(workflow)
    workflow.is_active = published
    workflow.updated_by_id = user.id
    audit.log_action(
        AuditAction.WORKFLOW_UPDATED.value,
        EntityType.WORKFLOW.value,
        user.id,
        entity_id=workflow.id,
        description=f"Workflow {workflow.name} {'published' if published else 'unpublished'}",
        old_values=old,
        new_values=_summary(workflow),
    )
    db.session.commit()
    return workflow


def create_from_template(template_id: int, user: User, name: str, *, description: str | None = None) -> Workflow:
    template = get_workflow(template_id)
    if not template.is_template:
        raise ValidationError(f"workflow {template_id} is not a template")
    return create_workflow(
        user,
        name,
        copy.deepcopy(template.workflow_definition),
        description=description if description is not None else template.description,
        category=template.category,
    )


def delete_workflow(workflow_id: int, user: User) -> None:
    """Delete a workflow that has never been started."""

    _require_admin(user, "delete workflows")
    workflow = get_workflow(workflow_id)
    in_use = WorkflowInstance.query.filter_by(workflow_id=workflow.id)
    if db.session.query(in_use.exists()).scalar():
        raise InvalidTransition(f"workflow {workflow_id} has instances; unpublish it instead")

    audit.log_action(
        AuditAction.WORKFLOW_DELETED.value,
        EntityType.WORKFLOW.value,
        user.id,
        entity_id=workflow.id,
        description=f"Workflow {workflow.name} deleted",
        old_values=_summary(workflow),
    )
    db.session.delete(workflow)
    db.session.commit()

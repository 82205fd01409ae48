"""Writing, querying and exporting the audit trail."""

from __future__ import annotations

import json
from collections.abc import Iterable, Iterator
from datetime import datetime
from typing import Any

from flask import current_app, has_request_context, request

from ..engine import AuditEntry
from ..engine.statuses import AuditAction, EntityType, is_valid_value
from ..errors import ValidationError
from ..extensions import db
from ..models.audit import AuditLog
from ..utils.clock import isoformat, utcnow

DEFAULT_PAGE_SIZE = 50


def _request_details() -> dict[str, str | None]:
    if not has_request_context():
        return {}
    user_agent = request.user_agent.string if request.user_agent else None
    return {
        "ip_address": request.remote_addr,
        "user_agent": user_agent[:255] if user_agent else None,
        "session_id": request.headers.get("X-Session-Id"),
    }


def log_action(
    action: str,
    entity_type: str,
    user_id: str,
    *,
    entity_id: Any = None,
    description: str | None = None,
    old_values: dict[str, Any] | None = None,
    new_values: dict[str, Any] | None = None,
    workflow_instance_id: int | None = None,
    task_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    timestamp: datetime | None = None,
) -> AuditLog:
    """Add an audit row to the current session; the caller commits."""

    errors = []
    if not is_valid_value(AuditAction, action):
        errors.append(f"unknown audit action {action!r}")
    if not is_valid_value(EntityType, entity_type):
        errors.append(f"unknown entity type {entity_type!r}")
    if errors:
        raise ValidationError("invalid audit entry", errors=errors)

    entry = AuditLog(
        timestamp=timestamp or utcnow(),
        user_id=user_id,
        action=str(getattr(action, "value", action)),
        entity_type=str(getattr(entity_type, "value", entity_type)),
        entity_id=None if entity_id is None else str(entity_id),
        description=description,
        old_values=old_values,
        new_values=new_values,
        workflow_instance_id=workflow_instance_id,
        task_id=task_id,
        extra=metadata or None,
        **_request_details(),
    )
    db.session.add(entry)
    return entry


def record_entries(entries: Iterable[AuditEntry]) -> list[AuditLog]:
    """Persist the audit entries produced by the engine."""

    return [
        log_action(
            entry.action,
            entry.entity_type,
            entry.user_id,
            entity_id=entry.entity_id,
            description=entry.description,
            old_values=entry.old_values,
            new_values=entry.new_values,
            workflow_instance_id=entry.workflow_instance_id,
            task_id=entry.task_id,
            metadata=entry.metadata,
            timestamp=entry.timestamp,
        )
        for entry in entries
    ]


def _filtered(
    *,
    user_id: str | None = None,
    action: str | None = None,
    entity_type: str | None = None,
    entity_id: str | None = None,
    workflow_instance_id: int | None = None,
    task_id: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
):
    if action is not None and not is_valid_value(AuditAction, action):
        raise ValidationError(f"unknown audit action {action!r}")
    if entity_type is not None and not is_valid_value(EntityType, entity_type):
        raise ValidationError(f"unknown entity type {entity_type!r}")
    if start is not None and end is not None and start > end:
        raise ValidationError("start must not be after end")

    query = AuditLog.query
    if user_id is not None:
        query = query.filter(AuditLog.user_id == user_id)
    if action is not None:
        query = query.filter(AuditLog.action == action)
    if entity_type is not None:
        query = query.filter(AuditLog.entity_type == entity_type)
    if entity_id is not None:
        query = query.filter(AuditLog.entity_id == str(entity_id))
    if workflow_instance_id is not None:
        query = query.filter(AuditLog.workflow_instance_id == workflow_instance_id)
    if task_id is not None:
        query = query.filter(AuditLog.task_id == task_id)
    if start is not None:
        query = query.filter(AuditLog.timestamp >= start)
    if end is not None:
        query = query.filter(AuditLog.timestamp <= end)
    return query


def query_logs(*, page: int = 1, page_size: int = DEFAULT_PAGE_SIZE, **filters: Any) -> tuple[list[AuditLog], int]:
    """Return one page of matching entries, newest first, and the total count."""

    max_size = int(current_app.config.get("AUDIT_PAGE_SIZE_MAX", 200))
    page = max(1, page)
    page_size = max(1, min(page_size, max_size))

    query = _filtered(**filters)
    total = query.count()
    items = (
        query.order_by(AuditLog.timestamp.desc(), AuditLog.id.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
        .all()
    )
    return items, total


def count_logs(**filters: Any) -> int:
    return _filtered(**filters).count()


def purge_before(cutoff: datetime) -> int:
    """Delete entries older than ``cutoff`` and return how many were removed."""

    deleted = AuditLog.query.filter(AuditLog.timestamp < cutoff).delete(synchronize_session=False)
    db.session.commit()
    current_app.logger.info("Purged %s audit entries older than %s", deleted, cutoff.isoformat())
    return deleted


def serialize_entry(entry: AuditLog) -> dict[str, Any]:
    return {
        "id": entry.id,
        "timestamp": isoformat(entry.timestamp),
        "userId": entry.user_id,
        "action": entry.action,
        "entityType": entry.entity_type,
        "entityId": entry.entity_id,
        "description": entry.description,
        "oldValues": entry.old_values,
        "newValues": entry.new_values,
        "ipAddress": entry.ip_address,
        "userAgent": entry.user_agent,
        "workflowInstanceId": entry.workflow_instance_id,
        "taskId": entry.task_id,
        "metadata": entry.extra,
    }


def export_ndjson(*, start: datetime | None = None, end: datetime | None = None, **filters: Any) -> Iterator[str]:
    """Yield matching entries oldest first, one JSON document per line."""

    query = _filtered(start=start, end=end, **filters).order_by(AuditLog.timestamp.asc(), AuditLog.id.asc())

    def lines() -> Iterator[str]:
        for entry in query.yield_per(500):
            yield json.dumps(serialize_entry(entry)) + "\n"

    return lines()

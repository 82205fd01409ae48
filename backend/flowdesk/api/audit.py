"""API endpoints exposing the audit trail."""

from __future__ import annotations

from http import HTTPStatus

from flask import Blueprint, Response, jsonify, request, stream_with_context

from ..engine import roles
from ..services import audit, runtime
from ..utils.auth import require_user
from ..utils.clock import parse_datetime
from .instances import ensure_can_view
from .tasks import pagination

bp = Blueprint("audit", __name__)


def _filters() -> dict[str, object]:
    return {
        "user_id": request.args.get("userId"),
        "action": request.args.get("action"),
        "entity_type": request.args.get("entityType"),
        "entity_id": request.args.get("entityId"),
        "task_id": request.args.get("taskId"),
        "workflow_instance_id": request.args.get("instanceId", type=int),
        "start": parse_datetime(request.args.get("from"), name="from"),
        "end": parse_datetime(request.args.get("to"), name="to"),
    }


@bp.get("/instances/<int:instance_id>/audit")
@require_user()
def instance_audit(instance_id: int) -> tuple[object, int]:
    instance = runtime.get_instance(instance_id)
    ensure_can_view(instance)
    page, page_size = pagination()
    items, total = audit.query_logs(workflow_instance_id=instance.id, page=page, page_size=page_size)
    return (
        jsonify({"items": [audit.serialize_entry(item) for item in items], "total": total, "page": page}),
        HTTPStatus.OK,
    )


@bp.get("/audit")
@require_user(roles.ADMIN)
def list_audit() -> tuple[object, int]:
    page, page_size = pagination()
    items, total = audit.query_logs(page=page, page_size=page_size, **_filters())
    return (
        jsonify({"items": [audit.serialize_entry(item) for item in items], "total": total, "page": page}),
        HTTPStatus.OK,
    )


@bp.get("/audit/count")
@require_user(roles.ADMIN)
def count_audit() -> tuple[object, int]:
    return jsonify({"count": audit.count_logs(**_filters())}), HTTPStatus.OK


@bp.get("/audit/download")
@require_user(roles.ADMIN)
def download_audit() -> Response:
    lines = audit.export_ndjson(**_filters())
    response = Response(stream_with_context(lines), mimetype="application/x-ndjson")
    response.headers["Content-Disposition"] = "attachment; filename=audit-log.ndjson"
    return response

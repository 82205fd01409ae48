"""Tests for the audit trail service and the maintenance commands."""

from __future__ import annotations

import json
from datetime import datetime

import pytest

from backend.flowdesk.errors import ValidationError
from backend.flowdesk.extensions import db
from backend.flowdesk.models import AuditLog
from backend.flowdesk.services import audit


def _log(action, when, user_id="u1", **extra):
    entry = audit.log_action(action, "Workflow", user_id, entity_id=1, timestamp=when, **extra)
    db.session.commit()
    return entry


@pytest.fixture()
def entries(app):
    return [
        _log("WorkflowCreated", datetime(2024, 1, 1, 8)),
        _log("WorkflowUpdated", datetime(2024, 2, 1, 8), user_id="u2"),
        _log("WorkflowUpdated", datetime(2024, 3, 1, 8), metadata={"reason": "tweak"}),
    ]


def test_log_action_rejects_unknown_values(app):
    with pytest.raises(ValidationError) as excinfo:
        audit.log_action("Exploded", "Spaceship", "u1")
    assert len(excinfo.value.errors) == 2


def test_log_action_outside_a_request_has_no_client_details(entries):
    entry = entries[0]
    assert entry.ip_address is None
    assert entry.user_agent is None


def test_query_is_newest_first_and_filtered(entries):
    items, total = audit.query_logs()
    assert total == 3
    assert [item.timestamp.month for item in items] == [3, 2, 1]

    items, total = audit.query_logs(user_id="u1", action="WorkflowUpdated")
    assert total == 1
    assert items[0].extra == {"reason": "tweak"}

    assert audit.count_logs(start=datetime(2024, 1, 15), end=datetime(2024, 2, 15)) == 1


def test_query_pagination(entries):
    items, total = audit.query_logs(page=2, page_size=2)
    assert total == 3
    assert [item.timestamp.month for item in items] == [1]


def test_query_rejects_bad_filters(entries):
    with pytest.raises(ValidationError):
        audit.query_logs(action="Exploded")
    with pytest.raises(ValidationError):
        audit.count_logs(start=datetime(2024, 3, 1), end=datetime(2024, 1, 1))


def test_purge_before(entries):
    assert audit.purge_before(datetime(2024, 2, 15)) == 2
    assert [entry.action for entry in AuditLog.query.all()] == ["WorkflowUpdated"]


def test_export_is_oldest_first(entries):
    lines = list(audit.export_ndjson(start=datetime(2024, 1, 15)))
    documents = [json.loads(line) for line in lines]
    assert [document["timestamp"] for document in documents] == ["2024-02-01T08:00:00Z", "2024-03-01T08:00:00Z"]
    assert documents[1]["metadata"] == {"reason": "tweak"}


def test_purge_command(app, entries):
    runner = app.test_cli_runner()
    result = runner.invoke(args=["purge-audit", "--before", "2024-02-15T00:00:00"])
    assert result.exit_code == 0
    assert "deleted=2" in result.output


def test_purge_command_rejects_bad_dates(app):
    result = app.test_cli_runner().invoke(args=["purge-audit", "--before", "someday"])
    assert result.exit_code != 0


def test_export_command(app, entries, tmp_path):
    target = tmp_path / "audit.ndjson"
    result = app.test_cli_runner().invoke(args=["export-audit", "--from", "2024-02-01", "--output", str(target)])
    assert result.exit_code == 0
    lines = target.read_text(encoding="utf-8").splitlines()
    assert [json.loads(line)["userId"] for line in lines] == ["u2", "u1"]


def test_sweep_command(app):
    result = app.test_cli_runner().invoke(args=["sweep-timeouts"])
    assert result.exit_code == 0
    assert "timedOut=0" in result.output

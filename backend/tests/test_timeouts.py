from __future__ import annotations

from datetime import datetime, timedelta

from backend.flowdesk.engine import InstanceExpired, InstanceState, TaskState, TaskTimedOut, due_events, is_expired
from backend.flowdesk.engine.definition import parse_definition

NOW = datetime(2024, 5, 1, 12, 0, 0)

DEFINITION = parse_definition(
    {
        "steps": [
            {"id": "start", "type": "start"},
            {"id": "review", "type": "approval", "assignment": {"type": "user", "userId": "u1"}},
            {"id": "end", "type": "end"},
        ],
        "connections": [
            {"fromStepId": "start", "toStepId": "review"},
            {"fromStepId": "review", "toStepId": "end"},
        ],
        "settings": {"maxExecutionDays": 2},
    }
)


def _instance(status="Active", started=NOW - timedelta(hours=5)):
    return InstanceState(id=7, workflow_id=1, started_by_id="u1", status=status, started_at=started)


def _task(task_id, due, status="Pending"):
    return TaskState(
        id=task_id,
        instance_id=7,
        step_id="review",
        assigned_to_id="u1",
        type="approval",
        title="Review",
        status=status,
        due_date=due,
    )


def test_overdue_tasks_oldest_first():
    tasks = [
        _task("late", NOW - timedelta(minutes=5)),
        _task("later", NOW - timedelta(hours=3)),
        _task("future", NOW + timedelta(hours=1)),
        _task("no-due", None),
        _task("working", NOW - timedelta(hours=1), status="InProgress"),
        _task("parked", NOW - timedelta(hours=1), status="Deferred"),
        _task("done", NOW - timedelta(hours=1), status="Completed"),
    ]
    events = due_events(_instance(), tasks, DEFINITION, NOW)
    assert [event.task_id for event in events] == ["later", "working", "late"]
    assert all(isinstance(event, TaskTimedOut) for event in events)


def test_expiry_wins_over_task_timeouts():
    instance = _instance(started=NOW - timedelta(days=2))
    assert is_expired(instance, DEFINITION, NOW)
    events = due_events(instance, [_task("late", NOW - timedelta(hours=1))], DEFINITION, NOW)
    assert len(events) == 1
    assert isinstance(events[0], InstanceExpired)


def test_suspended_instances_only_expire():
    tasks = [_task("late", NOW - timedelta(hours=1))]
    assert due_events(_instance("Suspended"), tasks, DEFINITION, NOW) == []
    expired = _instance("Suspended", started=NOW - timedelta(days=3))
    assert isinstance(due_events(expired, tasks, DEFINITION, NOW)[0], InstanceExpired)


def test_finished_instances_have_no_events():
    tasks = [_task("late", NOW - timedelta(hours=1))]
    assert due_events(_instance("Completed", started=NOW - timedelta(days=9)), tasks, DEFINITION, NOW) == []


def test_no_limit_means_no_expiry():
    definition = parse_definition(
        {
            "steps": [{"id": "start", "type": "start"}, {"id": "end", "type": "end"}],
            "connections": [{"fromStepId": "start", "toStepId": "end"}],
        }
    )
    assert not is_expired(_instance(started=NOW - timedelta(days=900)), definition, NOW)

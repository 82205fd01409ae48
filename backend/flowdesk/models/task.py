"""Task model definition."""

from __future__ import annotations

from datetime import datetime

from ..engine.state import URGENT_PRIORITY
from ..engine.statuses import TaskStatus
from ..extensions import db
from ..utils.clock import utcnow


class Task(db.Model):
    """A unit of human work created by a form or approval step."""

    __tablename__ = "tasks"

    id = db.Column(db.String(40), primary_key=True)
    workflow_instance_id = db.Column(
        db.Integer, db.ForeignKey("workflow_instances.id"), nullable=False, index=True
    )
    step_id = db.Column(db.String(120), nullable=False)
    assigned_to_id = db.Column(db.String(64), db.ForeignKey("users.id"), nullable=False, index=True)
    type = db.Column(db.String(20), nullable=False)
    status = db.Column(db.String(20), nullable=False, default=TaskStatus.PENDING.value, index=True)
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    priority = db.Column(db.Integer, nullable=False, default=1)
    assigned_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    due_date = db.Column(db.DateTime, nullable=True, index=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    outcome = db.Column(db.String(20), nullable=True)
    comments = db.Column(db.Text, nullable=True)
    data = db.Column(db.JSON, nullable=False, default=dict)
    escalation_level = db.Column(db.Integer, nullable=False, default=0)
    row_version = db.Column(db.Integer, nullable=False)

    instance = db.relationship("WorkflowInstance", back_populates="tasks")

    __mapper_args__ = {"version_id_col": row_version}

    @property
    def is_urgent(self) -> bool:
        return self.priority >= URGENT_PRIORITY

    def is_overdue(self, now: datetime | None = None) -> bool:
        now = now or utcnow()
        return self.due_date is not None and self.due_date < now and self.status == TaskStatus.PENDING

    def __repr__(self) -> str:  # pragma: no cover - repr not critical for tests
        return f"<Task {self.id} {self.status}>"

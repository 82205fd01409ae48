"""Workflow instance model definition."""

from __future__ import annotations

from ..engine.statuses import InstanceStatus
from ..extensions import db


class WorkflowInstance(db.Model):
    """One execution of a workflow, pinned to the definition it started with."""

    __tablename__ = "workflow_instances"

    id = db.Column(db.Integer, primary_key=True)
    workflow_id = db.Column(db.Integer, db.ForeignKey("workflows.id"), nullable=False, index=True)
    workflow_version = db.Column(db.Integer, nullable=False)
    definition_snapshot = db.Column(db.JSON, nullable=False)
    started_by_id = db.Column(db.String(64), db.ForeignKey("users.id"), nullable=False, index=True)
    form_submission_id = db.Column(db.Integer, db.ForeignKey("form_submissions.id"), nullable=True, unique=True)
    status = db.Column(db.String(20), nullable=False, default=InstanceStatus.ACTIVE.value, index=True)
    current_step_id = db.Column(db.String(120), nullable=False, default="")
    active_steps = db.Column(db.JSON, nullable=False, default=list)
    join_arrivals = db.Column(db.JSON, nullable=False, default=dict)
    variables = db.Column(db.JSON, nullable=False, default=dict)
    started_at = db.Column(db.DateTime, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    last_activity_at = db.Column(db.DateTime, nullable=True)
    final_outcome = db.Column(db.String(40), nullable=True)
    comments = db.Column(db.Text, nullable=True)
    row_version = db.Column(db.Integer, nullable=False)

    workflow = db.relationship("Workflow", back_populates="instances")
    tasks = db.relationship(
        "Task", back_populates="instance", order_by="Task.assigned_at", cascade="all, delete-orphan"
    )

    __mapper_args__ = {"version_id_col": row_version}

    def __repr__(self) -> str:  # pragma: no cover - repr not critical for tests
        return f"<WorkflowInstance {self.id} {self.status}>"

"""Workflow model definition."""

from __future__ import annotations

from ..engine.definition import WorkflowDefinition, parse_definition
from ..extensions import db
from ..utils.clock import utcnow


class Workflow(db.Model):
    """A versioned workflow definition that instances are started from."""

    __tablename__ = "workflows"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), unique=True, nullable=False)
    description = db.Column(db.Text, nullable=True)
    workflow_definition = db.Column(db.JSON, nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    is_template = db.Column(db.Boolean, nullable=False, default=False)
    category = db.Column(db.String(120), nullable=True)
    version = db.Column(db.Integer, nullable=False, default=1)
    created_by_id = db.Column(db.String(64), db.ForeignKey("users.id"), nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, nullable=True, onupdate=utcnow)
    updated_by_id = db.Column(db.String(64), nullable=True)

    instances = db.relationship("WorkflowInstance", back_populates="workflow", lazy="dynamic")

    @property
    def definition(self) -> WorkflowDefinition:
        return parse_definition(self.workflow_definition)

    def __repr__(self) -> str:  # pragma: no cover - repr not critical for tests
        return f"<Workflow {self.name!r} v{self.version}>"

"""Audit log model definition."""

from __future__ import annotations

from ..extensions import db
from ..utils.clock import utcnow


class AuditLog(db.Model):
    """Append-only record of every state change."""

    __tablename__ = "audit_logs"

    id = db.Column(db.Integer, primary_key=True)
    timestamp = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)
    user_id = db.Column(db.String(64), nullable=False, index=True)
    action = db.Column(db.String(40), nullable=False, index=True)
    entity_type = db.Column(db.String(40), nullable=False)
    entity_id = db.Column(db.String(64), nullable=True)
    description = db.Column(db.Text, nullable=True)
    old_values = db.Column(db.JSON, nullable=True)
    new_values = db.Column(db.JSON, nullable=True)
    ip_address = db.Column(db.String(64), nullable=True)
    user_agent = db.Column(db.String(255), nullable=True)
    session_id = db.Column(db.String(120), nullable=True)
    workflow_instance_id = db.Column(db.Integer, nullable=True, index=True)
    task_id = db.Column(db.String(40), nullable=True, index=True)
    extra = db.Column("metadata", db.JSON, nullable=True)

    def __repr__(self) -> str:  # pragma: no cover - repr not critical for tests
        return f"<AuditLog {self.id} {self.action}>"

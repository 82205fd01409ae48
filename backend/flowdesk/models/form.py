"""Form and form submission models."""

from __future__ import annotations

from ..engine.statuses import SubmissionStatus
from ..extensions import db
from ..forms import FormDefinition, parse_form_definition
from ..utils.clock import utcnow


class Form(db.Model):
    """A form definition built in the form builder."""

    __tablename__ = "forms"

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    form_definition = db.Column(db.JSON, nullable=False, default=dict)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    is_template = db.Column(db.Boolean, nullable=False, default=False)
    category = db.Column(db.String(120), nullable=True)
    created_by_id = db.Column(db.String(64), db.ForeignKey("users.id"), nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=True, onupdate=utcnow)
    updated_by_id = db.Column(db.String(64), nullable=True)
    associated_workflow_id = db.Column(db.Integer, db.ForeignKey("workflows.id"), nullable=True)

    submissions = db.relationship("FormSubmission", back_populates="form", lazy="dynamic")

    @property
    def definition(self) -> FormDefinition:
        return parse_form_definition(self.form_definition)

    def __repr__(self) -> str:  # pragma: no cover - repr not critical for tests
        return f"<Form {self.title!r}>"


class FormSubmission(db.Model):
    """Data entered into a form, optionally driving a workflow instance."""

    __tablename__ = "form_submissions"

    id = db.Column(db.Integer, primary_key=True)
    form_id = db.Column(db.Integer, db.ForeignKey("forms.id"), nullable=False, index=True)
    submitted_by_id = db.Column(db.String(64), db.ForeignKey("users.id"), nullable=False)
    form_data = db.Column(db.JSON, nullable=False, default=dict)
    status = db.Column(db.String(20), nullable=False, default=SubmissionStatus.DRAFT.value)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    submitted_at = db.Column(db.DateTime, nullable=True)
    updated_at = db.Column(db.DateTime, nullable=True)
    updated_by_id = db.Column(db.String(64), nullable=True)
    comments = db.Column(db.Text, nullable=True)
    signature = db.Column(db.Text, nullable=True)
    extra = db.Column("metadata", db.JSON, nullable=True)

    form = db.relationship("Form", back_populates="submissions")

    def __repr__(self) -> str:  # pragma: no cover - repr not critical for tests
        return f"<FormSubmission {self.id} {self.status}>"
